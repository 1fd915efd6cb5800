import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .ratelimit import limiter
from .routes.missions import router as missions_router
from .routes.collectors import router as collectors_router
from .routes.collections import router as collections_router
from .routes.business import router as business_router
from .services.errors import DispatchError
from .services.webhooks import EventEmitter, WebhookDispatcher

logger = structlog.get_logger(__name__)


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("dispatch_error", path=request.url.path, error=exc.detail)
    else:
        logger.info("request_rejected", path=request.url.path, status=exc.status_code, error=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(emitter: EventEmitter = None) -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(DispatchError, dispatch_error_handler)

    # Outbound events
    if emitter is None:
        emitter = EventEmitter(dispatcher=WebhookDispatcher())
    app.state.emitter = emitter

    # Routers
    app.include_router(missions_router)
    app.include_router(collectors_router)
    app.include_router(collections_router)
    app.include_router(business_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
        dispatcher = app.state.emitter.dispatcher
        if dispatcher is not None and settings.webhook_worker_enabled:
            dispatcher.start()
        logger.info("startup_complete", environment=settings.environment)

    @app.on_event("shutdown")
    def _shutdown():
        dispatcher = app.state.emitter.dispatcher
        if dispatcher is not None:
            dispatcher.stop()

    return app


app = create_app()
