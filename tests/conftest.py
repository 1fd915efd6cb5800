"""Shared fixtures: an isolated in-memory database, a recording event emitter,
entity factories, and an API client wired to both."""

import math
import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["WEBHOOK_WORKER_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["QR_SECRET"] = "test-qr-secret"
os.environ["AUDIT_SECRET"] = "test-audit-secret"

import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from collectdispatch.auth.security import create_access_token
from collectdispatch.db import Base, get_db
from collectdispatch.main import create_app
from collectdispatch.models.models import Collection, Mission, Organization, User
from collectdispatch.services.state_machine import MissionStateMachine
from collectdispatch.services.time_rules import utcnow
from collectdispatch.services.webhooks import EventEmitter

# Downtown reference point, [lng, lat]
ORIGIN = (-79.3832, 43.6532)


class EventRecorder:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict]] = []

    def __call__(self, event: str, payload: Dict) -> None:
        self.events.append((event, payload))

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def emitter(recorder) -> EventEmitter:
    em = EventEmitter()
    em.subscribe(recorder)
    return em


@pytest.fixture
def state_machine(emitter) -> MissionStateMachine:
    return MissionStateMachine(emitter=emitter)


@pytest.fixture
def client(session_factory, emitter):
    app = create_app(emitter=emitter)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_org(db, **kwargs) -> Organization:
    defaults = {
        "name": "Green Bins",
        "slug": f"org-{uuid.uuid4().hex[:8]}",
        "auto_assign_enabled": True,
        "auto_assign_radius_m": 10000,
        "max_active_missions": 5,
        "webhooks": [],
    }
    defaults.update(kwargs)
    org = Organization(**defaults)
    db.add(org)
    db.commit()
    return org


def make_user(db, role: str, org: Organization = None, **kwargs) -> User:
    defaults = {
        "email": f"{role}-{uuid.uuid4().hex[:8]}@example.com",
        "name": role.replace("_", " ").title(),
        "role": role,
        "organization_id": org.id if org is not None else None,
        "is_active": True,
        "active_mission_count": 0,
    }
    defaults.update(kwargs)
    user = User(**defaults)
    db.add(user)
    db.commit()
    return user


def make_collector(
    db,
    org: Organization,
    lng: float = ORIGIN[0],
    lat: float = ORIGIN[1],
    seen_at: datetime = None,
    on_duty: bool = True,
    **kwargs,
) -> User:
    return make_user(
        db,
        "collector",
        org,
        on_duty=on_duty,
        last_lng=lng,
        last_lat=lat,
        last_seen_at=seen_at if seen_at is not None else utcnow(),
        **kwargs,
    )


def make_collection(db, org: Organization, reporter: User = None, lng: float = ORIGIN[0], lat: float = ORIGIN[1], **kwargs) -> Collection:
    defaults = {
        "organization_id": org.id,
        "reporter_id": reporter.id if reporter is not None else None,
        "lng": lng,
        "lat": lat,
        "waste_type": "household",
        "urgency": "medium",
        "status": "pending",
    }
    defaults.update(kwargs)
    collection = Collection(**defaults)
    db.add(collection)
    db.commit()
    return collection


def make_mission(db, state_machine: MissionStateMachine, org: Organization, **collection_kwargs) -> Mission:
    collection = make_collection(db, org, **collection_kwargs)
    return state_machine.create_mission(db, collection)


def offset(lng: float, lat: float, north_m: float = 0.0, east_m: float = 0.0) -> Tuple[float, float]:
    """Shift a point by roughly the given metres; plenty accurate for ranking tests."""
    d_lat = north_m / 111320.0
    d_lng = east_m / (111320.0 * math.cos(math.radians(lat)))
    return lng + d_lng, lat + d_lat


def token_for(user: User) -> str:
    return create_access_token(str(user.id), user.role, str(user.organization_id) if user.organization_id else None)


def auth(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user)}"}


def minutes_ago(minutes: float) -> datetime:
    return utcnow() - timedelta(minutes=minutes)
