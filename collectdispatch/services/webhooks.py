"""
Outbound event boundary.

EventEmitter fans lifecycle events out to in-process listeners and to the
organization's configured webhooks. Webhook delivery runs off the request
path: events go into a bounded queue drained by a background worker thread,
and every outcome is written to webhook_logs.
"""
import hashlib
import hmac
import json
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..db import SessionLocal, session_scope
from ..models.models import Organization, WebhookLog
from .time_rules import isoformat, utcnow

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Collect-Signature"
EVENT_HEADER = "X-Collect-Event"
DELIVERY_HEADER = "X-Collect-Delivery"

MISSION_EVENTS = (
    "mission.created",
    "mission.assigned",
    "mission.started",
    "mission.blocked",
    "mission.resumed",
    "mission.completed",
    "mission.cancelled",
)
KNOWN_EVENTS = MISSION_EVENTS + ("collection.confirmed",)


def sign_body(secret: Optional[str], body: bytes) -> str:
    return hmac.new((secret or "").encode("utf-8"), body, hashlib.sha256).hexdigest()


def hook_wants(hook: Dict, event: str) -> bool:
    if not hook.get("url") or hook.get("enabled") is False:
        return False
    events = hook.get("events") or []
    return not events or event in events


@dataclass
class Delivery:
    organization_id: str
    url: str
    secret: Optional[str]
    event: str
    payload: Dict
    attempt: int = 1

    @property
    def payload_id(self) -> str:
        return self.payload["id"]


@dataclass
class DeliveryResult:
    status: str
    http_status: Optional[int] = None
    error: Optional[str] = None


class WebhookDispatcher:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        queue_size: Optional[int] = None,
        timeout_s: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_delay_s: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._session_factory = session_factory
        self._queue: "queue.Queue[Delivery]" = queue.Queue(maxsize=queue_size or settings.webhook_queue_size)
        self._client = httpx.Client(
            timeout=timeout_s if timeout_s is not None else settings.webhook_timeout_s,
            transport=transport,
        )
        self.max_attempts = max_attempts or settings.webhook_max_attempts
        self.retry_delay_s = retry_delay_s if retry_delay_s is not None else settings.webhook_retry_delay_s
        self._shutdown = threading.Event()
        self._worker: Optional[threading.Thread] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, organization_id, event: str, data: Dict, hooks: Optional[List[Dict]]) -> int:
        """Queue one delivery per matching hook. Returns how many were accepted."""
        accepted = 0
        for hook in hooks or []:
            if not hook_wants(hook, event):
                continue
            payload = {
                "id": f"wh_{uuid.uuid4().hex}",
                "event": event,
                "organizationId": str(organization_id),
                "data": data,
                "timestamp": isoformat(utcnow()),
            }
            delivery = Delivery(str(organization_id), hook["url"], hook.get("secret"), event, payload)
            try:
                self._queue.put_nowait(delivery)
                accepted += 1
            except queue.Full:
                logger.warning("webhook_dropped", url=delivery.url, event_name=event, payload_id=delivery.payload_id)
                self._record(delivery, DeliveryResult("dropped", error="Outbound queue full"))
        return accepted

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._shutdown.clear()
        self._worker = threading.Thread(target=self._run, name="WebhookDispatcher", daemon=True)
        self._worker.start()
        logger.info("webhook_worker_started")

    def stop(self, timeout: float = 5.0) -> None:
        self._shutdown.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None
        self._client.close()
        logger.info("webhook_worker_stopped", pending=self.pending)

    def drain(self) -> int:
        """Deliver everything queued on the calling thread. Used when no worker runs."""
        delivered = 0
        while True:
            try:
                delivery = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            try:
                self._process(delivery)
                delivered += 1
            finally:
                self._queue.task_done()

    def _run(self) -> None:
        while not self._shutdown.is_set():
            try:
                delivery = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._process(delivery)
            except Exception:
                logger.exception("webhook_worker_error", url=delivery.url, event_name=delivery.event)
            finally:
                self._queue.task_done()

    def _process(self, delivery: Delivery) -> DeliveryResult:
        while True:
            result = self.deliver(delivery)
            if result.status == "success" or delivery.attempt >= self.max_attempts:
                break
            if self.retry_delay_s:
                time.sleep(self.retry_delay_s * delivery.attempt)
            delivery.attempt += 1
        self._record(delivery, result)
        return result

    def deliver(self, delivery: Delivery) -> DeliveryResult:
        body = json.dumps(delivery.payload, separators=(",", ":")).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_body(delivery.secret, body),
            EVENT_HEADER: delivery.event,
            DELIVERY_HEADER: delivery.payload_id,
        }
        try:
            response = self._client.post(delivery.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("webhook_failed", url=delivery.url, event_name=delivery.event, attempt=delivery.attempt, error=str(e))
            return DeliveryResult("failed", error=str(e))
        if response.is_success:
            logger.info("webhook_delivered", url=delivery.url, event_name=delivery.event, http_status=response.status_code)
            return DeliveryResult("success", http_status=response.status_code)
        logger.warning(
            "webhook_failed",
            url=delivery.url,
            event_name=delivery.event,
            attempt=delivery.attempt,
            http_status=response.status_code,
        )
        return DeliveryResult("failed", http_status=response.status_code, error=f"Non-2xx status: {response.status_code}")

    def _record(self, delivery: Delivery, result: DeliveryResult) -> None:
        try:
            with session_scope(self._session_factory) as db:
                db.add(WebhookLog(
                    organization_id=uuid.UUID(delivery.organization_id),
                    url=delivery.url,
                    event=delivery.event,
                    payload_id=delivery.payload_id,
                    status=result.status,
                    http_status=result.http_status,
                    error=result.error,
                ))
        except SQLAlchemyError:
            logger.exception("webhook_log_failed", url=delivery.url, payload_id=delivery.payload_id)


Listener = Callable[[str, Dict], None]


@dataclass
class EventEmitter:
    """
    Publishes lifecycle events after the state change has been committed.
    Emission never fails the mutation that produced it.
    """
    dispatcher: Optional[WebhookDispatcher] = None
    listeners: List[Listener] = field(default_factory=list)

    def subscribe(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def emit(self, event: str, payload: Dict, organization: Optional[Organization] = None) -> None:
        logger.info("event_emitted", event_name=event, mission_id=payload.get("missionId"))
        for listener in list(self.listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("event_listener_failed", event_name=event)
        if self.dispatcher is not None and organization is not None and organization.webhooks:
            self.dispatcher.enqueue(organization.id, event, payload, organization.webhooks)
