"""Unit tests for outbound webhook delivery and the event emitter."""

import hashlib
import hmac
import json

import httpx
import pytest

from collectdispatch.logging import setup_logging
from collectdispatch.models.models import WebhookLog
from collectdispatch.services.webhooks import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    EventEmitter,
    WebhookDispatcher,
    hook_wants,
)

from conftest import make_org

HOOK = {"url": "https://hooks.example.com/dispatch", "events": [], "secret": "whsec", "enabled": True}


class Receiver:
    """MockTransport handler that records requests and answers with canned statuses."""

    def __init__(self, *statuses: int) -> None:
        self.statuses = list(statuses) or [200]
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status)


def _dispatcher(session_factory, handler, **kwargs) -> WebhookDispatcher:
    kwargs.setdefault("retry_delay_s", 0)
    return WebhookDispatcher(session_factory=session_factory, transport=httpx.MockTransport(handler), **kwargs)


def _logs(db):
    db.expire_all()
    return db.query(WebhookLog).order_by(WebhookLog.created_at).all()


class TestHookFilter:
    def test_empty_events_means_everything(self) -> None:
        assert hook_wants(HOOK, "mission.completed")

    def test_subscribed_events_only(self) -> None:
        hook = dict(HOOK, events=["mission.assigned"])
        assert hook_wants(hook, "mission.assigned")
        assert not hook_wants(hook, "mission.started")

    def test_disabled_hook(self) -> None:
        assert not hook_wants(dict(HOOK, enabled=False), "mission.created")


class TestDispatcher:
    def test_success_is_signed_and_logged(self, db, session_factory) -> None:
        org = make_org(db)
        receiver = Receiver(200)
        dispatcher = _dispatcher(session_factory, receiver)

        assert dispatcher.enqueue(org.id, "mission.started", {"missionId": "m-1"}, [HOOK]) == 1
        assert dispatcher.drain() == 1

        request = receiver.requests[0]
        body = request.content
        assert request.headers[SIGNATURE_HEADER] == hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        assert request.headers[EVENT_HEADER] == "mission.started"
        payload = json.loads(body)
        assert payload["event"] == "mission.started"
        assert payload["organizationId"] == str(org.id)
        assert payload["data"] == {"missionId": "m-1"}
        assert payload["id"].startswith("wh_")
        assert request.headers[DELIVERY_HEADER] == payload["id"]

        logs = _logs(db)
        assert [(log.status, log.http_status) for log in logs] == [("success", 200)]
        assert logs[0].payload_id == payload["id"]

    def test_failure_is_logged_not_retried_by_default(self, db, session_factory) -> None:
        org = make_org(db)
        receiver = Receiver(500)
        dispatcher = _dispatcher(session_factory, receiver, max_attempts=1)
        dispatcher.enqueue(org.id, "mission.created", {}, [HOOK])
        dispatcher.drain()

        assert len(receiver.requests) == 1
        logs = _logs(db)
        assert logs[0].status == "failed"
        assert logs[0].http_status == 500

    def test_opt_in_retries(self, db, session_factory) -> None:
        org = make_org(db)
        receiver = Receiver(503, 503, 200)
        dispatcher = _dispatcher(session_factory, receiver, max_attempts=3)
        dispatcher.enqueue(org.id, "mission.created", {}, [HOOK])
        dispatcher.drain()

        assert len(receiver.requests) == 3
        assert [log.status for log in _logs(db)] == ["success"]

    def test_transport_error_is_failed(self, db, session_factory) -> None:
        org = make_org(db)

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = _dispatcher(session_factory, refuse, max_attempts=1)
        dispatcher.enqueue(org.id, "mission.created", {}, [HOOK])
        dispatcher.drain()

        log = _logs(db)[0]
        assert log.status == "failed"
        assert "refused" in log.error

    def test_full_queue_drops_and_logs(self, db, session_factory) -> None:
        org = make_org(db)
        dispatcher = _dispatcher(session_factory, Receiver(200), queue_size=1)
        accepted = dispatcher.enqueue(org.id, "mission.created", {}, [HOOK, dict(HOOK, url="https://b.example.com")])

        assert accepted == 1
        assert dispatcher.pending == 1
        assert [log.status for log in _logs(db)] == ["dropped"]

    def test_only_matching_hooks_receive(self, db, session_factory) -> None:
        org = make_org(db)
        receiver = Receiver(200)
        hooks = [
            dict(HOOK, events=["mission.completed"]),
            dict(HOOK, url="https://all.example.com", events=[]),
            dict(HOOK, url="https://off.example.com", enabled=False),
        ]
        dispatcher = _dispatcher(session_factory, receiver)
        assert dispatcher.enqueue(org.id, "mission.assigned", {}, hooks) == 1
        dispatcher.drain()
        assert [r.url.host for r in receiver.requests] == ["all.example.com"]

    def test_worker_thread_delivers(self, db, session_factory) -> None:
        org = make_org(db)
        receiver = Receiver(200)
        dispatcher = _dispatcher(session_factory, receiver)
        dispatcher.start()
        try:
            dispatcher.enqueue(org.id, "mission.created", {}, [HOOK])
            dispatcher._queue.join()
        finally:
            dispatcher.stop()
        assert len(receiver.requests) == 1


class TestEmitter:
    def test_listener_failure_does_not_propagate(self) -> None:
        seen = []

        def broken(event, payload):
            raise RuntimeError("listener down")

        emitter = EventEmitter()
        emitter.subscribe(broken)
        emitter.subscribe(lambda event, payload: seen.append(event))
        emitter.emit("mission.started", {"missionId": "m-1"})
        assert seen == ["mission.started"]

    def test_queues_for_org_webhooks(self, db, session_factory) -> None:
        org = make_org(db, webhooks=[HOOK])
        dispatcher = _dispatcher(session_factory, Receiver(200))
        EventEmitter(dispatcher=dispatcher).emit("mission.created", {"missionId": "m-1"}, org)
        assert dispatcher.pending == 1

    def test_no_webhooks_nothing_queued(self, db, session_factory) -> None:
        org = make_org(db)
        dispatcher = _dispatcher(session_factory, Receiver(200))
        EventEmitter(dispatcher=dispatcher).emit("mission.created", {}, org)
        assert dispatcher.pending == 0


class TestOutcomesUnderJsonLogging:
    @pytest.fixture(autouse=True)
    def json_logging(self) -> None:
        setup_logging("DEBUG")

    def test_delivery_outcomes_reach_webhook_logs(self, db, session_factory) -> None:
        org = make_org(db)
        dispatcher = _dispatcher(session_factory, Receiver(200, 500), max_attempts=1)
        dispatcher.enqueue(org.id, "mission.assigned", {"missionId": "m-1"}, [HOOK])
        dispatcher.enqueue(org.id, "mission.started", {"missionId": "m-1"}, [HOOK])

        assert dispatcher.drain() == 2

        logs = _logs(db)
        assert sorted((log.event, log.status) for log in logs) == [
            ("mission.assigned", "success"),
            ("mission.started", "failed"),
        ]

    def test_worker_survives_and_records(self, db, session_factory) -> None:
        org = make_org(db)
        receiver = Receiver(500, 200)
        dispatcher = _dispatcher(session_factory, receiver, max_attempts=1)
        dispatcher.start()
        try:
            dispatcher.enqueue(org.id, "mission.created", {}, [HOOK])
            dispatcher.enqueue(org.id, "mission.assigned", {}, [HOOK])
            dispatcher._queue.join()
        finally:
            dispatcher.stop()

        assert len(receiver.requests) == 2
        assert sorted(log.status for log in _logs(db)) == ["failed", "success"]

    def test_full_queue_never_raises_into_the_emitter(self, db, session_factory) -> None:
        org = make_org(db, webhooks=[HOOK, dict(HOOK, url="https://b.example.com")])
        dispatcher = _dispatcher(session_factory, Receiver(200), queue_size=1)

        EventEmitter(dispatcher=dispatcher).emit("mission.completed", {"missionId": "m-1"}, org)

        assert dispatcher.pending == 1
        assert [log.status for log in _logs(db)] == ["dropped"]
