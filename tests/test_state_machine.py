"""Unit tests for the mission lifecycle."""

import itertools

import pytest
from sqlalchemy import update

from collectdispatch.models.models import AuditLog, Mission
from collectdispatch.services.access import Caller
from collectdispatch.services.errors import (
    AuthorizationError,
    ConcurrencyConflictError,
    InvalidTransitionError,
    ValidationError,
)
from collectdispatch.services.matching import AssignmentEngine
from collectdispatch.services.state_machine import (
    ASSIGNED,
    BLOCKED,
    CANCELLED,
    COMPLETED,
    IN_PROGRESS,
    PLANNED,
    STATUSES,
    TRANSITIONS,
    can_transition,
    event_for,
)

from conftest import make_collection, make_collector, make_mission, make_org, make_user

AFTER_PROOF = {"after": {"photo": "https://cdn.example.com/after.jpg", "timestamp": "2026-01-01T00:00:00Z"}}
BLOCK = {"reason": "vehicle_breakdown", "description": "Flat tyre"}


def caller_for(user) -> Caller:
    return Caller(
        user_id=str(user.id),
        role=user.role,
        organization_id=str(user.organization_id) if user.organization_id else None,
    )


@pytest.fixture
def setup(db, state_machine):
    org = make_org(db)
    collector = make_collector(db, org)
    admin = make_user(db, "org_admin", org)
    mission = make_mission(db, state_machine, org)
    AssignmentEngine(db, state_machine).assign(mission.id)
    return org, collector, admin, mission


def force_status(db, mission, status, **values):
    db.execute(update(Mission).where(Mission.id == mission.id).values(status=status, **values))
    db.commit()


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self) -> None:
        assert TRANSITIONS[COMPLETED] == frozenset()
        assert TRANSITIONS[CANCELLED] == frozenset()

    def test_every_state_is_listed(self) -> None:
        assert set(TRANSITIONS) == set(STATUSES)

    def test_resume_is_its_own_event(self) -> None:
        assert event_for(BLOCKED, IN_PROGRESS) == "mission.resumed"
        assert event_for(ASSIGNED, IN_PROGRESS) == "mission.started"
        assert event_for(IN_PROGRESS, BLOCKED) == "mission.blocked"


@pytest.mark.parametrize("current,target", list(itertools.product(STATUSES, STATUSES)))
def test_transition_table_is_enforced_for_every_pair(db, state_machine, current, target) -> None:
    org = make_org(db)
    collector = make_collector(db, org)
    admin = make_user(db, "org_admin", org)
    mission = make_mission(db, state_machine, org)
    if current != PLANNED:
        AssignmentEngine(db, state_machine).manual_assign(mission.id, collector.id)
        force_status(db, mission, current, proofs=AFTER_PROOF)
    caller = caller_for(admin if current == PLANNED else collector)

    if not can_transition(current, target):
        with pytest.raises(InvalidTransitionError) as exc:
            state_machine.transition(db, mission, target, caller, block_reason=BLOCK)
        assert exc.value.to_dict()["currentStatus"] == current
        assert exc.value.to_dict()["attemptedStatus"] == target
    elif target == ASSIGNED:
        with pytest.raises(ValidationError):
            state_machine.transition(db, mission, target, caller, block_reason=BLOCK)
    else:
        result = state_machine.transition(db, mission, target, caller, block_reason=BLOCK)
        assert result.status == target
    db.refresh(mission)
    assert mission.status in (current, target)


class TestLifecycle:
    def test_happy_path_events_and_collection_mirror(self, db, state_machine, recorder, setup) -> None:
        org, collector, admin, mission = setup
        me = caller_for(collector)

        state_machine.transition(db, mission, IN_PROGRESS, me)
        assert mission.collection.status == "in-progress"
        state_machine.transition(db, mission, BLOCKED, me, block_reason=BLOCK)
        assert mission.block_reason["reason"] == "vehicle_breakdown"
        assert mission.collection.status == "in-progress"
        state_machine.transition(db, mission, IN_PROGRESS, me)
        force_status(db, mission, IN_PROGRESS, proofs=AFTER_PROOF)
        state_machine.transition(db, mission, COMPLETED, me)

        assert mission.status == COMPLETED
        assert mission.collection.status == "completed"
        assert set(mission.timestamps) >= {"assigned", "started", "blocked", "resumed", "completed"}
        assert recorder.names == [
            "mission.created",
            "mission.assigned",
            "mission.started",
            "mission.blocked",
            "mission.resumed",
            "mission.completed",
        ]
        blocked_payload = recorder.events[3][1]
        assert blocked_payload["blockReason"]["description"] == "Flat tyre"
        assert blocked_payload["oldStatus"] == IN_PROGRESS

    def test_completion_releases_slot(self, db, state_machine, setup) -> None:
        org, collector, admin, mission = setup
        state_machine.transition(db, mission, IN_PROGRESS, caller_for(collector))
        db.refresh(collector)
        assert collector.active_mission_count == 1
        force_status(db, mission, IN_PROGRESS, proofs=AFTER_PROOF)
        state_machine.transition(db, mission, COMPLETED, caller_for(collector))
        db.refresh(collector)
        assert collector.active_mission_count == 0

    def test_blocked_mission_keeps_its_slot(self, db, state_machine, setup) -> None:
        org, collector, admin, mission = setup
        state_machine.transition(db, mission, IN_PROGRESS, caller_for(collector))
        state_machine.transition(db, mission, BLOCKED, caller_for(collector), block_reason=BLOCK)
        db.refresh(collector)
        assert collector.active_mission_count == 1

    def test_cancel_releases_slot_and_reopens_collection(self, db, state_machine, recorder, setup) -> None:
        org, collector, admin, mission = setup
        state_machine.transition(db, mission, CANCELLED, caller_for(admin))
        db.refresh(collector)
        assert collector.active_mission_count == 0
        assert mission.collection.status == "pending"
        assert recorder.names[-1] == "mission.cancelled"
        # The collection can be dispatched again
        again = state_machine.create_mission(db, mission.collection)
        assert again.status == PLANNED

    def test_cancel_planned_mission_without_collector(self, db, state_machine) -> None:
        org = make_org(db, auto_assign_enabled=False)
        admin = make_user(db, "org_admin", org)
        mission = make_mission(db, state_machine, org)
        state_machine.transition(db, mission, CANCELLED, caller_for(admin))
        assert mission.status == CANCELLED

    def test_every_transition_is_audited(self, db, state_machine, setup) -> None:
        org, collector, admin, mission = setup
        state_machine.transition(db, mission, IN_PROGRESS, caller_for(collector))
        entries = (
            db.query(AuditLog)
            .filter(AuditLog.target_id == str(mission.id), AuditLog.action == "mission.status_changed")
            .all()
        )
        changes = sorted((e.metadata_json["old_status"], e.metadata_json["new_status"]) for e in entries)
        assert changes == [(ASSIGNED, IN_PROGRESS), (PLANNED, ASSIGNED)]


class TestGuards:
    def test_only_assignee_starts(self, db, state_machine, setup) -> None:
        org, collector, admin, mission = setup
        other = make_collector(db, org)
        with pytest.raises(AuthorizationError):
            state_machine.transition(db, mission, IN_PROGRESS, caller_for(other))
        with pytest.raises(AuthorizationError):
            state_machine.transition(db, mission, IN_PROGRESS, caller_for(admin))
        assert mission.status == ASSIGNED

    def test_admin_may_resume_blocked_mission(self, db, state_machine, setup) -> None:
        org, collector, admin, mission = setup
        state_machine.transition(db, mission, IN_PROGRESS, caller_for(collector))
        state_machine.transition(db, mission, BLOCKED, caller_for(collector), block_reason=BLOCK)
        state_machine.transition(db, mission, IN_PROGRESS, caller_for(admin))
        assert mission.status == IN_PROGRESS

    def test_other_collector_cannot_cancel(self, db, state_machine, setup) -> None:
        org, collector, admin, mission = setup
        other = make_collector(db, org)
        with pytest.raises(AuthorizationError):
            state_machine.transition(db, mission, CANCELLED, caller_for(other))

    def test_completion_requires_after_proof(self, db, state_machine, recorder, setup) -> None:
        org, collector, admin, mission = setup
        state_machine.transition(db, mission, IN_PROGRESS, caller_for(collector))
        with pytest.raises(ValidationError) as exc:
            state_machine.transition(db, mission, COMPLETED, caller_for(collector))
        assert exc.value.errors[0]["field"] == "proofs.after"
        db.refresh(mission)
        assert mission.status == IN_PROGRESS
        assert "mission.completed" not in recorder.names

    @pytest.mark.parametrize(
        "block_reason,field",
        [
            (None, "blockReason.reason"),
            ({}, "blockReason.reason"),
            ({"reason": "weather"}, "blockReason.reason"),
            ({"reason": "other", "description": "x" * 501}, "blockReason.description"),
        ],
    )
    def test_block_reason_validated(self, db, state_machine, setup, block_reason, field) -> None:
        org, collector, admin, mission = setup
        state_machine.transition(db, mission, IN_PROGRESS, caller_for(collector))
        with pytest.raises(ValidationError) as exc:
            state_machine.transition(db, mission, BLOCKED, caller_for(collector), block_reason=block_reason)
        assert exc.value.errors[0]["field"] == field
        assert mission.status == IN_PROGRESS

    def test_description_at_limit_is_accepted(self, db, state_machine, setup) -> None:
        org, collector, admin, mission = setup
        state_machine.transition(db, mission, IN_PROGRESS, caller_for(collector))
        state_machine.transition(
            db, mission, BLOCKED, caller_for(collector), block_reason={"reason": "other", "description": "x" * 500}
        )
        assert mission.status == BLOCKED

    def test_unknown_status(self, db, state_machine, setup) -> None:
        org, collector, admin, mission = setup
        with pytest.raises(ValidationError):
            state_machine.transition(db, mission, "paused", caller_for(admin))

    def test_concurrent_move_is_detected(self, db, state_machine, recorder, setup) -> None:
        org, collector, admin, mission = setup
        assert mission.status == ASSIGNED
        # Change the row behind the loaded object's back
        db.execute(
            update(Mission)
            .where(Mission.id == mission.id)
            .values(status=CANCELLED)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(ConcurrencyConflictError):
            state_machine.transition(db, mission, IN_PROGRESS, caller_for(collector))
        assert "mission.started" not in recorder.names


class TestCreateMission:
    def test_new_mission_is_planned_with_code(self, db, state_machine, recorder) -> None:
        org = make_org(db, auto_assign_enabled=False)
        mission = make_mission(db, state_machine, org)
        assert mission.status == PLANNED
        assert mission.collector_id is None
        assert mission.qr_code
        assert recorder.names == ["mission.created"]

    def test_one_open_mission_per_collection(self, db, state_machine) -> None:
        org = make_org(db)
        collection = make_collection(db, org)
        state_machine.create_mission(db, collection)
        with pytest.raises(ValidationError):
            state_machine.create_mission(db, collection)

    def test_completed_collection_rejected(self, db, state_machine) -> None:
        org = make_org(db)
        collection = make_collection(db, org, status="completed")
        with pytest.raises(ValidationError):
            state_machine.create_mission(db, collection)

    def test_collection_without_reporter_gets_a_mission(self, db, state_machine) -> None:
        org = make_org(db, auto_assign_enabled=False)
        collection = make_collection(db, org)
        db.expire_all()

        mission = state_machine.create_mission(db, collection)

        assert collection.reporter_id is None
        assert mission.collection_id == collection.id
