"""
Mission lifecycle.

    planned -> assigned -> in-progress -> completed
                              |   ^
                              v   |
                             blocked
    any non-terminal state -> cancelled

Every accepted transition is written with a compare-and-set on the current
status, audited, committed, and only then emitted.
"""
import uuid
from types import MappingProxyType
from typing import Dict, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Collection, Mission, Organization, User
from .access import Caller
from .audit import create_audit_log
from .errors import AuthorizationError, InvalidTransitionError, ValidationError
from .proof import verifier as default_verifier
from .repository import TERMINAL_STATUSES, CollectionRepository, MissionRepository
from .time_rules import isoformat, utcnow
from .webhooks import EventEmitter

logger = structlog.get_logger(__name__)

PLANNED = "planned"
ASSIGNED = "assigned"
IN_PROGRESS = "in-progress"
BLOCKED = "blocked"
COMPLETED = "completed"
CANCELLED = "cancelled"

STATUSES = (PLANNED, ASSIGNED, IN_PROGRESS, BLOCKED, COMPLETED, CANCELLED)

TRANSITIONS = MappingProxyType({
    PLANNED: frozenset({ASSIGNED, CANCELLED}),
    ASSIGNED: frozenset({IN_PROGRESS, CANCELLED}),
    IN_PROGRESS: frozenset({BLOCKED, COMPLETED, CANCELLED}),
    BLOCKED: frozenset({IN_PROGRESS, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
})

BLOCK_REASONS = ("vehicle_breakdown", "access_denied", "collector_unavailable", "other")

# Collection status mirrored on entering each mission status
COLLECTION_STATUS = {
    ASSIGNED: "scheduled",
    IN_PROGRESS: "in-progress",
    COMPLETED: "completed",
    CANCELLED: "pending",
}


def event_for(old_status: str, new_status: str) -> str:
    if new_status == IN_PROGRESS:
        return "mission.resumed" if old_status == BLOCKED else "mission.started"
    if new_status == ASSIGNED:
        return "mission.assigned"
    return f"mission.{new_status}"


def timestamp_key(old_status: str, new_status: str) -> str:
    if new_status == IN_PROGRESS:
        return "resumed" if old_status == BLOCKED else "started"
    return new_status


def can_transition(current: str, new_status: str) -> bool:
    return new_status in TRANSITIONS.get(current, frozenset())


def validate_block_reason(block_reason: Optional[Dict]) -> Dict:
    if not block_reason or not block_reason.get("reason"):
        raise ValidationError("A block reason is required", field="blockReason.reason")
    reason = block_reason["reason"]
    if reason not in BLOCK_REASONS:
        raise ValidationError(
            f"reason must be one of: {', '.join(BLOCK_REASONS)}",
            field="blockReason.reason",
        )
    description = block_reason.get("description") or ""
    if not isinstance(description, str):
        raise ValidationError("description must be a string", field="blockReason.description")
    if len(description) > settings.block_description_max_chars:
        raise ValidationError(
            f"description must be at most {settings.block_description_max_chars} characters",
            field="blockReason.description",
        )
    return {"reason": reason, "description": description}


class MissionStateMachine:
    def __init__(self, emitter: Optional[EventEmitter] = None, verifier=None):
        self.emitter = emitter or EventEmitter()
        self.verifier = verifier or default_verifier

    def create_mission(
        self,
        db: Session,
        collection: Collection,
        actor_id: Optional[str] = None,
        vehicle_id=None,
        now=None,
    ) -> Mission:
        """Open a planned mission for a pending collection, with its first proof code."""
        if collection.status == "completed" or MissionRepository(db).open_mission_for_collection(collection.id):
            raise ValidationError("Collection is already being handled", field="collectionId")
        now = now or utcnow()
        mission = Mission(
            id=uuid.uuid4(),
            collection_id=collection.id,
            organization_id=collection.organization_id,
            status=PLANNED,
            vehicle_id=vehicle_id,
            proofs={},
            timestamps={},
            created_by=uuid.UUID(str(actor_id)) if actor_id else None,
            created_at=now,
            updated_at=now,
        )
        mission.qr_code = self.verifier.issue(mission.id, collection.id, now).code
        db.add(mission)
        create_audit_log(
            db,
            action="mission.created",
            target_type="mission",
            target_id=str(mission.id),
            actor_id=actor_id,
            organization_id=str(mission.organization_id),
            metadata={"collection_id": str(collection.id)},
        )
        db.commit()
        logger.info("mission_created", mission_id=str(mission.id), collection_id=str(collection.id))
        self._emit(db, mission, "mission.created", None, PLANNED, actor_id)
        return mission

    def record_assignment(
        self,
        db: Session,
        mission: Mission,
        collector: User,
        actor_id: Optional[str] = None,
        previous_status: str = PLANNED,
        previous_collector_id=None,
        now=None,
    ) -> Mission:
        """
        Finish an assignment whose collector and status were already written
        by the repository's conditional update, then commit and emit.
        """
        now = now or utcnow()
        timestamps = dict(mission.timestamps or {})
        timestamps["assigned" if previous_status == PLANNED else "reassigned"] = isoformat(now)
        mission.timestamps = timestamps
        if previous_status == PLANNED:
            CollectionRepository(db).set_status(mission.collection, COLLECTION_STATUS[ASSIGNED])
            self._audit_transition(db, mission, PLANNED, ASSIGNED, actor_id)
        db.commit()
        logger.info(
            "mission_assigned",
            mission_id=str(mission.id),
            collector_id=str(collector.id),
            previous_collector_id=str(previous_collector_id) if previous_collector_id else None,
        )
        self._emit(
            db,
            mission,
            "mission.assigned",
            previous_status,
            mission.status,
            actor_id,
            collectorId=str(collector.id),
            previousCollectorId=str(previous_collector_id) if previous_collector_id else None,
        )
        return mission

    def transition(
        self,
        db: Session,
        mission: Mission,
        new_status: str,
        caller: Caller,
        block_reason: Optional[Dict] = None,
        now=None,
    ) -> Mission:
        if new_status not in STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(STATUSES)}", field="status")
        current = mission.status
        if not can_transition(current, new_status):
            raise InvalidTransitionError(current, new_status)
        if new_status == ASSIGNED:
            raise ValidationError("Use the assign operation to attach a collector", field="status")

        is_assignee = mission.collector_id is not None and str(mission.collector_id) == str(caller.user_id)
        if new_status == IN_PROGRESS:
            # Only the assigned collector starts; an admin may also resume
            if not (is_assignee or (current == BLOCKED and caller.is_admin)):
                raise AuthorizationError()
        elif not (is_assignee or caller.is_admin):
            raise AuthorizationError()

        now = now or utcnow()
        values = {"updated_at": now}
        timestamps = dict(mission.timestamps or {})
        timestamps[timestamp_key(current, new_status)] = isoformat(now)
        values["timestamps"] = timestamps

        if new_status == BLOCKED:
            reason = validate_block_reason(block_reason)
            reason["timestamp"] = isoformat(now)
            values["block_reason"] = reason
        if new_status == COMPLETED and not (mission.proofs or {}).get("after"):
            raise ValidationError("An 'after' proof checkpoint is required to complete", field="proofs.after")

        missions = MissionRepository(db)
        collector_id = mission.collector_id
        missions.compare_and_set_status(mission, current, new_status, **values)
        if new_status in TERMINAL_STATUSES:
            missions.release_slot(collector_id)
        if new_status in COLLECTION_STATUS:
            CollectionRepository(db).set_status(mission.collection, COLLECTION_STATUS[new_status])
        self._audit_transition(db, mission, current, new_status, caller.user_id, values.get("block_reason"))
        db.commit()
        logger.info(
            "mission_transitioned",
            mission_id=str(mission.id),
            old_status=current,
            new_status=new_status,
            actor_id=caller.user_id,
        )
        extra = {"blockReason": values["block_reason"]} if new_status == BLOCKED else {}
        self._emit(db, mission, event_for(current, new_status), current, new_status, caller.user_id, **extra)
        return mission

    def _audit_transition(self, db, mission, old_status, new_status, actor_id, block_reason=None):
        metadata = {"old_status": old_status, "new_status": new_status}
        if block_reason:
            metadata["block_reason"] = block_reason
        create_audit_log(
            db,
            action="mission.status_changed",
            target_type="mission",
            target_id=str(mission.id),
            actor_id=actor_id,
            organization_id=str(mission.organization_id),
            metadata=metadata,
        )

    def _emit(self, db, mission, event, old_status, new_status, actor_id, **extra):
        payload = {
            "missionId": str(mission.id),
            "organizationId": str(mission.organization_id),
            "collectionId": str(mission.collection_id),
            "oldStatus": old_status,
            "newStatus": new_status,
            "actorId": str(actor_id) if actor_id else None,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})
        organization = db.get(Organization, mission.organization_id)
        self.emitter.emit(event, payload, organization)
