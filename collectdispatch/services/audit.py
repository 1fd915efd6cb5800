"""
Audit logging service.
Append-only audit log with integrity hashing, and the reassignment trail.
"""
import hashlib
import json
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session
import structlog

from ..models.models import AuditLog, Mission, MissionReassignment
from ..config import settings
from .time_rules import utcnow, to_naive_utc

logger = structlog.get_logger(__name__)


def compute_integrity_hash(
    action: str,
    target_type: Optional[str],
    target_id: Optional[str],
    actor_id: Optional[str],
    organization_id: Optional[str],
    created_at: datetime,
    metadata: Optional[Dict],
    integrity_secret: Optional[str] = None,
) -> Optional[str]:
    if integrity_secret is None:
        integrity_secret = settings.audit_secret or settings.jwt_secret
    if not integrity_secret:
        return None

    canonical_data = {
        "action": action,
        "target_type": target_type,
        "target_id": target_id,
        "actor_id": actor_id,
        "organization_id": organization_id,
        "created_at": to_naive_utc(created_at).isoformat(),
        "metadata": metadata,
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)

    hash_input = f"{canonical_json}:{integrity_secret}"
    return hashlib.sha256(hash_input.encode()).hexdigest()


def create_audit_log(
    db: Session,
    action: str,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Stage an append-only audit log entry in the caller's transaction.

    Args:
        db: Database session
        action: Action performed (mission.created|mission.status_changed|mission.reassigned|...)
        target_type: Type of entity (mission|collection|organization|collector)
        target_id: Entity ID
        actor_id: User ID who performed the action
        organization_id: Tenant the action belongs to
        metadata: Free-form context (old/new status, reason, coordinates...)
        integrity_secret: Secret for integrity hash (defaults to AUDIT_SECRET, then JWT_SECRET)

    Returns:
        The pending AuditLog row. The caller commits.
    """
    created_at = utcnow()
    target_id = str(target_id) if target_id is not None else None
    actor_str = str(actor_id) if actor_id else None
    org_str = str(organization_id) if organization_id else None

    entry = AuditLog(
        action=action,
        target_type=target_type,
        target_id=target_id,
        actor_id=uuid.UUID(actor_str) if actor_str else None,
        organization_id=uuid.UUID(org_str) if org_str else None,
        metadata_json=metadata,
        created_at=created_at,
        integrity_hash=compute_integrity_hash(
            action, target_type, target_id, actor_str, org_str, created_at, metadata, integrity_secret
        ),
    )
    db.add(entry)
    return entry


def verify_audit_log(entry: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    expected = compute_integrity_hash(
        entry.action,
        entry.target_type,
        entry.target_id,
        str(entry.actor_id) if entry.actor_id else None,
        str(entry.organization_id) if entry.organization_id else None,
        entry.created_at,
        entry.metadata_json,
        integrity_secret,
    )
    return expected is not None and expected == entry.integrity_hash


def get_audit_logs(
    db: Session,
    organization_id: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> list:
    query = db.query(AuditLog)

    if organization_id:
        query = query.filter(AuditLog.organization_id == uuid.UUID(str(organization_id)))
    if target_type:
        query = query.filter(AuditLog.target_type == target_type)
    if target_id:
        query = query.filter(AuditLog.target_id == str(target_id))

    query = query.order_by(AuditLog.created_at.desc())
    return query.limit(limit).offset(offset).all()


class ReassignmentAuditor:
    """
    Authoritative trail of "who changed this mission's collector and why".
    Each entry is a single INSERT; rows are never updated or deleted.
    """

    def record_reassignment(
        self,
        db: Session,
        mission: Mission,
        from_collector_id: Optional[uuid.UUID],
        to_collector_id: uuid.UUID,
        actor_id: Optional[str],
        reason: Optional[str] = None,
    ) -> MissionReassignment:
        entry = MissionReassignment(
            mission_id=mission.id,
            from_collector_id=from_collector_id,
            to_collector_id=to_collector_id,
            reason=reason,
            actor_id=uuid.UUID(str(actor_id)) if actor_id else None,
            created_at=utcnow(),
        )
        db.add(entry)
        create_audit_log(
            db,
            action="mission.reassigned",
            target_type="mission",
            target_id=str(mission.id),
            actor_id=actor_id,
            organization_id=str(mission.organization_id),
            metadata={
                "from_collector_id": str(from_collector_id) if from_collector_id else None,
                "to_collector_id": str(to_collector_id),
                "reason": reason,
            },
        )
        logger.info(
            "mission_reassigned",
            mission_id=str(mission.id),
            from_collector_id=str(from_collector_id) if from_collector_id else None,
            to_collector_id=str(to_collector_id),
            actor_id=actor_id,
        )
        return entry

    def history(self, db: Session, mission_id) -> List[MissionReassignment]:
        return (
            db.query(MissionReassignment)
            .filter(MissionReassignment.mission_id == mission_id)
            .order_by(MissionReassignment.created_at.asc(), MissionReassignment.id.asc())
            .all()
        )


auditor = ReassignmentAuditor()
