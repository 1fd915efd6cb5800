"""
Collection (pickup request) API routes.
Reporters file collections and hand out a signed code that the collector
scans on site to confirm the pickup.
"""
import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import structlog

from ..auth.security import get_current_caller
from ..db import get_db
from ..deps import get_emitter, get_engine, get_state_machine, get_verifier
from ..models.models import Collection, Organization
from ..schemas.dispatch import CollectionConfirm, CollectionCreate, CollectionOut, ProofCodeOut
from ..services.access import Caller, guard
from ..services.audit import create_audit_log
from ..services.errors import NotFoundError, ProofVerificationError, ValidationError
from ..services.geofence import validate_coordinates
from ..services.matching import AssignmentEngine
from ..services.proof import ProofOfCollectionVerifier, render_qr
from ..services.repository import CollectionRepository, MissionRepository, OrganizationRepository
from ..services.state_machine import MissionStateMachine
from ..services.time_rules import from_epoch_ms, isoformat, utcnow
from ..services.webhooks import EventEmitter

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/collections", tags=["collections"])


def collection_out(db: Session, collection: Collection) -> CollectionOut:
    mission = MissionRepository(db).open_mission_for_collection(collection.id)
    return CollectionOut(
        id=collection.id,
        reporter_id=collection.reporter_id,
        organization_id=collection.organization_id,
        coordinates=[collection.lng, collection.lat],
        waste_type=collection.waste_type,
        quantity=collection.quantity,
        unit=collection.unit,
        urgency=collection.urgency,
        estimated_weight_kg=collection.estimated_weight_kg,
        address=collection.address,
        status=collection.status,
        confirmed_at=collection.confirmed_at,
        confirmed_by=collection.confirmed_by,
        created_at=collection.created_at,
        mission_id=mission.id if mission else None,
    )


def load_collection(db: Session, caller: Caller, collection_id: str, permission: str) -> Collection:
    guard.require(caller, permission)
    collection = CollectionRepository(db).get(collection_id)
    if collection is None or not guard.visible_in(caller, collection.organization_id, [collection.reporter_id]):
        raise NotFoundError("Collection")
    return collection


@router.post("", response_model=CollectionOut, status_code=201)
def report_collection(
    body: CollectionCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    state_machine: MissionStateMachine = Depends(get_state_machine),
    engine: AssignmentEngine = Depends(get_engine),
):
    """
    File a pickup request. When the organization dispatches automatically a
    mission is opened and offered to the engine right away.
    """
    guard.require(caller, "collections:report")
    organization = OrganizationRepository(db).get(body.organization_id)
    if organization is None:
        raise NotFoundError("Organization")
    lng, lat = validate_coordinates(body.coordinates)

    now = utcnow()
    collection = Collection(
        id=uuid.uuid4(),
        reporter_id=uuid.UUID(caller.user_id),
        organization_id=organization.id,
        lng=lng,
        lat=lat,
        waste_type=body.waste_type,
        quantity=body.quantity,
        unit=body.unit,
        urgency=body.urgency.value,
        estimated_weight_kg=body.estimated_weight_kg,
        address=body.address,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    db.add(collection)
    create_audit_log(
        db,
        action="collection.reported",
        target_type="collection",
        target_id=str(collection.id),
        actor_id=caller.user_id,
        organization_id=str(organization.id),
        metadata={"urgency": collection.urgency, "waste_type": collection.waste_type},
    )
    db.commit()
    logger.info("collection_reported", collection_id=str(collection.id), organization_id=str(organization.id))

    if organization.auto_assign_enabled:
        mission = state_machine.create_mission(db, collection, caller.user_id)
        engine.assign(mission.id, caller.user_id)
    return collection_out(db, collection)


@router.get("/{collection_id}", response_model=CollectionOut)
def get_collection(
    collection_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    collection = load_collection(db, caller, collection_id, "collections:view")
    mission = MissionRepository(db).open_mission_for_collection(collection.id)
    actors = [collection.reporter_id, mission.collector_id if mission else None]
    guard.require_access(caller, "collections:view", collection.organization_id, actors)
    return collection_out(db, collection)


@router.post("/{collection_id}/qr", response_model=ProofCodeOut)
def issue_collection_code(
    collection_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    proof_verifier: ProofOfCollectionVerifier = Depends(get_verifier),
):
    collection = load_collection(db, caller, collection_id, "collections:qr")
    guard.require_access(caller, "collections:qr", collection.organization_id, [collection.reporter_id])
    issued = proof_verifier.issue_collection(collection.id, caller.user_id)
    expires_at = from_epoch_ms(issued.payload["timestamp"]) + timedelta(seconds=proof_verifier.ttl_seconds)
    return ProofCodeOut(
        code=issued.code,
        payload=issued.payload,
        qr_image=render_qr(issued.code),
        expires_at=isoformat(expires_at),
    )


@router.post("/{collection_id}/confirm", response_model=CollectionOut)
def confirm_collection(
    collection_id: str,
    body: CollectionConfirm,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    proof_verifier: ProofOfCollectionVerifier = Depends(get_verifier),
    emitter: EventEmitter = Depends(get_emitter),
):
    """Collector scans the reporter's code at the pickup point."""
    collection = load_collection(db, caller, collection_id, "collections:confirm")
    mission = MissionRepository(db).open_mission_for_collection(collection.id)
    designated = [mission.collector_id] if mission is not None else []
    guard.require_access(caller, "collections:confirm", collection.organization_id, designated)

    claim = proof_verifier.verify_collection(body.code)
    if claim.collection_id != str(collection.id) or claim.user_id != str(collection.reporter_id):
        raise ProofVerificationError(ProofVerificationError.TAMPER, "QR code does not belong to this collection")
    if collection.confirmed_at is not None:
        raise ValidationError("Collection already confirmed", field="code")

    collection.confirmed_at = utcnow()
    collection.confirmed_by = uuid.UUID(caller.user_id)
    create_audit_log(
        db,
        action="collection.confirmed",
        target_type="collection",
        target_id=str(collection.id),
        actor_id=caller.user_id,
        organization_id=str(collection.organization_id),
        metadata={"mission_id": str(mission.id) if mission else None},
    )
    db.commit()
    emitter.emit(
        "collection.confirmed",
        {
            "collectionId": str(collection.id),
            "organizationId": str(collection.organization_id),
            "missionId": str(mission.id) if mission else None,
            "actorId": caller.user_id,
        },
        db.get(Organization, collection.organization_id),
    )
    return collection_out(db, collection)
