"""
Mission API routes.
Creation, lifecycle transitions, (re)assignment, proof checkpoints and route sequencing.
"""
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..auth.security import get_current_caller
from ..db import get_db
from ..deps import get_engine, get_state_machine, get_verifier
from ..models.models import Mission
from ..ratelimit import limiter
from ..config import settings
from ..schemas.dispatch import (
    MissionAssign, MissionCreate, MissionList, MissionOut, MissionStatusUpdate,
    ProofCapture, ProofCodeOut, ReassignmentOut, RouteOut, RouteRequest, RouteStopOut,
)
from ..services.access import COLLECTOR, Caller, guard
from ..services.audit import auditor
from ..services.errors import NotFoundError, ValidationError
from ..services.matching import AssignmentEngine
from ..services.proof import ProofOfCollectionVerifier, render_qr
from ..services.repository import (
    TERMINAL_STATUSES, CollectionRepository, MissionRepository, UserRepository,
)
from ..services.routing import RouteSequencer
from ..services.state_machine import STATUSES, MissionStateMachine
from ..services.time_rules import from_epoch_ms, isoformat

router = APIRouter(prefix="/missions", tags=["missions"])


def load_mission(db: Session, caller: Caller, mission_id: str, permission: str) -> Mission:
    """
    Resolve a mission for a caller: invalid callers are refused, missions in
    other organizations do not exist, and collectors only act on their own.
    """
    guard.require(caller, permission)
    mission = MissionRepository(db).get(mission_id)
    if mission is None or not guard.visible_in(caller, mission.organization_id):
        raise NotFoundError("Mission")
    guard.require_access(caller, permission, mission.organization_id, [mission.collector_id])
    return mission


@router.post("", response_model=MissionOut, status_code=201)
def create_mission(
    body: MissionCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    state_machine: MissionStateMachine = Depends(get_state_machine),
    engine: AssignmentEngine = Depends(get_engine),
):
    """
    Open a mission for a collection. With a collectorId the operator picks the
    collector; otherwise the assignment engine tries to find one.
    """
    guard.require(caller, "missions:create")
    collection = CollectionRepository(db).get(body.collection_id)
    if collection is None or not guard.visible_in(caller, collection.organization_id):
        raise NotFoundError("Collection")
    if body.organization_id is not None and body.organization_id != collection.organization_id:
        raise ValidationError("Collection belongs to another organization", field="organizationId")
    guard.require_access(caller, "missions:create", collection.organization_id)

    if body.collector_id is not None:
        collector = UserRepository(db).get_collector(body.collector_id)
        if collector is None or not collector.is_active:
            raise NotFoundError("Collector")
        if collector.organization_id != collection.organization_id:
            raise ValidationError("Collector does not belong to the mission's organization", field="collectorId")

    mission = state_machine.create_mission(db, collection, caller.user_id, body.vehicle_id)
    if body.collector_id is not None:
        mission = engine.manual_assign(mission.id, body.collector_id, caller.user_id)
    else:
        mission = engine.assign(mission.id, caller.user_id)
    return MissionOut.model_validate(mission)


@router.get("", response_model=MissionList)
def list_missions(
    status: Optional[str] = None,
    collector_id: Optional[str] = Query(default=None, alias="collectorId"),
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    guard.require(caller, "missions:view")
    if status and status not in STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STATUSES)}", field="status")
    if caller.is_platform_admin:
        org_filter = organization_id
    else:
        org_filter = caller.organization_id
    if caller.role == COLLECTOR:
        # Collectors only ever list their own missions
        collector_id = caller.user_id
    rows, total = MissionRepository(db).list(
        organization_id=org_filter,
        collector_id=collector_id,
        status=status,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return MissionList(items=[MissionOut.model_validate(m) for m in rows], total=total, page=page, limit=limit)


@router.post("/optimize-route", response_model=RouteOut)
@limiter.limit(settings.geo_rate_limit)
def optimize_route(
    request: Request,
    body: RouteRequest,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    guard.require(caller, "routes:optimize")
    collector_id = body.collector_id
    if collector_id is None:
        if caller.role != COLLECTOR:
            raise ValidationError("collectorId is required", field="collectorId")
        collector_id = caller.user_id
    collector = UserRepository(db).get_collector(collector_id)
    if collector is None or not guard.visible_in(caller, collector.organization_id):
        raise NotFoundError("Collector")
    guard.require_access(caller, "routes:optimize", collector.organization_id, [collector.id])

    plan = RouteSequencer(db).optimize(collector.id, body.collection_ids)
    return RouteOut(
        collector_id=plan.collector_id,
        stops=[
            RouteStopOut(
                order=leg.order,
                collection_id=leg.stop.collection_id,
                coordinates=[leg.stop.lng, leg.stop.lat],
                urgency=leg.stop.urgency,
                estimated_weight_kg=leg.stop.estimated_weight_kg,
                distance_m=round(leg.distance_m, 1),
            )
            for leg in plan.legs
        ],
        total_distance_m=round(plan.total_distance_m, 1),
    )


@router.get("/{mission_id}", response_model=MissionOut)
def get_mission(
    mission_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return MissionOut.model_validate(load_mission(db, caller, mission_id, "missions:view"))


@router.patch("/{mission_id}/status", response_model=MissionOut)
def update_status(
    mission_id: str,
    body: MissionStatusUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    state_machine: MissionStateMachine = Depends(get_state_machine),
):
    mission = load_mission(db, caller, mission_id, "missions:update_status")
    block_reason = body.block_reason.model_dump() if body.block_reason else None
    mission = state_machine.transition(db, mission, body.status, caller, block_reason)
    return MissionOut.model_validate(mission)


@router.patch("/{mission_id}/assign", response_model=MissionOut)
def assign_mission(
    mission_id: str,
    body: MissionAssign,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    engine: AssignmentEngine = Depends(get_engine),
):
    mission = load_mission(db, caller, mission_id, "missions:assign")
    mission = engine.manual_assign(mission.id, body.collector_id, caller.user_id, body.reason)
    return MissionOut.model_validate(mission)


@router.post("/{mission_id}/auto-assign", response_model=MissionOut)
def auto_assign_mission(
    mission_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    engine: AssignmentEngine = Depends(get_engine),
):
    mission = load_mission(db, caller, mission_id, "missions:auto_assign")
    return MissionOut.model_validate(engine.assign(mission.id, caller.user_id))


@router.get("/{mission_id}/history", response_model=List[ReassignmentOut])
def reassignment_history(
    mission_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    mission = load_mission(db, caller, mission_id, "missions:view")
    return [ReassignmentOut.model_validate(r) for r in auditor.history(db, mission.id)]


@router.post("/{mission_id}/qr", response_model=ProofCodeOut)
def issue_mission_code(
    mission_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    proof_verifier: ProofOfCollectionVerifier = Depends(get_verifier),
):
    mission = load_mission(db, caller, mission_id, "proofs:issue")
    if mission.status in TERMINAL_STATUSES:
        raise ValidationError(f"Mission is {mission.status}", field="status")
    issued = proof_verifier.issue(mission.id, mission.collection_id)
    mission.qr_code = issued.code
    db.commit()
    expires_at = from_epoch_ms(issued.payload["timestamp"]) + timedelta(seconds=proof_verifier.ttl_seconds)
    return ProofCodeOut(
        code=issued.code,
        payload=issued.payload,
        qr_image=render_qr(issued.code),
        expires_at=isoformat(expires_at),
    )


@router.post("/{mission_id}/proofs", response_model=MissionOut)
def capture_proof(
    mission_id: str,
    body: ProofCapture,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
    proof_verifier: ProofOfCollectionVerifier = Depends(get_verifier),
):
    mission = load_mission(db, caller, mission_id, "proofs:capture")
    mission = proof_verifier.capture_checkpoint(
        db,
        mission,
        body.stage.value,
        body.code,
        body.photo_url,
        body.coordinates,
        actor_id=caller.user_id,
    )
    return MissionOut.model_validate(mission)
