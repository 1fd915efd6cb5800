from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..auth.security import get_current_caller
from ..config import settings
from ..db import get_db
from ..models.models import User
from ..ratelimit import limiter
from ..schemas.dispatch import CollectorOut, DutyUpdate, HeartbeatIn
from ..services.access import Caller, guard
from ..services.duty import DutyRegistry
from ..services.errors import ValidationError

router = APIRouter(prefix="/collectors", tags=["collectors"])


def collector_out(user: User) -> CollectorOut:
    location = None
    if user.last_lng is not None and user.last_lat is not None:
        location = [user.last_lng, user.last_lat]
    return CollectorOut(
        id=user.id,
        name=user.name,
        organization_id=user.organization_id,
        on_duty=bool(user.on_duty),
        last_location=location,
        last_seen_at=user.last_seen_at,
        active_mission_count=user.active_mission_count or 0,
    )


@router.patch("/duty", response_model=CollectorOut)
def toggle_duty(
    body: DutyUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    guard.require(caller, "duty:update")
    return collector_out(DutyRegistry(db).set_duty(caller.user_id, body.on_duty))


@router.post("/heartbeat", response_model=CollectorOut)
@limiter.limit(settings.geo_rate_limit)
def heartbeat(
    request: Request,
    body: HeartbeatIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """Report the caller's current position; keeps them eligible for dispatch."""
    guard.require(caller, "duty:update")
    return collector_out(DutyRegistry(db).heartbeat(caller.user_id, body.coordinates))


@router.get("/available", response_model=List[CollectorOut])
def available_collectors(
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    guard.require(caller, "collectors:view")
    if caller.is_platform_admin:
        if not organization_id:
            raise ValidationError("organizationId is required", field="organizationId")
        org_id = organization_id
    else:
        org_id = caller.organization_id
    return [collector_out(c) for c in DutyRegistry(db).available_collectors(org_id)]
