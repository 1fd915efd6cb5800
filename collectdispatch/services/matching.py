"""
Assignment engine.

Picks the best on-duty collector for a planned mission and claims a capacity
slot on them with a single conditional write. Losing the claim to a
concurrent request is normal: the engine moves on to the next candidate.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Mission, Organization, User
from .audit import auditor as default_auditor
from .duty import DutyRegistry
from .errors import ConcurrencyConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .geofence import bounding_box, haversine_distance
from .repository import MissionRepository, OrganizationRepository, UserRepository, fresh_since
from .state_machine import ASSIGNED, BLOCKED, IN_PROGRESS, PLANNED, MissionStateMachine
from .time_rules import to_epoch_ms, utcnow

logger = structlog.get_logger(__name__)

REASSIGNABLE_STATUSES = (PLANNED, ASSIGNED, IN_PROGRESS, BLOCKED)


def _setting(value, default):
    return default if value is None else value


@dataclass(frozen=True)
class Candidate:
    collector_id: str
    distance_m: float
    active_count: int
    last_seen_at: datetime

    @property
    def sort_key(self):
        # Nearest first, then least loaded, then most recently seen
        return (self.distance_m, self.active_count, -to_epoch_ms(self.last_seen_at), self.collector_id)


class AssignmentEngine:
    def __init__(
        self,
        db: Session,
        state_machine: Optional[MissionStateMachine] = None,
        auditor=None,
        stale_after_s: Optional[int] = None,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.state_machine = state_machine or MissionStateMachine()
        self.auditor = auditor or default_auditor
        self.missions = MissionRepository(db)
        self.users = UserRepository(db)
        self.organizations = OrganizationRepository(db)
        self.duty = DutyRegistry(db, stale_after_s)
        self._clock = clock

    def _mission(self, mission_id) -> Mission:
        mission = self.missions.get(mission_id)
        if mission is None:
            raise NotFoundError("Mission")
        return mission

    def _organization(self, mission: Mission) -> Organization:
        organization = self.organizations.get(mission.organization_id)
        if organization is None:
            raise NotFoundError("Organization")
        return organization

    def rank_candidates(self, mission: Mission, organization: Organization, now: datetime) -> List[Candidate]:
        collection = mission.collection
        radius_m = _setting(organization.auto_assign_radius_m, settings.default_auto_assign_radius_m)
        max_active = _setting(organization.max_active_missions, settings.default_max_active_missions)
        users = self.users.dispatch_candidates(
            organization.id,
            fresh_since(now, self.duty.stale_after_s),
            bounding_box(collection.lng, collection.lat, radius_m),
        )
        ranked = []
        for user in users:
            if not self.duty.is_eligible(user, now):
                continue
            distance = haversine_distance(user.last_lat, user.last_lng, collection.lat, collection.lng)
            if distance > radius_m:
                continue
            if user.active_mission_count >= max_active:
                continue
            ranked.append(Candidate(str(user.id), distance, user.active_mission_count, user.last_seen_at))
        ranked.sort(key=lambda c: c.sort_key)
        return ranked

    def assign(self, mission_id, actor_id: Optional[str] = None, now: Optional[datetime] = None) -> Mission:
        """
        Auto-assign a planned mission. Returns it assigned, or still planned
        when auto-assignment is off or nobody eligible has a free slot.
        """
        now = now or self._clock()
        mission = self._mission(mission_id)
        if mission.status != PLANNED:
            raise InvalidTransitionError(mission.status, ASSIGNED)
        organization = self._organization(mission)
        if not organization.auto_assign_enabled:
            logger.info("auto_assign_disabled", mission_id=str(mission.id), organization_id=str(organization.id))
            return mission

        candidates = self.rank_candidates(mission, organization, now)
        max_active = _setting(organization.max_active_missions, settings.default_max_active_missions)
        for candidate in candidates:
            try:
                claimed = self.missions.try_assign_if_under_capacity(mission.id, candidate.collector_id, max_active)
            except ConcurrencyConflictError:
                # The mission itself moved on; stop if someone else assigned it
                self.db.refresh(mission)
                if mission.status != PLANNED:
                    logger.info("auto_assign_preempted", mission_id=str(mission.id), status=mission.status)
                    return mission
                continue
            if not claimed:
                logger.info("auto_assign_slot_lost", mission_id=str(mission.id), collector_id=candidate.collector_id)
                continue
            collector = self.users.get(candidate.collector_id)
            logger.info(
                "auto_assigned",
                mission_id=str(mission.id),
                collector_id=candidate.collector_id,
                distance_m=round(candidate.distance_m, 1),
            )
            return self.state_machine.record_assignment(self.db, mission, collector, actor_id, PLANNED, None, now)

        logger.info("auto_assign_no_candidate", mission_id=str(mission.id), candidates=len(candidates))
        return mission

    def manual_assign(
        self,
        mission_id,
        collector_id,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Mission:
        """
        Operator (re)assignment. Skips ranking and the capacity limit but
        keeps the organization match, and moves the slot to the new collector.
        """
        now = now or self._clock()
        mission = self._mission(mission_id)
        collector: Optional[User] = self.users.get_collector(collector_id)
        if collector is None or not collector.is_active:
            raise NotFoundError("Collector")
        if str(collector.organization_id) != str(mission.organization_id):
            raise ValidationError("Collector does not belong to the mission's organization", field="collectorId")
        if mission.status not in REASSIGNABLE_STATUSES:
            raise InvalidTransitionError(mission.status, ASSIGNED)
        if mission.collector_id == collector.id:
            return mission

        previous_collector_id = mission.collector_id
        previous_status = mission.status
        self.missions.assign_without_capacity_check(
            mission, collector.id, from_status=previous_status, from_collector_id=previous_collector_id
        )
        if previous_collector_id is not None:
            self.auditor.record_reassignment(self.db, mission, previous_collector_id, collector.id, actor_id, reason)
        return self.state_machine.record_assignment(
            self.db, mission, collector, actor_id, previous_status, previous_collector_id, now
        )
