"""
Collector duty registry.

Keeps "intent to work" (on_duty) separate from "proven presence" (a fresh
heartbeat). Only a fresh heartbeat makes a collector eligible for automatic
assignment; staleness never clears on_duty.
"""
from datetime import datetime
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import User
from .errors import NotFoundError
from .geofence import validate_coordinates
from .repository import UserRepository, fresh_since
from .time_rules import is_stale, utcnow

logger = structlog.get_logger(__name__)


class DutyRegistry:
    def __init__(self, db: Session, stale_after_s: Optional[int] = None):
        self.db = db
        self.users = UserRepository(db)
        self.stale_after_s = stale_after_s if stale_after_s is not None else settings.heartbeat_stale_after_s

    def _collector(self, collector_id) -> User:
        collector = self.users.get_collector(collector_id)
        if collector is None or not collector.is_active:
            raise NotFoundError("Collector")
        return collector

    def set_duty(self, collector_id, on_duty: bool) -> User:
        collector = self._collector(collector_id)
        if collector.on_duty != on_duty:
            collector.on_duty = on_duty
            self.db.commit()
            logger.info("duty_changed", collector_id=str(collector.id), on_duty=on_duty)
        return collector

    def heartbeat(self, collector_id, coordinates: Sequence, now: Optional[datetime] = None) -> User:
        lng, lat = validate_coordinates(coordinates)
        collector = self._collector(collector_id)
        # Last write wins; concurrent heartbeats need no coordination
        collector.last_lng = lng
        collector.last_lat = lat
        collector.last_seen_at = now or utcnow()
        self.db.commit()
        logger.debug("heartbeat", collector_id=str(collector.id), lng=lng, lat=lat)
        return collector

    def is_fresh(self, collector: User, now: Optional[datetime] = None) -> bool:
        return not is_stale(collector.last_seen_at, self.stale_after_s, now)

    def is_eligible(self, collector: User, now: Optional[datetime] = None) -> bool:
        return bool(
            collector.is_active
            and collector.on_duty
            and collector.last_lat is not None
            and collector.last_lng is not None
            and self.is_fresh(collector, now)
        )

    def available_collectors(self, organization_id, now: Optional[datetime] = None) -> List[User]:
        now = now or utcnow()
        candidates = self.users.dispatch_candidates(organization_id, fresh_since(now, self.stale_after_s))
        return [c for c in candidates if self.is_eligible(c, now)]
