"""
Repositories for the dispatch entities.
Each one wraps a request-scoped Session; none of them commit except where the
write has to be atomic on its own (the capacity claim).
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, update
from sqlalchemy.orm import Session

from ..models.models import Collection, Mission, Organization, User
from .access import COLLECTOR
from .errors import ConcurrencyConflictError, ValidationError
from .time_rules import utcnow

ACTIVE_STATUSES = ("assigned", "in-progress", "blocked")
TERMINAL_STATUSES = ("completed", "cancelled")


def as_uuid(value, field: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise ValidationError(f"Invalid {field}", field=field)


class OrganizationRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, organization_id) -> Optional[Organization]:
        return self.db.get(Organization, as_uuid(organization_id, "organizationId"))


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id) -> Optional[User]:
        return self.db.get(User, as_uuid(user_id, "userId"))

    def get_collector(self, collector_id) -> Optional[User]:
        user = self.get(collector_id)
        if user is None or user.role != COLLECTOR:
            return None
        return user

    def dispatch_candidates(
        self,
        organization_id,
        seen_after: datetime,
        box: Optional[Tuple[float, float, Optional[float], Optional[float]]] = None,
    ) -> List[User]:
        """
        Active, on-duty collectors of an organization with a fresh heartbeat
        and a known position, optionally prefiltered by a lat/lng box.
        """
        query = self.db.query(User).filter(
            User.organization_id == as_uuid(organization_id, "organizationId"),
            User.role == COLLECTOR,
            User.is_active.is_(True),
            User.on_duty.is_(True),
            User.last_seen_at.isnot(None),
            User.last_seen_at >= seen_after,
            User.last_lat.isnot(None),
            User.last_lng.isnot(None),
        )
        if box is not None:
            min_lat, max_lat, min_lng, max_lng = box
            query = query.filter(User.last_lat >= min_lat, User.last_lat <= max_lat)
            if min_lng is not None and max_lng is not None:
                query = query.filter(User.last_lng >= min_lng, User.last_lng <= max_lng)
        return query.order_by(User.id).all()


class CollectionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, collection_id) -> Optional[Collection]:
        return self.db.get(Collection, as_uuid(collection_id, "collectionId"))

    def get_many(self, collection_ids: Sequence) -> List[Collection]:
        ids = [as_uuid(c, "collectionIds") for c in collection_ids]
        if not ids:
            return []
        return self.db.query(Collection).filter(Collection.id.in_(ids)).all()

    def set_status(self, collection: Collection, status: str) -> None:
        collection.status = status
        collection.updated_at = utcnow()


class MissionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, mission_id) -> Optional[Mission]:
        return self.db.get(Mission, as_uuid(mission_id, "missionId"))

    def list(
        self,
        organization_id=None,
        collector_id=None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Mission], int]:
        query = self.db.query(Mission)
        if organization_id is not None:
            query = query.filter(Mission.organization_id == as_uuid(organization_id, "organizationId"))
        if collector_id is not None:
            query = query.filter(Mission.collector_id == as_uuid(collector_id, "collectorId"))
        if status:
            query = query.filter(Mission.status == status)
        total = query.count()
        rows = query.order_by(Mission.created_at.desc(), Mission.id).limit(limit).offset(offset).all()
        return rows, total

    def open_missions_for(self, collector_id, collection_ids: Sequence[uuid.UUID]) -> List[Mission]:
        if not collection_ids:
            return []
        return self.db.query(Mission).filter(
            Mission.collector_id == as_uuid(collector_id, "collectorId"),
            Mission.collection_id.in_(list(collection_ids)),
            Mission.status.in_(ACTIVE_STATUSES),
        ).all()

    def open_mission_for_collection(self, collection_id) -> Optional[Mission]:
        return self.db.query(Mission).filter(
            Mission.collection_id == as_uuid(collection_id, "collectionId"),
            Mission.status.notin_(TERMINAL_STATUSES),
        ).first()

    def count_active(self, collector_id) -> int:
        return self.db.query(func.count(Mission.id)).filter(
            Mission.collector_id == as_uuid(collector_id, "collectorId"),
            Mission.status.in_(ACTIVE_STATUSES),
        ).scalar() or 0

    def try_assign_if_under_capacity(self, mission_id, collector_id, max_active: int) -> bool:
        """
        Atomically claim a capacity slot on the collector and attach it to a
        still-planned mission.

        The slot is taken with a single conditional UPDATE that only matches
        while the collector's active count is below the limit at write time,
        so two concurrent claims cannot both pass a stale read. Returns False
        when the collector is full. Raises ConcurrencyConflictError when the
        mission stopped being planned in the meantime. Nothing is committed;
        on failure the transaction is rolled back.
        """
        mission_uuid = as_uuid(mission_id, "missionId")
        collector_uuid = as_uuid(collector_id, "collectorId")
        self.db.flush()
        slot = self.db.execute(
            update(User)
            .where(
                User.id == collector_uuid,
                User.active_mission_count < max_active,
            )
            .values(active_mission_count=User.active_mission_count + 1)
            .execution_options(synchronize_session=False)
        )
        if slot.rowcount != 1:
            self.db.rollback()
            return False
        self._expire_loaded(User, collector_uuid, ["active_mission_count"])
        self._attach(mission_uuid, collector_uuid, from_status="planned")
        return True

    def assign_without_capacity_check(
        self,
        mission: Mission,
        collector_id,
        from_status: str = "planned",
        from_collector_id: Optional[uuid.UUID] = None,
    ) -> None:
        """
        Operator override: takes a slot even when the collector is full.
        The mission must still be in `from_status` and held by
        `from_collector_id` at write time, otherwise nothing is moved and
        ConcurrencyConflictError is raised.
        """
        collector_uuid = as_uuid(collector_id, "collectorId")
        self.db.flush()
        self._attach(mission.id, collector_uuid, from_status=from_status, from_collector=from_collector_id)
        self.reserve_slot(collector_uuid)
        self.release_slot(from_collector_id)

    def reserve_slot(self, collector_id) -> None:
        collector_uuid = as_uuid(collector_id, "collectorId")
        self.db.execute(
            update(User)
            .where(User.id == collector_uuid)
            .values(active_mission_count=User.active_mission_count + 1)
            .execution_options(synchronize_session=False)
        )
        self._expire_loaded(User, collector_uuid, ["active_mission_count"])

    def release_slot(self, collector_id) -> None:
        if collector_id is None:
            return
        collector_uuid = as_uuid(collector_id, "collectorId")
        self.db.execute(
            update(User)
            .where(
                User.id == collector_uuid,
                User.active_mission_count > 0,
            )
            .values(active_mission_count=User.active_mission_count - 1)
            .execution_options(synchronize_session=False)
        )
        self._expire_loaded(User, collector_uuid, ["active_mission_count"])

    def compare_and_set_status(self, mission: Mission, expected: str, new_status: str, **values) -> None:
        """Move a mission out of `expected`; a concurrent move makes this fail."""
        self.db.flush()
        result = self.db.execute(
            update(Mission)
            .where(Mission.id == mission.id, Mission.status == expected)
            .values(status=new_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConcurrencyConflictError("Mission status changed concurrently")
        self._expire_loaded(Mission, mission.id, ["status", *values])

    def _attach(
        self,
        mission_uuid: uuid.UUID,
        collector_uuid: uuid.UUID,
        from_status: str,
        from_collector: Optional[uuid.UUID] = None,
    ) -> None:
        new_status = "assigned" if from_status == "planned" else from_status
        conditions = [Mission.id == mission_uuid, Mission.status == from_status]
        if from_collector is None:
            conditions.append(Mission.collector_id.is_(None))
        else:
            conditions.append(Mission.collector_id == as_uuid(from_collector, "collectorId"))
        claimed = self.db.execute(
            update(Mission)
            .where(and_(*conditions))
            .values(collector_id=collector_uuid, status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.db.rollback()
            raise ConcurrencyConflictError("Mission changed while being assigned")
        self._expire_loaded(Mission, mission_uuid, ["collector_id", "status", "updated_at"])

    def _expire_loaded(self, model, pk: uuid.UUID, attrs: List[str]) -> None:
        # Bulk UPDATEs bypass the identity map; reload only what they touched
        obj = self.db.identity_map.get(self.db.identity_key(model, pk))
        if obj is not None:
            self.db.expire(obj, attrs)


def fresh_since(now: datetime, window_s: int) -> datetime:
    return now - timedelta(seconds=window_s)
