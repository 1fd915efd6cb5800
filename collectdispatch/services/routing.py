"""
Multi-stop route sequencing for a collector.

Greedy nearest-neighbour over the collector's open stops, where urgency
shrinks the effective distance so urgent pickups are pulled forward.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from ..models.models import Collection
from .errors import NotFoundError, ValidationError
from .geofence import haversine_distance
from .repository import CollectionRepository, MissionRepository, UserRepository, as_uuid

logger = structlog.get_logger(__name__)

URGENCY_RANK = {"urgent": 0, "high": 1, "medium": 2, "low": 3}
URGENCY_PENALTY = {"urgent": 0.5, "high": 0.7, "medium": 1.0, "low": 1.2}
DEFAULT_URGENCY = "medium"


@dataclass(frozen=True)
class Stop:
    collection_id: str
    lng: float
    lat: float
    urgency: str = DEFAULT_URGENCY
    estimated_weight_kg: Optional[float] = None
    position: int = 0  # index in the request

    @property
    def weight_key(self) -> float:
        # Unknown weights sort after every known one
        return self.estimated_weight_kg if self.estimated_weight_kg is not None else float("inf")

    @property
    def penalty(self) -> float:
        return URGENCY_PENALTY.get(self.urgency, URGENCY_PENALTY[DEFAULT_URGENCY])

    @property
    def rank(self) -> int:
        return URGENCY_RANK.get(self.urgency, URGENCY_RANK[DEFAULT_URGENCY])


@dataclass
class RouteLeg:
    order: int
    stop: Stop
    distance_m: float


@dataclass
class RoutePlan:
    collector_id: str
    legs: List[RouteLeg] = field(default_factory=list)

    @property
    def total_distance_m(self) -> float:
        return sum(leg.distance_m for leg in self.legs)

    @property
    def collection_ids(self) -> List[str]:
        return [leg.stop.collection_id for leg in self.legs]


def _distance(a: Stop, b: Stop) -> float:
    return haversine_distance(a.lat, a.lng, b.lat, b.lng)


def sequence_stops(stops: Sequence[Stop]) -> List[RouteLeg]:
    """
    Order stops starting from the most urgent one (ties: lighter, then
    earlier in the input), then repeatedly hop to the unvisited stop with the
    smallest distance x urgency penalty. O(n^2) and fully deterministic.
    """
    remaining = list(stops)
    if not remaining:
        return []
    current = min(remaining, key=lambda s: (s.rank, s.weight_key, s.position))
    remaining.remove(current)
    legs = [RouteLeg(order=0, stop=current, distance_m=0.0)]

    while remaining:
        best = None
        best_key = None
        best_distance = 0.0
        for candidate in remaining:
            distance = _distance(current, candidate)
            key = (distance * candidate.penalty, candidate.weight_key, candidate.position)
            if best_key is None or key < best_key:
                best, best_key, best_distance = candidate, key, distance
        remaining.remove(best)
        legs.append(RouteLeg(order=len(legs), stop=best, distance_m=best_distance))
        current = best
    return legs


def stop_from_collection(collection: Collection, position: int) -> Stop:
    return Stop(
        collection_id=str(collection.id),
        lng=collection.lng,
        lat=collection.lat,
        urgency=collection.urgency or DEFAULT_URGENCY,
        estimated_weight_kg=collection.estimated_weight_kg,
        position=position,
    )


class RouteSequencer:
    def __init__(self, db: Session):
        self.db = db
        self.users = UserRepository(db)
        self.collections = CollectionRepository(db)
        self.missions = MissionRepository(db)

    def optimize(self, collector_id, collection_ids: Sequence) -> RoutePlan:
        collector = self.users.get_collector(collector_id)
        if collector is None:
            raise NotFoundError("Collector")
        if not collection_ids:
            raise ValidationError("At least one collection is required", field="collectionIds")
        ids = [as_uuid(c, "collectionIds") for c in collection_ids]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate collections in route", field="collectionIds")

        by_id = {c.id: c for c in self.collections.get_many(ids)}
        missing = [str(i) for i in ids if i not in by_id]
        if missing:
            raise ValidationError(f"Unknown collections: {', '.join(missing)}", field="collectionIds")
        foreign = [str(i) for i in ids if by_id[i].organization_id != collector.organization_id]
        if foreign:
            raise ValidationError("Collections must belong to the collector's organization", field="collectionIds")

        assigned = {m.collection_id for m in self.missions.open_missions_for(collector.id, ids)}
        unassigned = [str(i) for i in ids if i not in assigned]
        if unassigned:
            raise ValidationError(
                f"No open mission assigned to this collector for: {', '.join(unassigned)}",
                field="collectionIds",
            )

        stops = [stop_from_collection(by_id[i], position) for position, i in enumerate(ids)]
        plan = RoutePlan(collector_id=str(collector.id), legs=sequence_stops(stops))
        logger.info(
            "route_optimized",
            collector_id=plan.collector_id,
            stops=len(plan.legs),
            total_distance_m=round(plan.total_distance_m, 1),
        )
        return plan
