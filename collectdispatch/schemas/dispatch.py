import uuid
from datetime import datetime
from typing import List, Optional, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..services.webhooks import KNOWN_EVENTS


# Enums
class MissionStatus(str, Enum):
    planned = "planned"
    assigned = "assigned"
    in_progress = "in-progress"
    blocked = "blocked"
    completed = "completed"
    cancelled = "cancelled"


class Urgency(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class ProofStage(str, Enum):
    before = "before"
    after = "after"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Missions
class MissionCreate(CamelModel):
    collection_id: uuid.UUID
    organization_id: Optional[uuid.UUID] = None
    collector_id: Optional[uuid.UUID] = None
    vehicle_id: Optional[uuid.UUID] = None


class BlockReasonIn(CamelModel):
    # Checked by the state machine so the error names the offending field
    reason: str
    description: Optional[str] = None


class MissionStatusUpdate(CamelModel):
    status: str
    block_reason: Optional[BlockReasonIn] = None


class MissionAssign(CamelModel):
    collector_id: uuid.UUID
    reason: Optional[str] = Field(default=None, max_length=500)


class ProofCapture(CamelModel):
    stage: ProofStage
    code: str
    photo_url: Optional[str] = None
    coordinates: List[float]


class MissionOut(CamelModel):
    id: uuid.UUID
    collection_id: uuid.UUID
    organization_id: uuid.UUID
    collector_id: Optional[uuid.UUID] = None
    vehicle_id: Optional[uuid.UUID] = None
    status: str
    proofs: Optional[Dict[str, Any]] = None
    block_reason: Optional[Dict[str, Any]] = None
    timestamps: Optional[Dict[str, Any]] = None
    created_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MissionList(CamelModel):
    items: List[MissionOut]
    total: int
    page: int
    limit: int


class ReassignmentOut(CamelModel):
    id: uuid.UUID
    from_collector_id: Optional[uuid.UUID] = None
    to_collector_id: uuid.UUID
    reason: Optional[str] = None
    actor_id: Optional[uuid.UUID] = None
    created_at: datetime


class ProofCodeOut(CamelModel):
    code: str
    payload: Dict[str, Any]
    qr_image: str
    expires_at: str


# Routes
class RouteRequest(CamelModel):
    collector_id: Optional[uuid.UUID] = None
    collection_ids: List[uuid.UUID] = Field(min_length=1, max_length=200)


class RouteStopOut(CamelModel):
    order: int
    collection_id: str
    coordinates: List[float]
    urgency: str
    estimated_weight_kg: Optional[float] = None
    distance_m: float


class RouteOut(CamelModel):
    collector_id: str
    stops: List[RouteStopOut]
    total_distance_m: float


# Collectors
class DutyUpdate(CamelModel):
    on_duty: bool


class HeartbeatIn(CamelModel):
    coordinates: List[float]


class CollectorOut(CamelModel):
    id: uuid.UUID
    name: Optional[str] = None
    organization_id: Optional[uuid.UUID] = None
    on_duty: bool
    last_location: Optional[List[float]] = None
    last_seen_at: Optional[datetime] = None
    active_mission_count: int = 0


# Collections
class CollectionCreate(CamelModel):
    organization_id: uuid.UUID
    coordinates: List[float]
    waste_type: str = Field(min_length=1, max_length=100)
    quantity: float = Field(default=1, gt=0)
    unit: str = Field(default="kg", max_length=20)
    urgency: Urgency = Urgency.medium
    estimated_weight_kg: Optional[float] = Field(default=None, ge=0)
    address: Optional[str] = Field(default=None, max_length=500)


class CollectionConfirm(CamelModel):
    code: str


class CollectionOut(CamelModel):
    id: uuid.UUID
    reporter_id: Optional[uuid.UUID] = None
    organization_id: uuid.UUID
    coordinates: List[float]
    waste_type: str
    quantity: Optional[float] = None
    unit: Optional[str] = None
    urgency: str
    estimated_weight_kg: Optional[float] = None
    address: Optional[str] = None
    status: str
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    mission_id: Optional[uuid.UUID] = None


# Business settings & webhooks
class WebhookIn(CamelModel):
    url: str = Field(max_length=1000)
    events: List[str] = Field(default_factory=list)
    secret: Optional[str] = Field(default=None, max_length=200)
    enabled: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: List[str]) -> List[str]:
        unknown = [e for e in v if e not in KNOWN_EVENTS]
        if unknown:
            raise ValueError(f"Unknown events: {', '.join(unknown)}")
        return v


class WebhookOut(CamelModel):
    index: int
    url: str
    events: List[str] = Field(default_factory=list)
    enabled: bool = True
    has_secret: bool = False


class SettingsUpdate(CamelModel):
    auto_assign_enabled: Optional[bool] = None
    auto_assign_radius_m: Optional[float] = Field(default=None, ge=100, le=50000)
    max_active_missions: Optional[int] = Field(default=None, ge=1, le=50)


class SettingsOut(CamelModel):
    organization_id: uuid.UUID
    auto_assign_enabled: bool
    auto_assign_radius_m: float
    max_active_missions: int


class WebhookLogOut(CamelModel):
    id: uuid.UUID
    url: Optional[str] = None
    event: Optional[str] = None
    payload_id: Optional[str] = None
    status: str
    http_status: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime


class AuditLogOut(CamelModel):
    id: uuid.UUID
    actor_id: Optional[uuid.UUID] = None
    action: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    integrity_ok: Optional[bool] = None
