import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    JSON,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base
from ..services.time_rules import utcnow


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class Organization(Base):
    """Tenant boundary for missions, collections and collectors"""
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    auto_assign_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_assign_radius_m: Mapped[float] = mapped_column(Float, default=10000)
    max_active_missions: Mapped[int] = mapped_column(Integer, default=5)
    webhooks: Mapped[Optional[list]] = mapped_column(JSON, default=list)  # List of {url, events, secret, enabled}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class User(Base):
    """Actor identity. Collectors also carry their availability snapshot."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # platform_admin|org_admin|collector|reporter
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="SET NULL"), index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    # Availability snapshot, written only by the duty registry
    on_duty: Mapped[bool] = mapped_column(Boolean, default=False)
    last_lng: Mapped[Optional[float]] = mapped_column(Float)
    last_lat: Mapped[Optional[float]] = mapped_column(Float)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Non-terminal missions currently held; guarded by the conditional capacity write
    active_mission_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    organization = relationship("Organization")

    __table_args__ = (
        Index('idx_users_dispatch', 'organization_id', 'role', 'on_duty'),
        Index('idx_users_location', 'last_lat', 'last_lng'),
    )


class Collection(Base):
    """A reported waste pickup request"""
    __tablename__ = "collections"

    id: Mapped[uuid.UUID] = uuid_pk()
    reporter_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500))
    waste_type: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, default=1)
    unit: Mapped[str] = mapped_column(String(20), default="kg")
    urgency: Mapped[str] = mapped_column(String(20), default="medium")  # low|medium|high|urgent
    estimated_weight_kg: Mapped[Optional[float]] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|scheduled|in-progress|completed
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Mission(Base):
    """Dispatch unit tracking one collection from assignment to completion"""
    __tablename__ = "missions"

    id: Mapped[uuid.UUID] = uuid_pk()
    collection_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("collections.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    collector_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    vehicle_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))  # Vehicle catalog lives outside this service
    status: Mapped[str] = mapped_column(String(20), default="planned", nullable=False)  # planned|assigned|in-progress|blocked|completed|cancelled
    qr_code: Mapped[Optional[str]] = mapped_column(Text)  # Last issued signed proof code
    proofs: Mapped[Optional[dict]] = mapped_column(JSON)  # {before: {photo, timestamp, location}, after: {...}}
    block_reason: Mapped[Optional[dict]] = mapped_column(JSON)  # {reason, description, timestamp}
    timestamps: Mapped[Optional[dict]] = mapped_column(JSON)  # {assigned, started, blocked, resumed, completed, cancelled}
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    collection = relationship("Collection")
    reassignment_history = relationship(
        "MissionReassignment",
        order_by="MissionReassignment.created_at",
        viewonly=True,
    )

    __table_args__ = (
        Index('idx_missions_collector_status', 'collector_id', 'status'),
        Index('idx_missions_org_status', 'organization_id', 'status'),
    )


class MissionReassignment(Base):
    """Insert-only trail of collector changes after the initial assignment"""
    __tablename__ = "mission_reassignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    mission_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("missions.id", ondelete="CASCADE"), nullable=False, index=True)
    from_collector_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    to_collector_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class AuditLog(Base):
    """Append-only audit log for dispatch actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)  # mission.created|mission.status_changed|mission.reassigned|...
    target_type: Mapped[Optional[str]] = mapped_column(String(50))
    target_id: Mapped[Optional[str]] = mapped_column(String(64))
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_org_created', 'organization_id', 'created_at'),
        Index('idx_audit_target', 'target_type', 'target_id'),
    )


class WebhookLog(Base):
    """Outcome of each outbound webhook delivery"""
    __tablename__ = "webhook_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    url: Mapped[Optional[str]] = mapped_column(String(1000))
    event: Mapped[Optional[str]] = mapped_column(String(100))
    payload_id: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # success|failed|dropped
    http_status: Mapped[Optional[int]] = mapped_column(Integer)
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
