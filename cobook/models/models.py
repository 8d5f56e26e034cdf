import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, Session, composite, mapped_column
from sqlalchemy.types import TypeDecorator

from ..db import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


@dataclass
class Timestamps:
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def _timestamp_columns():
    return (
        mapped_column(UTCDateTime, nullable=False, index=True),
        mapped_column(UTCDateTime, nullable=False),
    )


class VehicleProjection(Base):
    """Read copy of a vehicle owned by the vehicle service"""
    __tablename__ = "vehicles"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(50), default="available", index=True)  # available|maintenance|decommissioned
    source_version: Mapped[int] = mapped_column(Integer, default=0)
    created_at, updated_at = _timestamp_columns()
    timestamps: Mapped[Timestamps] = composite(Timestamps, "created_at", "updated_at")


class GroupMemberProjection(Base):
    """Read copy of group membership owned by the group service"""
    __tablename__ = "group_members"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    share_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0"))  # 0..1
    role: Mapped[str] = mapped_column(String(20), default="member")  # member|admin
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    source_version: Mapped[int] = mapped_column(Integer, default=0)
    created_at, updated_at = _timestamp_columns()
    timestamps: Mapped[Timestamps] = composite(Timestamps, "created_at", "updated_at")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )


class Booking(Base):
    """One reservation of a vehicle by a group member"""
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = uuid_pk()
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending|confirmed|in_progress|completed|cancelled
    priority: Mapped[int] = mapped_column(Integer, default=1)  # 0 low, 1 normal, 2 high, 3 emergency
    priority_score: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal("0"))
    is_emergency: Mapped[bool] = mapped_column(Boolean, default=False)
    emergency_reason: Mapped[Optional[str]] = mapped_column(String(1000))
    purpose: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    # Back-reference only; removing the rule never removes its bookings
    recurring_booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("recurring_bookings.id", ondelete="SET NULL"), index=True
    )
    booking_template_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("booking_templates.id", ondelete="SET NULL")
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    checked_out_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_at, updated_at = _timestamp_columns()
    timestamps: Mapped[Timestamps] = composite(Timestamps, "created_at", "updated_at")

    # Indexes for conflict checking
    __table_args__ = (
        Index("idx_bookings_vehicle_time", "vehicle_id", "start_at", "end_at"),
        Index("idx_bookings_vehicle_status", "vehicle_id", "status"),
        Index("idx_bookings_user_emergency", "user_id", "is_emergency"),
    )


class RecurringBooking(Base):
    """Rule that materializes bookings ahead of time"""
    __tablename__ = "recurring_bookings"

    id: Mapped[uuid.UUID] = uuid_pk()
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    pattern: Mapped[str] = mapped_column(String(20), nullable=False)  # daily|weekly|monthly|custom
    interval_value: Mapped[int] = mapped_column(Integer, default=1)
    days_of_week: Mapped[Optional[list]] = mapped_column(JSON)  # [0..6], Monday = 0
    start_time: Mapped[Time] = mapped_column(Time(timezone=False), nullable=False)  # Local time
    end_time: Mapped[Time] = mapped_column(Time(timezone=False), nullable=False)  # Local time
    time_zone: Mapped[str] = mapped_column(String(64), default="UTC")
    recurrence_start_date: Mapped[Date] = mapped_column(Date, nullable=False)
    recurrence_end_date: Mapped[Optional[Date]] = mapped_column(Date)  # Exclusive
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)  # active|paused|cancelled|completed
    paused_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    # Generation watermark, written only by the recurrence generator
    last_generated_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_generation_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    purpose: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_at, updated_at = _timestamp_columns()
    timestamps: Mapped[Timestamps] = composite(Timestamps, "created_at", "updated_at")

    __table_args__ = (
        Index("idx_recurring_status_watermark", "status", "last_generated_until"),
    )


class BookingTemplate(Base):
    """Reusable booking draft"""
    __tablename__ = "booking_templates"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    vehicle_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    preferred_start_time: Mapped[Time] = mapped_column(Time(timezone=False), nullable=False)
    purpose: Mapped[Optional[str]] = mapped_column(String(500))
    notes: Mapped[Optional[str]] = mapped_column(String(1000))
    priority: Mapped[int] = mapped_column(Integer, default=1)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at, updated_at = _timestamp_columns()
    timestamps: Mapped[Timestamps] = composite(Timestamps, "created_at", "updated_at")


class CheckIn(Base):
    """Vehicle hand-over events: check_out when the trip starts, check_in on return"""
    __tablename__ = "check_ins"

    id: Mapped[uuid.UUID] = uuid_pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # check_out|check_in
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    odometer: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_late_return: Mapped[bool] = mapped_column(Boolean, default=False)
    late_minutes: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    created_at, updated_at = _timestamp_columns()
    timestamps: Mapped[Timestamps] = composite(Timestamps, "created_at", "updated_at")

    __table_args__ = (
        UniqueConstraint("booking_id", "type", name="uq_check_in_booking_type"),
    )


class LateReturnFee(Base):
    """Fee assessed once per booking when the vehicle comes back late"""
    __tablename__ = "late_return_fees"

    id: Mapped[uuid.UUID] = uuid_pk()
    booking_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True)
    check_in_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("check_ins.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    group_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    late_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    original_fee_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))
    calculation_method: Mapped[Optional[str]] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending|paid|waived
    waived_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    waived_reason: Mapped[Optional[str]] = mapped_column(String(500))
    waived_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    created_at, updated_at = _timestamp_columns()
    timestamps: Mapped[Timestamps] = composite(Timestamps, "created_at", "updated_at")


class Notification(Base):
    """Outbox of integration events and user notifications; delivered by an external worker"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # push|email|event
    template_key: Mapped[Optional[str]] = mapped_column(String(100))  # Event type
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_notifications_user_status", "user_id", "status"),
        Index("idx_notifications_created", "created_at"),
    )


class AuditLog(Base):
    """Append-only audit log for booking state changes"""
    __tablename__ = "audit_logs"

    # Integer key keeps insertion order for entries sharing a timestamp
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # booking|recurring_booking|late_fee|template
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|CANCEL|DISPLACE|CHECK_OUT|CHECK_IN|WAIVE|PAUSE|RESUME
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|scheduler|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp_utc: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )


@event.listens_for(Session, "before_flush")
def _stamp_timestamps(session, flush_context, instances):
    """Persistence adapter: stamp embedded timestamps on write."""
    now = datetime.now(timezone.utc)
    for obj in session.new:
        if "timestamps" not in type(obj).__mapper__.attrs:
            continue
        current = obj.timestamps
        created = current.created_at if current is not None else None
        obj.timestamps = Timestamps(created or now, now)
    for obj in session.dirty:
        if "timestamps" not in type(obj).__mapper__.attrs or not session.is_modified(obj):
            continue
        current = obj.timestamps
        created = current.created_at if current is not None else None
        obj.timestamps = Timestamps(created or now, now)
