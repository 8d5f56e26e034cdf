"""
Booking conflict resolution service.
HARD STOP rule: no two active bookings may overlap on the same vehicle.
An emergency request may displace strictly weaker bookings; everything else is rejected.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union
import uuid

import structlog
from sqlalchemy import func, text, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFoundError, PermissionDeniedError, TransientPersistenceError, ValidationError
from ..models.models import Booking, GroupMemberProjection, Timestamps, VehicleProjection
from ..schemas.bookings import BookingPriority, BookingStatus, MemberRole, VehicleStatus
from ..schemas.events import BookingCancelledEvent, BookingCreatedEvent
from .audit import create_audit_log
from .availability import find_overlapping
from .notifications import notify_user, publish_event
from .time_rules import ensure_utc, month_bounds, utcnow

logger = structlog.get_logger(__name__)

SCORE_QUANTUM = Decimal("0.0001")


@dataclass
class BookingRequest:
    vehicle_id: uuid.UUID
    user_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    priority: int = BookingPriority.normal
    is_emergency: bool = False
    emergency_reason: Optional[str] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None
    recurring_booking_id: Optional[uuid.UUID] = None
    booking_template_id: Optional[uuid.UUID] = None
    source: str = "api"


@dataclass
class Admitted:
    booking: Booking
    outcome: str = "admitted"

    @property
    def booking_id(self) -> uuid.UUID:
        return self.booking.id


@dataclass
class AdmittedWithDisplacement:
    booking: Booking
    cancelled: List[Booking] = field(default_factory=list)
    outcome: str = "admitted_with_displacement"

    @property
    def booking_id(self) -> uuid.UUID:
        return self.booking.id

    @property
    def cancelled_ids(self) -> List[uuid.UUID]:
        return [b.id for b in self.cancelled]


@dataclass
class Rejected:
    conflicts: List[Booking]
    reason: str
    outcome: str = "rejected"

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


@dataclass
class Invalid:
    errors: List[ValidationError]
    outcome: str = "invalid"

    @property
    def message(self) -> str:
        return "; ".join(e.message for e in self.errors)


AdmissionResult = Union[Admitted, AdmittedWithDisplacement, Rejected, Invalid]


@dataclass
class ConflictSummary:
    has_conflicts: bool
    conflicting_bookings: List[Booking]


def compute_priority_score(member: Optional[GroupMemberProjection], priority: int) -> Decimal:
    """
    Ownership-weighted priority score.

    priority * 100 + share * 100 (+ admin bonus). Higher wins.
    """
    score = Decimal(int(priority)) * 100
    if member is not None:
        score += Decimal(str(member.share_percentage or 0)) * 100
        if member.role == MemberRole.admin.value:
            score += settings.admin_priority_bonus
    return score.quantize(SCORE_QUANTUM)


def get_membership(db: Session, group_id: uuid.UUID, user_id: uuid.UUID) -> Optional[GroupMemberProjection]:
    return db.query(GroupMemberProjection).filter(
        GroupMemberProjection.group_id == group_id,
        GroupMemberProjection.user_id == user_id,
        GroupMemberProjection.is_active.is_(True),
    ).first()


def lock_vehicle(db: Session, vehicle_id: uuid.UUID) -> None:
    """
    Serialize writers on one vehicle for the rest of the transaction.
    PostgreSQL takes an advisory lock keyed by the vehicle. SQLite has no row
    locks, so a no-op write on the vehicle row takes the database write lock;
    the overlap query that follows then sees every committed booking.
    """
    if db.get_bind().dialect.name != "postgresql":
        db.execute(
            update(VehicleProjection)
            .where(VehicleProjection.id == vehicle_id)
            .values(source_version=VehicleProjection.source_version)
            .execution_options(synchronize_session=False)
        )
        return
    key = vehicle_id.int >> 64
    if key >= 1 << 63:
        key -= 1 << 64
    db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})


def count_emergency_bookings_in_month(db: Session, user_id: uuid.UUID, now: datetime) -> int:
    month_start, month_end = month_bounds(now)
    return db.query(func.count(Booking.id)).filter(
        Booking.user_id == user_id,
        Booking.is_emergency.is_(True),
        Booking.created_at >= month_start,
        Booking.created_at < month_end,
    ).scalar() or 0


def check_conflicts(
    db: Session,
    vehicle_id: uuid.UUID,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> ConflictSummary:
    conflicts = find_overlapping(db, vehicle_id, start, end, exclude_booking_id)
    return ConflictSummary(has_conflicts=bool(conflicts), conflicting_bookings=conflicts)


def _validate(db: Session, request: BookingRequest, now: datetime):
    errors = []
    vehicle = None
    member = None

    if request.start_at >= request.end_at:
        errors.append(ValidationError("start_at must be before end_at", field="start_at"))

    vehicle = db.get(VehicleProjection, request.vehicle_id)
    if vehicle is None:
        errors.append(ValidationError("Unknown vehicle", field="vehicle_id"))
    elif vehicle.status == VehicleStatus.decommissioned.value:
        errors.append(ValidationError("Vehicle is decommissioned", field="vehicle_id"))
    else:
        member = get_membership(db, vehicle.group_id, request.user_id)
        if member is None:
            errors.append(ValidationError("User is not an active member of the vehicle's group", field="user_id"))

    if request.is_emergency:
        if not (request.emergency_reason or "").strip():
            errors.append(ValidationError("Emergency reason is required for emergency bookings", field="emergency_reason"))
        used = count_emergency_bookings_in_month(db, request.user_id, now)
        if used >= settings.max_emergency_bookings_per_month:
            errors.append(ValidationError(
                f"Emergency booking limit of {settings.max_emergency_bookings_per_month} per month exceeded",
                field="is_emergency",
            ))

    return errors, vehicle, member


def _cancel_displaced(db: Session, victim: Booking, request: BookingRequest, now: datetime) -> None:
    reason = f"emergency_override: {request.emergency_reason}"
    victim.status = BookingStatus.cancelled.value
    victim.cancellation_reason = reason
    victim.cancelled_at = now
    victim.cancelled_by = request.user_id
    marker = f"[AUTO-CANCELLED BY EMERGENCY {request.start_at.isoformat()}] {request.emergency_reason}"
    victim.notes = f"{victim.notes}\n{marker}" if victim.notes else marker

    publish_event(db, victim.user_id, BookingCancelledEvent(
        booking_id=victim.id,
        vehicle_id=victim.vehicle_id,
        group_id=victim.group_id,
        user_id=victim.user_id,
        cancelled_by=request.user_id,
        reason="emergency_override",
        start_at=victim.start_at,
        end_at=victim.end_at,
    ))
    notify_user(db, victim.user_id, "booking_cancelled_emergency", {
        "booking_id": str(victim.id),
        "start_at": victim.start_at.isoformat(),
        "end_at": victim.end_at.isoformat(),
        "reason": request.emergency_reason,
    })
    create_audit_log(
        db, "booking", victim.id, "DISPLACE",
        actor_id=request.user_id,
        source=request.source,
        changes_json={"status": {"before": "active", "after": BookingStatus.cancelled.value}},
        context={"reason": reason},
        timestamp_utc=now,
    )


def admit_in_session(db: Session, request: BookingRequest, now: Optional[datetime] = None) -> AdmissionResult:
    """
    Decide admission inside the caller's transaction. Flushes, never commits.

    Args:
        db: Database session (transaction owned by the caller)
        request: Requested booking
        now: Current UTC instant

    Returns:
        Admitted, AdmittedWithDisplacement, Rejected or Invalid
    """
    now = ensure_utc(now or utcnow())
    request.start_at = ensure_utc(request.start_at)
    request.end_at = ensure_utc(request.end_at)

    errors, vehicle, member = _validate(db, request, now)
    if errors:
        return Invalid(errors=errors)

    lock_vehicle(db, request.vehicle_id)
    # Re-read overlaps after taking the lock
    conflicts = find_overlapping(db, request.vehicle_id, request.start_at, request.end_at)

    priority = BookingPriority.emergency if request.is_emergency else min(int(request.priority), BookingPriority.high)
    score = compute_priority_score(member, priority)

    displaced: List[Booking] = []
    if conflicts:
        if not request.is_emergency:
            return Rejected(conflicts=conflicts, reason="conflict")
        for conflict in conflicts:
            if conflict.is_emergency:
                return Rejected(conflicts=conflicts, reason="existing_emergency")
            if conflict.status == BookingStatus.in_progress.value:
                return Rejected(conflicts=conflicts, reason="trip_in_progress")
            # Equal scores keep the earlier booking
            if Decimal(str(conflict.priority_score)) >= score:
                return Rejected(conflicts=conflicts, reason="insufficient_priority")
        for conflict in conflicts:
            _cancel_displaced(db, conflict, request, now)
            displaced.append(conflict)

    booking = Booking(
        id=uuid.uuid4(),
        vehicle_id=request.vehicle_id,
        group_id=vehicle.group_id,
        user_id=request.user_id,
        start_at=request.start_at,
        end_at=request.end_at,
        status=BookingStatus.confirmed.value,
        priority=int(priority),
        priority_score=score,
        is_emergency=request.is_emergency,
        emergency_reason=request.emergency_reason if request.is_emergency else None,
        purpose=request.purpose,
        notes=request.notes,
        recurring_booking_id=request.recurring_booking_id,
        booking_template_id=request.booking_template_id,
        timestamps=Timestamps(now, now),
    )
    db.add(booking)
    db.flush()

    publish_event(db, booking.user_id, BookingCreatedEvent(
        booking_id=booking.id,
        vehicle_id=booking.vehicle_id,
        group_id=booking.group_id,
        user_id=booking.user_id,
        start_at=booking.start_at,
        end_at=booking.end_at,
        status=booking.status,
        priority=booking.priority,
        is_emergency=booking.is_emergency,
        recurring_booking_id=booking.recurring_booking_id,
    ))
    create_audit_log(
        db, "booking", booking.id, "CREATE",
        actor_id=request.user_id,
        source=request.source,
        context={"displaced": [str(b.id) for b in displaced]} if displaced else None,
        timestamp_utc=now,
    )

    if displaced:
        logger.info(
            "booking_admitted_with_displacement",
            booking_id=str(booking.id),
            vehicle_id=str(booking.vehicle_id),
            cancelled=[str(b.id) for b in displaced],
        )
        return AdmittedWithDisplacement(booking=booking, cancelled=displaced)
    return Admitted(booking=booking)


def try_admit_booking(db: Session, request: BookingRequest, now: Optional[datetime] = None) -> AdmissionResult:
    """
    Admit a booking in its own transaction.
    Displacement cancellations and the new booking commit together or not at all.

    Raises:
        TransientPersistenceError: the database failed; nothing was written
    """
    try:
        result = admit_in_session(db, request, now)
        if isinstance(result, (Admitted, AdmittedWithDisplacement)):
            db.commit()
            logger.info("booking_admitted", booking_id=str(result.booking_id), vehicle_id=str(request.vehicle_id))
        else:
            db.rollback()
            logger.info("booking_not_admitted", outcome=result.outcome, vehicle_id=str(request.vehicle_id))
        return result
    except DBAPIError as exc:
        db.rollback()
        logger.error("booking_admission_failed", vehicle_id=str(request.vehicle_id), error=str(exc))
        raise TransientPersistenceError("Booking store unavailable, retry later") from exc


def cancel_booking(
    db: Session,
    booking_id: uuid.UUID,
    actor_id: uuid.UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    is_admin: bool = False,
) -> Booking:
    """Soft-cancel a booking. Completed bookings are never cancelled."""
    now = ensure_utc(now or utcnow())
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if booking.user_id != actor_id and not is_admin:
        raise PermissionDeniedError("Only the booking owner can cancel it")
    if booking.status == BookingStatus.cancelled.value:
        return booking
    if booking.status in (BookingStatus.completed.value, BookingStatus.in_progress.value):
        raise ValidationError(f"Cannot cancel a booking that is {booking.status}", field="status")

    booking.status = BookingStatus.cancelled.value
    booking.cancellation_reason = reason
    booking.cancelled_at = now
    booking.cancelled_by = actor_id
    publish_event(db, booking.user_id, BookingCancelledEvent(
        booking_id=booking.id,
        vehicle_id=booking.vehicle_id,
        group_id=booking.group_id,
        user_id=booking.user_id,
        cancelled_by=actor_id,
        reason=reason or "cancelled_by_user",
        start_at=booking.start_at,
        end_at=booking.end_at,
    ))
    create_audit_log(db, "booking", booking.id, "CANCEL", actor_id=actor_id, source="api",
                     context={"reason": reason}, timestamp_utc=now)
    try:
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientPersistenceError("Booking store unavailable, retry later") from exc
    logger.info("booking_cancelled", booking_id=str(booking.id), actor_id=str(actor_id))
    return booking
