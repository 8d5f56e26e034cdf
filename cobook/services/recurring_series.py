"""
Recurring series management: create, pause, resume and cancel rules.
"""
from datetime import date, datetime, time, timedelta
from typing import List, Optional
import uuid

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFoundError, PermissionDeniedError, ValidationError
from ..models.models import Booking, RecurringBooking, VehicleProjection
from ..schemas.bookings import BookingStatus, RecurrencePattern, RecurringBookingStatus, VehicleStatus
from ..schemas.events import BookingCancelledEvent
from .audit import create_audit_log
from .booking_conflict import get_membership
from .notifications import publish_event
from .recurrence import generate_for_rule, generation_bounds, notify_generation_gaps
from .time_rules import ensure_utc, is_valid_timezone, utcnow

logger = structlog.get_logger(__name__)


def validate_rule(
    pattern: str,
    interval_value: int,
    days_of_week: Optional[List[int]],
    start_time: time,
    end_time: time,
    recurrence_start_date: date,
    recurrence_end_date: Optional[date],
    time_zone: str,
) -> None:
    """
    Raises:
        ValidationError: on the first invalid field
    """
    if pattern not in [p.value for p in RecurrencePattern]:
        raise ValidationError(f"Unknown recurrence pattern {pattern}", field="pattern")
    if interval_value is None or interval_value < 1:
        raise ValidationError("interval_value must be at least 1", field="interval_value")
    if days_of_week and any(d < 0 or d > 6 for d in days_of_week):
        raise ValidationError("days_of_week entries must be between 0 and 6", field="days_of_week")
    if pattern == RecurrencePattern.weekly.value and not days_of_week:
        raise ValidationError("days_of_week must be provided for weekly recurring bookings", field="days_of_week")
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time", field="end_time")
    if recurrence_end_date is not None and recurrence_end_date <= recurrence_start_date:
        raise ValidationError("recurrence_end_date must be after recurrence_start_date", field="recurrence_end_date")
    if not is_valid_timezone(time_zone):
        raise ValidationError(f"Unknown time zone {time_zone}", field="time_zone")


def get_recurring_booking(
    db: Session,
    recurring_booking_id: uuid.UUID,
    user_id: uuid.UUID,
    is_admin: bool = False,
) -> RecurringBooking:
    rule = db.get(RecurringBooking, recurring_booking_id)
    if rule is None:
        raise NotFoundError("Recurring booking not found")
    if rule.user_id != user_id and not is_admin:
        raise PermissionDeniedError("You do not have permission to access this recurring booking")
    return rule


def list_for_user(db: Session, user_id: uuid.UUID) -> List[RecurringBooking]:
    return db.query(RecurringBooking).filter(
        RecurringBooking.user_id == user_id
    ).order_by(RecurringBooking.created_at.desc()).all()


def list_generated_bookings(db: Session, recurring_booking_id: uuid.UUID) -> List[Booking]:
    return db.query(Booking).filter(
        Booking.recurring_booking_id == recurring_booking_id
    ).order_by(Booking.start_at).all()


def create_recurring_booking(
    db: Session,
    user_id: uuid.UUID,
    data: dict,
    now: Optional[datetime] = None,
) -> RecurringBooking:
    """
    Create a rule and generate its occurrences up to the horizon right away.

    Args:
        db: Database session
        user_id: Owner of the series
        data: Fields of RecurringBookingCreate
        now: Current UTC instant

    Returns:
        The persisted RecurringBooking
    """
    now = ensure_utc(now or utcnow())
    time_zone = data.get("time_zone") or settings.tz_default
    pattern = data["pattern"].value if hasattr(data["pattern"], "value") else data["pattern"]
    days_of_week = sorted(set(data.get("days_of_week") or [])) or None
    validate_rule(
        pattern,
        data.get("interval_value", 1),
        days_of_week,
        data["start_time"],
        data["end_time"],
        data["recurrence_start_date"],
        data.get("recurrence_end_date"),
        time_zone,
    )

    vehicle = db.get(VehicleProjection, data["vehicle_id"])
    if vehicle is None:
        raise ValidationError("Unknown vehicle", field="vehicle_id")
    if vehicle.status == VehicleStatus.decommissioned.value:
        raise ValidationError("Vehicle is decommissioned", field="vehicle_id")
    if get_membership(db, vehicle.group_id, user_id) is None:
        raise PermissionDeniedError("Access denied to this vehicle")

    rule = RecurringBooking(
        id=uuid.uuid4(),
        vehicle_id=vehicle.id,
        group_id=vehicle.group_id,
        user_id=user_id,
        pattern=pattern,
        interval_value=data.get("interval_value", 1),
        days_of_week=days_of_week,
        start_time=data["start_time"],
        end_time=data["end_time"],
        time_zone=time_zone,
        recurrence_start_date=data["recurrence_start_date"],
        recurrence_end_date=data.get("recurrence_end_date"),
        status=RecurringBookingStatus.active.value,
        purpose=data.get("purpose"),
        notes=data.get("notes"),
    )
    db.add(rule)
    create_audit_log(db, "recurring_booking", rule.id, "CREATE", actor_id=user_id, source="api", timestamp_utc=now)
    db.commit()
    logger.info("recurring_booking_created", recurring_booking_id=str(rule.id), pattern=pattern)

    generation_cutoff, look_back_cutoff = generation_bounds(now)
    try:
        result = generate_for_rule(db, rule.id, now, generation_cutoff, look_back_cutoff)
        db.commit()
        if result.gaps:
            notify_generation_gaps(db, rule, result.gaps)
            db.commit()
        logger.info(
            "recurring_booking_initial_generation",
            recurring_booking_id=str(rule.id),
            created=len(result.created),
            gaps=len(result.gaps),
        )
    except SQLAlchemyError as exc:
        # The scheduler picks the rule up on its next run
        db.rollback()
        logger.error("recurring_booking_initial_generation_failed", recurring_booking_id=str(rule.id), error=str(exc))
    return rule


def pause_recurring_booking(
    db: Session,
    recurring_booking_id: uuid.UUID,
    user_id: uuid.UUID,
    until: Optional[datetime] = None,
    now: Optional[datetime] = None,
    is_admin: bool = False,
) -> RecurringBooking:
    """
    Pause a rule. Without `until` the pause lasts one generation horizon.
    Bookings already generated are kept.
    """
    now = ensure_utc(now or utcnow())
    rule = get_recurring_booking(db, recurring_booking_id, user_id, is_admin)
    if rule.status != RecurringBookingStatus.active.value:
        raise ValidationError(f"Cannot pause a recurring booking that is {rule.status}", field="status")

    until = ensure_utc(until) if until else now + timedelta(days=settings.recurrence_horizon_days)
    if until <= now:
        raise ValidationError("paused_until must be in the future", field="paused_until")

    rule.status = RecurringBookingStatus.paused.value
    rule.paused_until = until
    create_audit_log(db, "recurring_booking", rule.id, "PAUSE", actor_id=user_id, source="api",
                     context={"paused_until": until.isoformat()}, timestamp_utc=now)
    db.commit()
    logger.info("recurring_booking_paused", recurring_booking_id=str(rule.id), paused_until=until.isoformat())
    return rule


def resume_recurring_booking(
    db: Session,
    recurring_booking_id: uuid.UUID,
    user_id: uuid.UUID,
    now: Optional[datetime] = None,
    is_admin: bool = False,
) -> RecurringBooking:
    now = ensure_utc(now or utcnow())
    rule = get_recurring_booking(db, recurring_booking_id, user_id, is_admin)
    if rule.status != RecurringBookingStatus.paused.value:
        raise ValidationError(f"Cannot resume a recurring booking that is {rule.status}", field="status")

    rule.status = RecurringBookingStatus.active.value
    rule.paused_until = None
    create_audit_log(db, "recurring_booking", rule.id, "RESUME", actor_id=user_id, source="api", timestamp_utc=now)
    db.commit()
    logger.info("recurring_booking_resumed", recurring_booking_id=str(rule.id))
    return rule


def cancel_recurring_booking(
    db: Session,
    recurring_booking_id: uuid.UUID,
    user_id: uuid.UUID,
    reason: Optional[str] = None,
    cancel_future_bookings: bool = True,
    now: Optional[datetime] = None,
    is_admin: bool = False,
) -> RecurringBooking:
    """
    Cancel a rule and, when asked, its generated bookings that have not started.
    Bookings are soft-cancelled, never deleted.
    """
    now = ensure_utc(now or utcnow())
    rule = get_recurring_booking(db, recurring_booking_id, user_id, is_admin)
    if rule.status == RecurringBookingStatus.cancelled.value:
        return rule

    rule.status = RecurringBookingStatus.cancelled.value
    rule.cancellation_reason = reason
    rule.cancelled_at = now

    cancelled = 0
    if cancel_future_bookings:
        future = db.query(Booking).filter(
            Booking.recurring_booking_id == rule.id,
            Booking.start_at > now,
            Booking.status.in_((BookingStatus.pending.value, BookingStatus.confirmed.value)),
        ).all()
        for booking in future:
            booking.status = BookingStatus.cancelled.value
            booking.cancellation_reason = reason or "recurring_series_cancelled"
            booking.cancelled_at = now
            booking.cancelled_by = user_id
            publish_event(db, booking.user_id, BookingCancelledEvent(
                booking_id=booking.id,
                vehicle_id=booking.vehicle_id,
                group_id=booking.group_id,
                user_id=booking.user_id,
                cancelled_by=user_id,
                reason="recurring_series_cancelled",
                start_at=booking.start_at,
                end_at=booking.end_at,
            ))
        cancelled = len(future)

    create_audit_log(db, "recurring_booking", rule.id, "CANCEL", actor_id=user_id, source="api",
                     context={"reason": reason, "bookings_cancelled": cancelled}, timestamp_utc=now)
    db.commit()
    logger.info("recurring_booking_cancelled", recurring_booking_id=str(rule.id), bookings_cancelled=cancelled)
    return rule
