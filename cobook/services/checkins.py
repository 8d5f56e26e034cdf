"""
Trip hand-over: check-out starts the trip, check-in ends it and prices a late return.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
import uuid

import structlog
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from ..config import LateReturnFeeOptions
from ..errors import NotFoundError, PermissionDeniedError, TransientPersistenceError, ValidationError
from ..models.models import Booking, CheckIn, LateReturnFee
from ..schemas.bookings import BookingStatus
from .audit import create_audit_log
from .late_fees import assess_late_fee
from .time_rules import ensure_utc, utcnow

logger = structlog.get_logger(__name__)

# Check-out is accepted from 30 minutes before the start to 30 minutes after it
CHECK_OUT_WINDOW = timedelta(minutes=30)


@dataclass
class CheckInOutcome:
    check_in: CheckIn
    late_fee: Optional[LateReturnFee] = None


def _load_owned_booking(db: Session, booking_id: uuid.UUID, user_id: uuid.UUID) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    if booking.user_id != user_id:
        raise PermissionDeniedError("Only the booking owner can hand the vehicle over")
    return booking


def _existing(db: Session, booking_id: uuid.UUID, kind: str) -> Optional[CheckIn]:
    return db.query(CheckIn).filter(CheckIn.booking_id == booking_id, CheckIn.type == kind).first()


def check_out(
    db: Session,
    booking_id: uuid.UUID,
    user_id: uuid.UUID,
    at: Optional[datetime] = None,
    odometer: Optional[int] = None,
    notes: Optional[str] = None,
) -> CheckIn:
    """
    Start the trip of a confirmed booking.

    Raises:
        NotFoundError, PermissionDeniedError, ValidationError
    """
    at = ensure_utc(at or utcnow())
    booking = _load_owned_booking(db, booking_id, user_id)

    if booking.status == BookingStatus.in_progress.value:
        raise ValidationError("Trip already in progress for this booking", field="status")
    if booking.status != BookingStatus.confirmed.value:
        raise ValidationError("Booking must be confirmed before starting the trip", field="status")
    if at < booking.start_at - CHECK_OUT_WINDOW:
        raise ValidationError("Check-out is only allowed within 30 minutes prior to the booking start time", field="occurred_at")
    if at > booking.start_at + CHECK_OUT_WINDOW:
        raise ValidationError("The check-out window for this booking has expired", field="occurred_at")
    if _existing(db, booking.id, "check_out") is not None:
        raise ValidationError("This booking already has a check-out recorded", field="booking_id")

    record = CheckIn(
        id=uuid.uuid4(),
        booking_id=booking.id,
        user_id=user_id,
        vehicle_id=booking.vehicle_id,
        type="check_out",
        occurred_at=at,
        odometer=odometer,
        notes=notes,
        is_late_return=False,
    )
    db.add(record)
    booking.status = BookingStatus.in_progress.value
    booking.checked_out_at = at
    create_audit_log(db, "booking", booking.id, "CHECK_OUT", actor_id=user_id, source="api", timestamp_utc=at)

    try:
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientPersistenceError("Booking store unavailable, retry later") from exc
    logger.info("vehicle_checked_out", booking_id=str(booking.id), vehicle_id=str(booking.vehicle_id))
    return record


def check_in(
    db: Session,
    booking_id: uuid.UUID,
    user_id: uuid.UUID,
    returned_at: Optional[datetime] = None,
    odometer: Optional[int] = None,
    notes: Optional[str] = None,
    options: Optional[LateReturnFeeOptions] = None,
) -> CheckInOutcome:
    """
    Complete the trip and assess a late fee once.

    Args:
        db: Database session
        booking_id: Booking being returned
        user_id: Returning user (must own the booking)
        returned_at: Actual return instant (defaults to now)
        odometer: Odometer reading at return
        notes: Free text
        options: Late fee configuration (defaults to settings)

    Returns:
        CheckInOutcome with the check-in row and the fee, if any
    """
    returned_at = ensure_utc(returned_at or utcnow())
    booking = _load_owned_booking(db, booking_id, user_id)

    if booking.status not in (BookingStatus.in_progress.value, BookingStatus.confirmed.value):
        raise ValidationError(f"Cannot check in a booking that is {booking.status}", field="status")
    if _existing(db, booking.id, "check_in") is not None:
        raise ValidationError("This booking already has a check-in recorded", field="booking_id")

    checkout = _existing(db, booking.id, "check_out")
    if checkout is not None and odometer is not None and checkout.odometer is not None and odometer < checkout.odometer:
        raise ValidationError("Odometer reading cannot be lower than at check-out", field="odometer")

    record = CheckIn(
        id=uuid.uuid4(),
        booking_id=booking.id,
        user_id=user_id,
        vehicle_id=booking.vehicle_id,
        type="check_in",
        occurred_at=returned_at,
        odometer=odometer,
        notes=notes,
        is_late_return=False,
    )
    db.add(record)
    db.flush()

    booking.status = BookingStatus.completed.value
    booking.completed_at = returned_at

    try:
        fee = assess_late_fee(db, booking, record, options)
        create_audit_log(db, "booking", booking.id, "CHECK_IN", actor_id=user_id, source="api",
                         context={"late_fee_id": str(fee.id)} if fee else None, timestamp_utc=returned_at)
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        raise TransientPersistenceError("Booking store unavailable, retry later") from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "vehicle_checked_in",
        booking_id=str(booking.id),
        late=record.is_late_return,
        late_fee_id=str(fee.id) if fee else None,
    )
    return CheckInOutcome(check_in=record, late_fee=fee)
