"""
Late-return fees: banded calculation plus the one-per-booking fee record.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import List, Optional
import uuid

import structlog
from sqlalchemy.orm import Session

from ..config import LateReturnFeeBand, LateReturnFeeOptions, settings
from ..errors import ConfigurationError, NotFoundError
from ..models.models import Booking, CheckIn, LateReturnFee
from ..schemas.bookings import ACTIVE_BOOKING_STATUSES, LateReturnFeeStatus
from ..schemas.events import LateFeeAssessedEvent, LateFeeWaivedEvent, VehicleReturnedLateEvent
from .audit import create_audit_log
from .notifications import notify_user, publish_event
from .time_rules import ensure_utc, minutes_between, utcnow

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")
DEFAULT_RATE_METHOD = "DefaultRate"


@dataclass
class LateFeeQuote:
    fee_amount: Decimal
    late_minutes: Decimal
    chargeable_minutes: Decimal
    band: Optional[LateReturnFeeBand] = None
    calculation_method: Optional[str] = None

    @property
    def is_late(self) -> bool:
        return self.late_minutes > 0

    @property
    def late_duration_minutes(self) -> int:
        return int(self.chargeable_minutes.to_integral_value(rounding=ROUND_CEILING))


def select_band(bands: List[LateReturnFeeBand], minutes: Decimal) -> Optional[LateReturnFeeBand]:
    for band in bands:
        if band.contains(minutes):
            return band
    return None


def calculate_late_fee(
    actual_return: datetime,
    scheduled_end: datetime,
    options: Optional[LateReturnFeeOptions] = None,
) -> LateFeeQuote:
    """
    Price a return against the band table.

    Args:
        actual_return: When the vehicle came back
        scheduled_end: Booking end
        options: Fee configuration (defaults to settings.late_return_fees)

    Returns:
        LateFeeQuote; fee_amount is 0 within the grace period

    Raises:
        ConfigurationError: lateness falls in a gap of the band table and no default rate is set
    """
    options = options or settings.late_return_fees
    late_minutes = max(Decimal(0), minutes_between(scheduled_end, actual_return))
    chargeable = max(Decimal(0), late_minutes - options.grace_period_minutes)
    if chargeable <= 0:
        return LateFeeQuote(Decimal("0.00"), late_minutes, Decimal(0))

    band = select_band(options.bands, chargeable)
    if band is not None:
        fee = (band.flat_fee or Decimal(0)) + band.rate_per_hour * chargeable / Decimal(60)
        method = band.describe()
    elif options.default_hourly_rate > 0:
        fee = options.default_hourly_rate * chargeable / Decimal(60)
        method = DEFAULT_RATE_METHOD
    else:
        raise ConfigurationError(f"No late fee band covers {chargeable} chargeable minutes")

    fee = min(max(fee, Decimal(0)), options.max_fee_amount)
    fee = fee.quantize(CENTS, rounding=ROUND_HALF_UP)
    return LateFeeQuote(fee, late_minutes, chargeable, band, method)


def compute_late_fee(
    booking: Booking,
    actual_return_utc: datetime,
    options: Optional[LateReturnFeeOptions] = None,
) -> Decimal:
    """Fee amount owed for returning `booking` at `actual_return_utc`."""
    return calculate_late_fee(actual_return_utc, booking.end_at, options).fee_amount


def get_next_booking(db: Session, booking: Booking) -> Optional[Booking]:
    return db.query(Booking).filter(
        Booking.vehicle_id == booking.vehicle_id,
        Booking.id != booking.id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.start_at >= booking.end_at,
    ).order_by(Booking.start_at).first()


def assess_late_fee(
    db: Session,
    booking: Booking,
    check_in: CheckIn,
    options: Optional[LateReturnFeeOptions] = None,
) -> Optional[LateReturnFee]:
    """
    Mark the check-in as late when it is and record the fee once per booking.
    Joins the caller's transaction.

    Returns:
        The LateReturnFee, or None when nothing is owed
    """
    options = options or settings.late_return_fees
    quote = calculate_late_fee(check_in.occurred_at, booking.end_at, options)

    check_in.is_late_return = quote.is_late
    check_in.late_minutes = quote.late_minutes.quantize(CENTS, rounding=ROUND_HALF_UP) if quote.is_late else None

    if quote.is_late and options.enable_notifications:
        _notify_late_return(db, booking, check_in, quote, options)

    if quote.fee_amount <= 0:
        logger.info("late_return_no_fee", booking_id=str(booking.id), chargeable_minutes=str(quote.chargeable_minutes))
        return None

    existing = db.query(LateReturnFee).filter(LateReturnFee.booking_id == booking.id).first()
    if existing is not None:
        return existing

    fee = LateReturnFee(
        id=uuid.uuid4(),
        booking_id=booking.id,
        check_in_id=check_in.id,
        user_id=booking.user_id,
        vehicle_id=booking.vehicle_id,
        group_id=booking.group_id,
        late_duration_minutes=quote.late_duration_minutes,
        fee_amount=quote.fee_amount,
        original_fee_amount=quote.fee_amount,
        calculation_method=quote.calculation_method,
        status=LateReturnFeeStatus.pending.value,
    )
    db.add(fee)
    db.flush()

    publish_event(db, booking.user_id, LateFeeAssessedEvent(
        late_fee_id=fee.id,
        booking_id=booking.id,
        check_in_id=check_in.id,
        user_id=booking.user_id,
        group_id=booking.group_id,
        vehicle_id=booking.vehicle_id,
        late_minutes=quote.late_minutes.quantize(CENTS, rounding=ROUND_HALF_UP),
        chargeable_minutes=quote.chargeable_minutes.quantize(CENTS, rounding=ROUND_HALF_UP),
        fee_amount=quote.fee_amount,
        grace_period_minutes=options.grace_period_minutes,
        calculation_method=quote.calculation_method,
    ))
    create_audit_log(db, "late_fee", fee.id, "CREATE", actor_id=booking.user_id, source="system",
                     context={"booking_id": str(booking.id), "fee_amount": str(quote.fee_amount)})
    logger.info("late_fee_assessed", fee_id=str(fee.id), booking_id=str(booking.id), fee_amount=str(quote.fee_amount))
    return fee


def _notify_late_return(db: Session, booking: Booking, check_in: CheckIn, quote: LateFeeQuote, options: LateReturnFeeOptions):
    rounded = int(quote.late_minutes.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if quote.fee_amount > 0:
        fee_message = f" A late fee of ${quote.fee_amount:.2f} has been applied."
    else:
        fee_message = " No late fee has been applied because the return fell within the grace period."
    notify_user(db, booking.user_id, "late_return", {
        "booking_id": str(booking.id),
        "title": "Late return recorded",
        "message": f"You returned the vehicle {rounded} minutes late.{fee_message}",
    })

    if not options.notify_next_booking_holder:
        return
    next_booking = get_next_booking(db, booking)
    if next_booking is None or next_booking.user_id == booking.user_id:
        return
    publish_event(db, next_booking.user_id, VehicleReturnedLateEvent(
        booking_id=booking.id,
        next_booking_id=next_booking.id,
        vehicle_id=booking.vehicle_id,
        returned_at=check_in.occurred_at,
    ))
    notify_user(db, next_booking.user_id, "late_return_impact", {
        "booking_id": str(next_booking.id),
        "message": (
            f"The vehicle was returned {rounded} minutes late. Your booking at "
            f"{next_booking.start_at:%H:%M} UTC may be affected."
        ),
    })


def get_late_fee(db: Session, fee_id: uuid.UUID) -> LateReturnFee:
    fee = db.get(LateReturnFee, fee_id)
    if fee is None:
        raise NotFoundError("Late return fee not found")
    return fee


def list_user_late_fees(db: Session, user_id: uuid.UUID, limit: Optional[int] = None) -> List[LateReturnFee]:
    query = db.query(LateReturnFee).filter(LateReturnFee.user_id == user_id).order_by(LateReturnFee.created_at.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def list_booking_late_fees(db: Session, booking_id: uuid.UUID) -> List[LateReturnFee]:
    return db.query(LateReturnFee).filter(LateReturnFee.booking_id == booking_id).all()


def waive_late_fee(
    db: Session,
    fee_id: uuid.UUID,
    admin_id: uuid.UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LateReturnFee:
    """
    Waive a fee. The amount drops to zero and the original amount is kept.
    Waiving an already waived fee is a no-op.
    """
    fee = get_late_fee(db, fee_id)
    if fee.status == LateReturnFeeStatus.waived.value:
        logger.info("late_fee_already_waived", fee_id=str(fee_id))
        return fee

    now = ensure_utc(now or utcnow())
    if not fee.original_fee_amount:
        fee.original_fee_amount = fee.fee_amount
    fee.fee_amount = Decimal("0.00")
    fee.status = LateReturnFeeStatus.waived.value
    fee.waived_by = admin_id
    fee.waived_reason = reason
    fee.waived_at = now

    publish_event(db, fee.user_id, LateFeeWaivedEvent(
        late_fee_id=fee.id,
        booking_id=fee.booking_id,
        user_id=fee.user_id,
        waived_by=admin_id,
        original_fee_amount=fee.original_fee_amount,
        reason=reason,
    ))
    create_audit_log(db, "late_fee", fee.id, "WAIVE", actor_id=admin_id, source="api",
                     changes_json={"status": {"before": LateReturnFeeStatus.pending.value, "after": fee.status}},
                     context={"reason": reason}, timestamp_utc=now)
    db.commit()
    logger.info("late_fee_waived", fee_id=str(fee.id), admin_id=str(admin_id))
    return fee
