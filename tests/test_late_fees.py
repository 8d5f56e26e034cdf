"""
Banded late-return pricing and fee waivers.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from cobook.config import LateReturnFeeBand, LateReturnFeeOptions
from cobook.errors import ConfigurationError, NotFoundError
from cobook.models.models import Booking, CheckIn, LateReturnFee, Notification
from cobook.services.late_fees import calculate_late_fee, compute_late_fee, waive_late_fee

END = datetime(2030, 3, 3, 12, tzinfo=timezone.utc)


def options(**overrides):
    values = dict(
        grace_period_minutes=15,
        max_fee_amount=Decimal("200"),
        bands=[
            LateReturnFeeBand(from_minutes=0, to_minutes=60, rate_per_hour=Decimal("2")),
            LateReturnFeeBand(from_minutes=60, to_minutes=None, rate_per_hour=Decimal("4")),
        ],
    )
    values.update(overrides)
    return LateReturnFeeOptions(**values)


def late_by(minutes):
    return END + timedelta(minutes=minutes)


def test_fee_uses_band_of_chargeable_minutes():
    quote = calculate_late_fee(late_by(80), END, options())

    # 65 chargeable minutes at 4/hour
    assert quote.fee_amount == Decimal("4.33")
    assert quote.chargeable_minutes == Decimal(65)
    assert quote.late_duration_minutes == 65
    assert quote.band.from_minutes == 60


def test_within_grace_period_is_free():
    assert calculate_late_fee(late_by(15), END, options()).fee_amount == Decimal("0.00")
    assert calculate_late_fee(late_by(-30), END, options()).fee_amount == Decimal("0.00")
    assert not calculate_late_fee(END, END, options()).is_late


def test_fee_is_capped():
    quote = calculate_late_fee(late_by(60 * 24 * 10), END, options(max_fee_amount=Decimal("50")))
    assert quote.fee_amount == Decimal("50.00")


def test_fee_never_decreases_with_lateness():
    opts = options()
    fees = [calculate_late_fee(late_by(m), END, opts).fee_amount for m in range(0, 600, 7)]
    assert fees == sorted(fees)


def test_flat_fee_is_added():
    opts = options(bands=[LateReturnFeeBand(from_minutes=0, rate_per_hour=Decimal("6"), flat_fee=Decimal("10"))])
    assert calculate_late_fee(late_by(45), END, opts).fee_amount == Decimal("13.00")


def test_band_gap_without_default_rate_is_configuration_error():
    opts = options(bands=[
        LateReturnFeeBand(from_minutes=0, to_minutes=30, rate_per_hour=Decimal("2")),
        LateReturnFeeBand(from_minutes=60, to_minutes=None, rate_per_hour=Decimal("4")),
    ])

    with pytest.raises(ConfigurationError):
        calculate_late_fee(late_by(60), END, opts)


def test_band_gap_falls_back_to_default_rate():
    opts = options(
        default_hourly_rate=Decimal("3"),
        bands=[
            LateReturnFeeBand(from_minutes=0, to_minutes=30, rate_per_hour=Decimal("2")),
            LateReturnFeeBand(from_minutes=60, to_minutes=None, rate_per_hour=Decimal("4")),
        ],
    )

    quote = calculate_late_fee(late_by(55), END, opts)
    assert quote.fee_amount == Decimal("2.00")
    assert quote.calculation_method == "DefaultRate"


def test_overlapping_bands_are_rejected_at_load():
    with pytest.raises(PydanticValidationError):
        options(bands=[
            LateReturnFeeBand(from_minutes=0, to_minutes=90, rate_per_hour=Decimal("2")),
            LateReturnFeeBand(from_minutes=60, to_minutes=None, rate_per_hour=Decimal("4")),
        ])
    with pytest.raises(PydanticValidationError):
        LateReturnFeeBand(from_minutes=60, to_minutes=30, rate_per_hour=Decimal("2"))


def test_compute_late_fee_for_booking():
    booking = Booking(end_at=END)
    assert compute_late_fee(booking, late_by(80), options()) == Decimal("4.33")


def _fee(db, seed):
    booking = Booking(
        id=uuid.uuid4(),
        vehicle_id=seed.vehicle_id,
        group_id=seed.group_id,
        user_id=seed.alice,
        start_at=END - timedelta(hours=4),
        end_at=END,
        status="completed",
        priority=1,
        priority_score=Decimal("150"),
    )
    check_in = CheckIn(
        id=uuid.uuid4(),
        booking_id=booking.id,
        user_id=seed.alice,
        vehicle_id=seed.vehicle_id,
        type="check_in",
        occurred_at=late_by(80),
    )
    fee = LateReturnFee(
        id=uuid.uuid4(),
        booking_id=booking.id,
        check_in_id=check_in.id,
        user_id=seed.alice,
        vehicle_id=seed.vehicle_id,
        group_id=seed.group_id,
        late_duration_minutes=65,
        fee_amount=Decimal("4.33"),
        original_fee_amount=Decimal("4.33"),
        status="pending",
    )
    db.add(booking)
    db.flush()
    db.add(check_in)
    db.flush()
    db.add(fee)
    db.commit()
    return fee


def test_waive_keeps_original_amount_and_is_idempotent(db, seed):
    fee = _fee(db, seed)

    waived = waive_late_fee(db, fee.id, seed.carol, "First time", now=END)
    assert waived.status == "waived"
    assert waived.fee_amount == Decimal("0.00")
    assert waived.original_fee_amount == Decimal("4.33")
    assert waived.waived_by == seed.carol

    again = waive_late_fee(db, fee.id, seed.carol, "Twice")
    assert again.waived_reason == "First time"
    assert db.query(Notification).filter_by(template_key="late_fee.waived").count() == 1


def test_waive_unknown_fee(db, seed):
    with pytest.raises(NotFoundError):
        waive_late_fee(db, uuid.uuid4(), seed.carol)
