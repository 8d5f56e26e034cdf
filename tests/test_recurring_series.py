"""
Creating, pausing, resuming and cancelling recurring series.
"""
from datetime import date, datetime, time, timedelta, timezone

import pytest

from cobook.errors import PermissionDeniedError, ValidationError
from cobook.models.models import Booking, RecurringBooking
from cobook.services.recurring_series import (
    cancel_recurring_booking,
    create_recurring_booking,
    list_generated_bookings,
    pause_recurring_booking,
    resume_recurring_booking,
)

NOW = datetime(2030, 3, 1, tzinfo=timezone.utc)


def weekly(seed, **overrides):
    data = {
        "vehicle_id": seed.vehicle_id,
        "pattern": "weekly",
        "interval_value": 1,
        "days_of_week": [2, 0, 0],
        "start_time": time(8, 0),
        "end_time": time(12, 0),
        "time_zone": "UTC",
        "recurrence_start_date": date(2030, 3, 1),
    }
    data.update(overrides)
    return data


def test_create_generates_up_to_default_horizon(db, seed):
    rule = create_recurring_booking(db, seed.bob, weekly(seed), now=NOW)

    assert rule.days_of_week == [0, 2]
    generated = list_generated_bookings(db, rule.id)
    # Four Mondays and four Wednesdays before 2030-03-29
    assert len(generated) == 8
    assert all(b.status == "confirmed" and b.user_id == seed.bob for b in generated)
    assert db.get(RecurringBooking, rule.id).last_generated_until == datetime(2030, 3, 29, tzinfo=timezone.utc)


@pytest.mark.parametrize("overrides,field", [
    ({"days_of_week": []}, "days_of_week"),
    ({"end_time": time(7, 0)}, "end_time"),
    ({"recurrence_end_date": date(2030, 3, 1)}, "recurrence_end_date"),
    ({"time_zone": "Mars/Olympus"}, "time_zone"),
    ({"interval_value": 0}, "interval_value"),
])
def test_invalid_rules(db, seed, overrides, field):
    with pytest.raises(ValidationError) as exc_info:
        create_recurring_booking(db, seed.bob, weekly(seed, **overrides), now=NOW)
    assert exc_info.value.field == field
    assert db.query(RecurringBooking).count() == 0


def test_outsider_cannot_create(db, seed):
    with pytest.raises(PermissionDeniedError):
        create_recurring_booking(db, seed.outsider, weekly(seed), now=NOW)


def test_pause_and_resume(db, seed):
    rule = create_recurring_booking(db, seed.bob, weekly(seed), now=NOW)

    with pytest.raises(ValidationError):
        pause_recurring_booking(db, rule.id, seed.bob, until=NOW - timedelta(days=1), now=NOW)
    with pytest.raises(PermissionDeniedError):
        pause_recurring_booking(db, rule.id, seed.alice, now=NOW)

    paused = pause_recurring_booking(db, rule.id, seed.bob, now=NOW)
    assert paused.status == "paused"
    assert paused.paused_until == NOW + timedelta(days=28)
    # Already generated bookings stay
    assert len(list_generated_bookings(db, rule.id)) == 8

    resumed = resume_recurring_booking(db, rule.id, seed.bob, now=NOW)
    assert resumed.status == "active"
    assert resumed.paused_until is None
    with pytest.raises(ValidationError):
        resume_recurring_booking(db, rule.id, seed.bob, now=NOW)


def test_cancel_soft_cancels_future_bookings_only(db, seed):
    rule = create_recurring_booking(db, seed.bob, weekly(seed), now=NOW)
    first = list_generated_bookings(db, rule.id)[0]
    first.status = "completed"
    db.commit()

    cancelled = cancel_recurring_booking(db, rule.id, seed.bob, reason="Moved away", now=datetime(2030, 3, 10, tzinfo=timezone.utc))

    assert cancelled.status == "cancelled"
    statuses = [b.status for b in db.query(Booking).filter_by(recurring_booking_id=rule.id).order_by(Booking.start_at)]
    # 03-04 completed, 03-06 started before the cancel date, the rest cancelled
    assert statuses == ["completed", "confirmed"] + ["cancelled"] * 6

    again = cancel_recurring_booking(db, rule.id, seed.bob, now=NOW)
    assert again.cancellation_reason == "Moved away"


def test_admin_may_cancel_for_member(db, seed):
    rule = create_recurring_booking(db, seed.bob, weekly(seed), now=NOW)

    cancel_recurring_booking(db, rule.id, seed.carol, cancel_future_bookings=False, now=NOW, is_admin=True)

    assert all(b.status == "confirmed" for b in list_generated_bookings(db, rule.id))
