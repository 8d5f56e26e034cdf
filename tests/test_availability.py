"""
Overlap queries and free-slot computation over a vehicle's bookings.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from cobook.models.models import Booking
from cobook.services.availability import find_overlapping, free_slots, intervals_overlap


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def add_booking(db, seed, start, end, status="confirmed", user_id=None):
    booking = Booking(
        id=uuid.uuid4(),
        vehicle_id=seed.vehicle_id,
        group_id=seed.group_id,
        user_id=user_id or seed.alice,
        start_at=start,
        end_at=end,
        status=status,
        priority=1,
        priority_score=Decimal("150"),
    )
    db.add(booking)
    db.commit()
    return booking


def test_touching_intervals_do_not_overlap():
    assert not intervals_overlap(utc(2030, 3, 1, 8), utc(2030, 3, 1, 10), utc(2030, 3, 1, 10), utc(2030, 3, 1, 12))
    assert intervals_overlap(utc(2030, 3, 1, 8), utc(2030, 3, 1, 10), utc(2030, 3, 1, 9, 59), utc(2030, 3, 1, 12))


def test_find_overlapping_returns_active_bookings_only(db, seed):
    live = add_booking(db, seed, utc(2030, 3, 2, 8), utc(2030, 3, 2, 12))
    add_booking(db, seed, utc(2030, 3, 2, 9), utc(2030, 3, 2, 11), status="cancelled")
    add_booking(db, seed, utc(2030, 3, 2, 7), utc(2030, 3, 2, 9), status="completed")

    found = find_overlapping(db, seed.vehicle_id, utc(2030, 3, 2, 10), utc(2030, 3, 2, 14))
    assert [b.id for b in found] == [live.id]


def test_find_overlapping_boundaries_and_exclusion(db, seed):
    booking = add_booking(db, seed, utc(2030, 3, 2, 8), utc(2030, 3, 2, 12))

    assert find_overlapping(db, seed.vehicle_id, utc(2030, 3, 2, 12), utc(2030, 3, 2, 13)) == []
    assert find_overlapping(db, seed.vehicle_id, utc(2030, 3, 2, 6), utc(2030, 3, 2, 8)) == []
    assert find_overlapping(db, seed.vehicle_id, utc(2030, 3, 2, 9), utc(2030, 3, 2, 10), exclude_booking_id=booking.id) == []


def test_unknown_vehicle_has_no_bookings(db, seed):
    assert find_overlapping(db, uuid.uuid4(), utc(2030, 3, 2), utc(2030, 3, 3)) == []


def test_free_slots_between_bookings(db, seed):
    add_booking(db, seed, utc(2030, 3, 2, 8), utc(2030, 3, 2, 10))
    add_booking(db, seed, utc(2030, 3, 2, 10, 15), utc(2030, 3, 2, 12))
    add_booking(db, seed, utc(2030, 3, 2, 14), utc(2030, 3, 2, 16))

    slots = free_slots(db, seed.vehicle_id, utc(2030, 3, 2, 6), utc(2030, 3, 2, 18), timedelta(minutes=30))

    # The 15 minute hole at 10:00 is too short
    assert slots == [
        (utc(2030, 3, 2, 6), utc(2030, 3, 2, 8)),
        (utc(2030, 3, 2, 12), utc(2030, 3, 2, 14)),
        (utc(2030, 3, 2, 16), utc(2030, 3, 2, 18)),
    ]


def test_free_slots_with_booking_covering_window(db, seed):
    add_booking(db, seed, utc(2030, 3, 2, 0), utc(2030, 3, 3, 0))
    assert free_slots(db, seed.vehicle_id, utc(2030, 3, 2, 6), utc(2030, 3, 2, 18)) == []
