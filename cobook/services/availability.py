"""
Availability index: per-vehicle overlap queries over committed bookings.
Intervals are half-open, [start, end); touching boundaries never conflict.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import uuid

from sqlalchemy.orm import Session

from ..models.models import Booking
from ..schemas.bookings import ACTIVE_BOOKING_STATUSES
from .time_rules import ensure_utc


def intervals_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    # Two intervals overlap if: start1 < end2 AND start2 < end1
    return start1 < end2 and start2 < end1


def find_overlapping(
    db: Session,
    vehicle_id: uuid.UUID,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> List[Booking]:
    """
    Get all non-cancelled, not yet completed bookings of a vehicle that
    intersect [start, end).

    Args:
        db: Database session
        vehicle_id: Vehicle to check
        start: Interval start (UTC)
        end: Interval end (UTC)
        exclude_booking_id: Optional booking to ignore (for updates)

    Returns:
        Overlapping bookings ordered by start time
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    query = db.query(Booking).filter(
        Booking.vehicle_id == vehicle_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.start_at < end,
        Booking.end_at > start,
    )
    if exclude_booking_id:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.order_by(Booking.start_at, Booking.created_at).all()


def list_vehicle_bookings(db: Session, vehicle_id: uuid.UUID, start: datetime, end: datetime) -> List[Booking]:
    """Calendar view of the bookings that hold the vehicle inside a window."""
    return find_overlapping(db, vehicle_id, start, end)


def free_slots(
    db: Session,
    vehicle_id: uuid.UUID,
    start: datetime,
    end: datetime,
    min_duration: timedelta = timedelta(minutes=30),
) -> List[Tuple[datetime, datetime]]:
    """
    Compute the free gaps of a vehicle inside [start, end).

    Returns:
        List of (slot_start, slot_end) at least `min_duration` long
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    if start >= end:
        return []

    slots = []
    cursor = start
    for booking in find_overlapping(db, vehicle_id, start, end):
        if booking.start_at > cursor and booking.start_at - cursor >= min_duration:
            slots.append((cursor, booking.start_at))
        if booking.end_at > cursor:
            cursor = booking.end_at
    if end > cursor and end - cursor >= min_duration:
        slots.append((cursor, end))
    return slots
