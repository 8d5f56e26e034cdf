import uuid
from datetime import datetime, timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import CurrentUser, get_current_user
from ..models.models import VehicleProjection
from ..schemas.bookings import BookingResponse, FreeSlotResponse
from ..services.availability import free_slots, list_vehicle_bookings
from ..services.booking_conflict import get_membership
from ..services.time_rules import ensure_utc

router = APIRouter(prefix="/vehicles", tags=["vehicles"])

MAX_WINDOW = timedelta(days=92)


def _check_access(db: Session, vehicle_id: uuid.UUID, user: CurrentUser) -> VehicleProjection:
    vehicle = db.get(VehicleProjection, vehicle_id)
    if not vehicle:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    if not user.is_admin and get_membership(db, vehicle.group_id, user.id) is None:
        raise HTTPException(status_code=403, detail="Forbidden")
    return vehicle


def _check_window(start: datetime, end: datetime) -> None:
    start, end = ensure_utc(start), ensure_utc(end)
    if start >= end:
        raise HTTPException(status_code=422, detail="start must be before end")
    if end - start > MAX_WINDOW:
        raise HTTPException(status_code=422, detail="Window is limited to 92 days")


@router.get("/{vehicle_id}/bookings", response_model=List[BookingResponse])
def vehicle_calendar(
    vehicle_id: uuid.UUID,
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """Active bookings holding the vehicle inside [start, end)"""
    _check_window(start, end)
    _check_access(db, vehicle_id, user)
    return list_vehicle_bookings(db, vehicle_id, start, end)


@router.get("/{vehicle_id}/availability", response_model=List[FreeSlotResponse])
def vehicle_availability(
    vehicle_id: uuid.UUID,
    start: datetime = Query(...),
    end: datetime = Query(...),
    min_duration_minutes: int = Query(30, ge=1, le=60 * 24),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """Free slots of at least `min_duration_minutes`"""
    _check_window(start, end)
    _check_access(db, vehicle_id, user)
    slots = free_slots(db, vehicle_id, start, end, timedelta(minutes=min_duration_minutes))
    return [FreeSlotResponse(start_at=s, end_at=e) for s, e in slots]
