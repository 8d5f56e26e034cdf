import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import CurrentUser, get_current_user
from ..models.models import Booking
from ..schemas.bookings import (
    AdmissionResponse,
    BookingCancel,
    BookingCreate,
    BookingResponse,
    BookingStatus,
    CheckInRequest,
    CheckInResponse,
    CheckInResult,
    CheckOutRequest,
    ConflictCheckRequest,
    ConflictSummaryResponse,
    LateReturnFeeResponse,
)
from ..services.booking_conflict import (
    AdmissionResult,
    AdmittedWithDisplacement,
    BookingRequest,
    Invalid,
    Rejected,
    cancel_booking,
    check_conflicts,
    get_membership,
    try_admit_booking,
)
from ..services.checkins import check_in, check_out
from ..services.time_rules import ensure_utc

router = APIRouter(prefix="/bookings", tags=["bookings"])


def admission_response(result: AdmissionResult) -> AdmissionResponse:
    """Map an admission result to the response body, or raise 422/409."""
    if isinstance(result, Invalid):
        raise HTTPException(
            status_code=422,
            detail=[{"field": e.field, "message": e.message} for e in result.errors],
        )
    if isinstance(result, Rejected):
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Booking conflicts with existing bookings",
                "reason": result.reason,
                "conflicting_booking_ids": [str(b.id) for b in result.conflicts],
            },
        )
    cancelled = result.cancelled_ids if isinstance(result, AdmittedWithDisplacement) else []
    return AdmissionResponse(
        outcome=result.outcome,
        booking=BookingResponse.model_validate(result.booking),
        cancelled_booking_ids=cancelled,
    )


def _get_visible_booking(db: Session, booking_id: uuid.UUID, user: CurrentUser) -> Booking:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.user_id != user.id and not user.is_admin and get_membership(db, booking.group_id, user.id) is None:
        raise HTTPException(status_code=403, detail="Forbidden")
    return booking


@router.post("", response_model=AdmissionResponse, status_code=201)
def create_booking(
    payload: BookingCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """Request a booking; emergencies may displace weaker bookings"""
    result = try_admit_booking(db, BookingRequest(
        vehicle_id=payload.vehicle_id,
        user_id=user.id,
        start_at=payload.start_at,
        end_at=payload.end_at,
        priority=payload.priority,
        is_emergency=payload.is_emergency,
        emergency_reason=payload.emergency_reason,
        purpose=payload.purpose,
        notes=payload.notes,
    ))
    return admission_response(result)


@router.post("/conflicts", response_model=ConflictSummaryResponse)
def check_booking_conflicts(
    payload: ConflictCheckRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """Dry run: which active bookings overlap the interval"""
    if ensure_utc(payload.start_at) >= ensure_utc(payload.end_at):
        raise HTTPException(status_code=422, detail="start_at must be before end_at")
    summary = check_conflicts(db, payload.vehicle_id, payload.start_at, payload.end_at, payload.exclude_booking_id)
    return ConflictSummaryResponse(
        has_conflicts=summary.has_conflicts,
        conflicting_bookings=[BookingResponse.model_validate(b) for b in summary.conflicting_bookings],
    )


@router.get("", response_model=List[BookingResponse])
def list_my_bookings(
    status: Optional[BookingStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    query = db.query(Booking).filter(Booking.user_id == user.id)
    if status:
        query = query.filter(Booking.status == status.value)
    return query.order_by(Booking.start_at.desc()).limit(limit).all()


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return _get_visible_booking(db, booking_id, user)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel(
    booking_id: uuid.UUID,
    payload: BookingCancel,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return cancel_booking(db, booking_id, user.id, payload.reason, is_admin=user.is_admin)


@router.post("/{booking_id}/check-out", response_model=CheckInResponse)
def start_trip(
    booking_id: uuid.UUID,
    payload: CheckOutRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return check_out(db, booking_id, user.id, at=payload.occurred_at, odometer=payload.odometer, notes=payload.notes)


@router.post("/{booking_id}/check-in", response_model=CheckInResult)
def end_trip(
    booking_id: uuid.UUID,
    payload: CheckInRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """Return the vehicle; a late return beyond the grace period is charged once"""
    outcome = check_in(db, booking_id, user.id, returned_at=payload.returned_at, odometer=payload.odometer, notes=payload.notes)
    return CheckInResult(
        check_in=CheckInResponse.model_validate(outcome.check_in),
        late_fee=LateReturnFeeResponse.model_validate(outcome.late_fee) if outcome.late_fee else None,
    )
