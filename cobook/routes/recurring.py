import uuid
from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db, get_session_factory
from ..auth.security import CurrentUser, get_current_user, require_roles
from ..schemas.bookings import (
    BookingResponse,
    GenerationRunRequest,
    GenerationSummaryResponse,
    RecurringBookingCancel,
    RecurringBookingCreate,
    RecurringBookingPause,
    RecurringBookingResponse,
)
from ..services import recurring_series
from ..services.recurrence import run_recurrence_generation

router = APIRouter(prefix="/recurring-bookings", tags=["recurring-bookings"])


@router.post("", response_model=RecurringBookingResponse, status_code=201)
def create_recurring(
    payload: RecurringBookingCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """Create a rule; occurrences up to the horizon are generated immediately"""
    return recurring_series.create_recurring_booking(db, user.id, payload.model_dump())


@router.get("", response_model=List[RecurringBookingResponse])
def list_recurring(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return recurring_series.list_for_user(db, user.id)


@router.post("/generate", response_model=GenerationSummaryResponse)
def trigger_generation(
    payload: GenerationRunRequest,
    session_factory=Depends(get_session_factory),
    _=Depends(require_roles("admin")),
):
    """Run one generation batch now (normally done by the scheduler)"""
    summary = run_recurrence_generation(session_factory, horizon_days=payload.horizon_days)
    return GenerationSummaryResponse(**asdict(summary))


@router.get("/{recurring_booking_id}", response_model=RecurringBookingResponse)
def get_recurring(
    recurring_booking_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return recurring_series.get_recurring_booking(db, recurring_booking_id, user.id, user.is_admin)


@router.get("/{recurring_booking_id}/bookings", response_model=List[BookingResponse])
def get_generated_bookings(
    recurring_booking_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    recurring_series.get_recurring_booking(db, recurring_booking_id, user.id, user.is_admin)
    return recurring_series.list_generated_bookings(db, recurring_booking_id)


@router.post("/{recurring_booking_id}/pause", response_model=RecurringBookingResponse)
def pause_recurring(
    recurring_booking_id: uuid.UUID,
    payload: RecurringBookingPause,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return recurring_series.pause_recurring_booking(
        db, recurring_booking_id, user.id, until=payload.paused_until, is_admin=user.is_admin
    )


@router.post("/{recurring_booking_id}/resume", response_model=RecurringBookingResponse)
def resume_recurring(
    recurring_booking_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return recurring_series.resume_recurring_booking(db, recurring_booking_id, user.id, is_admin=user.is_admin)


@router.post("/{recurring_booking_id}/cancel", response_model=RecurringBookingResponse)
def cancel_recurring(
    recurring_booking_id: uuid.UUID,
    payload: RecurringBookingCancel,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return recurring_series.cancel_recurring_booking(
        db,
        recurring_booking_id,
        user.id,
        reason=payload.reason,
        cancel_future_bookings=payload.cancel_future_bookings,
        is_admin=user.is_admin,
    )
