import uuid
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import CurrentUser, get_current_user
from ..schemas.bookings import (
    AdmissionResponse,
    BookingFromTemplate,
    BookingTemplateCreate,
    BookingTemplateResponse,
    BookingTemplateUpdate,
)
from ..services import templates as template_service
from .bookings import admission_response

router = APIRouter(prefix="/booking-templates", tags=["booking-templates"])


@router.get("", response_model=List[BookingTemplateResponse])
def list_templates(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return template_service.list_templates(db, user.id)


@router.post("", response_model=BookingTemplateResponse, status_code=201)
def create_template(
    payload: BookingTemplateCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return template_service.create_template(db, user.id, payload.model_dump())


@router.get("/{template_id}", response_model=BookingTemplateResponse)
def get_template(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return template_service.get_template(db, template_id, user.id)


@router.put("/{template_id}", response_model=BookingTemplateResponse)
def update_template(
    template_id: uuid.UUID,
    payload: BookingTemplateUpdate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return template_service.update_template(db, template_id, user.id, payload.model_dump(exclude_unset=True))


@router.delete("/{template_id}")
def delete_template(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    template_service.delete_template(db, template_id, user.id)
    return {"message": "Template deleted successfully"}


@router.post("/{template_id}/book", response_model=AdmissionResponse, status_code=201)
def book_from_template(
    template_id: uuid.UUID,
    payload: BookingFromTemplate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    """Stamp the template onto a date and submit it for admission"""
    result = template_service.instantiate_template(
        db,
        template_id,
        payload.target_date,
        user.id,
        vehicle_id=payload.vehicle_id,
        is_emergency=payload.is_emergency,
        emergency_reason=payload.emergency_reason,
    )
    return admission_response(result)
