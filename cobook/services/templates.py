"""
Booking templates: saved drafts stamped into concrete booking requests.
"""
from datetime import date, datetime, timedelta
from typing import List, Optional
import uuid

import structlog
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from ..errors import NotFoundError, PermissionDeniedError, TransientPersistenceError, ValidationError
from ..models.models import BookingTemplate
from ..schemas.bookings import BookingPriority
from .booking_conflict import (
    AdmissionResult,
    Admitted,
    AdmittedWithDisplacement,
    BookingRequest,
    Invalid,
    admit_in_session,
)
from .time_rules import combine_date_time, utcnow

logger = structlog.get_logger(__name__)


def _validate_fields(duration_minutes: Optional[int], priority: Optional[int]) -> None:
    if duration_minutes is not None and duration_minutes <= 0:
        raise ValidationError("Template duration must be positive", field="duration_minutes")
    if priority is not None and int(priority) not in [p.value for p in BookingPriority]:
        raise ValidationError("Unknown priority", field="priority")


def get_template(db: Session, template_id: uuid.UUID, user_id: uuid.UUID) -> BookingTemplate:
    template = db.get(BookingTemplate, template_id)
    if template is None:
        raise NotFoundError("Template not found")
    if template.user_id != user_id:
        raise PermissionDeniedError("Template belongs to another user")
    return template


def list_templates(db: Session, user_id: uuid.UUID) -> List[BookingTemplate]:
    return db.query(BookingTemplate).filter(
        BookingTemplate.user_id == user_id
    ).order_by(BookingTemplate.usage_count.desc(), BookingTemplate.name).all()


def create_template(db: Session, user_id: uuid.UUID, data: dict) -> BookingTemplate:
    """
    Create a template for a user.

    Args:
        db: Database session
        user_id: Owner
        data: name, vehicle_id, duration_minutes, preferred_start_time, purpose, notes, priority

    Returns:
        Created BookingTemplate
    """
    _validate_fields(data.get("duration_minutes"), data.get("priority"))
    template = BookingTemplate(
        id=uuid.uuid4(),
        user_id=user_id,
        name=data["name"],
        vehicle_id=data.get("vehicle_id"),
        duration_minutes=data["duration_minutes"],
        preferred_start_time=data["preferred_start_time"],
        purpose=data.get("purpose"),
        notes=data.get("notes"),
        priority=int(data.get("priority") or BookingPriority.normal),
        usage_count=0,
    )
    db.add(template)
    db.commit()
    logger.info("template_created", template_id=str(template.id), user_id=str(user_id))
    return template


def update_template(db: Session, template_id: uuid.UUID, user_id: uuid.UUID, data: dict) -> BookingTemplate:
    """Apply a partial update; keys absent from `data` are left alone."""
    template = get_template(db, template_id, user_id)
    _validate_fields(data.get("duration_minutes"), data.get("priority"))
    for key, value in data.items():
        if key == "priority" and value is not None:
            value = int(value)
        setattr(template, key, value)
    db.commit()
    return template


def delete_template(db: Session, template_id: uuid.UUID, user_id: uuid.UUID) -> None:
    template = get_template(db, template_id, user_id)
    db.delete(template)
    db.commit()
    logger.info("template_deleted", template_id=str(template_id))


def instantiate_template(
    db: Session,
    template_id: uuid.UUID,
    target_date: date,
    user_id: uuid.UUID,
    vehicle_id: Optional[uuid.UUID] = None,
    is_emergency: bool = False,
    emergency_reason: Optional[str] = None,
    now: Optional[datetime] = None,
    time_zone: Optional[str] = None,
) -> AdmissionResult:
    """
    Turn a template into a booking on `target_date` via the conflict resolver.

    The template's vehicle wins over `vehicle_id`. The usage counter moves
    only when the booking is admitted, in the same transaction.
    """
    template = get_template(db, template_id, user_id)
    target_vehicle = template.vehicle_id or vehicle_id
    if target_vehicle is None:
        return Invalid(errors=[ValidationError("Vehicle is required when the template has none", field="vehicle_id")])
    if template.duration_minutes <= 0:
        return Invalid(errors=[ValidationError("Template duration must be positive", field="duration_minutes")])

    start_at = combine_date_time(target_date, template.preferred_start_time, time_zone)
    end_at = start_at + timedelta(minutes=template.duration_minutes)

    request = BookingRequest(
        vehicle_id=target_vehicle,
        user_id=user_id,
        start_at=start_at,
        end_at=end_at,
        priority=template.priority,
        is_emergency=is_emergency,
        emergency_reason=emergency_reason,
        purpose=template.purpose,
        notes=template.notes,
        booking_template_id=template.id,
    )

    try:
        result = admit_in_session(db, request, now or utcnow())
        if isinstance(result, (Admitted, AdmittedWithDisplacement)):
            template.usage_count = (template.usage_count or 0) + 1
            db.commit()
            logger.info("template_instantiated", template_id=str(template.id), booking_id=str(result.booking_id))
        else:
            db.rollback()
        return result
    except DBAPIError as exc:
        db.rollback()
        logger.error("template_instantiation_failed", template_id=str(template_id), error=str(exc))
        raise TransientPersistenceError("Booking store unavailable, retry later") from exc
