"""
Local projections of vehicles and group members, fed by integration events.
Consumers are idempotent: redelivered or stale events are ignored.
"""
import structlog
from sqlalchemy.orm import Session

from ..models.models import GroupMemberProjection, RecurringBooking, VehicleProjection
from ..schemas.bookings import RecurringBookingStatus, VehicleStatus
from ..schemas.events import GroupMemberUpsertedEvent, VehicleUpsertedEvent
from .audit import create_audit_log

logger = structlog.get_logger(__name__)


def _is_stale(current_version: int, incoming_version: int) -> bool:
    return current_version is not None and incoming_version <= current_version


def _pause_vehicle_rules(db: Session, vehicle: VehicleProjection) -> int:
    # System pause: no paused_until, lifted when the vehicle is available again
    rules = db.query(RecurringBooking).filter(
        RecurringBooking.vehicle_id == vehicle.id,
        RecurringBooking.status == RecurringBookingStatus.active.value,
    ).all()
    for rule in rules:
        rule.status = RecurringBookingStatus.paused.value
        rule.paused_until = None
        create_audit_log(db, "recurring_booking", rule.id, "PAUSE", source="system",
                         context={"vehicle_status": vehicle.status})
    return len(rules)


def _resume_vehicle_rules(db: Session, vehicle: VehicleProjection) -> int:
    rules = db.query(RecurringBooking).filter(
        RecurringBooking.vehicle_id == vehicle.id,
        RecurringBooking.status == RecurringBookingStatus.paused.value,
        RecurringBooking.paused_until.is_(None),
    ).all()
    for rule in rules:
        rule.status = RecurringBookingStatus.active.value
        create_audit_log(db, "recurring_booking", rule.id, "RESUME", source="system",
                         context={"vehicle_status": vehicle.status})
    return len(rules)


def apply_vehicle_event(db: Session, event: VehicleUpsertedEvent) -> bool:
    """
    Upsert the vehicle projection.

    Returns:
        True if the event changed the projection, False if it was stale
    """
    vehicle = db.get(VehicleProjection, event.vehicle_id)
    if vehicle is not None and _is_stale(vehicle.source_version, event.source_version):
        logger.info("vehicle_event_ignored", vehicle_id=str(event.vehicle_id), source_version=event.source_version)
        return False

    previous_status = vehicle.status if vehicle is not None else None
    if vehicle is None:
        vehicle = VehicleProjection(id=event.vehicle_id)
        db.add(vehicle)
    vehicle.group_id = event.group_id
    vehicle.display_name = event.display_name
    vehicle.status = event.status.value
    vehicle.source_version = event.source_version

    if previous_status != vehicle.status:
        if vehicle.status in (VehicleStatus.maintenance.value, VehicleStatus.decommissioned.value):
            paused = _pause_vehicle_rules(db, vehicle)
            if paused:
                logger.info("recurring_bookings_paused_for_vehicle", vehicle_id=str(vehicle.id), count=paused)
        elif previous_status is not None:
            resumed = _resume_vehicle_rules(db, vehicle)
            if resumed:
                logger.info("recurring_bookings_resumed_for_vehicle", vehicle_id=str(vehicle.id), count=resumed)

    db.commit()
    return True


def apply_group_member_event(db: Session, event: GroupMemberUpsertedEvent) -> bool:
    """Upsert the membership projection; same idempotency rules as vehicles."""
    member = db.get(GroupMemberProjection, event.membership_id)
    if member is not None and _is_stale(member.source_version, event.source_version):
        logger.info("group_member_event_ignored", membership_id=str(event.membership_id), source_version=event.source_version)
        return False

    if member is None:
        member = GroupMemberProjection(id=event.membership_id)
        db.add(member)
    member.group_id = event.group_id
    member.user_id = event.user_id
    member.share_percentage = event.share_percentage
    member.role = event.role.value
    member.is_active = event.is_active
    member.source_version = event.source_version
    db.commit()
    logger.info("group_member_projected", membership_id=str(member.id), is_active=member.is_active)
    return True
