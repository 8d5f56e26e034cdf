"""
Versioned integration event contracts.

Outbound events are written to the notifications outbox; inbound events are
applied by idempotent consumers keyed on entity id. Delivery is at-least-once.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .bookings import MemberRole, VehicleStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class IntegrationEvent(BaseModel):
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: str
    version: int = 1
    occurred_at: datetime = Field(default_factory=_now)


# Outbound
class BookingCreatedEvent(IntegrationEvent):
    event_type: Literal["booking.created"] = "booking.created"
    booking_id: uuid.UUID
    vehicle_id: uuid.UUID
    group_id: uuid.UUID
    user_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    status: str
    priority: int
    is_emergency: bool = False
    recurring_booking_id: Optional[uuid.UUID] = None


class BookingCancelledEvent(IntegrationEvent):
    event_type: Literal["booking.cancelled"] = "booking.cancelled"
    booking_id: uuid.UUID
    vehicle_id: uuid.UUID
    group_id: uuid.UUID
    user_id: uuid.UUID
    cancelled_by: Optional[uuid.UUID] = None
    reason: str
    start_at: datetime
    end_at: datetime


class LateFeeAssessedEvent(IntegrationEvent):
    event_type: Literal["late_fee.assessed"] = "late_fee.assessed"
    late_fee_id: uuid.UUID
    booking_id: uuid.UUID
    check_in_id: uuid.UUID
    user_id: uuid.UUID
    group_id: uuid.UUID
    vehicle_id: uuid.UUID
    late_minutes: Decimal
    chargeable_minutes: Decimal
    fee_amount: Decimal
    grace_period_minutes: int
    calculation_method: Optional[str] = None


class LateFeeWaivedEvent(IntegrationEvent):
    event_type: Literal["late_fee.waived"] = "late_fee.waived"
    late_fee_id: uuid.UUID
    booking_id: uuid.UUID
    user_id: uuid.UUID
    waived_by: uuid.UUID
    original_fee_amount: Decimal
    reason: Optional[str] = None


class VehicleReturnedLateEvent(IntegrationEvent):
    event_type: Literal["booking.vehicle_returned_late"] = "booking.vehicle_returned_late"
    booking_id: uuid.UUID
    next_booking_id: uuid.UUID
    vehicle_id: uuid.UUID
    returned_at: datetime


class RecurringConflictsEvent(IntegrationEvent):
    event_type: Literal["recurring_booking.conflicts"] = "recurring_booking.conflicts"
    recurring_booking_id: uuid.UUID
    group_id: uuid.UUID
    skipped_starts: List[datetime]
    total_skipped: int


# Inbound
class VehicleUpsertedEvent(IntegrationEvent):
    event_type: Literal["vehicle.upserted"] = "vehicle.upserted"
    vehicle_id: uuid.UUID
    group_id: uuid.UUID
    display_name: Optional[str] = None
    status: VehicleStatus = VehicleStatus.available
    source_version: int = 0


class GroupMemberUpsertedEvent(IntegrationEvent):
    event_type: Literal["group_member.upserted"] = "group_member.upserted"
    membership_id: uuid.UUID
    group_id: uuid.UUID
    user_id: uuid.UUID
    share_percentage: Decimal = Field(ge=0, le=1)
    role: MemberRole = MemberRole.member
    is_active: bool = True
    source_version: int = 0
