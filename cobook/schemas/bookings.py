import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional
from enum import Enum, IntEnum

from pydantic import BaseModel, Field, field_validator, model_validator


# Enums
class BookingStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


# Statuses that hold the vehicle
ACTIVE_BOOKING_STATUSES = (BookingStatus.pending.value, BookingStatus.confirmed.value, BookingStatus.in_progress.value)


class BookingPriority(IntEnum):
    low = 0
    normal = 1
    high = 2
    emergency = 3


class RecurrencePattern(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    custom = "custom"


class RecurringBookingStatus(str, Enum):
    active = "active"
    paused = "paused"
    cancelled = "cancelled"
    completed = "completed"


class LateReturnFeeStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    waived = "waived"


class VehicleStatus(str, Enum):
    available = "available"
    maintenance = "maintenance"
    decommissioned = "decommissioned"


class MemberRole(str, Enum):
    member = "member"
    admin = "admin"


# Booking Schemas
class BookingCreate(BaseModel):
    vehicle_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    priority: BookingPriority = BookingPriority.normal
    is_emergency: bool = False
    emergency_reason: Optional[str] = Field(default=None, max_length=1000)
    purpose: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _emergency_needs_reason(self):
        if self.is_emergency and not (self.emergency_reason or "").strip():
            raise ValueError("emergency_reason is required for emergency bookings")
        return self


class BookingCancel(BaseModel):
    reason: Optional[str] = None


class BookingResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    group_id: uuid.UUID
    user_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    status: BookingStatus
    priority: int
    priority_score: Decimal
    is_emergency: bool
    emergency_reason: Optional[str] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None
    recurring_booking_id: Optional[uuid.UUID] = None
    booking_template_id: Optional[uuid.UUID] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ConflictCheckRequest(BaseModel):
    vehicle_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    exclude_booking_id: Optional[uuid.UUID] = None


class ConflictSummaryResponse(BaseModel):
    has_conflicts: bool
    conflicting_bookings: List[BookingResponse]


class AdmissionResponse(BaseModel):
    outcome: str  # admitted|admitted_with_displacement
    booking: BookingResponse
    cancelled_booking_ids: List[uuid.UUID] = []


class FreeSlotResponse(BaseModel):
    start_at: datetime
    end_at: datetime


# Check-in Schemas
class CheckOutRequest(BaseModel):
    occurred_at: Optional[datetime] = None
    odometer: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class CheckInRequest(BaseModel):
    returned_at: Optional[datetime] = None
    odometer: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class CheckInResponse(BaseModel):
    id: uuid.UUID
    booking_id: uuid.UUID
    type: str
    occurred_at: datetime
    odometer: Optional[int] = None
    notes: Optional[str] = None
    is_late_return: bool
    late_minutes: Optional[Decimal] = None

    class Config:
        from_attributes = True


# Late fee Schemas
class LateReturnFeeResponse(BaseModel):
    id: uuid.UUID
    booking_id: uuid.UUID
    check_in_id: uuid.UUID
    user_id: uuid.UUID
    vehicle_id: uuid.UUID
    group_id: uuid.UUID
    late_duration_minutes: int
    fee_amount: Decimal
    original_fee_amount: Optional[Decimal] = None
    calculation_method: Optional[str] = None
    status: LateReturnFeeStatus
    waived_by: Optional[uuid.UUID] = None
    waived_reason: Optional[str] = None
    waived_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CheckInResult(BaseModel):
    check_in: CheckInResponse
    late_fee: Optional[LateReturnFeeResponse] = None


class LateFeeWaive(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class LateFeeQuoteRequest(BaseModel):
    scheduled_end: datetime
    actual_return: datetime


class LateFeeQuoteResponse(BaseModel):
    fee_amount: Decimal
    late_minutes: Decimal
    chargeable_minutes: Decimal
    calculation_method: Optional[str] = None


# Recurring booking Schemas
class RecurringBookingCreate(BaseModel):
    vehicle_id: uuid.UUID
    pattern: RecurrencePattern
    interval_value: int = Field(default=1, ge=1, le=52)
    days_of_week: Optional[List[int]] = None  # Monday = 0
    start_time: time
    end_time: time
    time_zone: Optional[str] = None
    recurrence_start_date: date
    recurrence_end_date: Optional[date] = None
    purpose: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None

    @field_validator("days_of_week")
    @classmethod
    def _valid_days(cls, v):
        if v is None:
            return v
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("days_of_week entries must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(v))


class RecurringBookingPause(BaseModel):
    paused_until: Optional[datetime] = None


class RecurringBookingCancel(BaseModel):
    reason: Optional[str] = None
    cancel_future_bookings: bool = True


class RecurringBookingResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    group_id: uuid.UUID
    user_id: uuid.UUID
    pattern: RecurrencePattern
    interval_value: int
    days_of_week: Optional[List[int]] = None
    start_time: time
    end_time: time
    time_zone: str
    recurrence_start_date: date
    recurrence_end_date: Optional[date] = None
    status: RecurringBookingStatus
    paused_until: Optional[datetime] = None
    last_generated_until: Optional[datetime] = None
    last_generation_run_at: Optional[datetime] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class GenerationRunRequest(BaseModel):
    horizon_days: Optional[int] = Field(default=None, ge=1, le=365)


class GenerationSummaryResponse(BaseModel):
    rules_processed: int
    bookings_created: int
    gaps_skipped: int
    rules_failed: int
    rules_deferred: int


# Template Schemas
class BookingTemplateCreate(BaseModel):
    name: str = Field(max_length=100)
    vehicle_id: Optional[uuid.UUID] = None
    duration_minutes: int = Field(gt=0, le=60 * 24 * 14)
    preferred_start_time: time
    purpose: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    priority: BookingPriority = BookingPriority.normal


class BookingTemplateUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    vehicle_id: Optional[uuid.UUID] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=60 * 24 * 14)
    preferred_start_time: Optional[time] = None
    purpose: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    priority: Optional[BookingPriority] = None


class BookingTemplateResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    vehicle_id: Optional[uuid.UUID] = None
    duration_minutes: int
    preferred_start_time: time
    purpose: Optional[str] = None
    notes: Optional[str] = None
    priority: int
    usage_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class BookingFromTemplate(BaseModel):
    target_date: date
    vehicle_id: Optional[uuid.UUID] = None
    is_emergency: bool = False
    emergency_reason: Optional[str] = None
