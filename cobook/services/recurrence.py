"""
Recurrence generator.
Materializes bookings of active recurring rules up to a horizon, one
transaction per rule, advancing each rule's watermark exactly once.
"""
import calendar
import time as time_module
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional, Tuple
import uuid

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Booking, RecurringBooking, VehicleProjection
from ..schemas.bookings import BookingPriority, RecurrencePattern, RecurringBookingStatus, VehicleStatus
from ..schemas.events import RecurringConflictsEvent
from .availability import find_overlapping
from .booking_conflict import Admitted, AdmittedWithDisplacement, BookingRequest, Rejected, admit_in_session
from .notifications import notify_user, publish_event
from .time_rules import combine_date_time, ensure_utc, utc_midnight, utc_to_local, utcnow

logger = structlog.get_logger(__name__)

MAX_REPORTED_GAPS = 3


@dataclass
class GenerationGap:
    start_at: datetime
    end_at: datetime
    conflict_count: int
    reason: str = "conflict"


@dataclass
class RuleGenerationResult:
    created: List[Booking] = field(default_factory=list)
    gaps: List[GenerationGap] = field(default_factory=list)
    skipped: bool = False


@dataclass
class GenerationSummary:
    rules_processed: int = 0
    bookings_created: int = 0
    gaps_skipped: int = 0
    rules_failed: int = 0
    rules_deferred: int = 0


def generation_bounds(now: datetime, horizon_days: Optional[int] = None) -> Tuple[datetime, datetime]:
    """
    Returns:
        (generation_cutoff, look_back_cutoff)
    """
    horizon = horizon_days or settings.recurrence_horizon_days
    cutoff = utc_midnight(now.date() + timedelta(days=horizon))
    look_back = now - timedelta(hours=settings.recurrence_look_back_hours)
    return cutoff, look_back


def _matches(rule: RecurringBooking, day: date) -> bool:
    start_date = rule.recurrence_start_date
    if day < start_date:
        return False
    if rule.recurrence_end_date is not None and day >= rule.recurrence_end_date:
        return False

    interval = max(rule.interval_value or 1, 1)
    days_of_week = rule.days_of_week or []
    pattern = rule.pattern

    if pattern == RecurrencePattern.daily.value:
        return (day - start_date).days % interval == 0

    if pattern == RecurrencePattern.weekly.value:
        weekdays = days_of_week or [start_date.weekday()]
        if day.weekday() not in weekdays:
            return False
        anchor = start_date - timedelta(days=start_date.weekday())
        return ((day - anchor).days // 7) % interval == 0

    if pattern == RecurrencePattern.monthly.value:
        months = (day.year - start_date.year) * 12 + (day.month - start_date.month)
        if months % interval != 0:
            return False
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.day == min(start_date.day, last_day)

    if pattern == RecurrencePattern.custom.value:
        if (day - start_date).days % interval != 0:
            return False
        return not days_of_week or day.weekday() in days_of_week

    raise ValueError(f"Unknown recurrence pattern: {pattern}")


def expand_occurrences(
    rule: RecurringBooking,
    window_start: datetime,
    window_end: datetime,
) -> List[Tuple[datetime, datetime]]:
    """
    Expand a rule into UTC (start, end) pairs whose start lies in [window_start, window_end).

    Dates are walked in the rule's time zone so a local 08:00 stays 08:00 across DST.
    """
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)
    if window_start >= window_end:
        return []

    tz = rule.time_zone or settings.tz_default
    first_day = max(utc_to_local(window_start, tz).date() - timedelta(days=1), rule.recurrence_start_date)
    last_day = utc_to_local(window_end, tz).date() + timedelta(days=1)

    occurrences = []
    day = first_day
    while day <= last_day:
        if _matches(rule, day):
            start_at = combine_date_time(day, rule.start_time, tz)
            end_at = combine_date_time(day, rule.end_time, tz)
            if window_start <= start_at < window_end:
                occurrences.append((start_at, end_at))
        day += timedelta(days=1)
    return occurrences


def _due_clause(now: datetime, generation_cutoff: datetime, look_back_cutoff: datetime):
    return and_(
        or_(
            RecurringBooking.status == RecurringBookingStatus.active.value,
            and_(
                RecurringBooking.status == RecurringBookingStatus.paused.value,
                or_(RecurringBooking.paused_until.is_(None), RecurringBooking.paused_until <= now),
            ),
        ),
        RecurringBooking.recurrence_start_date <= generation_cutoff.date(),
        or_(RecurringBooking.recurrence_end_date.is_(None), RecurringBooking.recurrence_end_date >= now.date()),
        or_(
            RecurringBooking.last_generated_until.is_(None),
            RecurringBooking.last_generated_until < generation_cutoff,
            RecurringBooking.last_generation_run_at < look_back_cutoff,
        ),
    )


def select_rules_to_generate(
    db: Session,
    now: datetime,
    generation_cutoff: datetime,
    look_back_cutoff: datetime,
) -> List[RecurringBooking]:
    """Rules eligible for generation, oldest first."""
    return db.query(RecurringBooking).filter(
        _due_clause(now, generation_cutoff, look_back_cutoff)
    ).order_by(RecurringBooking.created_at, RecurringBooking.id).all()


def _is_due(db: Session, rule_id: uuid.UUID, now: datetime, generation_cutoff: datetime, look_back_cutoff: datetime) -> bool:
    return db.query(RecurringBooking.id).filter(
        RecurringBooking.id == rule_id,
        _due_clause(now, generation_cutoff, look_back_cutoff),
    ).first() is not None


def _already_materialized(conflicts: List[Booking], rule_id: uuid.UUID, start_at: datetime, end_at: datetime) -> bool:
    return bool(conflicts) and all(
        b.recurring_booking_id == rule_id and b.start_at == start_at and b.end_at == end_at
        for b in conflicts
    )


def generate_for_rule(
    db: Session,
    rule_id: uuid.UUID,
    now: datetime,
    generation_cutoff: datetime,
    look_back_cutoff: datetime,
) -> RuleGenerationResult:
    """
    Generate the occurrences of one rule inside the caller's transaction.

    Args:
        db: Database session (committed by the caller)
        rule_id: Recurring booking to process
        now: Current UTC instant
        generation_cutoff: Exclusive upper bound of generation
        look_back_cutoff: Runs older than this are considered stuck

    Returns:
        RuleGenerationResult with the created bookings and the skipped occurrences
    """
    result = RuleGenerationResult()
    # Another worker may have advanced the watermark since selection
    if not _is_due(db, rule_id, now, generation_cutoff, look_back_cutoff):
        result.skipped = True
        return result

    rule = db.get(RecurringBooking, rule_id)
    vehicle = db.get(VehicleProjection, rule.vehicle_id)
    if vehicle is None or vehicle.status != VehicleStatus.available.value:
        logger.info("recurrence_vehicle_unavailable", recurring_booking_id=str(rule.id), vehicle_id=str(rule.vehicle_id))
        result.skipped = True
        return result

    if rule.status == RecurringBookingStatus.paused.value:
        rule.status = RecurringBookingStatus.active.value
        rule.paused_until = None
        logger.info("recurring_booking_resumed", recurring_booking_id=str(rule.id))

    tz = rule.time_zone or settings.tz_default
    window_start = max(
        d for d in (rule.last_generated_until, combine_date_time(rule.recurrence_start_date, time.min, tz), now)
        if d is not None
    )

    for start_at, end_at in expand_occurrences(rule, window_start, generation_cutoff):
        conflicts = find_overlapping(db, rule.vehicle_id, start_at, end_at)
        if _already_materialized(conflicts, rule.id, start_at, end_at):
            continue

        admission = admit_in_session(db, BookingRequest(
            vehicle_id=rule.vehicle_id,
            user_id=rule.user_id,
            start_at=start_at,
            end_at=end_at,
            priority=BookingPriority.normal,
            purpose=rule.purpose,
            notes=rule.notes,
            recurring_booking_id=rule.id,
            source="scheduler",
        ), now)

        if isinstance(admission, (Admitted, AdmittedWithDisplacement)):
            result.created.append(admission.booking)
        elif isinstance(admission, Rejected):
            result.gaps.append(GenerationGap(start_at, end_at, len(admission.conflicts)))
            logger.info("recurrence_gap", recurring_booking_id=str(rule.id), start_at=start_at.isoformat(),
                        conflicts=len(admission.conflicts))
        else:
            result.gaps.append(GenerationGap(start_at, end_at, 0, reason=admission.message))
            logger.warning("recurrence_occurrence_invalid", recurring_booking_id=str(rule.id),
                           start_at=start_at.isoformat(), error=admission.message)

    watermark = rule.last_generated_until
    rule.last_generated_until = max(watermark, generation_cutoff) if watermark else generation_cutoff
    rule.last_generation_run_at = now
    # The end date is local and exclusive; completion waits for its local midnight
    if rule.recurrence_end_date is not None and combine_date_time(rule.recurrence_end_date, time.min, tz) <= generation_cutoff:
        rule.status = RecurringBookingStatus.completed.value
    return result


def notify_generation_gaps(db: Session, rule: RecurringBooking, gaps: List[GenerationGap]) -> None:
    """Tell the rule owner about the first few skipped occurrences."""
    if not gaps:
        return
    reported = gaps[:MAX_REPORTED_GAPS]
    lines = [f"- {g.start_at:%Y-%m-%d %H:%MZ} conflicts with {g.conflict_count} existing booking(s)" for g in reported]
    message = (
        f"We could not create one or more occurrences for your recurring booking starting at "
        f"{reported[0].start_at:%Y-%m-%d %H:%MZ} due to conflicts:\n" + "\n".join(lines)
    )
    publish_event(db, rule.user_id, RecurringConflictsEvent(
        recurring_booking_id=rule.id,
        group_id=rule.group_id,
        skipped_starts=[g.start_at for g in reported],
        total_skipped=len(gaps),
    ))
    notify_user(db, rule.user_id, "recurring_booking_conflict", {
        "recurring_booking_id": str(rule.id),
        "title": "Recurring booking conflict detected",
        "message": message,
    })


def run_recurrence_generation(
    session_factory: Callable[[], Session],
    now_utc: Optional[datetime] = None,
    horizon_days: Optional[int] = None,
    budget_seconds: Optional[float] = None,
) -> GenerationSummary:
    """
    Run one generation batch over every eligible rule.

    A failing rule is rolled back and retried on the next run; it never
    aborts the batch. Rules left when the time budget runs out are deferred.

    Args:
        session_factory: Callable returning a new Session (e.g. SessionLocal)
        now_utc: Current UTC instant
        horizon_days: Days ahead to materialize (defaults to settings)
        budget_seconds: Wall-clock budget of the batch (defaults to settings)

    Returns:
        GenerationSummary
    """
    now = ensure_utc(now_utc or utcnow())
    generation_cutoff, look_back_cutoff = generation_bounds(now, horizon_days)
    budget = budget_seconds or settings.recurrence_batch_budget_seconds
    started = time_module.monotonic()
    summary = GenerationSummary()

    with session_factory() as db:
        rule_ids = [r.id for r in select_rules_to_generate(db, now, generation_cutoff, look_back_cutoff)]

    logger.info("recurrence_generation_started", rules=len(rule_ids), cutoff=generation_cutoff.isoformat())

    for index, rule_id in enumerate(rule_ids):
        if time_module.monotonic() - started > budget:
            summary.rules_deferred = len(rule_ids) - index
            logger.warning("recurrence_generation_budget_exhausted", deferred=summary.rules_deferred)
            break

        with session_factory() as db:
            try:
                result = generate_for_rule(db, rule_id, now, generation_cutoff, look_back_cutoff)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                summary.rules_failed += 1
                logger.error("recurrence_rule_failed", recurring_booking_id=str(rule_id), error=str(exc))
                continue

            if result.skipped:
                continue
            summary.rules_processed += 1
            summary.bookings_created += len(result.created)
            summary.gaps_skipped += len(result.gaps)
            if result.created:
                logger.info("recurrence_bookings_generated", recurring_booking_id=str(rule_id), count=len(result.created))

            if result.gaps:
                try:
                    notify_generation_gaps(db, db.get(RecurringBooking, rule_id), result.gaps)
                    db.commit()
                except SQLAlchemyError as exc:
                    db.rollback()
                    logger.error("recurrence_gap_notification_failed", recurring_booking_id=str(rule_id), error=str(exc))

    logger.info(
        "recurrence_generation_finished",
        rules_processed=summary.rules_processed,
        bookings_created=summary.bookings_created,
        gaps_skipped=summary.gaps_skipped,
        rules_failed=summary.rules_failed,
        rules_deferred=summary.rules_deferred,
    )
    return summary
