"""
Recurrence expansion and the batch generator.
"""
import uuid
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from cobook.models.models import Booking, Notification, RecurringBooking, VehicleProjection
from cobook.services.recurrence import expand_occurrences, generation_bounds, run_recurrence_generation

NOW = datetime(2030, 3, 1, tzinfo=timezone.utc)  # a Friday


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def make_rule(db, seed, user_id=None, **overrides):
    values = dict(
        id=uuid.uuid4(),
        vehicle_id=seed.vehicle_id,
        group_id=seed.group_id,
        user_id=user_id or seed.bob,
        pattern="weekly",
        interval_value=1,
        days_of_week=[0, 2],
        start_time=time(8, 0),
        end_time=time(12, 0),
        time_zone="UTC",
        recurrence_start_date=date(2030, 3, 1),
        status="active",
    )
    values.update(overrides)
    rule = RecurringBooking(**values)
    db.add(rule)
    db.commit()
    return rule


def bookings_of(session_factory, rule_id):
    with session_factory() as fresh:
        return fresh.query(Booking).filter_by(recurring_booking_id=rule_id).order_by(Booking.start_at).all()


def test_generation_bounds():
    cutoff, look_back = generation_bounds(utc(2030, 3, 1, 15, 30), horizon_days=14)
    assert cutoff == utc(2030, 3, 15)
    assert look_back == utc(2030, 2, 27, 15, 30)


def test_weekly_rule_materializes_horizon(db, seed, session_factory):
    rule = make_rule(db, seed)

    summary = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    assert summary.rules_processed == 1
    assert summary.bookings_created == 4
    assert summary.gaps_skipped == 0
    starts = [(b.start_at, b.end_at) for b in bookings_of(session_factory, rule.id)]
    assert starts == [
        (utc(2030, 3, 4, 8), utc(2030, 3, 4, 12)),
        (utc(2030, 3, 6, 8), utc(2030, 3, 6, 12)),
        (utc(2030, 3, 11, 8), utc(2030, 3, 11, 12)),
        (utc(2030, 3, 13, 8), utc(2030, 3, 13, 12)),
    ]
    with session_factory() as fresh:
        stored = fresh.get(RecurringBooking, rule.id)
        assert stored.last_generated_until == utc(2030, 3, 15)
        assert stored.last_generation_run_at == NOW
        assert stored.status == "active"


def test_generation_is_idempotent(db, seed, session_factory):
    rule = make_rule(db, seed)
    run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    # Watermark already at the cutoff: rule is not selected again
    again = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)
    assert again.rules_processed == 0
    assert again.bookings_created == 0

    # A lost watermark does not duplicate what is already materialized
    with session_factory() as fresh:
        fresh.get(RecurringBooking, rule.id).last_generated_until = None
        fresh.commit()
    replay = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)
    assert replay.rules_processed == 1
    assert replay.bookings_created == 0
    assert replay.gaps_skipped == 0
    assert len(bookings_of(session_factory, rule.id)) == 4


def test_next_day_run_extends_only_new_days(db, seed, session_factory):
    rule = make_rule(db, seed)
    run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    later = run_recurrence_generation(session_factory, now_utc=NOW + timedelta(days=4), horizon_days=14)
    assert later.bookings_created == 1  # Monday 2030-03-18 enters the horizon
    assert bookings_of(session_factory, rule.id)[-1].start_at == utc(2030, 3, 18, 8)


def test_conflicting_occurrence_is_skipped_and_reported(db, seed, session_factory):
    blocker = Booking(
        id=uuid.uuid4(),
        vehicle_id=seed.vehicle_id,
        group_id=seed.group_id,
        user_id=seed.alice,
        start_at=utc(2030, 3, 6, 9),
        end_at=utc(2030, 3, 6, 10),
        status="confirmed",
        priority=1,
        priority_score=Decimal("150"),
    )
    db.add(blocker)
    db.commit()
    rule = make_rule(db, seed)

    summary = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    assert summary.bookings_created == 3
    assert summary.gaps_skipped == 1
    assert utc(2030, 3, 6, 8) not in [b.start_at for b in bookings_of(session_factory, rule.id)]
    with session_factory() as fresh:
        assert fresh.get(Booking, blocker.id).status == "confirmed"
        event = fresh.query(Notification).filter_by(template_key="recurring_booking.conflicts").one()
        assert event.user_id == seed.bob
        assert event.payload_json["total_skipped"] == 1
        pushes = fresh.query(Notification).filter_by(template_key="recurring_booking_conflict", channel="push").all()
        assert len(pushes) == 1
        assert "2030-03-06 08:00Z" in pushes[0].payload_json["message"]


def test_end_date_is_exclusive_and_completes_rule(db, seed, session_factory):
    rule = make_rule(db, seed, pattern="daily", days_of_week=None, recurrence_end_date=date(2030, 3, 4))

    summary = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    assert summary.bookings_created == 3
    assert [b.start_at.day for b in bookings_of(session_factory, rule.id)] == [1, 2, 3]
    with session_factory() as fresh:
        assert fresh.get(RecurringBooking, rule.id).status == "completed"


def test_future_pause_is_not_selected(db, seed, session_factory):
    rule = make_rule(db, seed, status="paused", paused_until=NOW + timedelta(days=5))

    summary = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    assert summary.rules_processed == 0
    assert bookings_of(session_factory, rule.id) == []


def test_elapsed_pause_resumes_rule(db, seed, session_factory):
    rule = make_rule(db, seed, status="paused", paused_until=NOW - timedelta(hours=1))

    summary = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    assert summary.bookings_created == 4
    with session_factory() as fresh:
        stored = fresh.get(RecurringBooking, rule.id)
        assert stored.status == "active"
        assert stored.paused_until is None


def test_vehicle_in_maintenance_holds_rule(db, seed, session_factory):
    rule = make_rule(db, seed)
    db.get(VehicleProjection, seed.vehicle_id).status = "maintenance"
    db.commit()

    summary = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    assert summary.bookings_created == 0
    with session_factory() as fresh:
        assert fresh.get(RecurringBooking, rule.id).last_generated_until is None


def test_exhausted_budget_defers_remaining_rules(db, seed, session_factory):
    make_rule(db, seed)
    make_rule(db, seed, user_id=seed.alice, days_of_week=[4], start_time=time(13, 0), end_time=time(15, 0))

    summary = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14, budget_seconds=1e-9)

    assert summary.rules_deferred == 2
    assert summary.bookings_created == 0


def test_monthly_rule_clamps_to_last_day():
    rule = RecurringBooking(
        pattern="monthly",
        interval_value=1,
        start_time=time(9, 0),
        end_time=time(10, 0),
        time_zone="UTC",
        recurrence_start_date=date(2030, 1, 31),
    )

    occurrences = expand_occurrences(rule, utc(2030, 1, 1), utc(2030, 5, 1))

    assert [start.date() for start, _ in occurrences] == [
        date(2030, 1, 31), date(2030, 2, 28), date(2030, 3, 31), date(2030, 4, 30),
    ]


def test_daily_interval_and_local_time_across_dst():
    rule = RecurringBooking(
        pattern="daily",
        interval_value=2,
        start_time=time(8, 0),
        end_time=time(9, 0),
        time_zone="Europe/Berlin",
        recurrence_start_date=date(2030, 3, 29),
    )

    occurrences = expand_occurrences(rule, utc(2030, 3, 28), utc(2030, 4, 3))

    # Berlin switches to summer time on 2030-03-31
    assert [start for start, _ in occurrences] == [
        utc(2030, 3, 29, 7), utc(2030, 3, 31, 6), utc(2030, 4, 2, 6),
    ]


def test_custom_pattern_keeps_listed_weekdays():
    rule = RecurringBooking(
        pattern="custom",
        interval_value=1,
        days_of_week=[4],
        start_time=time(22, 0),
        end_time=time(23, 30),
        time_zone="UTC",
        recurrence_start_date=date(2030, 3, 1),
    )

    occurrences = expand_occurrences(rule, utc(2030, 3, 1), utc(2030, 3, 15))

    assert occurrences == [
        (utc(2030, 3, 1, 22), utc(2030, 3, 1, 23, 30)),
        (utc(2030, 3, 8, 22), utc(2030, 3, 8, 23, 30)),
    ]


def test_rule_west_of_utc_completes_after_last_local_day(db, seed, session_factory):
    rule = make_rule(
        db, seed,
        pattern="daily",
        days_of_week=None,
        start_time=time(20, 0),
        end_time=time(22, 0),
        time_zone="America/Los_Angeles",
        recurrence_end_date=date(2030, 3, 4),
    )

    run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=3)
    with session_factory() as fresh:
        # 2030-03-03 20:00 local is past the UTC cutoff of this run
        assert fresh.get(RecurringBooking, rule.id).status == "active"

    run_recurrence_generation(session_factory, now_utc=utc(2030, 3, 2), horizon_days=3)

    assert [b.start_at for b in bookings_of(session_factory, rule.id)] == [
        utc(2030, 3, 2, 4), utc(2030, 3, 3, 4), utc(2030, 3, 4, 4),
    ]
    with session_factory() as fresh:
        assert fresh.get(RecurringBooking, rule.id).status == "completed"


def test_failed_rule_is_rolled_back_without_blocking_others(db, seed, session_factory):
    healthy = make_rule(db, seed)
    failing = make_rule(db, seed, user_id=seed.alice, days_of_week=[4], start_time=time(13, 0), end_time=time(15, 0))

    def locking_session_factory():
        session = session_factory()
        real_commit = session.commit

        def commit():
            if any(
                isinstance(obj, RecurringBooking) and obj.id == failing.id and obj.last_generated_until is not None
                for obj in session.identity_map.values()
            ):
                raise OperationalError("COMMIT", {}, Exception("database is locked"))
            real_commit()

        session.commit = commit
        return session

    summary = run_recurrence_generation(locking_session_factory, now_utc=NOW, horizon_days=14)

    assert summary.rules_failed == 1
    assert summary.rules_processed == 1
    assert len(bookings_of(session_factory, healthy.id)) == 4
    assert bookings_of(session_factory, failing.id) == []
    with session_factory() as fresh:
        assert fresh.get(RecurringBooking, failing.id).last_generated_until is None

    retry = run_recurrence_generation(session_factory, now_utc=NOW, horizon_days=14)

    assert retry.rules_failed == 0
    assert retry.rules_processed == 1
    assert [b.start_at for b in bookings_of(session_factory, failing.id)] == [utc(2030, 3, 1, 13), utc(2030, 3, 8, 13)]
