"""
Audit entries written alongside state changes.
"""
import uuid
from datetime import date, datetime, time, timezone

from cobook.services.audit import create_audit_log, entity_history, verify_audit_log
from cobook.services.recurring_series import create_recurring_booking, pause_recurring_booking

NOW = datetime(2030, 3, 1, tzinfo=timezone.utc)


def test_rule_history_is_ordered_and_verifiable(db, seed):
    rule = create_recurring_booking(db, seed.bob, {
        "vehicle_id": seed.vehicle_id,
        "pattern": "daily",
        "start_time": time(8, 0),
        "end_time": time(9, 0),
        "time_zone": "UTC",
        "recurrence_start_date": date(2030, 3, 1),
    }, now=NOW)
    pause_recurring_booking(db, rule.id, seed.bob, now=NOW)
    db.expire_all()

    history = entity_history(db, "recurring_booking", rule.id)

    assert [entry.action for entry in history] == ["CREATE", "PAUSE"]
    assert all(entry.actor_id == seed.bob for entry in history)
    assert all(verify_audit_log(entry) for entry in history)


def test_tampered_entry_fails_verification(db, seed):
    rule = create_recurring_booking(db, seed.bob, {
        "vehicle_id": seed.vehicle_id,
        "pattern": "daily",
        "start_time": time(8, 0),
        "end_time": time(9, 0),
        "time_zone": "UTC",
        "recurrence_start_date": date(2030, 3, 1),
    }, now=NOW)
    entry = entity_history(db, "recurring_booking", rule.id)[0]

    entry.actor_id = seed.alice

    assert not verify_audit_log(entry)


def test_entries_sharing_a_timestamp_keep_write_order(db, seed):
    entity_id = uuid.uuid4()
    actions = ["CREATE", "CHECK_OUT", "CHECK_IN", "CANCEL", "PAUSE", "RESUME", "WAIVE", "DISPLACE"]
    for action in actions:
        create_audit_log(db, "booking", entity_id, action, actor_id=seed.alice, source="api", timestamp_utc=NOW)
        db.commit()

    assert [entry.action for entry in entity_history(db, "booking", entity_id)] == actions
