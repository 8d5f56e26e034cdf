"""
Vehicle and membership projections fed by integration events.
"""
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal

from cobook.models.models import GroupMemberProjection, RecurringBooking, VehicleProjection
from cobook.schemas.events import GroupMemberUpsertedEvent, VehicleUpsertedEvent
from cobook.services.projections import apply_group_member_event, apply_vehicle_event


def vehicle_event(seed, status="available", version=1, **kwargs):
    return VehicleUpsertedEvent(
        vehicle_id=seed.vehicle_id,
        group_id=seed.group_id,
        display_name="Shared Golf",
        status=status,
        source_version=version,
        **kwargs,
    )


def add_rule(db, seed, status="active", paused_until=None):
    rule = RecurringBooking(
        id=uuid.uuid4(),
        vehicle_id=seed.vehicle_id,
        group_id=seed.group_id,
        user_id=seed.bob,
        pattern="daily",
        interval_value=1,
        start_time=time(8, 0),
        end_time=time(9, 0),
        time_zone="UTC",
        recurrence_start_date=date(2030, 3, 1),
        status=status,
        paused_until=paused_until,
    )
    db.add(rule)
    db.commit()
    return rule


def test_new_vehicle_is_inserted(db, seed):
    vehicle_id = uuid.uuid4()
    applied = apply_vehicle_event(db, VehicleUpsertedEvent(
        vehicle_id=vehicle_id, group_id=seed.group_id, display_name="Van", source_version=3,
    ))

    assert applied
    stored = db.get(VehicleProjection, vehicle_id)
    assert stored.display_name == "Van"
    assert stored.status == "available"
    assert stored.source_version == 3


def test_stale_and_redelivered_events_are_ignored(db, seed):
    assert apply_vehicle_event(db, vehicle_event(seed, status="maintenance", version=5))

    assert not apply_vehicle_event(db, vehicle_event(seed, status="available", version=5))
    assert not apply_vehicle_event(db, vehicle_event(seed, status="available", version=4))
    assert db.get(VehicleProjection, seed.vehicle_id).status == "maintenance"


def test_maintenance_pauses_rules_until_available_again(db, seed):
    active = add_rule(db, seed)

    apply_vehicle_event(db, vehicle_event(seed, status="maintenance", version=1))
    db.refresh(active)
    assert active.status == "paused"
    assert active.paused_until is None

    apply_vehicle_event(db, vehicle_event(seed, status="available", version=2))
    db.refresh(active)
    assert active.status == "active"


def test_user_pause_survives_vehicle_return(db, seed):
    user_paused = add_rule(db, seed, status="paused", paused_until=datetime(2030, 4, 1, tzinfo=timezone.utc))

    apply_vehicle_event(db, vehicle_event(seed, status="maintenance", version=1))
    apply_vehicle_event(db, vehicle_event(seed, status="available", version=2))

    db.refresh(user_paused)
    assert user_paused.status == "paused"
    assert user_paused.paused_until is not None


def test_membership_upsert_and_deactivation(db, seed):
    alice = db.query(GroupMemberProjection).filter_by(user_id=seed.alice).one()

    assert apply_group_member_event(db, GroupMemberUpsertedEvent(
        membership_id=alice.id,
        group_id=seed.group_id,
        user_id=seed.alice,
        share_percentage=Decimal("0.4"),
        role="admin",
        source_version=1,
    ))
    db.refresh(alice)
    assert alice.share_percentage == Decimal("0.4")
    assert alice.role == "admin"

    assert apply_group_member_event(db, GroupMemberUpsertedEvent(
        membership_id=alice.id,
        group_id=seed.group_id,
        user_id=seed.alice,
        share_percentage=Decimal("0.4"),
        is_active=False,
        source_version=2,
    ))
    assert not apply_group_member_event(db, GroupMemberUpsertedEvent(
        membership_id=alice.id,
        group_id=seed.group_id,
        user_id=seed.alice,
        share_percentage=Decimal("0.4"),
        source_version=1,
    ))
    db.refresh(alice)
    assert alice.is_active is False
