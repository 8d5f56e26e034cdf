"""
Shared fixtures: a throwaway SQLite database per test, seeded with one vehicle
and a three-member co-ownership group.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-that-is-long-enough-for-hs256")

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cobook.db import Base
from cobook.models.models import GroupMemberProjection, VehicleProjection


NOW = datetime(2030, 3, 1, 0, 0, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'bookings.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seed(db):
    """
    One available vehicle in one group.
    alice: member, 50% share; bob: member, 30%; carol: admin, 20%.
    """
    group_id = uuid.uuid4()
    vehicle = VehicleProjection(id=uuid.uuid4(), group_id=group_id, display_name="Shared Golf", status="available")
    db.add(vehicle)

    users = {}
    for name, share, role in (("alice", "0.5", "member"), ("bob", "0.3", "member"), ("carol", "0.2", "admin")):
        user_id = uuid.uuid4()
        db.add(GroupMemberProjection(
            id=uuid.uuid4(),
            group_id=group_id,
            user_id=user_id,
            share_percentage=Decimal(share),
            role=role,
            is_active=True,
        ))
        users[name] = user_id

    outsider = uuid.uuid4()
    db.commit()
    return SimpleNamespace(group_id=group_id, vehicle_id=vehicle.id, outsider=outsider, **users)
