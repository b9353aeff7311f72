"""Pytest configuration and shared fixtures."""
import os

# Keep the app's module-level engine off the developer's database file
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from farm_safety.database import Base  # noqa: E402
from farm_safety.models.audit import AuditEntryRecord  # noqa: E402,F401
from farm_safety.models.domain import (  # noqa: E402,F401
    ApprovalRequestRecord,
    JidokaEventRecord,
    RollbackPlanRecord,
    SensorReadingRecord,
)
from farm_safety.models.enums import ReadingType, Unit  # noqa: E402
from farm_safety.repositories.memory import InMemoryStore  # noqa: E402
from farm_safety.repositories.sql import SqlAlchemyStore  # noqa: E402
from farm_safety.safety.readings import SensorReading  # noqa: E402
from farm_safety.services.safety_service import SafetyService  # noqa: E402
from farm_safety.timestamps import to_iso  # noqa: E402

START = datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock so expiry and cooldowns are deterministic."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test, shared by every session the store opens."""
    # In-memory SQLite for fast tests
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield sessionmaker(bind=engine)

    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()

    yield session

    session.close()


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def sql_store(session_factory):
    return SqlAlchemyStore(session_factory)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def service(memory_store, clock, notifications):
    return SafetyService(
        memory_store,
        clock=clock,
        notify=lambda kind, record, summary: notifications.append((kind, record)),
    )


@pytest.fixture
def make_reading(clock):
    """Build a reading stamped with the current fake time."""
    def _make(sensor_id, reading_type, value, unit, **extra):
        return SensorReading(
            timestamp=to_iso(clock()),
            sensor_id=sensor_id,
            reading_type=reading_type,
            value=value,
            unit=unit,
            **extra,
        )
    return _make


@pytest.fixture
def report_normal(service, make_reading):
    """Report healthy soil moisture and air temperature so guardrails have fresh data."""
    def _report(sensor_id="soil-1"):
        return service.report_readings([
            make_reading(sensor_id, ReadingType.MOISTURE, 45, Unit.PERCENT),
            make_reading(sensor_id, ReadingType.TEMPERATURE, 60, Unit.FAHRENHEIT),
        ])
    return _report
