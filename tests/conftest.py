import os
from datetime import date, datetime

# Settings are read at import time, so the environment goes first.
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REMINDERS_ENABLED", "false")

import pytest

from medtrack.core.clock import Clock
from medtrack.db.database import build_engine, build_sessionmaker, init_models
from medtrack.medications import crud
from medtrack.medications.schemas import MedicationCreate


class FixedClock(Clock):
    """Clock pinned to a settable instant."""

    def __init__(self, current: datetime):
        super().__init__()
        self.current = current

    def now(self) -> datetime:
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current


class RecordingNotifier:
    def __init__(self):
        self.due = []
        self.resolved = []

    async def dose_due(self, event):
        self.due.append(event)

    async def dose_resolved(self, event):
        self.resolved.append(event)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path, anyio_backend):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'medtrack-test.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 1, 8, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_medication(db):
    """Factory creating a medication (default: Lisinopril 10 mg at 08:00 and 20:00)."""

    async def _make(
        *,
        user_id="user-1",
        name="Lisinopril",
        times=("08:00", "20:00"),
        start_date=date(2024, 1, 1),
        end_date=None,
        refill_enabled=False,
        current_supply=0,
        days_before_empty=7,
    ):
        data = MedicationCreate(
            name=name,
            dosage={"amount": 10, "unit": "mg"},
            frequency="twice_daily",
            schedule=[{"time": t} for t in times],
            start_date=start_date,
            end_date=end_date,
            refill_reminder={
                "enabled": refill_enabled,
                "current_supply": current_supply,
                "days_before_empty": days_before_empty,
            },
        )
        return await crud.create_medication(db, user_id=user_id, data=data)

    return _make
