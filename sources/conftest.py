"""Shared pytest fixtures: a controllable clock and an initialised store."""

from datetime import datetime, timedelta, timezone

import pytest

from models import StoreConfig
from sensor_store import SensorStore

MAC = "AA:BB:CC:DD:EE:FF"
OTHER_MAC = "11:22:33:44:55:66"


class FakeClock:
    """Callable clock for SensorStore; tests move it by hand."""

    def __init__(self, start: datetime = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)):
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
def db_path(tmp_path):
    return tmp_path / "data" / "sensors.db"


@pytest.fixture
def store(db_path, clock):
    s = SensorStore(StoreConfig(storage_path=str(db_path)), clock=clock)
    s.initialize()
    yield s
    s.close()
