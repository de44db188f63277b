"""Shared fixtures for tempo tests."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from tempo import Store


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch, tmp_path):
    """Keep tests away from the real user database."""
    monkeypatch.delenv("TEMPO_DB", raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 14, 15, 30, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path, clock):
    s = Store(tmp_path / "tempo.db", clock=clock)
    yield s
    s.close()


@pytest.fixture
def system_tz(monkeypatch):
    """Switch the process timezone to a POSIX TZ string for one test."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")

    def switch(spec):
        monkeypatch.setenv("TZ", spec)
        time.tzset()

    yield switch
    monkeypatch.undo()
    time.tzset()
