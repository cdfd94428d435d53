import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "habits-tracker" / "scripts"))

from habits_engine import HabitTracker  # noqa: E402
from habits_store import HabitStore  # noqa: E402


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    s = HabitStore.open(tmp_path / "habits.sqlite3")
    yield s
    s.close()


@pytest.fixture
def tracker(store, clock):
    return HabitTracker(store, clock=clock)
