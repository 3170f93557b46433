import itertools
import threading
from datetime import datetime, timezone

import pytest

from app import create_app
from hub import Hub

# 2024-05-01 08:00 UTC
BASE_TS = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc).timestamp()
DAY = 86400


class FakeClock:
    def __init__(self, start: float = BASE_TS) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class TickClock:
    """Returns a strictly increasing second on every call."""

    def __init__(self, start: float = BASE_TS) -> None:
        self.start = start
        self._ticks = itertools.count()
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.start + next(self._ticks)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hub(clock):
    return Hub(clock=clock)


@pytest.fixture
def client(hub):
    app = create_app(hub=hub)
    app.config["TESTING"] = True
    return app.test_client()
