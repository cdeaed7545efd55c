from datetime import datetime, timedelta, timezone

import pytest

from queuectl.config import Config
from queuectl.storage import Storage


class FakeClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def storage(tmp_path):
    return Storage(str(tmp_path / "jobs.db"))


@pytest.fixture
def config(tmp_path):
    return Config(str(tmp_path / "config.json"))


@pytest.fixture
def clock():
    return FakeClock()
