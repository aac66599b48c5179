"""Shared fixtures: a controllable clock and a fresh in-memory engine."""

from datetime import datetime, timedelta, timezone

import pytest

from operator_engine.config import EngineSettings
from operator_engine.engine.service import OperatorEngine
from operator_engine.store.sqlite import EngineStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = EngineStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def engine(store, clock):
    eng = OperatorEngine(
        store=store,
        settings=EngineSettings(db_path=":memory:", log_json=False),
        clock=clock,
    )
    yield eng
    eng.flush()
