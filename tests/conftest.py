"""
Shared fixtures: a settable clock and a fresh SQLite database per test.

A test module picks its clock's starting point with a module-level CLOCK_START.
"""

from datetime import datetime, timedelta, timezone

import pytest

from plan_acceptance.core.db import init_db
from plan_acceptance.core.ledger import VerificationLedger
from plan_acceptance.core.service import AcceptanceDirectory
from plan_acceptance.core.votes import VoteAggregator

DEFAULT_CLOCK_START = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for deterministic timestamps."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock(request):
    return FakeClock(getattr(request.module, "CLOCK_START", DEFAULT_CLOCK_START))


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "acceptance.db")
    init_db(path)
    return path


@pytest.fixture
def ledger(db_path, clock):
    return VerificationLedger(db_path, clock=clock)


@pytest.fixture
def votes(db_path, clock):
    return VoteAggregator(db_path, clock=clock)


@pytest.fixture
def directory(db_path, clock):
    return AcceptanceDirectory(db_path, clock=clock)
