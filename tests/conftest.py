"""
Shared fixtures for credit engine tests.
"""

import os
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from tale_forge_credits.config.loader import default_credit_config
from tale_forge_credits.core.coordinator import CreditCoordinator
from tale_forge_credits.storage.repository import initialize_schema


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_path():
    """Fresh database with the schema applied."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "credits.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_coordinator(db_path, clock):
    """Build a coordinator over the test database with config overrides."""
    sleeps = []

    def _make(**overrides):
        config = replace(default_credit_config(), **overrides)
        coordinator = CreditCoordinator.from_config(
            config, db_path, clock=clock, sleep=sleeps.append
        )
        coordinator.sleeps = sleeps
        return coordinator

    return _make
