"""Shared fixtures for progression tests."""

import pytest

from progression.results.service import ProgressionService
from progression.settings import ProgressionSettings
from progression.tests.helpers import FakeClock
from shared.db import Database


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "progression.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return ProgressionSettings(database_path=str(tmp_path / "progression.db"))


@pytest.fixture
def service(db, settings, clock):
    return ProgressionService(db, settings, clock=clock)
