"""
Pytest configuration and shared fixtures for Assistant Core tests.

This module provides fixtures that are available to all test modules.
"""

import os

import pytest

from assistant_core.config import Settings, reset_settings
from assistant_core.models import new_id
from tests.fakes import (
    TEST_API_KEY,
    FakeClock,
    InMemoryStore,
    RecordingTransport,
    ScriptedEngine,
    make_settings,
)

# Set test environment before anything reads settings
os.environ["APP_ENV"] = "test"
os.environ.setdefault("API_KEY", TEST_API_KEY)


@pytest.fixture(autouse=True)
def _reset_settings():
    """Reset the settings singleton around each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def conversation_id() -> str:
    return new_id()
