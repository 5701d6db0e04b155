"""
Pytest configuration and shared fixtures.

This module provides fixtures and configuration used across all tests.
"""

import logging

import pytest
import pytest_asyncio

from localchat.conversations import ConversationStore

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "slow: mark test as slow (takes more than 1 second)")
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(autouse=True)
def configure_test_logging(caplog):
    """
    Configure logging for tests.

    Sets up log capture and configures log levels.
    This fixture runs automatically for all tests.
    """
    caplog.set_level(logging.DEBUG)
    yield


# ============================================================================
# Environment and Configuration
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """
    Point settings at a per-test data directory.

    Runs automatically so no test ever touches ~/.localchat or a project .env.
    """
    from localchat.config import clear_settings_cache

    clear_settings_cache()
    monkeypatch.setenv("LOCALCHAT_ENV_SOURCE", "environment")
    monkeypatch.setenv("LOCALCHAT_STORE_PATH", str(tmp_path / "settings-store.sqlite3"))
    yield
    clear_settings_cache()


# ============================================================================
# Store Fixtures
# ============================================================================


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int = 1000) -> int:
        self.now += millis
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    """An initialized store on a temporary database with a fake clock."""
    conversation_store = ConversationStore(tmp_path / "conversations.sqlite3", clock=clock)
    await conversation_store.initialize()
    yield conversation_store
    await conversation_store.notifier.drain()
    await conversation_store.close()


@pytest_asyncio.fixture
async def other_store(tmp_path, clock):
    """A second, independent store (e.g. the receiving side of an import)."""
    conversation_store = ConversationStore(tmp_path / "other.sqlite3", clock=clock)
    await conversation_store.initialize()
    yield conversation_store
    await conversation_store.close()
