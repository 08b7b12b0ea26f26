"""Shared pytest configuration and fixtures for the streaming client tests."""

import os
import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import Config  # noqa: E402
from stream.session import CancellationToken, ConnectionState, SessionState  # noqa: E402
from tests.fakes import FakeConnection, FakeConnector, FakeFrameSource, ManualClock  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_stream_env(monkeypatch):
    """Keep STREAM_* variables from the developer's shell out of Config."""
    for key in list(os.environ):
        if key.startswith("STREAM_"):
            monkeypatch.delenv(key)


@pytest.fixture
def session() -> SessionState:
    return SessionState(target_fps=5)


@pytest.fixture
def connected_session(session) -> SessionState:
    session.set_connection_state(ConnectionState.CONNECTED)
    return session


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def source() -> FakeFrameSource:
    return FakeFrameSource()


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def config() -> Config:
    return Config(
        reconnect_delay_seconds=1.0,
        fps_settle_seconds=0.01,
        connect_timeout_seconds=1.0,
    )
