"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- File-based SQLite database with the HookChat schema
- Async session factory and ChatStore bound to it
- A fixed DeviceInfo so payloads are deterministic
"""

import os
import tempfile
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from hookchat.db.connection import create_engine_for_url, create_session_factory
from hookchat.db.models import Base
from hookchat.services.chat_store import ChatStore
from hookchat.utils.device import DeviceInfo


# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that take a long time to run"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def file_based_db() -> Generator[str, None, None]:
    """Create a file-based SQLite database with all tables.

    Unlike in-memory databases, this persists across connections, so the
    async engine used by tests sees the schema created here.
    """
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    engine.dispose()

    yield path

    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
def session_factory(file_based_db: str):
    """Async session factory on the temporary database.

    NullPool keeps connections from outliving the test's event loop.
    """
    engine = create_engine_for_url(
        f"sqlite+aiosqlite:///{file_based_db}", poolclass=NullPool,
    )
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> ChatStore:
    """ChatStore under test."""
    return ChatStore(session_factory)


@pytest.fixture
def device() -> DeviceInfo:
    """Deterministic device identity."""
    return DeviceInfo(
        device_id="device-123",
        platform="Linux",
        app_version="1.0.0",
        device_model="x86_64",
        os_version="6.1",
    )
