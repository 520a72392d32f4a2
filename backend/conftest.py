"""Pytest setup for backend test runs.

The environment is fixed here, before the application package is imported,
so settings and the database engine pick up the test values.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_collabdocs.db"
os.environ["NODE_ENV"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend():
    # Session scope so the session-wide engine fixture shares the event loop with tests
    return "asyncio"
