"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["LIVEROOMS_DB"] = ":memory:"
os.environ["LIVEROOMS_SWEEP_ENABLED"] = "false"
os.environ.pop("LIVEROOMS_CONFIG", None)


import pytest
from liverooms import db

pytest_plugins = ["liverooms.testing"]


@pytest.fixture(autouse=True, scope="function")
def reset_database(rooms_db):
    """Reset database, registry and settings before each test function.

    For in-memory shared cache databases, a full reset_db() is needed to
    clear all tables, since close_db() doesn't destroy the shared cache.
    """
    yield
    db.close_db()  # Cleanup after test
