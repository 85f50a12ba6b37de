"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["STAGEDOOR_DB"] = ":memory:"
# Tests talk to the app directly, not through a gateway
os.environ.pop("STAGEDOOR_GATEWAY_TOKEN", None)
os.environ.pop("STAGEDOOR_IDENTITY_MODULE", None)


import pytest

from stagedoor import db
from stagedoor.metrics import metrics

pytest_plugins = ["stagedoor.testing"]


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset the thread-local database before each test function.

    For in-memory shared cache databases, we need to do a full reset_db()
    to clear all tables, since close_db() doesn't destroy the shared cache.
    """
    db.reset_db(db.get_connection())
    metrics.reset()
    yield
    db.close_db()
