"""Shared fixtures: a fresh in-memory store and an API client."""

import os
import sys
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core import database
from core import timing_engine

T0 = datetime(2026, 6, 15, 10, 0, 0)


def at(ms: int) -> datetime:
    """Instant ms milliseconds after T0."""
    return T0 + timedelta(milliseconds=ms)


def make_db():
    """Create a fresh, empty in-memory store."""
    conn = database.get_connection(":memory:")
    database.init_db(conn)
    return conn


@pytest.fixture
def conn():
    c = make_db()
    yield c
    c.close()


@pytest.fixture
def session_id(conn):
    """A practice session, already running."""
    sid = database.create_session(conn, "Practice")
    timing_engine.set_session_status(conn, sid, "running")
    return sid


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from server import create_app

    with TestClient(create_app(":memory:", seed=True)) as c:
        yield c
