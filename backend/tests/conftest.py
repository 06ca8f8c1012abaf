"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from database import database


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest_asyncio.fixture
async def mongo_db(monkeypatch):
    """In-memory Motor-compatible database wired into database.get_db() for stateful flows."""
    db = AsyncMongoMockClient()["rootsreach_test"]
    monkeypatch.setattr(database, "db", db)
    return db

