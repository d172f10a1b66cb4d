import asyncio

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import server
from database import get_db
from distance_engine import DistanceEngine, get_distance_engine
from seed_data import build_demo_roster, seed_data


@pytest.fixture
def db():
    return AsyncMongoMockClient()["tracking_test"]


@pytest.fixture
def roster(db):
    """Demo users keyed by id, already stored in `db`."""
    asyncio.run(seed_data(db, verbose=False))
    return {u.id: u for u in build_demo_roster()}


@pytest.fixture
def tokens(db):
    by_email = asyncio.run(seed_data(db, verbose=False))
    return {u.id: by_email[u.email] for u in build_demo_roster()}


@pytest.fixture
def engine():
    return DistanceEngine()


@pytest.fixture
def client(db, engine, tokens):
    server.app.dependency_overrides[get_db] = lambda: db
    server.app.dependency_overrides[get_distance_engine] = lambda: engine
    yield TestClient(server.app)
    server.app.dependency_overrides.clear()


@pytest.fixture
def headers(tokens):
    def _headers(user_id):
        return {"Authorization": f"Bearer {tokens[user_id]}"}
    return _headers
