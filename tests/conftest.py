import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import make_engine, make_session_factory
from realtime import RealtimeDatabase
from schemas import ExpenseRecord


def ms(*args) -> int:
    """Epoch milliseconds for a local datetime."""
    return round(datetime(*args).timestamp() * 1000)


def make_expense(amount, when, key="e1", description="Coffee") -> ExpenseRecord:
    return ExpenseRecord(
        id=key,
        description=description,
        amount=amount,
        date=when,
        created_at=when,
        user_id="alice",
    )


@pytest.fixture
def session_factory():
    return make_session_factory(make_engine("sqlite://"))


@pytest.fixture
def database(session_factory):
    return RealtimeDatabase(session_factory)


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", secret_key="test-secret")


@pytest.fixture
def client(settings):
    from main import create_app

    with TestClient(create_app(settings)) as test_client:
        yield test_client


def register(client, username="alice", password="secret"):
    response = client.post(
        "/auth/register", json={"username": username, "password": password}
    )
    assert response.status_code == 200
    return response.json()["access_token"]


@pytest.fixture
def token(client):
    return register(client)


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}
