import os

# Must be set before the application modules read their configuration
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import get_utc_now, make_engine
from main import create_app
from storage import DatabaseStorage, MemStorage


@pytest.fixture
def database_storage():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    storage = DatabaseStorage(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    storage.create_tables()
    yield storage
    engine.dispose()


@pytest.fixture(params=["memory", "database"])
def storage(request):
    if request.param == "memory":
        return MemStorage()
    return request.getfixturevalue("database_storage")


@pytest.fixture
def app(storage):
    return create_app(storage)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def make_user(client):
    """Register and log in a user; returns (user json, auth headers)"""
    def _make_user(username, email=None, password="password123", **extra):
        payload = {
            "username": username,
            "email": email or f"{username}@example.com",
            "password": password,
            "name": username.title(),
            "location": "Springfield",
            **extra,
        }
        response = client.post("/api/register", json=payload)
        assert response.status_code == 201, response.text
        login = client.post("/api/login", json={"username": username, "password": password})
        assert login.status_code == 200, login.text
        return response.json(), {"Authorization": f"Bearer {login.json()['access_token']}"}
    return _make_user


@pytest.fixture
def listing_payload():
    def _listing_payload(**overrides):
        payload = {
            "title": "Leftover lasagna",
            "description": "Half a tray of vegetable lasagna",
            "price": 5.0,
            "isFree": False,
            "quantity": 3,
            "category": "home-cooked",
            "expiresAt": (get_utc_now() + timedelta(days=1)).isoformat(),
            "location": "Springfield",
        }
        payload.update(overrides)
        return payload
    return _listing_payload
