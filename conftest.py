import os

# Must be set before config is imported by the app modules
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ADMIN_PASSWORD", "admin_123")

import pytest
from fastapi.testclient import TestClient

from auth import login_limiter
from main import app, db


@pytest.fixture(autouse=True)
def fresh_state():
    db.reset()
    login_limiter.reset()
    yield
    login_limiter.reset()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def admin_headers(client):
    response = client.post("/auth/login", json={"identifier": "admin", "password": "admin_123"})
    return {"Authorization": f"Bearer {response.json()['data']['token']}"}


@pytest.fixture
def user_headers(client):
    response = client.post("/auth/register", json={
        "username": "ana_torres",
        "email": "ana@corvo.pe",
        "password": "secret_1"
    })
    return {"Authorization": f"Bearer {response.json()['data']['token']}"}
