import os
import tempfile
from itertools import count
from pathlib import Path

import pytest

# Point the app at a throwaway database and upload folder before it is imported.
_TMP = Path(tempfile.mkdtemp(prefix="emdr_api_tests_"))
os.environ["ENV"] = "dev"
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["UPLOAD_DIR"] = str(_TMP / "uploads")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session  # noqa: E402

from emdr_api import models, repositories  # noqa: E402
from emdr_api.database import create_db_and_tables, drop_db_and_tables, engine  # noqa: E402
from emdr_api.main import app  # noqa: E402

_seq = count(1)


@pytest.fixture(autouse=True)
def reset_db():
    """Ensure a fresh set of tables for every test."""
    drop_db_and_tables()
    create_db_and_tables()
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_user(db):
    """Create a user row directly (no password hashing) and return it."""
    def _make(role="STUDENT", first_name="Test", last_name="User", phone=None, status="ACTIVE"):
        n = next(_seq)
        return repositories.UserRepository(db).create(models.User(
            email=f"{role.lower()}{n}@example.com",
            password_hash="not-a-real-hash",
            first_name=first_name,
            last_name=f"{last_name}{n}",
            phone=phone,
            role=role,
            status=status,
        ))
    return _make


@pytest.fixture
def api_user(client):
    """Register through the API and return `(user_json, auth_headers)`."""
    def _register(role="STUDENT", first_name="Test", last_name="User"):
        n = next(_seq)
        r = client.post('/auth/register', json={
            'email': f'{role.lower()}{n}@example.com',
            'password': 'password123',
            'firstName': first_name,
            'lastName': f'{last_name}{n}',
            'role': role,
        })
        assert r.status_code == 201, r.text
        body = r.json()
        return body['user'], {'Authorization': f"Bearer {body['access_token']}"}
    return _register
