from pathlib import Path
import os
import tempfile
import uuid

import pytest

# Point the app at a throwaway database and data dir before `gymdesk` is imported.
_TMP = Path(tempfile.mkdtemp(prefix="gymdesk-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["DATA_DIR"] = str(_TMP / "data")
os.environ["ENV"] = "dev"
os.environ["LOGIN_RATE_LIMIT_PER_MIN"] = "5"


@pytest.fixture(scope="session", autouse=True)
def reset_db():
    """Create the tables of the fresh SQLite database for the test session."""
    from gymdesk.database import create_db_and_tables
    create_db_and_tables()
    yield


@pytest.fixture
def new_gym():
    """Factory registering a new gym; returns `(headers, admin_email)`."""
    from fastapi.testclient import TestClient
    from gymdesk.main import app

    api = TestClient(app)

    def _register(gym_name='Test Gym', password='secret123'):
        email = f'admin-{uuid.uuid4().hex[:10]}@example.com'
        r = api.post('/api/auth/register', json={
            'gym_name': gym_name, 'email': email, 'name': 'Admin', 'password': password,
        })
        assert r.status_code == 201, r.text
        return {'Authorization': f"Bearer {r.json()['access_token']}"}, email

    return _register


@pytest.fixture
def db_session():
    from sqlmodel import Session
    from gymdesk.database import engine

    with Session(engine, expire_on_commit=False) as session:
        yield session
