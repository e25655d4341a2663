import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("API_PREFIX", "/api")
os.environ.setdefault("ADMIN_PASS", "correctAdminPass")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from kanban.config import ADMIN_PASS
from kanban.db import Base, get_db, make_engine
from kanban.main import app

PASSWORD = "Password123!"


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(client):
    """Register a user and return ``Authorization`` headers for them."""

    def _make_user(email: str = "testuser@example.com", username: str = "testuser", is_admin: bool = False) -> dict:
        payload = {"email": email, "username": username, "password": PASSWORD}
        if is_admin:
            payload["adminPass"] = ADMIN_PASS
        response = client.post("/api/user/register", json=payload)
        assert response.status_code == 201
        response = client.post("/api/user/login", json={"email": email, "password": PASSWORD})
        assert response.status_code == 200
        return {"Authorization": f"Bearer {response.json()['token']}"}

    return _make_user


@pytest.fixture
def auth(make_user):
    return make_user()


@pytest.fixture
def board(client, auth):
    response = client.post("/api/board", json={"title": "Sprint"}, headers=auth)
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def column(client, auth, board):
    response = client.post("/api/column", json={"board_id": board["id"], "title": "To do"}, headers=auth)
    assert response.status_code == 201
    return response.json()
