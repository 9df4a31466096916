# tests/conftest.py
"""
Shared fixtures
- `cfg`: a Config pointing at a fresh SQLite file per test
- `app` / `client`: the FastAPI app built from that config
- `db`: opens a unit-of-work connection (`with db() as conn:`)
- `make_user` / `client_for`: seed users and get a client logged in as them
"""

from __future__ import annotations

from typing import Any, Callable, Dict

import pytest
from fastapi.testclient import TestClient

from moetv.api.server import create_app
from moetv.auth.crud import create_user
from moetv.config import Config
from moetv.db import connect, init_db


TEST_SECRET = "pytest-session-secret"
DEFAULT_PASSWORD = "Passw0rd1"


@pytest.fixture()
def cfg(tmp_path) -> Config:
    return Config(
        DB_DSN=str(tmp_path / "moetv.sqlite"),
        AUTH_JWT_SECRET=TEST_SECRET,
        CORS_ALLOW_ORIGINS="",
    )


@pytest.fixture()
def app(cfg):
    return create_app(cfg)


@pytest.fixture()
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def db(cfg) -> Callable[[], Any]:
    """Factory for short-lived connections; keep them closed while the app writes."""
    init_db(cfg.DB_DSN)

    def _open():
        return connect(cfg.DB_DSN)

    return _open


@pytest.fixture()
def make_user(db) -> Callable[..., Dict[str, Any]]:
    counter = {"n": 0}

    def _make(
        username: str | None = None,
        *,
        email: str | None = None,
        password: str = DEFAULT_PASSWORD,
        is_admin: bool = False,
    ) -> Dict[str, Any]:
        counter["n"] += 1
        name = username or f"user{counter['n']}"
        with db() as conn:
            return create_user(
                conn,
                email=email or f"{name}@example.com",
                username=name,
                password=password,
                is_admin=is_admin,
            )

    return _make


@pytest.fixture()
def client_for(app) -> Callable[[Dict[str, Any]], TestClient]:
    """A fresh TestClient carrying a session cookie for `user`."""

    def _client(user: Dict[str, Any]) -> TestClient:
        token = app.state.sessions.issue(
            {"userId": user["id"], "email": user["email"], "username": user["username"]}
        )
        return TestClient(app, cookies={"session": token})

    return _client
