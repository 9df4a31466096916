# tests/test_auth_api.py

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from moetv.api.server import create_app
from moetv.config import ConfigError

DEFAULT_PASSWORD = "Passw0rd1"


def _register(client, email="a@x.com", username="alice", password="Passw0rd1"):
    return client.post("/register", json={"email": email, "username": username, "password": password})


# ─────────────────────────────────────────────────────────────
# /register
# ─────────────────────────────────────────────────────────────

def test_register_sets_session_cookie_and_logs_in(client):
    resp = _register(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["user"]["username"] == "alice"
    assert body["user"]["email"] == "a@x.com"
    assert body["user"]["isSubscribed"] is False
    assert "password" not in body["user"]
    assert "password_hash" not in body["user"]

    set_cookie = resp.headers["set-cookie"].lower()
    assert set_cookie.startswith("session=")
    assert "httponly" in set_cookie
    assert "samesite=lax" in set_cookie
    assert "max-age=86400" in set_cookie

    me = client.get("/user")
    assert me.status_code == 200
    assert me.json()["user"]["username"] == "alice"


def test_register_starts_without_subscription(client):
    body = _register(client).json()["user"]
    assert body["isSubscribed"] is False
    assert body["subscriptionType"] is None

    me = client.get("/user").json()["user"]
    assert me["isSubscribed"] is False
    assert me["subscriptionType"] is None
    assert me["subscriptionExpires"] is None


@pytest.mark.parametrize(
    "payload",
    [
        {"username": "alice", "password": "Passw0rd1"},
        {"email": "a@x.com", "password": "Passw0rd1"},
        {"email": "a@x.com", "username": "alice"},
        {},
    ],
)
def test_register_missing_fields_is_400(client, payload):
    resp = client.post("/register", json=payload)
    assert resp.status_code == 400


def test_register_duplicate_email_is_400(client):
    assert _register(client).status_code == 201
    resp = _register(TestClient(client.app), username="alice2")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "email_exists"


def test_register_stores_hashed_password(client, db):
    _register(client)
    with db() as conn:
        row = conn.execute("SELECT password_hash FROM users WHERE email='a@x.com'").fetchone()
    assert row["password_hash"] != "Passw0rd1"
    assert row["password_hash"].startswith("$pbkdf2-sha256$")


# ─────────────────────────────────────────────────────────────
# /login
# ─────────────────────────────────────────────────────────────

def test_login_success(client, make_user):
    make_user("bob", email="bob@x.com")
    resp = client.post("/login", json={"email": "bob@x.com", "password": DEFAULT_PASSWORD})
    assert resp.status_code == 200
    assert resp.json()["user"]["username"] == "bob"
    assert "session=" in resp.headers["set-cookie"]
    assert client.get("/user").json()["user"]["email"] == "bob@x.com"


def test_login_failures_are_indistinguishable(client, make_user):
    make_user("bob", email="bob@x.com")
    wrong_pw = client.post("/login", json={"email": "bob@x.com", "password": "nope-nope"})
    no_user = client.post("/login", json={"email": "ghost@x.com", "password": "nope-nope"})

    assert wrong_pw.status_code == no_user.status_code == 401
    assert wrong_pw.json() == no_user.json() == {"detail": "invalid_credentials"}
    assert "set-cookie" not in wrong_pw.headers


def test_login_missing_fields_is_400(client):
    assert client.post("/login", json={"email": "bob@x.com"}).status_code == 400


def test_login_records_last_login(client, make_user, db):
    u = make_user("bob", email="bob@x.com")
    client.post("/login", json={"email": "bob@x.com", "password": DEFAULT_PASSWORD})
    with db() as conn:
        row = conn.execute("SELECT last_login_at FROM users WHERE id=?", (u["id"],)).fetchone()
    assert row["last_login_at"]


# ─────────────────────────────────────────────────────────────
# /logout and /user
# ─────────────────────────────────────────────────────────────

def test_logout_clears_cookie(client):
    _register(client)
    assert client.get("/user").status_code == 200

    resp = client.post("/logout")
    assert resp.status_code == 200
    assert "session=" in resp.headers["set-cookie"]
    assert client.get("/user").status_code == 401


def test_user_without_cookie_is_401(client):
    resp = client.get("/user")
    assert resp.status_code == 401
    assert resp.json()["detail"] == "not_authenticated"


def test_user_with_garbage_cookie_is_anonymous(app):
    c = TestClient(app, cookies={"session": "definitely.not.valid"})
    assert c.get("/user").status_code == 401


def test_user_with_expired_cookie_is_anonymous(app, make_user):
    u = make_user()
    token = app.state.sessions.issue(
        {"userId": u["id"], "email": u["email"], "username": u["username"]},
        now=datetime.now(timezone.utc) - timedelta(hours=25),
    )
    c = TestClient(app, cookies={"session": token})
    assert c.get("/user").status_code == 401


def test_user_deleted_after_login_is_401(client_for, make_user, db):
    u = make_user()
    c = client_for(u)
    with db() as conn:
        conn.execute("DELETE FROM users WHERE id=?", (u["id"],))
    assert c.get("/user").status_code == 401


# ─────────────────────────────────────────────────────────────
# sliding sessions
# ─────────────────────────────────────────────────────────────

def test_valid_session_is_refreshed_on_each_response(app, make_user):
    u = make_user()
    old = app.state.sessions.issue(
        {"userId": u["id"], "email": u["email"], "username": u["username"]},
        now=datetime.now(timezone.utc) - timedelta(hours=20),
    )
    c = TestClient(app, cookies={"session": old})
    resp = c.get("/user")
    assert resp.status_code == 200

    set_cookie = resp.headers.get("set-cookie", "")
    assert set_cookie.startswith("session=")
    new = set_cookie.split(";", 1)[0].split("=", 1)[1]
    assert app.state.sessions.verify(new)["exp"] > app.state.sessions.verify(old)["exp"]


def test_deleted_user_session_is_not_refreshed(client_for, make_user, db):
    u = make_user()
    c = client_for(u)
    with db() as conn:
        conn.execute("DELETE FROM users WHERE id=?", (u["id"],))

    resp = c.get("/user")
    assert resp.status_code == 401
    assert "set-cookie" not in resp.headers


def test_forbidden_response_does_not_refresh_session(client_for, make_user):
    c = client_for(make_user())
    resp = c.get("/admin/users")
    assert resp.status_code == 403
    assert "set-cookie" not in resp.headers


def test_invalid_session_is_not_refreshed(app):
    c = TestClient(app, cookies={"session": "junk"})
    resp = c.get("/health")
    assert resp.status_code == 200
    assert "set-cookie" not in resp.headers


# ─────────────────────────────────────────────────────────────
# app factory / errors
# ─────────────────────────────────────────────────────────────

def test_app_refuses_to_start_without_secret(monkeypatch):
    monkeypatch.delenv("MOETV_SESSION_SECRET", raising=False)
    monkeypatch.delenv("JWT_SECRET", raising=False)
    with pytest.raises(ConfigError):
        create_app()


def test_unexpected_error_becomes_generic_500(app, make_user, client_for, monkeypatch):
    import moetv.api.server as server

    def _boom(conn, user_id):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(server, "list_user_subscriptions", _boom)
    u = make_user()
    token = app.state.sessions.issue({"userId": u["id"], "email": u["email"], "username": u["username"]})
    c = TestClient(app, cookies={"session": token}, raise_server_exceptions=False)

    resp = c.get("/subscriptions")
    assert resp.status_code == 500
    assert resp.json() == {"detail": "internal_error"}
    assert "disk on fire" not in resp.text


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
