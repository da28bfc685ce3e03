from datetime import UTC, datetime, timedelta

from fastapi.testclient import TestClient

from src.projectbot.api.main import app
from src.projectbot.security.auth import CookieConfig, SessionStore
from src.projectbot.security.rate_limit import LoginThrottle, ThrottleConfig
from .utils import login, register


client = TestClient(app)


def test_register_returns_user_shape_and_logs_in():
    headers, data = register(client, "dana", display_name="Dana Scully")
    assert data["username"] == "dana"
    assert data["displayName"] == "Dana Scully"
    assert data["role"] == "user"
    assert data["initial"] == "DS"
    assert data["token"]
    assert data["expiresIn"] == 720 * 60

    me = client.get("/api/user", headers=headers)
    assert me.status_code == 200
    assert me.json() == {
        "id": data["id"],
        "username": "dana",
        "displayName": "Dana Scully",
        "role": "user",
        "initial": "DS",
    }


def test_register_ignores_requested_role():
    res = client.post(
        "/api/register",
        json={"username": "mallory", "password": "secret-pass", "displayName": "Mallory", "role": "admin"},
    )
    client.cookies.clear()
    assert res.status_code == 201
    assert res.json()["role"] == "user"


def test_register_duplicate_username_conflicts():
    register(client, "dana")
    res = client.post("/api/register", json={"username": "dana", "password": "another", "displayName": "Dana"})
    assert res.status_code == 409
    assert res.json()["kind"] == "validation_conflict"


def test_login_rejects_bad_password_and_unknown_user_alike():
    register(client, "erin")
    wrong = client.post("/api/login", json={"username": "erin", "password": "nope-nope"})
    unknown = client.post("/api/login", json={"username": "ghost", "password": "nope-nope"})
    assert wrong.status_code == 401
    assert unknown.status_code == 401
    assert wrong.json() == unknown.json() == {"kind": "unauthorized", "detail": "Invalid credentials"}


def test_user_requires_session():
    res = client.get("/api/user")
    assert res.status_code == 401
    res = client.get("/api/user", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401


def test_cookie_and_bearer_resolve_same_identity():
    register(client, "frank")
    res = client.post("/api/login", json={"username": "frank", "password": "secret-pass"})
    assert res.status_code == 200
    token = res.json()["token"]
    cookie_name = CookieConfig.from_env().name
    assert res.cookies.get(cookie_name) == token
    client.cookies.clear()

    via_bearer = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})
    client.cookies.set(cookie_name, token)
    via_cookie = client.get("/api/user")
    client.cookies.clear()
    assert via_bearer.status_code == via_cookie.status_code == 200
    assert via_bearer.json() == via_cookie.json()


def test_logout_invalidates_session_and_is_idempotent():
    register(client, "gina")
    headers = login(client, "gina")
    assert client.get("/api/user", headers=headers).status_code == 200

    first = client.post("/api/logout", headers=headers)
    assert first.status_code == 200
    assert first.json() == {"success": True}
    assert client.get("/api/user", headers=headers).status_code == 401

    second = client.post("/api/logout", headers=headers)
    assert second.status_code == 200
    anonymous = client.post("/api/logout")
    assert anonymous.status_code == 200


def test_login_rate_limited(monkeypatch):
    monkeypatch.setenv("LOGIN_LIMIT", "2")
    register(client, "hank")
    for _ in range(2):
        client.post("/api/login", json={"username": "hank", "password": "wrong-pass"})
    blocked = client.post("/api/login", json={"username": "hank", "password": "secret-pass"})
    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) >= 1


def test_successful_login_clears_failed_attempts(monkeypatch):
    monkeypatch.setenv("LOGIN_LIMIT", "2")
    register(client, "iris")
    client.post("/api/login", json={"username": "iris", "password": "wrong-pass"})
    login(client, "iris")
    client.post("/api/login", json={"username": "iris", "password": "wrong-pass"})
    assert client.post("/api/login", json={"username": "iris", "password": "secret-pass"}).status_code == 200


def test_throttle_evicts_expired_windows():
    throttle = LoginThrottle(ThrottleConfig(max_failures=1, window_seconds=900))
    throttle.record_failure("10.0.0.1:old")
    throttle.record_failure("10.0.0.2:stale")
    for window in throttle._windows.values():
        window.window_end = datetime.now(UTC) - timedelta(seconds=1)

    throttle.check("10.0.0.1:old")
    assert "10.0.0.1:old" not in throttle._windows

    throttle.record_failure("10.0.0.3:new")
    assert list(throttle._windows) == ["10.0.0.3:new"]


def test_expired_session_is_rejected():
    from src.projectbot.security.auth import JwtConfig

    store = SessionStore(cfg=JwtConfig(secret="test-secret", expires_min=0))
    session, token = store.register("ivan", "secret-pass", "Ivan Drago")
    assert session.username == "ivan"
    assert store.current_session(token) is None


def test_admin_seeded_from_env(monkeypatch):
    from src.projectbot.infrastructure.db import get_database, reset_database

    monkeypatch.setenv("PROJECTBOT_ADMIN_USERNAME", "root")
    monkeypatch.setenv("PROJECTBOT_ADMIN_PASSWORD", "root-pass")
    reset_database()
    get_database()

    headers = login(client, "root", "root-pass")
    me = client.get("/api/user", headers=headers).json()
    assert me["role"] == "admin"
