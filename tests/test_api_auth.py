import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

# Ensure project root on path
sys.path.append(str(Path(__file__).resolve().parents[1]))

from wgchores.errors import Unauthenticated


def _load_app(tmp_path, monkeypatch):
    monkeypatch.setenv("WG_DB", str(tmp_path / "test.db"))
    monkeypatch.setenv("WG_ADMIN_PASSWORD", "admin")
    monkeypatch.setenv("WG_INSECURE_COOKIES", "1")
    if "wgchores.app" in sys.modules:
        del sys.modules["wgchores.app"]
    return importlib.import_module("wgchores.app")


def _login(client, handle="admin", password="admin"):
    return client.post(
        "/login", data={"handle": handle, "password": password}, follow_redirects=False
    )


def test_login_sets_authentication_cookie(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    client = TestClient(app_module.app)

    resp = _login(client)
    assert resp.status_code == 303
    set_cookie = resp.headers["set-cookie"]
    assert set_cookie.startswith("authentication=")
    assert "HttpOnly" in set_cookie
    assert "samesite=lax" in set_cookie.lower()

    resp = client.get("/me")
    assert resp.status_code == 200
    assert resp.json()["handle"] == "admin"
    assert "password_hash" not in resp.json()


def test_failed_login_is_unauthenticated(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    client = TestClient(app_module.app)

    resp = _login(client, password="wrong")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid credentials"}
    assert "authentication" not in client.cookies

    admin = app_module.user_store.get_by_handle("admin")
    assert app_module.auth_session_store.list_for_user(admin.id) == []
    assert client.get("/me").status_code == 401


def test_logout_ends_session(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    client = TestClient(app_module.app)
    _login(client)
    token = client.cookies["authentication"]

    resp = client.post("/logout")
    assert resp.status_code == 200
    assert app_module.auth_session_store.get_by_token(token) is None
    assert client.get("/me").status_code == 401


def test_deleted_user_is_logged_out(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    admin_client = TestClient(app_module.app)
    _login(admin_client)

    resp = admin_client.post(
        "/users", json={"name": "Bob", "handle": "bob", "password": "secret"}
    )
    assert resp.status_code == 201
    bob_id = resp.json()["id"]

    bob_client = TestClient(app_module.app)
    assert _login(bob_client, "bob", "secret").status_code == 303
    assert bob_client.get("/me").status_code == 200

    assert admin_client.post(f"/users/{bob_id}/delete").status_code == 200
    assert bob_client.get("/me").status_code == 401
    assert _login(bob_client, "bob", "secret").status_code == 401

    # Deleting twice is not allowed, restoring brings the account back
    assert admin_client.post(f"/users/{bob_id}/delete").status_code == 403
    assert admin_client.post(f"/users/{bob_id}/restore").status_code == 200
    assert _login(bob_client, "bob", "secret").status_code == 303


def test_user_management(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    client = TestClient(app_module.app)

    assert client.get("/users").status_code == 401
    _login(client)

    resp = client.post("/users", json={"name": "Bob", "handle": "ADMIN", "password": "x"})
    assert resp.status_code == 422
    resp = client.post(
        "/users", json={"name": "Bob", "handle": "bob", "password": "x", "language": "fr"}
    )
    assert resp.status_code == 422

    bob = client.post(
        "/users", json={"name": "Bob", "handle": "bob", "password": "x", "language": "de"}
    ).json()
    assert [u["handle"] for u in client.get("/users").json()] == ["admin", "bob"]
    assert client.get(f"/users/{bob['id']}").json()["language"] == "de"

    # Only the account owner may edit it
    assert client.post(f"/users/{bob['id']}/update", json={"name": "Robert"}).status_code == 403

    me = client.get("/me").json()
    resp = client.post(f"/users/{me['id']}/update", json={"name": "Root", "password": "new"})
    assert resp.status_code == 200
    assert resp.json()["name"] == "Root"

    other = TestClient(app_module.app)
    assert _login(other, "admin", "new").status_code == 303
    assert client.get("/users/00000000-0000-0000-0000-000000000000").status_code == 404


def _request_with_token(token):
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/me",
            "headers": [(b"cookie", f"authentication={token}".encode())],
        }
    )


def test_session_is_validated_once_per_request(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    _, auth_session = app_module.session_manager.login("admin", "admin")

    calls = []
    validate = app_module.session_manager.validate

    def counting_validate(token):
        calls.append(token)
        return validate(token)

    monkeypatch.setattr(app_module.session_manager, "validate", counting_validate)

    request = _request_with_token(auth_session.token)
    first = app_module.require_session(request)
    second = app_module.require_session(request)
    assert first is second
    assert calls == [auth_session.token]

    # A new request looks the session up again
    app_module.session_manager.delete_session(auth_session)
    other_request = _request_with_token(auth_session.token)
    with pytest.raises(Unauthenticated):
        app_module.require_session(other_request)
    assert len(calls) == 2
