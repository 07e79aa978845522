import importlib
import sys
from datetime import timedelta
from pathlib import Path

from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from wgchores.time_utils import get_today


def _load_app(tmp_path, monkeypatch):
    monkeypatch.setenv("WG_DB", str(tmp_path / "test.db"))
    monkeypatch.setenv("WG_ADMIN_PASSWORD", "admin")
    monkeypatch.setenv("WG_INSECURE_COOKIES", "1")
    if "wgchores.app" in sys.modules:
        del sys.modules["wgchores.app"]
    return importlib.import_module("wgchores.app")


def _client(app_module, handle="admin", password="admin"):
    client = TestClient(app_module.app)
    client.post("/login", data={"handle": handle, "password": password}, follow_redirects=False)
    return client


def _days(n):
    return (get_today() + timedelta(days=n)).isoformat()


def test_absence_listing(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    client = _client(app_module)

    ongoing = client.post(
        "/absences", json={"date_start": _days(-1), "date_end": _days(2), "comment": "Trip"}
    )
    assert ongoing.status_code == 201
    future = client.post("/absences", json={"date_start": _days(10)}).json()

    listing = client.get("/absences").json()
    assert [a["id"] for a in listing["future"]] == [future["id"]]
    assert listing["by_date"] == [
        {"date": _days(0), "absences": [ongoing.json()]},
    ]
    assert listing["deleted"] == []

    resp = client.get(f"/absences/{future['id']}")
    assert resp.json()["allow_edit"] is True
    assert resp.json()["date_end"] is None


def test_absence_validation(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    client = _client(app_module)

    assert client.post("/absences", json={"date_start": _days(-5)}).status_code == 422
    assert client.post(
        "/absences", json={"date_start": _days(3), "date_end": _days(2)}
    ).status_code == 422
    assert client.post("/absences", json={}).status_code == 422
    assert client.post("/absences", content="not json").status_code == 422


def test_only_owner_changes_absence(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    admin = _client(app_module)
    admin.post("/users", json={"name": "Bob", "handle": "bob", "password": "secret"})
    bob = _client(app_module, "bob", "secret")

    absence = admin.post("/absences", json={"date_start": _days(1)}).json()
    url = f"/absences/{absence['id']}"

    assert bob.post(f"{url}/update", json={"comment": "x"}).status_code == 403
    assert bob.post(f"{url}/delete").status_code == 403

    resp = admin.post(f"{url}/update", json={"date_end": _days(4), "comment": " Away "})
    assert resp.status_code == 200
    assert resp.json()["date_end"] == _days(4)
    assert resp.json()["comment"] == "Away"

    assert admin.post(f"{url}/restore").status_code == 403
    assert admin.post(f"{url}/delete").status_code == 200
    assert [a["id"] for a in admin.get("/absences").json()["deleted"]] == [absence["id"]]
    assert admin.post(f"{url}/update", json={"comment": "x"}).status_code == 403
    assert admin.post(f"{url}/restore").status_code == 200


def test_unknown_absence(tmp_path, monkeypatch):
    app_module = _load_app(tmp_path, monkeypatch)
    client = _client(app_module)

    resp = client.get("/absences/00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Absence not found"}
