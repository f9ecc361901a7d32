import pytest
from sqlalchemy import select

from app.famlearn import create_app
from app.famlearn.config import load_config
from app.famlearn.db import session_scope
from app.famlearn.models import ActivityLog


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_is_plain_text(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_index(client):
    assert client.get("/").json == {"name": "family-learning", "ok": True}


def test_api_requires_login(client):
    r = client.get("/api/users")
    assert r.status_code == 401
    assert r.json["error"] == "Authentication required."


def test_unknown_route_is_json_404(client):
    r = client.get("/api/nope")
    assert r.status_code == 404
    assert r.json["error"] == "Not found."


def test_request_id_is_recorded_on_audit(client, people, app):
    client.post(
        "/auth/login",
        json={"username": "student1", "password": "Garden-Path7"},
        headers={"X-Request-ID": "req-123"},
    )
    with session_scope(app) as s:
        log = s.execute(select(ActivityLog).where(ActivityLog.action == "LOGIN")).scalar_one()
        assert log.request_id == "req-123"


def test_config_defaults(monkeypatch):
    for k in ("LOGIN_MAX_FAILED_ATTEMPTS", "FAMILY_MAX_MEMBERS", "UNLOCK_EXPIRY_HOURS", "ENV"):
        monkeypatch.delenv(k, raising=False)
    cfg = load_config()
    assert cfg["LOGIN_MAX_FAILED_ATTEMPTS"] == 5
    assert cfg["FAMILY_MAX_MEMBERS"] == 10
    assert cfg["UNLOCK_EXPIRY_HOURS"] == 24
    assert cfg["SESSION_COOKIE_SECURE"] is False


def test_config_rejects_non_integer(monkeypatch):
    monkeypatch.setenv("LOGIN_LOCKOUT_MINUTES", "soon")
    with pytest.raises(RuntimeError):
        load_config()


def test_production_refuses_sqlite(monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-real-secret")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///prod.db")
    with pytest.raises(RuntimeError):
        create_app()


def test_audit_ip_ignores_forwarded_header(client, people, app):
    client.post(
        "/auth/login",
        json={"username": "student1", "password": "Garden-Path7"},
        headers={"X-Forwarded-For": "203.0.113.9"},
    )
    with session_scope(app) as s:
        log = s.execute(select(ActivityLog).where(ActivityLog.action == "LOGIN")).scalar_one()
        assert log.ip_address == "127.0.0.1"


def test_login_survives_failed_audit_write(client, people, app):
    ActivityLog.__table__.drop(app.extensions["sqlalchemy_engine"])
    r = client.post("/auth/login", json={"username": "parent1", "password": "Garden-Path7"})
    assert r.status_code == 200
    assert r.json["user"]["username"] == "parent1"
    assert client.get("/auth/me").status_code == 200
