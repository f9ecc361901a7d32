from sqlalchemy import select

from app.famlearn.db import session_scope
from app.famlearn.models import ActivityLog, User
from app.famlearn.security import verify_password

PASSWORD = "Garden-Path7"


def _actions(app, action):
    with session_scope(app) as s:
        return s.execute(select(ActivityLog).where(ActivityLog.action == action)).scalars().all()


def test_login_success_returns_permissions(client, people, app):
    r = client.post("/auth/login", json={"username": "student1", "password": PASSWORD})
    assert r.status_code == 200
    assert r.json["user"]["username"] == "student1"
    assert r.json["permissions"]["canSubmitExercises"] is True
    assert r.json["permissions"]["canManageUsers"] is False
    assert r.json["csrf_token"]
    assert len(_actions(app, "LOGIN")) == 1


def test_login_missing_fields(client, people):
    r = client.post("/auth/login", json={"username": "student1"})
    assert r.status_code == 400


def test_login_wrong_password_is_audited(client, people, app):
    r = client.post("/auth/login", json={"username": "student1", "password": "nope-nope"})
    assert r.status_code == 401
    failed = _actions(app, "LOGIN_FAILED")
    assert len(failed) == 1
    assert failed[0].user_id == people["student1"]


def test_login_unknown_user_is_401_without_audit(client, people, app):
    r = client.post("/auth/login", json={"username": "ghost", "password": "whatever1"})
    assert r.status_code == 401
    assert _actions(app, "LOGIN_FAILED") == []


def test_lockout_after_five_failures(client, people):
    for _ in range(5):
        assert client.post("/auth/login", json={"username": "parent1", "password": "bad-guess"}).status_code == 401
    r = client.post("/auth/login", json={"username": "parent1", "password": PASSWORD})
    assert r.status_code == 429
    assert r.json["retry_after_minutes"] == 15
    # Other users are unaffected.
    assert client.post("/auth/login", json={"username": "parent2", "password": PASSWORD}).status_code == 200


def test_success_clears_failures(client, people, app):
    for _ in range(4):
        client.post("/auth/login", json={"username": "parent1", "password": "bad-guess"})
    assert client.post("/auth/login", json={"username": "parent1", "password": PASSWORD}).status_code == 200
    assert app.extensions["login_attempts"].failure_count("parent1") == 0


def test_inactive_user_cannot_login(client, people, app):
    with session_scope(app) as s:
        s.get(User, people["student2"]).is_active = False
    r = client.post("/auth/login", json={"username": "student2", "password": PASSWORD})
    assert r.status_code == 401


def test_me_requires_login(client, people):
    assert client.get("/auth/me").status_code == 401


def test_me_for_student(client, people, login):
    login("student1")
    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["parental_code"] == "ABC234"
    assert r.json["permissions"]["isStudent"] is True
    assert r.json["family"]["name"] == "F1"
    assert r.json["stats"]["total_submissions"] == 0


def test_logout_clears_session(client, people, login):
    login("parent1")
    assert client.post("/auth/logout").status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_mutation_without_csrf_is_rejected(client, people, login):
    login("admin")
    r = client.post("/api/families", json={"name": "No Token"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_register_requires_manage_users(client, people, login):
    headers = login("parent1")
    r = client.post("/auth/register", json={}, headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "canManageUsers"


def test_register_student(client, people, login, app):
    headers = login("admin")
    r = client.post(
        "/auth/register",
        json={
            "username": "newkid",
            "password": "Sunny-Day42",
            "display_name": "New Kid",
            "role": "STUDENT",
            "year_level": 3,
            "birth_year": 2017,
            "family_id": people["F1"],
        },
        headers=headers,
    )
    assert r.status_code == 201, r.json
    with session_scope(app) as s:
        u = s.execute(select(User).where(User.username == "newkid")).scalar_one()
        assert u.parental_code and len(u.parental_code) == 6
        assert u.family_id == people["F1"]


def test_register_validation_errors(client, people, login):
    headers = login("admin")
    r = client.post(
        "/auth/register",
        json={
            "username": "student1",
            "password": "aaa111",
            "display_name": "Dup",
            "role": "STUDENT",
        },
        headers=headers,
    )
    assert r.status_code == 400
    errors = " ".join(r.json["errors"])
    assert "already taken" in errors
    assert "repeat" in errors
    assert "year level" in errors


def test_register_info(client, people, login):
    login("admin")
    r = client.get("/auth/register")
    assert r.status_code == 200
    assert r.json["user_stats"]["STUDENT"] == 2
    assert "PARENT" in r.json["config"]["supported_roles"]


def test_change_own_password(client, people, login, app):
    headers = login("student1")
    r = client.post(
        "/auth/reset-password",
        json={"current_password": PASSWORD, "new_password": "Quiet-River9", "confirm_password": "Quiet-River9"},
        headers=headers,
    )
    assert r.status_code == 200, r.json
    with session_scope(app) as s:
        assert verify_password(s.get(User, people["student1"]).password_hash, "Quiet-River9")


def test_change_own_password_requires_current(client, people, login):
    headers = login("student1")
    r = client.post(
        "/auth/reset-password",
        json={"new_password": "Quiet-River9", "confirm_password": "Quiet-River9"},
        headers=headers,
    )
    assert r.status_code == 400


def test_parent_resets_own_family_only(client, people, login):
    headers = login("parent1")
    body = {"new_password": "Quiet-River9", "confirm_password": "Quiet-River9"}

    r = client.post("/auth/reset-password", json={**body, "user_id": people["student1"]}, headers=headers)
    assert r.status_code == 200

    foreign = client.post("/auth/reset-password", json={**body, "user_id": people["student2"]}, headers=headers)
    missing = client.post("/auth/reset-password", json={**body, "user_id": 99999}, headers=headers)
    assert foreign.status_code == 403
    assert missing.status_code == 403
    assert foreign.json == missing.json


def test_admin_force_reset(client, people, login, app):
    headers = login("admin")
    body = {"user_id": people["parent2"], "new_password": "Quiet-River9", "confirm_password": "Quiet-River9"}
    assert client.put("/auth/reset-password", json=body, headers=headers).status_code == 200
    assert len(_actions(app, "FORCE_RESET_PASSWORD")) == 1

    own = client.put("/auth/reset-password", json={**body, "user_id": people["admin"]}, headers=headers)
    assert own.status_code == 400


def test_force_reset_is_admin_only(client, people, login):
    headers = login("parent1")
    body = {"user_id": people["student1"], "new_password": "Quiet-River9", "confirm_password": "Quiet-River9"}
    assert client.put("/auth/reset-password", json=body, headers=headers).status_code == 403
