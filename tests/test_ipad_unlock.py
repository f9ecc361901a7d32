from datetime import datetime, timedelta

from sqlalchemy import select

from app.famlearn.db import session_scope
from app.famlearn.models import User
from app.famlearn.modules.ipad_unlock import service as unlock_service
from app.famlearn.modules.ipad_unlock.models import UnlockRecord

BAND = {"min_score": 80, "max_score": 100, "base_minutes": 20, "bonus_minutes": 10}
NOW = datetime(2024, 6, 3, 16, 0)


def test_threshold_matching():
    rule = {"score_thresholds": [{"min_score": 60, "max_score": 79, "base_minutes": 10}, BAND]}
    assert unlock_service.match_threshold(rule, 59) is None
    assert unlock_service.match_threshold(rule, 79)["base_minutes"] == 10
    assert unlock_service.match_threshold(rule, 80) is BAND
    assert unlock_service.minutes_for_score(BAND, 99) == 20
    assert unlock_service.minutes_for_score(BAND, 100) == 30


def test_configuration_validation():
    errors = unlock_service.validate_configuration_payload(
        {
            "name": "",
            "rules": [
                {
                    "subject": "ART",
                    "score_thresholds": [{"min_score": 90, "max_score": 80, "base_minutes": -5}],
                    "daily_limit": -1,
                }
            ],
        }
    )
    text = " ".join(errors)
    assert "name is required" in text
    assert "subject must be one of" in text
    assert "min_score must not exceed max_score" in text
    assert "base_minutes must be a non-negative number" in text
    assert "daily_limit" in text
    assert unlock_service.validate_configuration_payload({"name": "x", "rules": []}) == ["rules must be a non-empty list."]


def test_trigger_respects_daily_limit(app, people, unlock_rules):
    with session_scope(app) as s:
        student = s.get(User, people["student1"])
        first = unlock_service.process_trigger(s, student, "MATHS", 85, triggered_by="exercise", now=NOW)
        second = unlock_service.process_trigger(s, student, "MATHS", 100, now=NOW + timedelta(minutes=5))
        third = unlock_service.process_trigger(s, student, "MATHS", 100, now=NOW + timedelta(minutes=10))
        fourth = unlock_service.process_trigger(s, student, "MATHS", 100, now=NOW + timedelta(minutes=15))

        assert first["unlocked_minutes"] == 20
        assert first["records"][0]["configuration_id"] == unlock_rules
        assert second["unlocked_minutes"] == 30
        assert third["unlocked_minutes"] == 10
        assert fourth["unlocked_minutes"] == 0
        assert fourth["records"] == []
        assert fourth["message"] == "Unlock requirements not met."

        # A new UTC day resets the cap.
        tomorrow = unlock_service.process_trigger(s, student, "MATHS", 85, now=NOW + timedelta(days=1))
        assert tomorrow["unlocked_minutes"] == 20


def test_trigger_below_every_band_or_unruled_subject(app, people, unlock_rules):
    with session_scope(app) as s:
        student = s.get(User, people["student1"])
        assert unlock_service.process_trigger(s, student, "MATHS", 40, now=NOW)["unlocked_minutes"] == 0
        assert unlock_service.process_trigger(s, student, "HASS", 100, now=NOW)["unlocked_minutes"] == 0
        assert s.execute(select(UnlockRecord)).scalars().all() == []


def test_no_rules(app, people):
    with session_scope(app) as s:
        result = unlock_service.process_trigger(s, s.get(User, people["student1"]), "MATHS", 100, now=NOW)
    assert result == {"unlocked_minutes": 0, "records": [], "message": "No active unlock rules."}


def test_use_consumes_whole_records_soonest_expiring_first(app, people, unlock_rules):
    with session_scope(app) as s:
        student = s.get(User, people["student1"])
        unlock_service.process_trigger(s, student, "MATHS", 85, now=NOW, expiry_hours=48)
        unlock_service.process_trigger(s, student, "ENGLISH", 75, now=NOW, expiry_hours=24)

        assert unlock_service.use_minutes(s, student, 100, student, now=NOW) is None

        consumed, remaining = unlock_service.use_minutes(s, student, 10, student, now=NOW)
        assert [r.subject for r in consumed] == ["ENGLISH"]
        assert remaining == 20

        status = unlock_service.unlock_status(s, student, now=NOW)
        assert status["current_unlocked_minutes"] == 20
        assert status["total_earned_minutes"] == 35
        assert status["total_used_minutes"] == 15

        consumed, remaining = unlock_service.use_minutes(s, student, None, student, now=NOW)
        assert [r.subject for r in consumed] == ["MATHS"]
        assert remaining == 0
        assert unlock_service.use_minutes(s, student, None, student, now=NOW) is None


def test_expired_records_are_not_available(app, people, unlock_rules):
    with session_scope(app) as s:
        student = s.get(User, people["student1"])
        unlock_service.process_trigger(s, student, "MATHS", 85, now=NOW - timedelta(days=2))
        status = unlock_service.unlock_status(s, student, now=NOW)
        assert status["current_unlocked_minutes"] == 0
        assert status["active_unlocks"] == []
        assert len(status["recent_achievements"]) == 1


def test_parent_configuration_is_family_scoped(client, people, login, app):
    headers = login("parent1")
    r = client.post(
        "/api/ipad-unlock/configurations",
        json={
            "name": "Reading reward",
            "family_id": people["F2"],
            "rules": [{"subject": "ENGLISH", "score_thresholds": [{"min_score": 50, "max_score": 100, "base_minutes": 5}]}],
        },
        headers=headers,
    )
    assert r.status_code == 201, r.json
    assert r.json["configuration"]["family_id"] == people["F1"]

    with session_scope(app) as s:
        student1 = s.get(User, people["student1"])
        student2 = s.get(User, people["student2"])
        assert unlock_service.process_trigger(s, student1, "ENGLISH", 60, now=NOW)["unlocked_minutes"] == 5
        assert unlock_service.process_trigger(s, student2, "ENGLISH", 60, now=NOW)["unlocked_minutes"] == 0

    assert len(client.get("/api/ipad-unlock/configurations").json["configurations"]) == 1
    client.post("/auth/logout")
    login("parent2")
    assert client.get("/api/ipad-unlock/configurations").json["configurations"] == []


def test_admin_creates_global_configuration(client, people, login):
    headers = login("admin")
    r = client.post(
        "/api/ipad-unlock/configurations",
        json={"name": "Everyone", "rules": [{"subject": "HASS", "score_thresholds": [BAND]}], "is_active": False},
        headers=headers,
    )
    assert r.status_code == 201
    assert r.json["configuration"]["family_id"] is None
    assert client.get("/api/ipad-unlock/configurations?active=true").json["configurations"] == []

    r = client.post(
        "/api/ipad-unlock/configurations",
        json={"name": "Nowhere", "family_id": 99999, "rules": [{"subject": "HASS", "score_thresholds": [BAND]}]},
        headers=headers,
    )
    assert r.status_code == 400


def test_students_cannot_manage_configurations(client, people, login):
    headers = login("student1")
    assert client.get("/api/ipad-unlock/configurations").status_code == 403
    r = client.post("/api/ipad-unlock/configurations", json={"name": "Mine", "rules": []}, headers=headers)
    assert r.status_code == 403


def test_trigger_status_and_use_over_http(client, people, login, unlock_rules):
    headers = login("parent1")
    student_id = people["student1"]
    r = client.post(
        "/api/ipad-unlock/trigger", json={"user_id": student_id, "subject": "maths", "score": 90}, headers=headers
    )
    assert r.status_code == 200
    assert r.json["unlocked_minutes"] == 20
    assert r.json["records"][0]["triggered_by"] == "manual"

    bad = client.post(
        "/api/ipad-unlock/trigger",
        json={"user_id": student_id, "subject": "MATHS", "score": 120, "triggered_by": "magic"},
        headers=headers,
    )
    assert bad.status_code == 400
    assert len(bad.json["errors"]) == 2
    no_student = client.post("/api/ipad-unlock/trigger", json={"subject": "MATHS", "score": 90}, headers=headers)
    assert no_student.status_code == 400
    client.post("/auth/logout")

    headers = login("student1")
    status = client.get("/api/ipad-unlock/status").json["status"]
    assert status["current_unlocked_minutes"] == 20
    requirements = {x["subject"]: x for x in status["next_unlock_requirements"]}
    assert requirements["MATHS"]["required_score"] == 60
    assert requirements["ENGLISH"]["potential_minutes"] == 20

    assert client.post("/api/ipad-unlock/use", json={"minutes": 0}, headers=headers).status_code == 400
    assert client.post("/api/ipad-unlock/use", json={"minutes": 45}, headers=headers).status_code == 400
    r = client.post("/api/ipad-unlock/use", json={"minutes": 15}, headers=headers)
    assert r.json["used_minutes"] == 20
    assert r.json["remaining_minutes"] == 0

    history = client.get("/api/ipad-unlock/history").json["history"]
    assert len(history) == 1
    assert history[0]["used"] is True


def test_parent_sees_child_status_only(client, people, login, unlock_rules):
    login("parent1")
    assert client.get(f"/api/ipad-unlock/status?user_id={people['student1']}").status_code == 200
    assert client.get(f"/api/ipad-unlock/status?user_id={people['student2']}").status_code == 403
    # Parents have no unlock balance of their own.
    r = client.get("/api/ipad-unlock/status")
    assert r.status_code == 403
    assert r.json["missing_permission"] == "isStudent"


def test_manual_trigger_is_for_parents_and_admins(client, people, login, unlock_rules):
    headers = login("student1")
    r = client.post(
        "/api/ipad-unlock/trigger",
        json={"user_id": people["student1"], "subject": "MATHS", "score": 100},
        headers=headers,
    )
    assert r.status_code == 403
    assert r.json["missing_permission"] == "canManageUnlockRules"
    assert client.get("/api/ipad-unlock/status").json["status"]["current_unlocked_minutes"] == 0
    client.post("/auth/logout")

    headers = login("parent2")
    r = client.post(
        "/api/ipad-unlock/trigger",
        json={"user_id": people["student1"], "subject": "MATHS", "score": 100},
        headers=headers,
    )
    assert r.status_code == 403
