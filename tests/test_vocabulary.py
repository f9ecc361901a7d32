from datetime import datetime, timedelta

from app.famlearn.modules.vocabulary.service import advance_phase, mastery_level, next_review

NOW = datetime(2024, 5, 6, 8, 30)

WORD = {
    "word": "Harvest",
    "definition": "The season for gathering crops.",
    "part_of_speech": "noun",
    "difficulty": 2,
    "year_level": 4,
    "tags": ["farm"],
}


def test_next_review_steps_up_and_down():
    at, interval, level = next_review(0, True, NOW)
    assert (interval, level) == (3, 1)
    assert at == NOW + timedelta(days=3)

    assert next_review(0, False, NOW)[1:] == (1, 0)
    assert next_review(3, False, NOW)[1:] == (7, 2)
    assert next_review(6, True, NOW)[1:] == (120, 6)


def test_mastery_level():
    assert mastery_level(0, 0, 0) == 0
    assert mastery_level(1, 2, 0) == 35
    assert mastery_level(1, 1, 1) == 75
    assert mastery_level(10, 10, 10) == 100


def test_advance_phase():
    assert advance_phase("RECOGNITION", 85, 3) == "UNDERSTANDING"
    assert advance_phase("RECOGNITION", 79, 9) == "RECOGNITION"
    assert advance_phase("APPLICATION", 90, 2) == "APPLICATION"
    assert advance_phase("MASTERY", 100, 10) == "MASTERY"


def _create_word(client, headers, **overrides):
    r = client.post("/api/vocabulary/words", json={**WORD, **overrides}, headers=headers)
    assert r.status_code == 201, r.json
    return r.json["word"]


def test_parent_can_add_word_but_student_cannot(client, people, login):
    word = _create_word(client, login("parent1"))
    assert word["word"] == "harvest"
    assert word["part_of_speech"] == "NOUN"
    assert word["source"] == "manual"
    client.post("/auth/logout")

    r = client.post("/api/vocabulary/words", json={**WORD, "word": "meadow"}, headers=login("student1"))
    assert r.status_code == 403


def test_word_validation(client, people, login):
    headers = login("admin")
    _create_word(client, headers)
    r = client.post(
        "/api/vocabulary/words",
        json={"word": "HARVEST", "definition": "", "part_of_speech": "gerund", "difficulty": 9, "tags": "farm"},
        headers=headers,
    )
    assert r.status_code == 400
    errors = " ".join(r.json["errors"])
    assert "already exists" in errors
    assert "Definition" in errors
    assert "Part of speech" in errors
    assert "Difficulty" in errors
    assert "tags" in errors


def test_update_and_delete_word(client, people, login):
    headers = login("admin")
    word = _create_word(client, headers)

    r = client.put(f"/api/vocabulary/words/{word['id']}", json={"difficulty": 4}, headers=headers)
    assert r.status_code == 200
    assert r.json["word"]["difficulty"] == 4
    assert r.json["word"]["definition"] == WORD["definition"]

    assert client.delete(f"/api/vocabulary/words/{word['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/vocabulary/words/{word['id']}").status_code == 404


def test_word_list_search_and_student_progress(client, people, login):
    headers = login("admin")
    _create_word(client, headers)
    _create_word(client, headers, word="meadow", definition="A grassy field.", year_level=3)
    client.post("/auth/logout")

    login("student1")
    r = client.get("/api/vocabulary/words?search=grass")
    assert [w["word"] for w in r.json["words"]] == ["meadow"]
    assert r.json["words"][0]["user_progress"] is None

    r = client.get("/api/vocabulary/words?year_level=4")
    assert [w["word"] for w in r.json["words"]] == ["harvest"]


def test_practice_moves_through_phases(client, people, login):
    word = _create_word(client, login("admin"))
    client.post("/auth/logout")
    headers = login("student1")

    def practise(is_correct):
        r = client.post(
            "/api/vocabulary/progress",
            json={"word_id": word["id"], "is_correct": is_correct, "time_spent": 12, "practice_type": "spelling"},
            headers=headers,
        )
        assert r.status_code == 200, r.json
        return r.json["progress"]

    first = practise(True)
    assert first["mastery_level"] == 75
    assert first["review_interval_days"] == 3
    assert first["phase"] == "RECOGNITION"
    assert first["mastery_improved"] is True

    practise(True)
    third = practise(True)
    assert third["phase"] == "UNDERSTANDING"
    assert third["phase_advanced"] is True
    assert third["total_study_seconds"] == 36

    miss = practise(False)
    assert miss["streak_count"] == 0
    assert miss["mastery_level"] == 52
    assert miss["needs_review"] is True
    assert miss["review_interval_days"] == 7


def test_progress_rejects_bad_payload_and_non_students(client, people, login):
    word = _create_word(client, login("admin"))
    r = client.post("/api/vocabulary/progress", json={"word_id": word["id"], "is_correct": True}, headers=login("admin"))
    assert r.status_code == 403
    client.post("/auth/logout")

    headers = login("student1")
    r = client.post("/api/vocabulary/progress", json={"word_id": word["id"], "is_correct": "yes"}, headers=headers)
    assert r.status_code == 400
    r = client.post("/api/vocabulary/progress", json={"word_id": 99999, "is_correct": True}, headers=headers)
    assert r.status_code == 404


def test_parent_reads_child_progress_only(client, people, login):
    word = _create_word(client, login("admin"))
    client.post("/auth/logout")
    headers = login("student1")
    client.post("/api/vocabulary/progress", json={"word_id": word["id"], "is_correct": True}, headers=headers)
    client.post("/auth/logout")

    login("parent1")
    r = client.get(f"/api/vocabulary/progress?user_id={people['student1']}")
    assert r.status_code == 200
    assert r.json["pagination"]["total"] == 1
    assert r.json["progress"][0]["word"]["word"] == "harvest"
    assert client.get(f"/api/vocabulary/progress?user_id={people['student2']}").status_code == 403
    assert client.get("/api/vocabulary/progress").status_code == 400


def test_review_schedule_and_actions(client, people, login):
    word = _create_word(client, login("admin"))
    client.post("/auth/logout")
    headers = login("student1")
    client.post("/api/vocabulary/progress", json={"word_id": word["id"], "is_correct": True}, headers=headers)

    r = client.get("/api/vocabulary/review-schedule?days=7")
    assert r.status_code == 200
    assert r.json["statistics"]["total_review_words"] == 1
    assert r.json["statistics"]["upcoming_words"] == 1
    entries = [e for day in r.json["schedule"].values() for e in day]
    assert entries[0]["status"] == "pending"
    assert r.json["recommendations"]

    assert client.get("/api/vocabulary/review-schedule?days=0").status_code == 400
    assert client.get("/api/vocabulary/review-schedule?date=tomorrow").status_code == 400

    r = client.post(
        "/api/vocabulary/review-schedule",
        json={"word_ids": [word["id"]], "action": "reset"},
        headers=headers,
    )
    assert r.json == {"updated_count": 1, "action": "reset"}

    r = client.post(
        "/api/vocabulary/review-schedule",
        json={"word_ids": [word["id"], 99999], "action": "postpone"},
        headers=headers,
    )
    assert r.status_code == 400
    r = client.post(
        "/api/vocabulary/review-schedule",
        json={"word_ids": [word["id"]], "action": "forget"},
        headers=headers,
    )
    assert r.status_code == 400


def test_review_schedule_is_student_only(client, people, login):
    login("parent1")
    assert client.get("/api/vocabulary/review-schedule").status_code == 403
