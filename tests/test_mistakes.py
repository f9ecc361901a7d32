import pytest

from app.famlearn.db import session_scope
from app.famlearn.models import User
from app.famlearn.modules.mistakes import service as mistakes_service


@pytest.fixture()
def exercise_id(client, people, login):
    r = client.post(
        "/api/exercises/english",
        json={
            "title": "Apostrophes",
            "year_level": 4,
            "questions": [
                {"id": "q1", "type": "short-answer", "prompt": "Contract 'do not'", "correct_answer": "don't"},
                {"id": "q2", "type": "short-answer", "prompt": "Contract 'it is'", "correct_answer": "it's"},
            ],
        },
        headers=login("admin"),
    )
    client.post("/auth/logout")
    return r.json["exercise"]["id"]


def _payload(exercise_id, question_id="q1", **overrides):
    return {
        "exercise_id": exercise_id,
        "question_id": question_id,
        "question_content": "Contract 'do not'",
        "incorrect_answer": "dont",
        "correct_answer": "don't",
        "mistake_type": "CARELESS_ERROR",
        "subject": "ENGLISH",
        "tags": ["punctuation"],
        **overrides,
    }


def test_add_is_an_upsert(client, people, login, exercise_id):
    headers = login("student1")
    r = client.post("/api/mistakes", json=_payload(exercise_id), headers=headers)
    assert r.status_code == 201
    assert r.json["created"] is True
    mistake_id = r.json["mistake"]["id"]

    r = client.post("/api/mistakes", json=_payload(exercise_id, incorrect_answer="do'nt"), headers=headers)
    assert r.status_code == 200
    assert r.json["created"] is False
    assert r.json["mistake"]["id"] == mistake_id
    assert r.json["mistake"]["repeat_count"] == 2
    assert r.json["mistake"]["incorrect_answer"] == "do'nt"


def test_add_validation(client, people, login, exercise_id):
    headers = login("student1")
    r = client.post(
        "/api/mistakes",
        json=_payload(exercise_id, mistake_type="GUESS", subject="ART", question_content=""),
        headers=headers,
    )
    assert r.status_code == 400
    errors = " ".join(r.json["errors"])
    assert "mistake_type" in errors
    assert "subject" in errors
    assert "question_content" in errors

    assert client.post("/api/mistakes", json=_payload(99999), headers=headers).status_code == 404


def test_parents_cannot_add(client, people, login, exercise_id):
    assert client.post("/api/mistakes", json=_payload(exercise_id), headers=login("parent1")).status_code == 403


def test_three_correct_reviews_master_the_entry(client, people, login, exercise_id):
    headers = login("student1")
    mistake_id = client.post("/api/mistakes", json=_payload(exercise_id), headers=headers).json["mistake"]["id"]

    def review(is_correct):
        r = client.post(f"/api/mistakes/{mistake_id}/review", json={"is_correct": is_correct}, headers=headers)
        assert r.status_code == 200, r.json
        return r.json["mistake"]

    review(True)
    review(False)
    review(True)
    assert review(True)["is_mastered"] is False

    mastered = review(True)
    assert mastered["is_mastered"] is True
    assert mastered["mastered_at"]
    assert mastered["review_count"] == 5
    assert len(mastered["reviews"]) == 5

    # Repeating the mistake puts it back in the active list.
    again = client.post("/api/mistakes", json=_payload(exercise_id), headers=headers).json["mistake"]
    assert again["is_mastered"] is False
    assert again["mastered_at"] is None


def test_review_is_owner_only(client, people, login, exercise_id):
    headers = login("student1")
    mistake_id = client.post("/api/mistakes", json=_payload(exercise_id), headers=headers).json["mistake"]["id"]
    r = client.post(f"/api/mistakes/{mistake_id}/review", json={"is_correct": "yes"}, headers=headers)
    assert r.status_code == 400
    client.post("/auth/logout")

    headers = login("parent1")
    foreign = client.post(f"/api/mistakes/{mistake_id}/review", json={"is_correct": True}, headers=headers)
    missing = client.post("/api/mistakes/99999/review", json={"is_correct": True}, headers=headers)
    assert foreign.status_code == missing.status_code == 403
    assert foreign.json["missing_permission"] == "isOwner"


def test_list_filters_and_stats(client, people, login, exercise_id):
    headers = login("student1")
    first = client.post("/api/mistakes", json=_payload(exercise_id), headers=headers).json["mistake"]
    client.post(
        "/api/mistakes",
        json=_payload(exercise_id, "q2", mistake_type="CONCEPT_ERROR", question_content="Contract 'it is'"),
        headers=headers,
    )
    for _ in range(3):
        client.post(f"/api/mistakes/{first['id']}/review", json={"is_correct": True}, headers=headers)

    r = client.get("/api/mistakes")
    assert r.status_code == 200
    assert [m["question_id"] for m in r.json["mistakes"]] == ["q2", "q1"]
    assert r.json["stats"]["total_mistakes"] == 2
    assert r.json["stats"]["mastered_mistakes"] == 1
    assert r.json["stats"]["mastery_rate"] == 50
    assert r.json["stats"]["subject_breakdown"] == [{"subject": "ENGLISH", "count": 2}]

    active = client.get("/api/mistakes?status=active").json["mistakes"]
    assert [m["question_id"] for m in active] == ["q2"]
    careless = client.get("/api/mistakes?mistake_type=careless_error").json["mistakes"]
    assert [m["question_id"] for m in careless] == ["q1"]
    assert client.get("/api/mistakes?status=forgotten").status_code == 400


def test_parent_views_child_book(client, people, login, exercise_id):
    client.post("/api/mistakes", json=_payload(exercise_id), headers=login("student1"))
    client.post("/auth/logout")

    login("parent1")
    r = client.get(f"/api/mistakes?user_id={people['student1']}")
    assert r.json["pagination"]["total"] == 1
    client.post("/auth/logout")

    login("parent2")
    assert client.get(f"/api/mistakes?user_id={people['student1']}").status_code == 403


def test_stats_for_empty_book(app, people):
    with session_scope(app) as s:
        stats = mistakes_service.mistake_stats(s, s.get(User, people["student2"]).id)
    assert stats["total_mistakes"] == 0
    assert stats["mastery_rate"] == 0
    assert stats["subject_breakdown"] == []
