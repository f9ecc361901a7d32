import pytest
from sqlalchemy import func, select

from app.famlearn.db import session_scope
from app.famlearn.models import ActivityLog
from app.famlearn.modules.exercises.grading import check_answer, feedback, grade
from app.famlearn.modules.exercises.models import ExerciseSubmission
from app.famlearn.modules.mistakes.models import MistakeEntry

QUESTIONS = [
    {"id": "1", "type": "multiple-choice", "prompt": "7 x 8?", "options": ["54", "56", "58"], "correct_answer": "56"},
    {"id": "2", "type": "numeric", "prompt": "Pi to two places", "correct_answer": 3.14, "tolerance": 0.01},
    {"id": "3", "type": "true-false", "prompt": "0 is even", "correct_answer": True},
    {"id": "4", "type": "short-answer", "prompt": "Name a shape with 3 sides", "correct_answer": "triangle"},
    {
        "id": "5",
        "type": "matching",
        "prompt": "Match the shapes",
        "correct_answer": {"square": "4", "pentagon": "5"},
        "explanation": "Count the sides.",
    },
]

EXERCISE = {
    "title": "Times tables and shapes",
    "year_level": 4,
    "difficulty": "easy",
    "topic": "Number",
    "questions": QUESTIONS,
}

ALL_RIGHT = {"1": "56", "2": "3.14", "3": "true", "4": "Triangle", "5": {"Square": "4", "pentagon": "5"}}


@pytest.mark.parametrize(
    "question,answer,expected",
    [
        ({"type": "short-answer", "correct_answer": "photosynthesis"}, " Photosynthesis ", True),
        ({"type": "short-answer", "correct_answer": "photosynthesis"}, "respiration", False),
        ({"type": "sentence-completion", "correct_answer": "cat, hat"}, "Cat,hat", True),
        ({"type": "sentence-completion", "correct_answer": "cat, hat"}, "cat", False),
        ({"type": "matching", "correct_answer": {"a": "1", "b": "2"}}, {"A": "1", "b": "2"}, True),
        ({"type": "matching", "correct_answer": {"a": "1", "b": "2"}}, "a1 b2", False),
        ({"type": "numeric", "correct_answer": 3.14, "tolerance": 0.01}, "3.145", True),
        ({"type": "numeric", "correct_answer": 12}, "$12", True),
        ({"type": "numeric", "correct_answer": 12}, "twelve", False),
        ({"type": "true-false", "correct_answer": True}, "TRUE", True),
        ({"type": "multiple-choice", "correct_answer": "B"}, "", False),
        ({"type": "multiple-choice", "correct_answer": "B"}, None, False),
    ],
)
def test_check_answer(question, answer, expected):
    assert check_answer(question, answer) is expected


def test_grade_and_feedback():
    answers = dict(ALL_RIGHT, **{"4": "circle"})
    result = grade(QUESTIONS, answers)
    assert (result.score, result.max_score, result.correct_count) == (4, 5, 4)
    assert result.percentage == 80
    assert [w["question_id"] for w in result.wrong] == ["4"]

    fb = feedback(result)
    assert "Needs more practice with short answer questions" in fb["improvements"]
    assert fb["recommendations"] == ["Keep practising at this level"]


def test_grade_weights_points():
    questions = [
        {"id": "a", "type": "multiple-choice", "correct_answer": "x", "points": 3},
        {"id": "b", "type": "multiple-choice", "correct_answer": "y", "points": 1},
    ]
    result = grade(questions, {"a": "x"})
    assert result.percentage == 75


def _create(client, headers, subject="maths", **overrides):
    r = client.post(f"/api/exercises/{subject}", json={**EXERCISE, **overrides}, headers=headers)
    assert r.status_code == 201, r.json
    return r.json["exercise"]


def test_create_requires_content_permission(client, people, login):
    r = client.post("/api/exercises/maths", json=EXERCISE, headers=login("parent1"))
    assert r.status_code == 403
    assert r.json["missing_permission"] == "canCreateContent"


def test_create_validates_questions(client, people, login):
    headers = login("admin")
    bad = {
        **EXERCISE,
        "year_level": 13,
        "questions": [
            {"id": "1", "type": "essay", "prompt": "Why?", "correct_answer": "because"},
            {"id": "1", "type": "matching", "prompt": "Match", "correct_answer": "a-1", "points": 0},
        ],
    }
    r = client.post("/api/exercises/maths", json=bad, headers=headers)
    assert r.status_code == 400
    errors = " ".join(r.json["errors"])
    assert "year_level" in errors
    assert "questions[0].type" in errors
    assert "duplicated" in errors
    assert "must be an object for matching" in errors
    assert "points" in errors

    assert client.post("/api/exercises/science", json=EXERCISE, headers=headers).status_code == 404


def test_student_sees_questions_without_answers(client, people, login):
    exercise = _create(client, login("admin"))
    assert exercise["total_points"] == 5
    assert exercise["topic"] == "number"
    client.post("/auth/logout")

    login("student1")
    r = client.get(f"/api/exercises/maths/{exercise['id']}")
    assert r.status_code == 200
    for q in r.json["exercise"]["questions"]:
        assert "correct_answer" not in q
        assert "tolerance" not in q
        assert "explanation" not in q
    assert client.get(f"/api/exercises/english/{exercise['id']}").status_code == 404

    listing = client.get("/api/exercises/maths")
    assert listing.json["pagination"]["total"] == 1
    assert "questions" not in listing.json["exercises"][0]


def test_unpublished_exercise_is_hidden_from_students(client, people, login):
    exercise = _create(client, login("admin"), is_published=False)
    assert client.get(f"/api/exercises/maths/{exercise['id']}").status_code == 200
    client.post("/auth/logout")

    login("student1")
    assert client.get(f"/api/exercises/maths/{exercise['id']}").status_code == 404
    assert client.get("/api/exercises/maths").json["exercises"] == []


def test_topics(client, people, login):
    headers = login("admin")
    _create(client, headers)
    _create(client, headers, title="More numbers")
    _create(client, headers, title="Angles", topic="Geometry")
    r = client.get("/api/exercises/maths/topics")
    assert r.json["topics"] == [
        {"topic": "geometry", "exercise_count": 1},
        {"topic": "number", "exercise_count": 2},
    ]


def test_submit_records_mistakes_and_unlocks(client, people, login, unlock_rules):
    exercise = _create(client, login("admin"))
    client.post("/auth/logout")

    headers = login("student1")
    answers = dict(ALL_RIGHT, **{"4": "circle"})
    r = client.post(
        "/api/exercises/maths/submit",
        json={"exercise_id": exercise["id"], "answers": answers, "time_spent": 95},
        headers=headers,
    )
    assert r.status_code == 201, r.json
    assert r.json["submission"]["percentage"] == 80
    assert r.json["submission"]["time_spent_seconds"] == 95
    assert r.json["mistakes_added"] == 1
    assert r.json["unlock"]["unlocked_minutes"] == 20
    assert r.json["unlock"]["records"][0]["triggered_by"] == "exercise"

    mistakes = client.get("/api/mistakes").json["mistakes"]
    assert len(mistakes) == 1
    assert mistakes[0]["question_id"] == "4"
    assert mistakes[0]["mistake_type"] == "UNKNOWN"

    r = client.post(
        "/api/exercises/maths/submit",
        json={"exercise_id": exercise["id"], "answers": ALL_RIGHT},
        headers=headers,
    )
    assert r.json["submission"]["percentage"] == 100
    assert r.json["mistakes_added"] == 0
    assert r.json["unlock"]["unlocked_minutes"] == 30

    history = client.get("/api/exercises/maths/submissions").json
    assert history["pagination"]["total"] == 2
    assert history["submissions"][0]["percentage"] == 100


def test_submit_validation(client, people, login):
    exercise = _create(client, login("admin"))
    client.post("/auth/logout")
    headers = login("student1")

    r = client.post("/api/exercises/maths/submit", json={"answers": []}, headers=headers)
    assert r.status_code == 400
    assert r.json["errors"][0] == "exercise_id is required."

    r = client.post("/api/exercises/maths/submit", json={"exercise_id": 99999, "answers": {}}, headers=headers)
    assert r.status_code == 404
    r = client.post(
        "/api/exercises/maths/submit",
        json={"exercise_id": exercise["id"], "answers": {}, "started_at": "yesterday"},
        headers=headers,
    )
    assert r.status_code == 400


def test_parents_cannot_submit(client, people, login):
    exercise = _create(client, login("admin"))
    client.post("/auth/logout")
    r = client.post(
        "/api/exercises/maths/submit",
        json={"exercise_id": exercise["id"], "answers": ALL_RIGHT},
        headers=login("parent1"),
    )
    assert r.status_code == 403


def test_submission_history_scoping(client, people, login):
    exercise = _create(client, login("admin"))
    client.post("/auth/logout")
    headers = login("student1")
    client.post("/api/exercises/maths/submit", json={"exercise_id": exercise["id"], "answers": ALL_RIGHT}, headers=headers)
    client.post("/auth/logout")

    login("parent1")
    r = client.get(f"/api/exercises/maths/submissions?user_id={people['student1']}")
    assert r.json["pagination"]["total"] == 1
    client.post("/auth/logout")

    login("parent2")
    assert client.get(f"/api/exercises/maths/submissions?user_id={people['student1']}").status_code == 403


def test_update_exercise(client, people, login, app):
    headers = login("admin")
    exercise = _create(client, headers)
    url = f"/api/exercises/maths/{exercise['id']}"

    r = client.put(url, json={"title": "Times tables", "questions": QUESTIONS[:2]}, headers=headers)
    assert r.status_code == 200, r.json
    updated = r.json["exercise"]
    assert updated["title"] == "Times tables"
    assert updated["total_points"] == 2
    assert updated["question_count"] == 2
    assert updated["topic"] == "number"
    assert updated["year_level"] == 4

    bad = client.put(url, json={"year_level": 0, "questions": []}, headers=headers)
    assert bad.status_code == 400
    errors = " ".join(bad.json["errors"])
    assert "year_level" in errors
    assert "questions must be a non-empty list" in errors

    assert client.put(f"/api/exercises/english/{exercise['id']}", json={"title": "x"}, headers=headers).status_code == 404
    with session_scope(app) as s:
        log = s.execute(select(ActivityLog).where(ActivityLog.action == "EDIT_CONTENT")).scalar_one()
        assert log.resource_id == str(exercise["id"])


def test_parents_cannot_edit_or_delete_exercises(client, people, login):
    exercise = _create(client, login("admin"))
    client.post("/auth/logout")

    headers = login("parent1")
    url = f"/api/exercises/maths/{exercise['id']}"
    r = client.put(url, json={"title": "Mine now"}, headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "canEditContent"
    r = client.delete(url, headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "canDeleteContent"


def test_delete_exercise_removes_its_history(client, people, login, app):
    exercise = _create(client, login("admin"))
    client.post("/auth/logout")

    r = client.post(
        "/api/exercises/maths/submit",
        json={"exercise_id": exercise["id"], "answers": dict(ALL_RIGHT, **{"4": "circle"})},
        headers=login("student1"),
    )
    assert r.json["mistakes_added"] == 1
    client.post("/auth/logout")

    headers = login("admin")
    url = f"/api/exercises/maths/{exercise['id']}"
    assert client.delete(url, headers=headers).status_code == 200
    assert client.get(url).status_code == 404
    with session_scope(app) as s:
        assert s.scalar(select(func.count()).select_from(ExerciseSubmission)) == 0
        assert s.scalar(select(func.count()).select_from(MistakeEntry)) == 0


def test_exercise_used_by_homework_cannot_be_deleted(client, people, login):
    headers = login("admin")
    exercise = _create(client, headers)
    r = client.post(
        "/api/homework/assignments",
        json={"title": "Tables", "student_ids": [people["student1"]], "exercises": [{"exercise_id": exercise["id"]}]},
        headers=headers,
    )
    assert r.status_code == 201
    r = client.delete(f"/api/exercises/maths/{exercise['id']}", headers=headers)
    assert r.status_code == 400
    assert r.json["assignments"] == 1
