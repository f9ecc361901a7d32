from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from app.famlearn.audit import record_activity
from app.famlearn.constants import DIFFICULTIES, EXERCISE_SUBJECTS, YEAR_LEVELS
from app.famlearn.modules.exercises import grading
from app.famlearn.modules.ipad_unlock import service as unlock_service
from app.famlearn.modules.mistakes import service as mistakes_service
from app.famlearn.utils import iso, parse_datetime, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.models import User
    from app.famlearn.modules.exercises.models import Exercise, ExerciseSubmission

logger = logging.getLogger(__name__)

SUBJECT_CODES = tuple(s.value for s in EXERCISE_SUBJECTS)
_HIDDEN_QUESTION_KEYS = ("correct_answer", "explanation", "tolerance")


def normalize_subject(raw: str | None) -> str | None:
    code = (raw or "").strip().upper()
    return code if code in SUBJECT_CODES else None


def serialize_exercise(e: "Exercise", *, include_answers: bool = True, include_questions: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": e.id,
        "subject": e.subject,
        "title": e.title,
        "description": e.description,
        "content": e.content,
        "year_level": e.year_level,
        "difficulty": e.difficulty,
        "topic": e.topic,
        "total_points": e.total_points,
        "question_count": len(e.questions or []),
        "time_limit_minutes": e.time_limit_minutes,
        "is_published": e.is_published,
        "created_at": iso(e.created_at),
    }
    if include_questions:
        questions = e.questions or []
        if not include_answers:
            questions = [{k: v for k, v in q.items() if k not in _HIDDEN_QUESTION_KEYS} for q in questions]
        data["questions"] = questions
    return data


def serialize_submission(sub: "ExerciseSubmission") -> dict[str, Any]:
    return {
        "id": sub.id,
        "user_id": sub.user_id,
        "exercise_id": sub.exercise_id,
        "score": sub.score,
        "max_score": sub.max_score,
        "percentage": sub.percentage,
        "correct_count": sub.correct_count,
        "total_questions": sub.total_questions,
        "time_spent_seconds": sub.time_spent_seconds,
        "started_at": iso(sub.started_at),
        "submitted_at": iso(sub.submitted_at),
        "results": sub.results or [],
    }


def _validate_question(q: Any, where: str, seen: set[str], errors: list[str]) -> None:
    if not isinstance(q, dict):
        errors.append(f"{where} must be an object.")
        return
    qid = q.get("id")
    if qid in (None, ""):
        errors.append(f"{where}.id is required.")
    elif str(qid) in seen:
        errors.append(f"{where}.id '{qid}' is duplicated.")
    else:
        seen.add(str(qid))
    if q.get("type") not in grading.QUESTION_TYPES:
        errors.append(f"{where}.type must be one of: {', '.join(grading.QUESTION_TYPES)}")
    prompt = q.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        errors.append(f"{where}.prompt is required.")
    if q.get("correct_answer") in (None, ""):
        errors.append(f"{where}.correct_answer is required.")
    elif q.get("type") == "matching" and not isinstance(q.get("correct_answer"), dict):
        errors.append(f"{where}.correct_answer must be an object for matching questions.")
    points = q.get("points", 1)
    if isinstance(points, bool) or not isinstance(points, (int, float)) or points <= 0:
        errors.append(f"{where}.points must be a positive number.")
    if "options" in q and not isinstance(q["options"], list):
        errors.append(f"{where}.options must be a list.")


def validate_exercise_payload(payload: dict, subject: str, *, existing: "Exercise | None" = None) -> list[str]:
    """Validate a create payload, or only the keys present when updating ``existing``."""
    errors: list[str] = []
    creating = existing is None
    if subject not in SUBJECT_CODES:
        errors.append(f"subject must be one of: {', '.join(SUBJECT_CODES)}")
    if creating or "title" in payload:
        title = (payload.get("title") or "").strip()
        if not title:
            errors.append("title is required.")
        elif len(title) > 255:
            errors.append("title must be at most 255 characters.")
    if (creating or "year_level" in payload) and parse_int(payload.get("year_level")) not in YEAR_LEVELS:
        errors.append("year_level must be between 1 and 12.")
    if (creating or "difficulty" in payload) and payload.get("difficulty", "medium") not in DIFFICULTIES:
        errors.append(f"difficulty must be one of: {', '.join(DIFFICULTIES)}")
    limit = payload.get("time_limit_minutes")
    if limit is not None and (parse_int(limit) is None or parse_int(limit) <= 0):
        errors.append("time_limit_minutes must be a positive integer.")

    if creating or "questions" in payload:
        questions = payload.get("questions")
        if not isinstance(questions, list) or not questions:
            errors.append("questions must be a non-empty list.")
        else:
            seen: set[str] = set()
            for i, q in enumerate(questions):
                _validate_question(q, f"questions[{i}]", seen, errors)
    return errors


def _normalize_questions(raw: list[dict]) -> list[dict]:
    questions = []
    for q in raw:
        q = dict(q)
        q["id"] = str(q["id"])
        q.setdefault("points", 1)
        questions.append(q)
    return questions


def create_exercise(s: "Session", subject: str, payload: dict, actor: "User") -> "Exercise":
    from app.famlearn.modules.exercises.models import Exercise

    questions = _normalize_questions(payload["questions"])
    exercise = Exercise(
        subject=subject,
        title=payload["title"].strip(),
        description=(payload.get("description") or "").strip() or None,
        content=payload.get("content") or None,
        year_level=parse_int(payload["year_level"]),
        difficulty=payload.get("difficulty") or "medium",
        topic=(payload.get("topic") or "").strip().lower() or None,
        questions=questions,
        total_points=round(sum(q["points"] for q in questions)),
        time_limit_minutes=parse_int(payload.get("time_limit_minutes")),
        is_published=payload.get("is_published", True) is not False,
        created_by_user_id=actor.id,
    )
    s.add(exercise)
    s.flush()
    record_activity(
        s,
        actor=actor,
        action="CREATE_CONTENT",
        resource_type="Exercise",
        resource_id=exercise.id,
        details={"subject": subject, "title": exercise.title, "questions": len(questions)},
    )
    return exercise


def update_exercise(s: "Session", exercise: "Exercise", payload: dict, actor: "User") -> "Exercise":
    """Apply the keys present in ``payload``. Stored submissions keep the score they were graded with."""
    changed: list[str] = []
    if "title" in payload:
        exercise.title = payload["title"].strip()
        changed.append("title")
    if "description" in payload:
        exercise.description = (payload.get("description") or "").strip() or None
        changed.append("description")
    if "topic" in payload:
        exercise.topic = (payload.get("topic") or "").strip().lower() or None
        changed.append("topic")
    if "content" in payload:
        exercise.content = payload.get("content") or None
        changed.append("content")
    if "year_level" in payload:
        exercise.year_level = parse_int(payload["year_level"])
        changed.append("year_level")
    if "difficulty" in payload:
        exercise.difficulty = payload["difficulty"]
        changed.append("difficulty")
    if "time_limit_minutes" in payload:
        exercise.time_limit_minutes = parse_int(payload.get("time_limit_minutes"))
        changed.append("time_limit_minutes")
    if "is_published" in payload:
        exercise.is_published = payload.get("is_published") is not False
        changed.append("is_published")
    if "questions" in payload:
        exercise.questions = _normalize_questions(payload["questions"])
        exercise.total_points = round(sum(q["points"] for q in exercise.questions))
        changed.append("questions")
    exercise.updated_at = datetime.utcnow()

    record_activity(
        s,
        actor=actor,
        action="EDIT_CONTENT",
        resource_type="Exercise",
        resource_id=exercise.id,
        details={"subject": exercise.subject, "title": exercise.title, "fields": changed},
    )
    return exercise


def homework_usage(s: "Session", exercise_id: int) -> int:
    """Number of homework assignments that include the exercise."""
    from app.famlearn.modules.homework.models import HomeworkAssignmentExercise

    return (
        s.scalar(
            select(func.count())
            .select_from(HomeworkAssignmentExercise)
            .where(HomeworkAssignmentExercise.exercise_id == exercise_id)
        )
        or 0
    )


def delete_exercise(s: "Session", exercise: "Exercise", actor: "User") -> None:
    # Submissions and mistake-book entries go with it (ON DELETE CASCADE).
    record_activity(
        s,
        actor=actor,
        action="DELETE_CONTENT",
        resource_type="Exercise",
        resource_id=exercise.id,
        details={"subject": exercise.subject, "title": exercise.title},
    )
    s.delete(exercise)


def exercise_query(subject: str, args: dict, *, include_unpublished: bool = False):
    from app.famlearn.modules.exercises.models import Exercise

    stmt = select(Exercise).where(Exercise.subject == subject)
    if not include_unpublished:
        stmt = stmt.where(Exercise.is_published.is_(True))
    year_level = parse_int(args.get("year_level"))
    if year_level is not None:
        stmt = stmt.where(Exercise.year_level == year_level)
    difficulty = (args.get("difficulty") or "").strip().lower()
    if difficulty:
        stmt = stmt.where(Exercise.difficulty == difficulty)
    topic = (args.get("topic") or "").strip().lower()
    if topic:
        stmt = stmt.where(Exercise.topic == topic)
    q = (args.get("q") or "").strip()
    if q:
        stmt = stmt.where(Exercise.title.ilike(f"%{q}%"))
    return stmt.order_by(Exercise.year_level.asc(), Exercise.created_at.desc(), Exercise.id.desc())


def topic_counts(s: "Session", subject: str) -> list[dict[str, Any]]:
    from app.famlearn.modules.exercises.models import Exercise

    rows = s.execute(
        select(Exercise.topic, func.count())
        .where(Exercise.subject == subject, Exercise.is_published.is_(True), Exercise.topic.is_not(None))
        .group_by(Exercise.topic)
        .order_by(Exercise.topic.asc())
    ).all()
    return [{"topic": topic, "exercise_count": n} for topic, n in rows]


def validate_submission_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not isinstance(payload.get("answers"), dict):
        errors.append("answers must be an object keyed by question id.")
    if payload.get("started_at") not in (None, "") and parse_datetime(payload.get("started_at")) is None:
        errors.append("started_at must be an ISO datetime.")
    return errors


def submit_exercise(
    s: "Session",
    user: "User",
    exercise: "Exercise",
    payload: dict,
    *,
    unlock_expiry_hours: int = 24,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Grade and store a submission, file each wrong answer in the mistake book,
    then evaluate iPad unlock rules with the percentage score.
    """
    from app.famlearn.modules.exercises.models import ExerciseSubmission

    now = now or datetime.utcnow()
    answers = {str(k): v for k, v in payload["answers"].items()}
    result = grading.grade(exercise.questions or [], answers)

    started_at = parse_datetime(payload.get("started_at"))
    time_spent = parse_int(payload.get("time_spent"))
    if time_spent is None:
        time_spent = max(0, int((now - started_at).total_seconds())) if started_at else 0

    submission = ExerciseSubmission(
        user_id=user.id,
        exercise_id=exercise.id,
        answers=answers,
        results=result.analysis,
        score=result.score,
        max_score=result.max_score,
        percentage=result.percentage,
        correct_count=result.correct_count,
        total_questions=result.total_questions,
        time_spent_seconds=time_spent,
        started_at=started_at,
        submitted_at=now,
    )
    s.add(submission)
    s.flush()

    added = 0
    for wrong in result.wrong:
        mistakes_service.add_mistake(
            s,
            user,
            {
                "exercise_id": exercise.id,
                "question_id": wrong["question_id"],
                "submission_id": submission.id,
                "question_content": wrong["prompt"] or f"Question {wrong['question_id']}",
                "incorrect_answer": wrong["user_answer"],
                "correct_answer": wrong["correct_answer"],
                "explanation": wrong["explanation"],
                "mistake_type": "UNKNOWN",
                "difficulty": exercise.difficulty,
                "subject": exercise.subject,
                "tags": [exercise.topic] if exercise.topic else None,
            },
            now=now,
        )
        added += 1

    unlock = unlock_service.process_trigger(
        s,
        user,
        exercise.subject,
        result.percentage,
        triggered_by="exercise",
        expiry_hours=unlock_expiry_hours,
        now=now,
    )

    record_activity(
        s,
        actor=user,
        action="SUBMIT_EXERCISE",
        resource_type="Exercise",
        resource_id=exercise.id,
        details={"submission_id": submission.id, "percentage": result.percentage, "mistakes_added": added},
    )
    logger.info(
        "Exercise %s submitted by user_id=%s: %s/%s (%s%%)",
        exercise.id,
        user.id,
        result.score,
        result.max_score,
        result.percentage,
    )
    return {
        "submission": serialize_submission(submission),
        "feedback": grading.feedback(result),
        "mistakes_added": added,
        "unlock": unlock,
    }
