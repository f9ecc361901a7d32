from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from app.famlearn.audit import record_activity
from app.famlearn.constants import DIFFICULTIES, Subject
from app.famlearn.utils import iso, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.models import User
    from app.famlearn.modules.mistakes.models import MistakeEntry, MistakeReview


MISTAKE_TYPES = ("CARELESS_ERROR", "CONCEPT_ERROR", "METHOD_ERROR", "TIME_PRESSURE", "UNKNOWN")
MASTERY_STREAK = 3
STATUS_FILTERS = ("active", "mastered", "all")


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, sort_keys=True)


def serialize_review(r: "MistakeReview") -> dict[str, Any]:
    return {
        "id": r.id,
        "is_correct": r.is_correct,
        "time_spent_seconds": r.time_spent_seconds,
        "notes": r.notes,
        "reviewed_at": iso(r.reviewed_at),
    }


def serialize_mistake(m: "MistakeEntry", *, recent_reviews: int = 5) -> dict[str, Any]:
    return {
        "id": m.id,
        "user_id": m.user_id,
        "exercise": {
            "id": m.exercise.id,
            "title": m.exercise.title,
            "subject": m.exercise.subject,
            "difficulty": m.exercise.difficulty,
            "year_level": m.exercise.year_level,
        }
        if m.exercise
        else None,
        "question_id": m.question_id,
        "submission_id": m.submission_id,
        "question_content": m.question_content,
        "incorrect_answer": m.incorrect_answer,
        "correct_answer": m.correct_answer,
        "explanation": m.explanation,
        "mistake_type": m.mistake_type,
        "difficulty": m.difficulty,
        "subject": m.subject,
        "tags": m.tags or [],
        "repeat_count": m.repeat_count,
        "review_count": m.review_count,
        "is_mastered": m.is_mastered,
        "mastered_at": iso(m.mastered_at),
        "last_mistake_at": iso(m.last_mistake_at),
        "last_review_at": iso(m.last_review_at),
        "created_at": iso(m.created_at),
        "reviews": [serialize_review(r) for r in m.reviews[:recent_reviews]],
    }


def validate_mistake_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if parse_int(payload.get("exercise_id")) is None:
        errors.append("exercise_id is required.")
    for key in ("question_id", "question_content", "incorrect_answer", "correct_answer"):
        if payload.get(key) in (None, ""):
            errors.append(f"{key} is required.")
    if payload.get("mistake_type", "UNKNOWN") not in MISTAKE_TYPES:
        errors.append(f"mistake_type must be one of: {', '.join(MISTAKE_TYPES)}")
    if payload.get("difficulty") is not None and payload.get("difficulty") not in DIFFICULTIES:
        errors.append(f"difficulty must be one of: {', '.join(DIFFICULTIES)}")
    if payload.get("subject") not in [s.value for s in Subject]:
        errors.append(f"subject must be one of: {', '.join(s.value for s in Subject)}")
    tags = payload.get("tags")
    if tags is not None and (not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)):
        errors.append("tags must be a list of strings.")
    return errors


def add_mistake(
    s: "Session",
    user: "User",
    payload: dict,
    *,
    now: datetime | None = None,
) -> tuple["MistakeEntry", bool]:
    """
    Upsert on (user, exercise, question). A repeat mistake bumps repeat_count
    and clears mastery. Returns (entry, created).
    """
    from app.famlearn.modules.mistakes.models import MistakeEntry

    now = now or datetime.utcnow()
    exercise_id = parse_int(payload.get("exercise_id"))
    question_id = str(payload.get("question_id"))
    entry = s.execute(
        select(MistakeEntry).where(
            MistakeEntry.user_id == user.id,
            MistakeEntry.exercise_id == exercise_id,
            MistakeEntry.question_id == question_id,
        )
    ).scalar_one_or_none()

    if entry is not None:
        entry.incorrect_answer = _as_text(payload.get("incorrect_answer"))
        entry.correct_answer = _as_text(payload.get("correct_answer"))
        entry.mistake_type = payload.get("mistake_type") or entry.mistake_type
        entry.submission_id = parse_int(payload.get("submission_id")) or entry.submission_id
        entry.repeat_count += 1
        entry.is_mastered = False
        entry.mastered_at = None
        entry.last_mistake_at = now
        return entry, False

    entry = MistakeEntry(
        user_id=user.id,
        exercise_id=exercise_id,
        question_id=question_id,
        submission_id=parse_int(payload.get("submission_id")),
        question_content=_as_text(payload.get("question_content")),
        incorrect_answer=_as_text(payload.get("incorrect_answer")),
        correct_answer=_as_text(payload.get("correct_answer")),
        explanation=payload.get("explanation"),
        mistake_type=payload.get("mistake_type") or "UNKNOWN",
        difficulty=payload.get("difficulty") or "medium",
        subject=payload["subject"],
        tags=payload.get("tags"),
        repeat_count=1,
        review_count=0,
        is_mastered=False,
        last_mistake_at=now,
        created_at=now,
    )
    s.add(entry)
    s.flush()
    return entry, True


def record_review(
    s: "Session",
    entry: "MistakeEntry",
    payload: dict,
    actor: "User",
    *,
    now: datetime | None = None,
) -> "MistakeReview":
    """Store a review; the entry is mastered once the last three reviews are all correct."""
    from app.famlearn.modules.mistakes.models import MistakeReview

    now = now or datetime.utcnow()
    review = MistakeReview(
        mistake_id=entry.id,
        is_correct=bool(payload["is_correct"]),
        time_spent_seconds=parse_int(payload.get("time_spent")) or 0,
        notes=(payload.get("notes") or "").strip() or None,
        reviewed_at=now,
    )
    s.add(review)
    s.flush()

    recent = s.execute(
        select(MistakeReview.is_correct)
        .where(MistakeReview.mistake_id == entry.id)
        .order_by(MistakeReview.reviewed_at.desc(), MistakeReview.id.desc())
        .limit(MASTERY_STREAK)
    ).scalars().all()
    mastered = len(recent) >= MASTERY_STREAK and all(recent)

    entry.is_mastered = mastered
    entry.mastered_at = now if mastered else None
    entry.review_count += 1
    entry.last_review_at = now
    s.expire(entry, ["reviews"])

    record_activity(
        s,
        actor=actor,
        action="MISTAKE_REVIEW",
        resource_type="MistakeEntry",
        resource_id=entry.id,
        details={"is_correct": review.is_correct, "is_mastered": mastered},
    )
    return review


def mistake_query(user_id: int, args: dict):
    from app.famlearn.modules.mistakes.models import MistakeEntry

    stmt = select(MistakeEntry).where(MistakeEntry.user_id == user_id)
    subject = (args.get("subject") or "").strip().upper()
    if subject:
        stmt = stmt.where(MistakeEntry.subject == subject)
    mistake_type = (args.get("mistake_type") or "").strip().upper()
    if mistake_type:
        stmt = stmt.where(MistakeEntry.mistake_type == mistake_type)
    status = (args.get("status") or "all").strip().lower()
    if status == "active":
        stmt = stmt.where(MistakeEntry.is_mastered.is_(False))
    elif status == "mastered":
        stmt = stmt.where(MistakeEntry.is_mastered.is_(True))
    return stmt.order_by(MistakeEntry.is_mastered.asc(), MistakeEntry.created_at.desc())


def mistake_stats(s: "Session", user_id: int, subject: str | None = None, *, now: datetime | None = None) -> dict[str, Any]:
    from app.famlearn.modules.mistakes.models import MistakeEntry

    now = now or datetime.utcnow()
    conds = [MistakeEntry.user_id == user_id]
    if subject:
        conds.append(MistakeEntry.subject == subject)

    def _count(*extra) -> int:
        return s.scalar(select(func.count()).select_from(MistakeEntry).where(*conds, *extra)) or 0

    total = _count()
    mastered = _count(MistakeEntry.is_mastered.is_(True))
    breakdown = s.execute(
        select(MistakeEntry.subject, func.count()).where(*conds).group_by(MistakeEntry.subject)
    ).all()
    return {
        "total_mistakes": total,
        "active_mistakes": total - mastered,
        "mastered_mistakes": mastered,
        "recent_mistakes": _count(MistakeEntry.created_at >= now - timedelta(days=7)),
        "mastery_rate": round(mastered / total * 100) if total else 0,
        "subject_breakdown": [{"subject": subj, "count": n} for subj, n in breakdown],
    }
