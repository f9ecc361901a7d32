"""
Vocabulary words and spaced-repetition progress.

Review scheduling follows the Ebbinghaus forgetting curve: each correct answer
moves a word one step up EBBINGHAUS_INTERVALS, each wrong answer one step down.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select

from app.famlearn.audit import record_activity
from app.famlearn.utils import iso, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.models import User
    from app.famlearn.modules.vocabulary.models import VocabularyProgress, VocabularyWord

logger = logging.getLogger(__name__)

EBBINGHAUS_INTERVALS = (1, 3, 7, 15, 30, 60, 120)  # days
PHASES = ("RECOGNITION", "UNDERSTANDING", "APPLICATION", "MASTERY")
PARTS_OF_SPEECH = (
    "NOUN",
    "VERB",
    "ADJECTIVE",
    "ADVERB",
    "PREPOSITION",
    "CONJUNCTION",
    "PRONOUN",
    "INTERJECTION",
    "ARTICLE",
    "PHRASE",
)
PRACTICE_TYPES = ("recognition", "translation", "spelling", "listening", "context")
REVIEW_ACTIONS = ("mark_completed", "postpone", "reset")

_PHASE_WEIGHTS = {"RECOGNITION": 15, "UNDERSTANDING": 10, "APPLICATION": 5, "MASTERY": 0}


# ---------- pure scheduling rules ----------


def next_review(level: int, is_correct: bool, now: datetime) -> tuple[datetime, int, int]:
    """Returns (next_review_at, interval_days, new_level)."""
    if is_correct:
        new_level = min(level + 1, len(EBBINGHAUS_INTERVALS) - 1)
    else:
        new_level = max(0, level - 1)
    interval = EBBINGHAUS_INTERVALS[new_level]
    return now + timedelta(days=interval), interval, new_level


def mastery_level(correct_attempts: int, attempts: int, streak: int) -> int:
    if attempts == 0:
        return 0
    accuracy = correct_attempts / attempts
    streak_bonus = min(streak * 5, 30)
    return min(round(accuracy * 70 + streak_bonus), 100)


def advance_phase(phase: str, mastery: int, streak: int) -> str:
    if mastery >= 80 and streak >= 3 and phase in PHASES[:-1]:
        return PHASES[PHASES.index(phase) + 1]
    return phase


def review_priority(p: "VocabularyProgress", review_day: date, today: date) -> int:
    priority = 0.0
    overdue_days = (today - review_day).days
    if overdue_days > 0:
        priority += overdue_days * 10
    priority += (100 - p.mastery_level) * 0.5
    # Last answer was wrong
    if p.streak_count == 0 and p.attempts > 0:
        priority += 20
    priority += p.word.difficulty * 3
    priority += _PHASE_WEIGHTS.get(p.phase, 0)
    return round(priority)


# ---------- words ----------


def serialize_word(w: "VocabularyWord", progress: "VocabularyProgress | None" = None, *, include_progress: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": w.id,
        "word": w.word,
        "definition": w.definition,
        "part_of_speech": w.part_of_speech,
        "pronunciation": w.pronunciation,
        "example": w.example,
        "chinese_definition": w.chinese_definition,
        "difficulty": w.difficulty,
        "frequency": w.frequency,
        "year_level": w.year_level,
        "category": w.category,
        "synonyms": w.synonyms or [],
        "antonyms": w.antonyms or [],
        "tags": w.tags or [],
        "source": w.source,
        "created_at": iso(w.created_at),
    }
    if include_progress:
        data["user_progress"] = (
            {
                "phase": progress.phase,
                "mastery_level": progress.mastery_level,
                "next_review_at": iso(progress.next_review_at),
                "is_memorized": progress.is_memorized,
                "needs_review": progress.needs_review,
            }
            if progress
            else None
        )
    return data


def _validate_str_list(payload: dict, key: str, errors: list[str]) -> None:
    value = payload.get(key)
    if value is None:
        return
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        errors.append(f"{key} must be a list of strings.")


def validate_word_payload(s: "Session", payload: dict, *, existing: "VocabularyWord | None" = None) -> list[str]:
    """Validate word create/update payload. Returns list of errors."""
    from app.famlearn.modules.vocabulary.models import VocabularyWord

    errors: list[str] = []
    creating = existing is None

    if creating or "word" in payload:
        word = (payload.get("word") or "").strip().lower()
        if not word:
            errors.append("Word is required.")
        else:
            clash = s.scalar(select(VocabularyWord.id).where(VocabularyWord.word == word))
            if clash is not None and (existing is None or clash != existing.id):
                errors.append("That word already exists.")

    if creating or "definition" in payload:
        if not (payload.get("definition") or "").strip():
            errors.append("Definition is required.")

    if creating or "part_of_speech" in payload:
        pos = (payload.get("part_of_speech") or "").strip().upper()
        if pos not in PARTS_OF_SPEECH:
            errors.append(f"Part of speech must be one of: {', '.join(PARTS_OF_SPEECH)}")

    if payload.get("difficulty") is not None:
        d = parse_int(payload.get("difficulty"))
        if d is None or not (1 <= d <= 5):
            errors.append("Difficulty must be between 1 and 5.")
    if payload.get("frequency") is not None:
        f = parse_int(payload.get("frequency"))
        if f is None or f < 1:
            errors.append("Frequency must be at least 1.")
    if payload.get("year_level") is not None:
        y = parse_int(payload.get("year_level"))
        if y is None or not (1 <= y <= 12):
            errors.append("Year level must be between 1 and 12.")

    for key in ("synonyms", "antonyms", "tags"):
        _validate_str_list(payload, key, errors)
    return errors


_WORD_TEXT_FIELDS = ("pronunciation", "example", "chinese_definition", "category")


def create_word(s: "Session", payload: dict, user: "User") -> "VocabularyWord":
    from app.famlearn.modules.vocabulary.models import VocabularyWord

    now = datetime.utcnow()
    word = VocabularyWord(
        word=(payload.get("word") or "").strip().lower(),
        definition=(payload.get("definition") or "").strip(),
        part_of_speech=(payload.get("part_of_speech") or "").strip().upper(),
        difficulty=parse_int(payload.get("difficulty")) or 1,
        frequency=parse_int(payload.get("frequency")) or 1,
        year_level=parse_int(payload.get("year_level")),
        synonyms=payload.get("synonyms"),
        antonyms=payload.get("antonyms"),
        tags=payload.get("tags"),
        source=(payload.get("source") or "").strip() or "manual",
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    for key in _WORD_TEXT_FIELDS:
        setattr(word, key, (payload.get(key) or "").strip() or None)
    s.add(word)
    s.flush()

    record_activity(
        s,
        actor=user,
        action="CREATE_CONTENT",
        resource_type="VocabularyWord",
        resource_id=word.id,
        details={"type": "vocabulary", "word": word.word},
    )
    return word


def update_word(s: "Session", word: "VocabularyWord", payload: dict, user: "User") -> "VocabularyWord":
    changed: list[str] = []
    if "word" in payload:
        word.word = (payload.get("word") or "").strip().lower()
        changed.append("word")
    if "definition" in payload:
        word.definition = (payload.get("definition") or "").strip()
        changed.append("definition")
    if "part_of_speech" in payload:
        word.part_of_speech = (payload.get("part_of_speech") or "").strip().upper()
        changed.append("part_of_speech")
    for key in ("difficulty", "frequency", "year_level"):
        if key in payload:
            setattr(word, key, parse_int(payload.get(key)))
            changed.append(key)
    for key in ("synonyms", "antonyms", "tags"):
        if key in payload:
            setattr(word, key, payload.get(key))
            changed.append(key)
    for key in _WORD_TEXT_FIELDS + ("source",):
        if key in payload:
            setattr(word, key, (payload.get(key) or "").strip() or None)
            changed.append(key)
    if word.source is None:
        word.source = "manual"
    word.updated_at = datetime.utcnow()

    record_activity(
        s,
        actor=user,
        action="EDIT_CONTENT",
        resource_type="VocabularyWord",
        resource_id=word.id,
        details={"type": "vocabulary", "word": word.word, "fields": changed},
    )
    return word


def delete_word(s: "Session", word: "VocabularyWord", user: "User") -> None:
    record_activity(
        s,
        actor=user,
        action="DELETE_CONTENT",
        resource_type="VocabularyWord",
        resource_id=word.id,
        details={"type": "vocabulary", "word": word.word, "learners": len(word.progress)},
    )
    s.delete(word)


def word_query(args: dict):
    from app.famlearn.modules.vocabulary.models import VocabularyWord

    stmt = select(VocabularyWord)
    year_level = parse_int(args.get("year_level"))
    if year_level is not None:
        stmt = stmt.where(VocabularyWord.year_level == year_level)
    difficulty = parse_int(args.get("difficulty"))
    if difficulty is not None:
        stmt = stmt.where(VocabularyWord.difficulty == difficulty)
    category = (args.get("category") or "").strip()
    if category:
        stmt = stmt.where(VocabularyWord.category == category)
    source = (args.get("source") or "").strip()
    if source:
        stmt = stmt.where(VocabularyWord.source == source)
    search = (args.get("search") or "").strip().lower()
    if search:
        like = f"%{search}%"
        stmt = stmt.where(
            or_(
                func.lower(VocabularyWord.word).like(like),
                func.lower(VocabularyWord.definition).like(like),
                func.lower(func.coalesce(VocabularyWord.chinese_definition, "")).like(like),
            )
        )
    return stmt.order_by(VocabularyWord.frequency.desc(), VocabularyWord.word.asc())


def progress_for_words(s: "Session", user_id: int, word_ids: list[int]) -> dict[int, "VocabularyProgress"]:
    from app.famlearn.modules.vocabulary.models import VocabularyProgress

    if not word_ids:
        return {}
    rows = s.execute(
        select(VocabularyProgress).where(VocabularyProgress.user_id == user_id, VocabularyProgress.word_id.in_(word_ids))
    ).scalars()
    return {p.word_id: p for p in rows}


# ---------- progress ----------


def serialize_progress(p: "VocabularyProgress") -> dict[str, Any]:
    return {
        "id": p.id,
        "user_id": p.user_id,
        "word_id": p.word_id,
        "phase": p.phase,
        "mastery_level": p.mastery_level,
        "attempts": p.attempts,
        "correct_attempts": p.correct_attempts,
        "streak_count": p.streak_count,
        "total_study_seconds": p.total_study_seconds,
        "ebbinghaus_level": p.ebbinghaus_level,
        "review_interval_days": p.review_interval_days,
        "next_review_at": iso(p.next_review_at),
        "last_seen_at": iso(p.last_seen_at),
        "last_correct_at": iso(p.last_correct_at),
        "is_memorized": p.is_memorized,
        "needs_review": p.needs_review,
        "word": {
            "id": p.word.id,
            "word": p.word.word,
            "definition": p.word.definition,
            "chinese_definition": p.word.chinese_definition,
            "difficulty": p.word.difficulty,
            "year_level": p.word.year_level,
        },
    }


def validate_progress_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if parse_int(payload.get("word_id")) is None:
        errors.append("word_id is required.")
    if not isinstance(payload.get("is_correct"), bool):
        errors.append("is_correct must be a boolean.")
    phase = payload.get("phase")
    if phase is not None and phase not in PHASES:
        errors.append(f"Phase must be one of: {', '.join(PHASES)}")
    time_spent = payload.get("time_spent")
    if time_spent is not None and (parse_int(time_spent) is None or parse_int(time_spent) < 0):
        errors.append("time_spent must be a non-negative number of seconds.")
    practice_type = payload.get("practice_type")
    if practice_type is not None and practice_type not in PRACTICE_TYPES:
        errors.append(f"practice_type must be one of: {', '.join(PRACTICE_TYPES)}")
    return errors


def record_practice(
    s: "Session",
    user: "User",
    word: "VocabularyWord",
    payload: dict,
    *,
    now: datetime | None = None,
) -> tuple["VocabularyProgress", dict[str, bool]]:
    """Apply one practice answer. Returns (progress, {phase_advanced, mastery_improved})."""
    from app.famlearn.modules.vocabulary.models import VocabularyProgress

    now = now or datetime.utcnow()
    progress = s.execute(
        select(VocabularyProgress).where(VocabularyProgress.user_id == user.id, VocabularyProgress.word_id == word.id)
    ).scalar_one_or_none()
    if progress is None:
        progress = VocabularyProgress(
            user_id=user.id,
            word_id=word.id,
            word=word,
            phase="RECOGNITION",
            mastery_level=0,
            attempts=0,
            correct_attempts=0,
            streak_count=0,
            total_study_seconds=0,
            ebbinghaus_level=0,
            review_interval_days=1,
            created_at=now,
        )
        s.add(progress)

    is_correct = bool(payload["is_correct"])
    old_phase = progress.phase
    old_mastery = progress.mastery_level

    progress.attempts += 1
    if is_correct:
        progress.correct_attempts += 1
        progress.streak_count += 1
        progress.last_correct_at = now
    else:
        progress.streak_count = 0
    progress.total_study_seconds += parse_int(payload.get("time_spent")) or 0

    next_at, interval, level = next_review(progress.ebbinghaus_level, is_correct, now)
    progress.next_review_at = next_at
    progress.review_interval_days = interval
    progress.ebbinghaus_level = level

    mastery = mastery_level(progress.correct_attempts, progress.attempts, progress.streak_count)
    progress.mastery_level = mastery
    if payload.get("phase"):
        progress.phase = payload["phase"]
    else:
        progress.phase = advance_phase(progress.phase, mastery, progress.streak_count)

    progress.last_seen_at = now
    progress.is_memorized = mastery >= 90 and progress.phase == "MASTERY"
    progress.needs_review = (not is_correct) or mastery < 60
    s.flush()

    record_activity(
        s,
        actor=user,
        action="VOCABULARY_STUDY",
        resource_type="VocabularyProgress",
        resource_id=progress.id,
        details={
            "word_id": word.id,
            "word": word.word,
            "is_correct": is_correct,
            "phase": progress.phase,
            "mastery_level": mastery,
            "practice_type": payload.get("practice_type"),
        },
    )
    return progress, {"phase_advanced": progress.phase != old_phase, "mastery_improved": mastery > old_mastery}


def progress_query(user_id: int, args: dict):
    from app.famlearn.modules.vocabulary.models import VocabularyProgress

    stmt = select(VocabularyProgress).where(VocabularyProgress.user_id == user_id)
    phase = (args.get("phase") or "").strip().upper()
    if phase:
        stmt = stmt.where(VocabularyProgress.phase == phase)
    if args.get("needs_review") is not None:
        stmt = stmt.where(VocabularyProgress.needs_review.is_(str(args.get("needs_review")).lower() == "true"))
    if args.get("is_memorized") is not None:
        stmt = stmt.where(VocabularyProgress.is_memorized.is_(str(args.get("is_memorized")).lower() == "true"))
    return stmt.order_by(VocabularyProgress.next_review_at.asc(), VocabularyProgress.last_seen_at.desc())


def progress_statistics(s: "Session", user_id: int, now: datetime) -> dict[str, Any]:
    from app.famlearn.modules.vocabulary.models import VocabularyProgress

    rows = s.execute(
        select(
            VocabularyProgress.phase,
            VocabularyProgress.is_memorized,
            func.count(),
            func.avg(VocabularyProgress.mastery_level),
        )
        .where(VocabularyProgress.user_id == user_id)
        .group_by(VocabularyProgress.phase, VocabularyProgress.is_memorized)
    ).all()
    distribution = [
        {"phase": phase, "is_memorized": memorized, "count": n, "avg_mastery": round(float(avg or 0), 1)}
        for phase, memorized, n, avg in rows
    ]

    horizon = now + timedelta(days=1)
    due = s.execute(
        select(VocabularyProgress.next_review_at).where(
            VocabularyProgress.user_id == user_id,
            VocabularyProgress.next_review_at.is_not(None),
            VocabularyProgress.next_review_at <= horizon,
        )
    ).scalars().all()
    today_count = sum(1 for d in due if d <= now)
    return {
        "phase_distribution": distribution,
        "review_schedule": {
            "today_reviews": today_count,
            "tomorrow_reviews": len(due) - today_count,
            "total_pending": len(due),
        },
    }


# ---------- review schedule ----------


def review_schedule(
    s: "Session",
    user_id: int,
    *,
    start: date,
    days: int,
    include_overdue: bool,
    today: date,
) -> dict[str, Any]:
    from app.famlearn.modules.vocabulary.models import VocabularyProgress

    start_dt = datetime.combine(start, datetime.min.time())
    end_dt = start_dt + timedelta(days=days)
    stmt = select(VocabularyProgress).where(
        VocabularyProgress.user_id == user_id,
        VocabularyProgress.next_review_at.is_not(None),
        VocabularyProgress.next_review_at <= end_dt,
    )
    if not include_overdue:
        stmt = stmt.where(VocabularyProgress.next_review_at >= start_dt)
    stmt = stmt.order_by(
        VocabularyProgress.next_review_at.asc(),
        VocabularyProgress.mastery_level.asc(),
        VocabularyProgress.streak_count.asc(),
    )
    items = s.execute(stmt).scalars().all()

    schedule: dict[str, list[dict[str, Any]]] = {}
    statuses: Counter[str] = Counter()
    for p in items:
        review_day = p.next_review_at.date()
        if review_day < today:
            status = "overdue"
        elif review_day == today:
            status = "today"
        else:
            status = "pending"
        statuses[status] += 1
        entry = serialize_progress(p)
        entry["status"] = status
        entry["priority"] = review_priority(p, review_day, today)
        schedule.setdefault(review_day.isoformat(), []).append(entry)

    for entries in schedule.values():
        entries.sort(key=lambda e: e["priority"], reverse=True)

    statistics = {
        "total_review_words": len(items),
        "overdue_words": statuses["overdue"],
        "today_words": statuses["today"],
        "upcoming_words": statuses["pending"],
        "difficulty_distribution": dict(Counter(str(p.word.difficulty) for p in items)),
        "phase_distribution": dict(Counter(p.phase for p in items)),
        "mastery_distribution": {
            "low": sum(1 for p in items if p.mastery_level < 30),
            "medium": sum(1 for p in items if 30 <= p.mastery_level < 70),
            "high": sum(1 for p in items if p.mastery_level >= 70),
        },
    }
    return {
        "schedule": schedule,
        "statistics": statistics,
        "recommendations": recommendations(statistics),
        "date_range": {"start": start.isoformat(), "end": end_dt.date().isoformat(), "days": days},
    }


def recommendations(stats: dict[str, Any]) -> list[str]:
    out: list[str] = []
    if stats["overdue_words"] > 10:
        out.append(f"{stats['overdue_words']} words are overdue; review those first.")
    if stats["today_words"] > 20:
        out.append("Heavy review load today; split it into batches of 10-15 words.")
    if stats["mastery_distribution"]["low"] > 5:
        out.append(f"{stats['mastery_distribution']['low']} words have low mastery; practise them more often.")
    if stats["phase_distribution"].get("RECOGNITION", 0) > 10:
        out.append("Many words are still at the recognition stage; try more translation practice.")
    if stats["total_review_words"] < 5:
        out.append("Few words are due; consider learning some new vocabulary.")
    if not out:
        out.append("Your review plan looks balanced. Keep it up!")
    return out


def apply_review_action(
    s: "Session",
    user: "User",
    word_ids: list[int],
    action: str,
    *,
    now: datetime | None = None,
) -> int | None:
    """
    Bulk review update. Returns the number of rows touched, or None when
    some ids are not in the student's own progress list.
    """
    from app.famlearn.modules.vocabulary.models import VocabularyProgress

    now = now or datetime.utcnow()
    rows = s.execute(
        select(VocabularyProgress).where(VocabularyProgress.user_id == user.id, VocabularyProgress.word_id.in_(word_ids))
    ).scalars().all()
    if len(rows) != len(set(word_ids)):
        return None

    for p in rows:
        if action == "mark_completed":
            p.last_seen_at = now
            p.needs_review = False
        elif action == "postpone":
            p.next_review_at = now + timedelta(days=1)
            p.needs_review = True
        elif action == "reset":
            p.next_review_at = now
            p.ebbinghaus_level = 0
            p.review_interval_days = EBBINGHAUS_INTERVALS[0]
            p.needs_review = True
            p.streak_count = 0
        else:
            raise ValueError(f"unknown review action: {action}")

    record_activity(
        s,
        actor=user,
        action="VOCABULARY_STUDY",
        details={"operation": action, "word_count": len(rows), "word_ids": sorted(set(word_ids))},
    )
    logger.info("Review action %s applied to %d words for user_id=%s", action, len(rows), user.id)
    return len(rows)
