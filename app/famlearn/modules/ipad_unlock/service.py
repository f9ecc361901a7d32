"""
iPad screen-time rewards.

A configuration maps a subject score band to minutes. Triggering with a score
creates one UnlockRecord per matching configuration; records expire after
UNLOCK_EXPIRY_HOURS and are consumed by `use_minutes`.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select

from app.famlearn.audit import record_activity
from app.famlearn.constants import Subject
from app.famlearn.utils import iso

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.models import User
    from app.famlearn.modules.ipad_unlock.models import UnlockConfiguration, UnlockRecord

logger = logging.getLogger(__name__)

TRIGGER_SOURCES = ("exercise", "homework", "manual")
HISTORY_LIMIT = 50
RECENT_DAYS = 7


def serialize_configuration(c: "UnlockConfiguration") -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "rules": c.rules or [],
        "is_active": c.is_active,
        "family_id": c.family_id,
        "created_by_user_id": c.created_by_user_id,
        "created_at": iso(c.created_at),
    }


def serialize_record(r: "UnlockRecord") -> dict[str, Any]:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "configuration_id": r.configuration_id,
        "configuration_name": r.configuration.name if r.configuration else None,
        "subject": r.subject,
        "achieved_score": r.achieved_score,
        "unlocked_minutes": r.unlocked_minutes,
        "triggered_by": r.triggered_by,
        "unlocked_at": iso(r.unlocked_at),
        "expires_at": iso(r.expires_at),
        "used": r.used,
        "used_at": iso(r.used_at),
    }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_threshold(t: Any, where: str, errors: list[str]) -> None:
    if not isinstance(t, dict):
        errors.append(f"{where} must be an object.")
        return
    for key in ("min_score", "max_score"):
        v = t.get(key)
        if not _is_number(v) or not (0 <= v <= 100):
            errors.append(f"{where}.{key} must be a number between 0 and 100.")
    for key in ("base_minutes", "bonus_minutes"):
        v = t.get(key, 0)
        if not _is_number(v) or v < 0:
            errors.append(f"{where}.{key} must be a non-negative number.")
    if _is_number(t.get("min_score")) and _is_number(t.get("max_score")) and t["min_score"] > t["max_score"]:
        errors.append(f"{where}.min_score must not exceed max_score.")


def validate_configuration_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    name = (payload.get("name") or "").strip()
    if not name:
        errors.append("name is required.")
    elif len(name) > 100:
        errors.append("name must be at most 100 characters.")
    if "is_active" in payload and not isinstance(payload["is_active"], bool):
        errors.append("is_active must be a boolean.")

    rules = payload.get("rules")
    if not isinstance(rules, list) or not rules:
        errors.append("rules must be a non-empty list.")
        return errors
    subjects = [s.value for s in Subject]
    for i, rule in enumerate(rules):
        where = f"rules[{i}]"
        if not isinstance(rule, dict):
            errors.append(f"{where} must be an object.")
            continue
        if rule.get("subject") not in subjects:
            errors.append(f"{where}.subject must be one of: {', '.join(subjects)}")
        thresholds = rule.get("score_thresholds")
        if not isinstance(thresholds, list) or not thresholds:
            errors.append(f"{where}.score_thresholds must be a non-empty list.")
        else:
            for j, t in enumerate(thresholds):
                _validate_threshold(t, f"{where}.score_thresholds[{j}]", errors)
        limit = rule.get("daily_limit")
        if limit is not None and (not _is_number(limit) or limit < 0):
            errors.append(f"{where}.daily_limit must be a non-negative number.")
    return errors


def create_configuration(s: "Session", payload: dict, actor: "User", *, family_id: int | None) -> "UnlockConfiguration":
    from app.famlearn.modules.ipad_unlock.models import UnlockConfiguration

    config = UnlockConfiguration(
        name=payload["name"].strip(),
        description=(payload.get("description") or "").strip() or None,
        rules=payload["rules"],
        is_active=payload.get("is_active", True),
        family_id=family_id,
        created_by_user_id=actor.id,
    )
    s.add(config)
    s.flush()
    record_activity(
        s,
        actor=actor,
        action="CREATE_UNLOCK_CONFIG",
        resource_type="UnlockConfiguration",
        resource_id=config.id,
        details={"name": config.name, "family_id": family_id},
    )
    return config


def active_configurations(s: "Session", family_id: int | None) -> list["UnlockConfiguration"]:
    """Active configurations that apply to a family: global ones plus the family's own."""
    from app.famlearn.modules.ipad_unlock.models import UnlockConfiguration

    scope = UnlockConfiguration.family_id.is_(None)
    if family_id is not None:
        scope = or_(scope, UnlockConfiguration.family_id == family_id)
    stmt = (
        select(UnlockConfiguration)
        .where(UnlockConfiguration.is_active.is_(True), scope)
        .order_by(UnlockConfiguration.created_at.desc(), UnlockConfiguration.id.desc())
    )
    return list(s.execute(stmt).scalars().all())


def match_threshold(rule: dict, score: float) -> dict | None:
    for t in rule.get("score_thresholds") or []:
        if t["min_score"] <= score <= t["max_score"]:
            return t
    return None


def minutes_for_score(threshold: dict, score: float) -> int:
    minutes = int(threshold.get("base_minutes") or 0)
    if score >= threshold["max_score"]:
        minutes += int(threshold.get("bonus_minutes") or 0)
    return minutes


def _minutes_since(s: "Session", user_id: int, since: datetime) -> int:
    from app.famlearn.modules.ipad_unlock.models import UnlockRecord

    return (
        s.scalar(
            select(func.coalesce(func.sum(UnlockRecord.unlocked_minutes), 0)).where(
                UnlockRecord.user_id == user_id,
                UnlockRecord.unlocked_at >= since,
            )
        )
        or 0
    )


def process_trigger(
    s: "Session",
    student: "User",
    subject: str,
    score: float,
    *,
    triggered_by: str = "manual",
    expiry_hours: int = 24,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Evaluate every applicable configuration for one score.

    Within a rule the first band containing the score wins; hitting the top of
    the band adds bonus minutes. A rule's daily_limit caps the student's total
    minutes earned since midnight UTC.
    """
    from app.famlearn.modules.ipad_unlock.models import UnlockRecord

    now = now or datetime.utcnow()
    configs = active_configurations(s, student.family_id)
    if not configs:
        return {"unlocked_minutes": 0, "records": [], "message": "No active unlock rules."}

    midnight = datetime(now.year, now.month, now.day)
    records: list[UnlockRecord] = []
    total = 0
    for config in configs:
        rule = next((r for r in config.rules or [] if r.get("subject") == subject), None)
        if rule is None:
            continue
        threshold = match_threshold(rule, score)
        if threshold is None:
            continue
        minutes = minutes_for_score(threshold, score)

        limit = rule.get("daily_limit")
        if limit:
            earned_today = _minutes_since(s, student.id, midnight)
            minutes = max(0, min(minutes, int(limit) - earned_today))
        if minutes <= 0:
            continue

        record = UnlockRecord(
            user_id=student.id,
            configuration_id=config.id,
            subject=subject,
            achieved_score=round(score),
            unlocked_minutes=minutes,
            triggered_by=triggered_by,
            unlocked_at=now,
            expires_at=now + timedelta(hours=expiry_hours),
            used=False,
        )
        s.add(record)
        s.flush()
        records.append(record)
        total += minutes

    if total:
        logger.info("Unlocked %d minutes for user_id=%s subject=%s score=%s", total, student.id, subject, score)
        record_activity(
            s,
            actor=student,
            action="IPAD_UNLOCK",
            resource_type="UnlockRecord",
            resource_id=records[0].id,
            details={"subject": subject, "score": score, "minutes": total, "triggered_by": triggered_by},
        )
    return {
        "unlocked_minutes": total,
        "records": [serialize_record(r) for r in records],
        "message": f"Earned {total} minutes of iPad time." if total else "Unlock requirements not met.",
    }


def recent_subject_score(s: "Session", user_id: int, subject: str) -> int:
    from app.famlearn.modules.exercises.models import Exercise, ExerciseSubmission

    pct = s.scalar(
        select(ExerciseSubmission.percentage)
        .join(Exercise, Exercise.id == ExerciseSubmission.exercise_id)
        .where(ExerciseSubmission.user_id == user_id, Exercise.subject == subject)
        .order_by(ExerciseSubmission.submitted_at.desc(), ExerciseSubmission.id.desc())
        .limit(1)
    )
    return pct or 0


def next_requirements(s: "Session", student: "User") -> list[dict[str, Any]]:
    requirements = []
    for config in active_configurations(s, student.family_id):
        for rule in config.rules or []:
            current = recent_subject_score(s, student.id, rule["subject"])
            nxt = next((t for t in rule.get("score_thresholds") or [] if t["min_score"] > current), None)
            if nxt is None:
                continue
            requirements.append(
                {
                    "configuration_id": config.id,
                    "subject": rule["subject"],
                    "current_score": current,
                    "required_score": nxt["min_score"],
                    "potential_minutes": int(nxt.get("base_minutes") or 0) + int(nxt.get("bonus_minutes") or 0),
                }
            )
    return requirements


def _active_records(s: "Session", user_id: int, now: datetime) -> list["UnlockRecord"]:
    from app.famlearn.modules.ipad_unlock.models import UnlockRecord

    stmt = (
        select(UnlockRecord)
        .where(UnlockRecord.user_id == user_id, UnlockRecord.used.is_(False), UnlockRecord.expires_at > now)
        .order_by(UnlockRecord.expires_at.asc(), UnlockRecord.id.asc())
    )
    return list(s.execute(stmt).scalars().all())


def unlock_status(s: "Session", student: "User", *, now: datetime | None = None) -> dict[str, Any]:
    from app.famlearn.modules.ipad_unlock.models import UnlockRecord

    now = now or datetime.utcnow()
    since = now - timedelta(days=RECENT_DAYS)
    active = _active_records(s, student.id, now)
    recent = (
        s.execute(
            select(UnlockRecord)
            .where(UnlockRecord.user_id == student.id, UnlockRecord.unlocked_at >= since)
            .order_by(UnlockRecord.unlocked_at.desc())
            .limit(10)
        )
        .scalars()
        .all()
    )
    used_minutes = s.scalar(
        select(func.coalesce(func.sum(UnlockRecord.unlocked_minutes), 0)).where(
            UnlockRecord.user_id == student.id,
            UnlockRecord.used.is_(True),
            UnlockRecord.used_at >= since,
        )
    )
    return {
        "user_id": student.id,
        "current_unlocked_minutes": sum(r.unlocked_minutes for r in active),
        "total_earned_minutes": _minutes_since(s, student.id, since),
        "total_used_minutes": used_minutes or 0,
        "active_unlocks": [serialize_record(r) for r in active],
        "recent_achievements": [serialize_record(r) for r in recent],
        "next_unlock_requirements": next_requirements(s, student),
    }


def unlock_history(s: "Session", user_id: int, limit: int = HISTORY_LIMIT) -> list["UnlockRecord"]:
    from app.famlearn.modules.ipad_unlock.models import UnlockRecord

    stmt = (
        select(UnlockRecord)
        .where(UnlockRecord.user_id == user_id)
        .order_by(UnlockRecord.unlocked_at.desc(), UnlockRecord.id.desc())
        .limit(limit)
    )
    return list(s.execute(stmt).scalars().all())


def use_minutes(
    s: "Session",
    student: "User",
    minutes: int | None,
    actor: "User",
    *,
    now: datetime | None = None,
) -> tuple[list["UnlockRecord"], int] | None:
    """
    Consume whole records, soonest-expiring first, until `minutes` is covered.
    minutes=None consumes everything available. Returns None when the
    available balance is short.
    """
    now = now or datetime.utcnow()
    active = _active_records(s, student.id, now)
    available = sum(r.unlocked_minutes for r in active)
    if minutes is None:
        minutes = available
    if minutes <= 0 or minutes > available:
        return None

    consumed: list = []
    covered = 0
    for r in active:
        if covered >= minutes:
            break
        r.used = True
        r.used_at = now
        consumed.append(r)
        covered += r.unlocked_minutes
    s.flush()

    record_activity(
        s,
        actor=actor,
        action="IPAD_UNLOCK_USE",
        resource_type="User",
        resource_id=student.id,
        details={"requested": minutes, "consumed": covered, "records": [r.id for r in consumed]},
    )
    return consumed, available - covered
