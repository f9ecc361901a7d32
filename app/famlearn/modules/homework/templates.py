"""
Homework templates: named exercise-selection rules with default settings.

Using a template picks published exercises for each rule (subject, template
year levels, optional difficulty and topics, newest first, at most
``max_count``) and assigns them through the regular create path.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from app.famlearn.audit import record_activity
from app.famlearn.constants import DIFFICULTIES, EXERCISE_SUBJECTS, YEAR_LEVELS
from app.famlearn.modules.homework import service as homework_service
from app.famlearn.utils import iso, parse_bool, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.models import User
    from app.famlearn.modules.homework.models import HomeworkAssignment, HomeworkTemplate
    from app.famlearn.rbac import PermissionChecker

logger = logging.getLogger(__name__)

TEMPLATE_TYPES = ("QUICK_ASSIGNMENT", "WEEKLY_PLAN", "EXAM_PREP", "CUSTOM")
SUBJECT_CODES = tuple(x.value for x in EXERCISE_SUBJECTS)
SETTING_KEYS = (
    "priority",
    "total_points",
    "passing_score",
    "estimated_minutes",
    "late_submission_allowed",
    "late_penalty",
    "is_visible",
)


def normalize_type(raw: Any) -> str:
    # Accepts "weekly-plan" as well as "WEEKLY_PLAN".
    return str(raw or "").strip().upper().replace("-", "_")


def serialize_template(t: "HomeworkTemplate") -> dict[str, Any]:
    return {
        "id": t.id,
        "name": t.name,
        "description": t.description,
        "type": t.template_type,
        "year_levels": t.year_levels or [],
        "subjects": t.subjects or [],
        "selection_rules": t.selection_rules or [],
        "default_settings": t.default_settings or {},
        "usage_count": t.usage_count,
        "is_active": t.is_active,
        "created_by": {"id": t.created_by.id, "display_name": t.created_by.display_name} if t.created_by else None,
        "created_at": iso(t.created_at),
    }


def _validate_rule(rule: Any, where: str, subjects: list[str], errors: list[str]) -> None:
    if not isinstance(rule, dict):
        errors.append(f"{where} must be an object.")
        return
    subject = str(rule.get("subject") or "").strip().upper()
    if subject not in SUBJECT_CODES:
        errors.append(f"{where}.subject must be one of: {', '.join(SUBJECT_CODES)}")
    elif subject not in subjects:
        errors.append(f"{where}.subject must be one of the template subjects.")
    min_count = parse_int(rule.get("min_count", 1))
    max_count = parse_int(rule.get("max_count"))
    if min_count is None or min_count < 1:
        errors.append(f"{where}.min_count must be at least 1.")
    if max_count is None or max_count < 1:
        errors.append(f"{where}.max_count must be at least 1.")
    elif min_count is not None and min_count > max_count:
        errors.append(f"{where}.min_count must not exceed max_count.")
    if rule.get("difficulty") is not None and rule.get("difficulty") not in DIFFICULTIES:
        errors.append(f"{where}.difficulty must be one of: {', '.join(DIFFICULTIES)}")
    topics = rule.get("topics")
    if topics is not None and (not isinstance(topics, list) or not all(isinstance(x, str) for x in topics)):
        errors.append(f"{where}.topics must be a list of strings.")


def validate_template_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    name = (payload.get("name") or "").strip()
    if not name:
        errors.append("name is required.")
    elif len(name) > 255:
        errors.append("name must be at most 255 characters.")
    if normalize_type(payload.get("type") or "CUSTOM") not in TEMPLATE_TYPES:
        errors.append(f"type must be one of: {', '.join(TEMPLATE_TYPES)}")

    year_levels = payload.get("year_levels")
    if (
        not isinstance(year_levels, list)
        or not year_levels
        or any(parse_int(x) not in YEAR_LEVELS for x in year_levels)
    ):
        errors.append("year_levels must be a non-empty list of year levels 1-12.")

    subjects = payload.get("subjects")
    if not isinstance(subjects, list) or not subjects:
        errors.append("subjects must be a non-empty list.")
        subjects = []
    else:
        subjects = [str(x).strip().upper() for x in subjects]
        bad = [x for x in subjects if x not in SUBJECT_CODES]
        if bad:
            errors.append(f"Unknown subjects: {', '.join(bad)}")

    rules = payload.get("selection_rules")
    if not isinstance(rules, list) or not rules:
        errors.append("selection_rules must be a non-empty list.")
    else:
        for i, rule in enumerate(rules):
            _validate_rule(rule, f"selection_rules[{i}]", subjects, errors)

    settings = payload.get("default_settings")
    if settings is not None:
        if not isinstance(settings, dict):
            errors.append("default_settings must be an object.")
        else:
            unknown = sorted(set(settings) - set(SETTING_KEYS))
            if unknown:
                errors.append(f"Unknown default_settings keys: {', '.join(unknown)}")
    return errors


def create_template(s: "Session", payload: dict, actor: "User") -> "HomeworkTemplate":
    from app.famlearn.modules.homework.models import HomeworkTemplate

    rules = []
    for rule in payload["selection_rules"]:
        item: dict[str, Any] = {
            "subject": str(rule["subject"]).strip().upper(),
            "min_count": parse_int(rule.get("min_count", 1)),
            "max_count": parse_int(rule["max_count"]),
        }
        if rule.get("difficulty"):
            item["difficulty"] = rule["difficulty"]
        if rule.get("topics"):
            item["topics"] = [x.strip().lower() for x in rule["topics"] if x.strip()]
        rules.append(item)

    t = HomeworkTemplate(
        name=payload["name"].strip(),
        description=(payload.get("description") or "").strip() or None,
        template_type=normalize_type(payload.get("type") or "CUSTOM"),
        year_levels=sorted({parse_int(x) for x in payload["year_levels"]}),
        subjects=list(dict.fromkeys(str(x).strip().upper() for x in payload["subjects"])),
        selection_rules=rules,
        default_settings=dict(payload.get("default_settings") or {}),
        is_active=parse_bool(payload.get("is_active")) is not False,
        usage_count=0,
        created_by_id=actor.id,
    )
    s.add(t)
    s.flush()
    record_activity(
        s,
        actor=actor,
        action="CREATE_HOMEWORK_TEMPLATE",
        resource_type="HomeworkTemplate",
        resource_id=t.id,
        details={"name": t.name, "type": t.template_type},
    )
    return t


def template_rows(s: "Session", checker: "PermissionChecker", args: dict) -> list["HomeworkTemplate"]:
    """Templates matching the filters, most used first. Students only see active ones."""
    from app.famlearn.modules.homework.models import HomeworkTemplate

    stmt = select(HomeworkTemplate)
    template_type = normalize_type(args.get("type"))
    if template_type:
        stmt = stmt.where(HomeworkTemplate.template_type == template_type)
    active = parse_bool(args.get("active"))
    if checker.is_student():
        active = True
    if active is not None:
        stmt = stmt.where(HomeworkTemplate.is_active.is_(active))
    stmt = stmt.order_by(
        HomeworkTemplate.usage_count.desc(), HomeworkTemplate.created_at.desc(), HomeworkTemplate.id.desc()
    )
    rows = s.execute(stmt).scalars().all()

    # Year levels and subjects are JSON lists; filter them here so sqlite and Postgres agree.
    year_level = parse_int(args.get("year_level"))
    if year_level is not None:
        rows = [t for t in rows if year_level in (t.year_levels or [])]
    subject = (args.get("subject") or "").strip().upper()
    if subject:
        rows = [t for t in rows if subject in (t.subjects or [])]
    return rows


def select_exercises(s: "Session", t: "HomeworkTemplate") -> tuple[list[int], list[str]]:
    """Exercise ids chosen by the template rules, plus one message per rule that came up short."""
    from app.famlearn.modules.exercises.models import Exercise

    chosen: list[int] = []
    shortfalls: list[str] = []
    for rule in t.selection_rules or []:
        stmt = select(Exercise.id).where(
            Exercise.subject == rule["subject"],
            Exercise.year_level.in_(t.year_levels or []),
            Exercise.is_published.is_(True),
        )
        if rule.get("difficulty"):
            stmt = stmt.where(Exercise.difficulty == rule["difficulty"])
        if rule.get("topics"):
            stmt = stmt.where(Exercise.topic.in_(rule["topics"]))
        if chosen:
            stmt = stmt.where(Exercise.id.not_in(chosen))
        ids = s.execute(
            stmt.order_by(Exercise.created_at.desc(), Exercise.id.desc()).limit(rule["max_count"])
        ).scalars().all()
        if len(ids) < rule["min_count"]:
            shortfalls.append(f"{rule['subject']}: need {rule['min_count']}, found {len(ids)}.")
        chosen.extend(ids)
    return chosen, shortfalls


def use_template(
    s: "Session",
    t: "HomeworkTemplate",
    payload: dict,
    actor: "User",
    checker: "PermissionChecker",
) -> "HomeworkAssignment":
    """
    Assign homework built from the template. ``payload`` carries the students
    and optional title/description/instructions/due_at plus ``settings`` that
    override the template defaults. Raises HomeworkError with ``errors``.
    """
    if not t.is_active:
        raise homework_service.HomeworkError("Template is not active.")
    exercise_ids, shortfalls = select_exercises(s, t)
    if shortfalls:
        raise homework_service.HomeworkError("Not enough exercises match the template rules.", errors=shortfalls)

    overrides = payload.get("settings") or {}
    if not isinstance(overrides, dict):
        raise homework_service.HomeworkError("settings must be an object.")
    settings = {**(t.default_settings or {}), **{k: v for k, v in overrides.items() if k in SETTING_KEYS}}
    assignment_payload: dict[str, Any] = {
        **settings,
        "title": payload.get("title") or f"{t.name} homework",
        "description": payload.get("description") or t.description,
        "instructions": payload.get("instructions"),
        "due_at": payload.get("due_at"),
        "student_ids": payload.get("student_ids"),
        "exercises": [{"exercise_id": x, "order": i} for i, x in enumerate(exercise_ids)],
    }
    errors = homework_service.validate_assignment_payload(s, assignment_payload, checker)
    if errors:
        raise homework_service.HomeworkError("Validation failed.", errors=errors)

    a = homework_service.create_assignment(s, assignment_payload, actor)
    t.usage_count = (t.usage_count or 0) + 1
    logger.info("Template %s used for homework %s by user_id=%s", t.id, a.id, actor.id)
    return a
