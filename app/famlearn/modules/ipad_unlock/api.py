from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import or_, select

from app.famlearn.constants import Role, Subject
from app.famlearn.db import db_session
from app.famlearn.models import Family, User
from app.famlearn.modules.ipad_unlock import service as unlock_service
from app.famlearn.modules.ipad_unlock.models import UnlockConfiguration
from app.famlearn.rbac import Permission, current_checker, deny, require_login, require_permission
from app.famlearn.utils import json_body, parse_int

bp = Blueprint("ipad_unlock", __name__)


def _target_student(s, raw_user_id) -> User:
    """Resolve ?user_id (default: caller) to a student the caller may see."""
    checker = current_checker()
    user_id = parse_int(raw_user_id) or checker.user_id
    target = s.get(User, user_id)
    if target is None or not checker.can_access_user_data(target.id, target.family_id):
        deny(Permission.VIEW_CHILDREN_PROGRESS.value)
    if target.role != Role.STUDENT:
        deny("isStudent")
    return target


@bp.get("/configurations")
@require_login
def list_configurations():
    checker = current_checker()
    if not checker.is_parent_or_admin():
        deny(Permission.MANAGE_UNLOCK_RULES.value)
    s = db_session()
    stmt = select(UnlockConfiguration).order_by(UnlockConfiguration.created_at.desc(), UnlockConfiguration.id.desc())
    if not checker.is_admin():
        stmt = stmt.where(
            or_(UnlockConfiguration.family_id.is_(None), UnlockConfiguration.family_id == checker.family_id)
        )
    if (request.args.get("active") or "").strip().lower() in ("1", "true", "yes"):
        stmt = stmt.where(UnlockConfiguration.is_active.is_(True))
    rows = s.execute(stmt).scalars().all()
    return jsonify({"configurations": [unlock_service.serialize_configuration(c) for c in rows]})


@bp.post("/configurations")
@require_permission(Permission.MANAGE_UNLOCK_RULES)
def create_configuration():
    s = db_session()
    checker = current_checker()
    payload = json_body()
    errors = unlock_service.validate_configuration_payload(payload)

    if checker.is_admin():
        family_id = parse_int(payload.get("family_id"))
        if family_id is not None and s.get(Family, family_id) is None:
            errors.append("family_id does not exist.")
    else:
        # Parents only configure rules for their own family.
        family_id = checker.family_id
        if family_id is None:
            errors.append("You must belong to a family to configure unlock rules.")
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400

    config = unlock_service.create_configuration(s, payload, g.current_user, family_id=family_id)
    s.commit()
    return jsonify({"configuration": unlock_service.serialize_configuration(config)}), 201


@bp.get("/status")
@require_login
def status():
    s = db_session()
    student = _target_student(s, request.args.get("user_id"))
    return jsonify({"status": unlock_service.unlock_status(s, student)})


@bp.get("/history")
@require_login
def history():
    s = db_session()
    student = _target_student(s, request.args.get("user_id"))
    records = unlock_service.unlock_history(s, student.id)
    return jsonify({"history": [unlock_service.serialize_record(r) for r in records]})


@bp.post("/trigger")
@require_permission(Permission.MANAGE_UNLOCK_RULES)
def trigger():
    """Manually award unlock time to a student; rewards for exercises and homework are triggered on submit."""
    s = db_session()
    payload = json_body()
    if parse_int(payload.get("user_id")) is None:
        return jsonify({"error": "user_id is required."}), 400
    student = _target_student(s, payload.get("user_id"))

    errors = []
    subject = (payload.get("subject") or "").strip().upper()
    if subject not in [x.value for x in Subject]:
        errors.append(f"subject must be one of: {', '.join(x.value for x in Subject)}")
    score = payload.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)) or not (0 <= score <= 100):
        errors.append("score must be a number between 0 and 100.")
    triggered_by = payload.get("triggered_by") or "manual"
    if triggered_by not in unlock_service.TRIGGER_SOURCES:
        errors.append(f"triggered_by must be one of: {', '.join(unlock_service.TRIGGER_SOURCES)}")
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400

    result = unlock_service.process_trigger(
        s,
        student,
        subject,
        score,
        triggered_by=triggered_by,
        expiry_hours=current_app.config["UNLOCK_EXPIRY_HOURS"],
    )
    s.commit()
    return jsonify(result)


@bp.post("/use")
@require_login
def use():
    s = db_session()
    payload = json_body()
    student = _target_student(s, payload.get("user_id"))
    minutes = payload.get("minutes")
    if minutes is not None and (parse_int(minutes) is None or parse_int(minutes) <= 0):
        return jsonify({"error": "minutes must be a positive integer."}), 400

    result = unlock_service.use_minutes(s, student, parse_int(minutes), g.current_user)
    if result is None:
        return jsonify({"error": "Not enough unlocked minutes available."}), 400
    consumed, remaining = result
    s.commit()
    return jsonify(
        {
            "used_minutes": sum(r.unlocked_minutes for r in consumed),
            "remaining_minutes": remaining,
            "records": [unlock_service.serialize_record(r) for r in consumed],
        }
    )
