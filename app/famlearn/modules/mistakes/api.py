from __future__ import annotations

from flask import Blueprint, abort, g, jsonify, request
from sqlalchemy import func, select

from app.famlearn.db import db_session
from app.famlearn.models import User
from app.famlearn.modules.exercises.models import Exercise
from app.famlearn.modules.mistakes import service as mistakes_service
from app.famlearn.modules.mistakes.models import MistakeEntry
from app.famlearn.rbac import Permission, current_checker, deny, require_login, require_permission
from app.famlearn.utils import json_body, page_args, pagination, parse_int

bp = Blueprint("mistakes", __name__)


@bp.get("")
@require_login
def list_mistakes():
    s = db_session()
    checker = current_checker()
    user_id = parse_int(request.args.get("user_id")) or checker.user_id
    target = s.get(User, user_id)
    if target is None or not checker.can_access_user_data(target.id, target.family_id):
        deny(Permission.VIEW_CHILDREN_PROGRESS.value)

    status = (request.args.get("status") or "all").strip().lower()
    if status not in mistakes_service.STATUS_FILTERS:
        return jsonify({"error": f"status must be one of: {', '.join(mistakes_service.STATUS_FILTERS)}"}), 400

    stmt = mistakes_service.mistake_query(user_id, request.args)
    page, limit = page_args()
    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = s.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    subject = (request.args.get("subject") or "").strip().upper() or None
    return jsonify(
        {
            "mistakes": [mistakes_service.serialize_mistake(m) for m in rows],
            "stats": mistakes_service.mistake_stats(s, user_id, subject),
            "pagination": pagination(page, limit, total),
        }
    )


@bp.post("")
@require_permission(Permission.SUBMIT_EXERCISES)
def add_mistake():
    s = db_session()
    payload = json_body()
    errors = mistakes_service.validate_mistake_payload(payload)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    if s.get(Exercise, parse_int(payload["exercise_id"])) is None:
        abort(404)

    entry, created = mistakes_service.add_mistake(s, g.current_user, payload)
    s.commit()
    return jsonify({"mistake": mistakes_service.serialize_mistake(entry), "created": created}), (201 if created else 200)


@bp.post("/<int:mistake_id>/review")
@require_login
def review_mistake(mistake_id: int):
    s = db_session()
    entry = s.get(MistakeEntry, mistake_id)
    # Only the owner reviews; everyone else sees the same 403.
    if entry is None or entry.user_id != g.current_user.id:
        deny("isOwner")

    payload = json_body()
    if not isinstance(payload.get("is_correct"), bool):
        return jsonify({"error": "is_correct must be a boolean."}), 400
    review = mistakes_service.record_review(s, entry, payload, g.current_user)
    s.commit()
    return jsonify(
        {
            "review": mistakes_service.serialize_review(review),
            "mistake": mistakes_service.serialize_mistake(entry),
        }
    )
