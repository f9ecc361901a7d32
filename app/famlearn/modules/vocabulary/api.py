from __future__ import annotations

from datetime import date, datetime

from flask import Blueprint, abort, g, jsonify, request
from sqlalchemy import func, select

from app.famlearn.db import db_session
from app.famlearn.models import User
from app.famlearn.modules.vocabulary import service as vocab_service
from app.famlearn.modules.vocabulary.models import VocabularyWord
from app.famlearn.rbac import Permission, current_checker, deny, require_login, require_permission
from app.famlearn.utils import json_body, page_args, pagination, parse_bool, parse_int

bp = Blueprint("vocabulary", __name__)


def _get_word_or_404(s, word_id: int) -> VocabularyWord:
    word = s.get(VocabularyWord, word_id)
    if word is None:
        abort(404)
    return word


def _require_student() -> None:
    if not current_checker().is_student():
        deny("isStudent")


@bp.get("/words")
@require_login
def list_words():
    s = db_session()
    checker = current_checker()
    stmt = vocab_service.word_query(request.args)
    page, limit = page_args()
    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    words = s.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()

    progress = {}
    if checker.is_student():
        progress = vocab_service.progress_for_words(s, checker.user_id, [w.id for w in words])
    return jsonify(
        {
            "words": [
                vocab_service.serialize_word(w, progress.get(w.id), include_progress=checker.is_student())
                for w in words
            ],
            "pagination": pagination(page, limit, total),
        }
    )


@bp.get("/words/<int:word_id>")
@require_login
def get_word(word_id: int):
    s = db_session()
    checker = current_checker()
    word = _get_word_or_404(s, word_id)
    if checker.is_student():
        progress = vocab_service.progress_for_words(s, checker.user_id, [word.id]).get(word.id)
        return jsonify({"word": vocab_service.serialize_word(word, progress, include_progress=True)})
    data = vocab_service.serialize_word(word)
    if checker.is_admin() or checker.is_parent():
        visible = [
            p
            for p in word.progress
            if checker.can_access_user_data(p.user_id, p.user.family_id if p.user else None)
        ]
        data["learners"] = [
            {
                "user_id": p.user_id,
                "display_name": p.user.display_name if p.user else None,
                "phase": p.phase,
                "mastery_level": p.mastery_level,
            }
            for p in visible
        ]
    return jsonify({"word": data})


@bp.post("/words")
@require_login
def create_word():
    checker = current_checker()
    # Parents may add words for their children as well as content admins.
    if not (checker.can_create_content() or checker.is_parent()):
        deny(Permission.CREATE_CONTENT.value)
    s = db_session()
    payload = json_body()
    errors = vocab_service.validate_word_payload(s, payload)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    word = vocab_service.create_word(s, payload, g.current_user)
    s.commit()
    return jsonify({"word": vocab_service.serialize_word(word)}), 201


@bp.put("/words/<int:word_id>")
@require_permission(Permission.EDIT_CONTENT)
def update_word(word_id: int):
    s = db_session()
    word = _get_word_or_404(s, word_id)
    payload = json_body()
    errors = vocab_service.validate_word_payload(s, payload, existing=word)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    vocab_service.update_word(s, word, payload, g.current_user)
    s.commit()
    return jsonify({"word": vocab_service.serialize_word(word)})


@bp.delete("/words/<int:word_id>")
@require_permission(Permission.DELETE_CONTENT)
def delete_word(word_id: int):
    s = db_session()
    word = _get_word_or_404(s, word_id)
    vocab_service.delete_word(s, word, g.current_user)
    s.commit()
    return jsonify({"ok": True})


@bp.post("/progress")
@require_login
def update_progress():
    _require_student()
    s = db_session()
    payload = json_body()
    errors = vocab_service.validate_progress_payload(payload)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    word = _get_word_or_404(s, parse_int(payload["word_id"]))
    progress, flags = vocab_service.record_practice(s, g.current_user, word, payload)
    s.commit()
    data = vocab_service.serialize_progress(progress)
    data.update(flags)
    return jsonify({"progress": data})


@bp.get("/progress")
@require_login
def list_progress():
    s = db_session()
    checker = current_checker()
    user_id = parse_int(request.args.get("user_id"))
    if user_id is None:
        if not checker.is_student():
            return jsonify({"error": "user_id is required."}), 400
        user_id = checker.user_id

    target = s.get(User, user_id)
    if target is None or not checker.can_access_user_data(target.id, target.family_id):
        deny(Permission.VIEW_CHILDREN_PROGRESS.value)

    stmt = vocab_service.progress_query(user_id, request.args)
    page, limit = page_args()
    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = s.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return jsonify(
        {
            "progress": [vocab_service.serialize_progress(p) for p in rows],
            "pagination": pagination(page, limit, total),
            "statistics": vocab_service.progress_statistics(s, user_id, datetime.utcnow()),
        }
    )


@bp.get("/review-schedule")
@require_login
def review_schedule():
    _require_student()
    s = db_session()
    raw_date = (request.args.get("date") or "").strip()
    try:
        start = date.fromisoformat(raw_date) if raw_date else datetime.utcnow().date()
    except ValueError:
        return jsonify({"error": "date must be YYYY-MM-DD."}), 400
    days = parse_int(request.args.get("days"))
    if days is None:
        days = 7
    if not (1 <= days <= 60):
        return jsonify({"error": "days must be between 1 and 60."}), 400
    include_overdue = bool(parse_bool(request.args.get("include_overdue")))

    result = vocab_service.review_schedule(
        s,
        g.current_user.id,
        start=start,
        days=days,
        include_overdue=include_overdue,
        today=datetime.utcnow().date(),
    )
    return jsonify(result)


@bp.post("/review-schedule")
@require_login
def update_review_schedule():
    _require_student()
    s = db_session()
    payload = json_body()
    word_ids = payload.get("word_ids")
    action = payload.get("action")
    if not isinstance(word_ids, list) or not word_ids or any(parse_int(w) is None for w in word_ids):
        return jsonify({"error": "word_ids must be a non-empty list of ids."}), 400
    if action not in vocab_service.REVIEW_ACTIONS:
        return jsonify({"error": f"action must be one of: {', '.join(vocab_service.REVIEW_ACTIONS)}"}), 400

    updated = vocab_service.apply_review_action(s, g.current_user, [parse_int(w) for w in word_ids], action)
    if updated is None:
        return jsonify({"error": "Some words are not in your study list."}), 400
    s.commit()
    return jsonify({"updated_count": updated, "action": action})
