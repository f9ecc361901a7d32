from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request
from sqlalchemy import func, select

from app.famlearn.db import db_session
from app.famlearn.models import User
from app.famlearn.modules.exercises import service as exercise_service
from app.famlearn.modules.exercises.models import Exercise, ExerciseSubmission
from app.famlearn.rbac import Permission, current_checker, deny, require_login, require_permission
from app.famlearn.utils import json_body, page_args, pagination, parse_int

bp = Blueprint("exercises", __name__)


def _subject_or_404(raw: str) -> str:
    subject = exercise_service.normalize_subject(raw)
    if subject is None:
        abort(404)
    return subject


def _get_exercise_or_404(s, subject: str, exercise_id: int | None) -> Exercise:
    exercise = s.get(Exercise, exercise_id) if exercise_id is not None else None
    if exercise is None or exercise.subject != subject:
        abort(404)
    if not exercise.is_published and not current_checker().can_edit_content():
        abort(404)
    return exercise


@bp.get("/<subject>")
@require_login
def list_exercises(subject: str):
    subject = _subject_or_404(subject)
    s = db_session()
    checker = current_checker()
    stmt = exercise_service.exercise_query(subject, request.args, include_unpublished=checker.can_edit_content())
    page, limit = page_args()
    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = s.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return jsonify(
        {
            "exercises": [exercise_service.serialize_exercise(e, include_questions=False) for e in rows],
            "pagination": pagination(page, limit, total),
        }
    )


@bp.get("/<subject>/topics")
@require_login
def list_topics(subject: str):
    subject = _subject_or_404(subject)
    return jsonify({"subject": subject, "topics": exercise_service.topic_counts(db_session(), subject)})


@bp.get("/<subject>/<int:exercise_id>")
@require_login
def get_exercise(subject: str, exercise_id: int):
    subject = _subject_or_404(subject)
    s = db_session()
    exercise = _get_exercise_or_404(s, subject, exercise_id)
    checker = current_checker()
    return jsonify({"exercise": exercise_service.serialize_exercise(exercise, include_answers=not checker.is_student())})


@bp.post("/<subject>")
@require_permission(Permission.CREATE_CONTENT)
def create_exercise(subject: str):
    subject = _subject_or_404(subject)
    s = db_session()
    payload = json_body()
    errors = exercise_service.validate_exercise_payload(payload, subject)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    exercise = exercise_service.create_exercise(s, subject, payload, g.current_user)
    s.commit()
    return jsonify({"exercise": exercise_service.serialize_exercise(exercise)}), 201


@bp.put("/<subject>/<int:exercise_id>")
@require_permission(Permission.EDIT_CONTENT)
def update_exercise(subject: str, exercise_id: int):
    subject = _subject_or_404(subject)
    s = db_session()
    exercise = _get_exercise_or_404(s, subject, exercise_id)
    payload = json_body()
    errors = exercise_service.validate_exercise_payload(payload, subject, existing=exercise)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    exercise_service.update_exercise(s, exercise, payload, g.current_user)
    s.commit()
    return jsonify({"exercise": exercise_service.serialize_exercise(exercise)})


@bp.delete("/<subject>/<int:exercise_id>")
@require_permission(Permission.DELETE_CONTENT)
def delete_exercise(subject: str, exercise_id: int):
    subject = _subject_or_404(subject)
    s = db_session()
    exercise = _get_exercise_or_404(s, subject, exercise_id)
    used_by = exercise_service.homework_usage(s, exercise.id)
    if used_by:
        body = {"error": "Exercise is part of homework and cannot be deleted.", "assignments": used_by}
        return jsonify(body), 400
    exercise_service.delete_exercise(s, exercise, g.current_user)
    s.commit()
    return jsonify({"ok": True})


@bp.post("/<subject>/submit")
@require_permission(Permission.SUBMIT_EXERCISES)
def submit_exercise(subject: str):
    subject = _subject_or_404(subject)
    s = db_session()
    payload = json_body()
    errors = exercise_service.validate_submission_payload(payload)
    if parse_int(payload.get("exercise_id")) is None:
        errors.insert(0, "exercise_id is required.")
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400

    exercise = _get_exercise_or_404(s, subject, parse_int(payload["exercise_id"]))
    result = exercise_service.submit_exercise(
        s,
        g.current_user,
        exercise,
        payload,
        unlock_expiry_hours=current_app.config["UNLOCK_EXPIRY_HOURS"],
    )
    s.commit()
    return jsonify(result), 201


@bp.get("/<subject>/submissions")
@require_login
def list_submissions(subject: str):
    subject = _subject_or_404(subject)
    s = db_session()
    checker = current_checker()
    user_id = parse_int(request.args.get("user_id")) or checker.user_id
    target = s.get(User, user_id)
    if target is None or not checker.can_access_user_data(target.id, target.family_id):
        deny(Permission.VIEW_CHILDREN_PROGRESS.value)

    stmt = (
        select(ExerciseSubmission)
        .join(Exercise, Exercise.id == ExerciseSubmission.exercise_id)
        .where(ExerciseSubmission.user_id == user_id, Exercise.subject == subject)
        .order_by(ExerciseSubmission.submitted_at.desc(), ExerciseSubmission.id.desc())
    )
    page, limit = page_args()
    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = s.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return jsonify(
        {
            "submissions": [exercise_service.serialize_submission(r) for r in rows],
            "pagination": pagination(page, limit, total),
        }
    )
