from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request
from sqlalchemy import func, select

from app.famlearn.constants import Role
from app.famlearn.db import db_session
from app.famlearn.models import User
from app.famlearn.modules.homework import analytics as homework_analytics
from app.famlearn.modules.homework import service as homework_service
from app.famlearn.modules.homework import templates as homework_templates
from app.famlearn.modules.homework.models import HomeworkAssignment, HomeworkSubmission, HomeworkTemplate
from app.famlearn.rbac import Permission, current_checker, deny, require_login, require_permission
from app.famlearn.utils import json_body, page_args, pagination, parse_int

bp = Blueprint("homework", __name__)


def _error(exc: homework_service.HomeworkError):
    body = {"error": exc.message}
    body.update(exc.extra)
    return jsonify(body), 400


def _get_assignment(s, assignment_id: int) -> HomeworkAssignment:
    checker = current_checker()
    a = s.get(HomeworkAssignment, assignment_id)
    if a is None:
        if checker.is_admin():
            abort(404)
        deny("canAccessHomework")
    if not homework_service.can_view_assignment(checker, a):
        deny("canAccessHomework")
    return a


def _own_submission(s, assignment_id: int) -> HomeworkSubmission:
    _get_assignment(s, assignment_id)
    sub = homework_service.submission_for(s, assignment_id, g.current_user.id)
    if sub is None:
        deny("isAssignee")
    return sub


@bp.get("/assignments")
@require_login
def list_assignments():
    s = db_session()
    checker = current_checker()
    stmt = homework_service.assignment_query(checker, request.args)
    page, limit = page_args()
    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = s.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return jsonify(
        {
            "assignments": [homework_service.serialize_assignment(a, viewer=checker) for a in rows],
            "pagination": pagination(page, limit, total),
        }
    )


@bp.post("/assignments")
@require_permission(Permission.ASSIGN_HOMEWORK)
def create_assignment():
    s = db_session()
    checker = current_checker()
    payload = json_body()
    errors = homework_service.validate_assignment_payload(s, payload, checker)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    a = homework_service.create_assignment(s, payload, g.current_user)
    s.commit()
    return jsonify({"assignment": homework_service.serialize_assignment(a, viewer=checker)}), 201


@bp.get("/assignments/<int:assignment_id>")
@require_login
def get_assignment(assignment_id: int):
    s = db_session()
    a = _get_assignment(s, assignment_id)
    return jsonify({"assignment": homework_service.serialize_assignment(a, viewer=current_checker())})


@bp.put("/assignments/<int:assignment_id>")
@require_permission(Permission.ASSIGN_HOMEWORK)
def update_assignment(assignment_id: int):
    s = db_session()
    checker = current_checker()
    a = _get_assignment(s, assignment_id)
    if not homework_service.can_manage_assignment(checker, a):
        deny("isAssigner")
    payload = json_body()
    errors = homework_service.validate_assignment_payload(s, payload, checker, existing=a)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    homework_service.update_assignment(s, a, payload, g.current_user)
    s.commit()
    return jsonify({"assignment": homework_service.serialize_assignment(a, viewer=checker)})


@bp.delete("/assignments/<int:assignment_id>")
@require_permission(Permission.ASSIGN_HOMEWORK)
def delete_assignment(assignment_id: int):
    s = db_session()
    a = _get_assignment(s, assignment_id)
    if not homework_service.can_manage_assignment(current_checker(), a):
        deny("isAssigner")
    try:
        homework_service.delete_assignment(s, a, g.current_user)
    except homework_service.HomeworkError as exc:
        return _error(exc)
    s.commit()
    return jsonify({"ok": True})


@bp.post("/assignments/<int:assignment_id>/start")
@require_permission(Permission.ACCESS_HOMEWORK)
def start_assignment(assignment_id: int):
    s = db_session()
    sub = _own_submission(s, assignment_id)
    try:
        homework_service.start(s, sub)
    except homework_service.HomeworkError as exc:
        return _error(exc)
    s.commit()
    return jsonify({"submission": homework_service.serialize_submission(sub)})


@bp.post("/assignments/<int:assignment_id>/submit")
@require_permission(Permission.ACCESS_HOMEWORK)
def submit_assignment(assignment_id: int):
    s = db_session()
    sub = _own_submission(s, assignment_id)
    payload = json_body()
    items = payload.get("exercise_submissions")
    if not isinstance(items, list):
        return jsonify({"error": "exercise_submissions must be a list."}), 400
    try:
        result = homework_service.submit(
            s,
            sub,
            items,
            unlock_expiry_hours=current_app.config["UNLOCK_EXPIRY_HOURS"],
        )
    except homework_service.HomeworkError as exc:
        s.rollback()
        return _error(exc)
    s.commit()
    return jsonify(result)


@bp.get("/submissions")
@require_login
def list_submissions():
    s = db_session()
    checker = current_checker()
    student_id = parse_int(request.args.get("user_id")) or checker.user_id
    target = s.get(User, student_id)
    if target is None or not checker.can_access_user_data(target.id, target.family_id):
        deny(Permission.VIEW_CHILDREN_PROGRESS.value)

    stmt = homework_service.submission_query(student_id, request.args, visible_only=checker.is_student())
    page, limit = page_args()
    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = s.execute(stmt.offset((page - 1) * limit).limit(limit)).scalars().all()
    return jsonify(
        {
            "submissions": [homework_service.serialize_submission(x, include_assignment=True) for x in rows],
            "pagination": pagination(page, limit, total),
        }
    )


@bp.post("/submissions/<int:submission_id>/grade")
@require_permission(Permission.ASSIGN_HOMEWORK)
def grade_submission(submission_id: int):
    s = db_session()
    checker = current_checker()
    sub = s.get(HomeworkSubmission, submission_id)
    if sub is None:
        if checker.is_admin():
            abort(404)
        deny("canAccessUserData")
    if not checker.can_access_user_data(sub.student_id, sub.student.family_id):
        deny("canAccessUserData")

    try:
        homework_service.grade(s, sub, json_body(), g.current_user)
    except homework_service.HomeworkError as exc:
        return _error(exc)
    s.commit()
    return jsonify({"submission": homework_service.serialize_submission(sub, include_assignment=True)})


@bp.get("/templates")
@require_login
def list_templates():
    s = db_session()
    rows = homework_templates.template_rows(s, current_checker(), request.args)
    page, limit = page_args()
    window = rows[(page - 1) * limit : page * limit]
    return jsonify(
        {
            "templates": [homework_templates.serialize_template(t) for t in window],
            "pagination": pagination(page, limit, len(rows)),
        }
    )


@bp.post("/templates")
@require_permission(Permission.ASSIGN_HOMEWORK)
def create_template():
    s = db_session()
    payload = json_body()
    errors = homework_templates.validate_template_payload(payload)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400
    t = homework_templates.create_template(s, payload, g.current_user)
    s.commit()
    return jsonify({"template": homework_templates.serialize_template(t)}), 201


@bp.post("/templates/<int:template_id>/use")
@require_permission(Permission.ASSIGN_HOMEWORK)
def use_template(template_id: int):
    s = db_session()
    checker = current_checker()
    t = s.get(HomeworkTemplate, template_id)
    if t is None:
        abort(404)
    try:
        a = homework_templates.use_template(s, t, json_body(), g.current_user, checker)
    except homework_service.HomeworkError as exc:
        s.rollback()
        return _error(exc)
    s.commit()
    return jsonify({"assignment": homework_service.serialize_assignment(a, viewer=checker)}), 201


@bp.get("/analytics")
@require_login
def analytics():
    s = db_session()
    checker = current_checker()
    kind = (request.args.get("type") or "").strip().lower()
    if kind not in homework_analytics.ANALYTICS_TYPES:
        return jsonify({"error": f"type must be one of: {', '.join(homework_analytics.ANALYTICS_TYPES)}"}), 400
    days = parse_int(request.args.get("days"))
    if days is None:
        days = 30
    if not (1 <= days <= 365):
        return jsonify({"error": "days must be between 1 and 365."}), 400

    if kind == "assignment":
        assignment_id = parse_int(request.args.get("assignment_id"))
        if assignment_id is None:
            return jsonify({"error": "assignment_id is required."}), 400
        if checker.is_student():
            deny(Permission.ASSIGN_HOMEWORK.value)
        a = _get_assignment(s, assignment_id)
        return jsonify({"analytics": homework_analytics.assignment_analytics(a, checker)})

    if kind == "student":
        student_id = parse_int(request.args.get("student_id")) or checker.user_id
        target = s.get(User, student_id)
        if target is None or not checker.can_access_user_data(target.id, target.family_id):
            deny(Permission.VIEW_CHILDREN_PROGRESS.value)
        if target.role != Role.STUDENT:
            deny("isStudent")
        return jsonify({"analytics": homework_analytics.student_analytics(s, target, days=days)})

    subject = (request.args.get("subject") or "").strip().upper() or None
    if subject is not None and subject not in homework_templates.SUBJECT_CODES:
        return jsonify({"error": f"subject must be one of: {', '.join(homework_templates.SUBJECT_CODES)}"}), 400
    return jsonify({"analytics": homework_analytics.overview_analytics(s, checker, days=days, subject=subject)})
