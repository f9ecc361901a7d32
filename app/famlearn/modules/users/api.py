from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request
from sqlalchemy import func, select

from app.famlearn.constants import Role
from app.famlearn.db import db_session
from app.famlearn.models import User
from app.famlearn.modules.users import service as user_service
from app.famlearn.rbac import current_checker, deny, require_login
from app.famlearn.utils import json_body, page_args, pagination

bp = Blueprint("users", __name__)


def _load_visible_user(s, user_id: int) -> User:
    """
    Load the target or answer 403/404. Non-admins get 403 for both missing
    and foreign users so they cannot probe which ids exist.
    """
    checker = current_checker()
    target = s.get(User, user_id)
    if target is None:
        if checker.is_admin():
            abort(404)
        deny("canAccessUserData")
    if not checker.can_access_user_data(target.id, target.family_id):
        deny("canAccessUserData")
    return target


@bp.get("/users")
@require_login
def list_users():
    s = db_session()
    checker = current_checker()
    stmt, err = user_service.list_users_query(checker, request.args)
    if err:
        return jsonify({"error": err}), 400

    page, limit = page_args()
    total = s.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    users = (
        s.execute(
            stmt.order_by(User.role.asc(), User.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        .scalars()
        .all()
    )
    return jsonify(
        {
            "users": [user_service.serialize_user(u) for u in users],
            "pagination": pagination(page, limit, total),
        }
    )


@bp.get("/users/<int:user_id>")
@require_login
def get_user(user_id: int):
    s = db_session()
    target = _load_visible_user(s, user_id)
    data = user_service.serialize_user(target)
    if target.family:
        data["family"]["members"] = [user_service.serialize_member(m) for m in target.family.members]
    stats = user_service.user_stats(s, target) if Role(target.role) is Role.STUDENT else {}
    return jsonify({"user": data, "stats": stats})


@bp.put("/users/<int:user_id>")
@require_login
def update_user(user_id: int):
    s = db_session()
    checker = current_checker()
    target = s.get(User, user_id)
    if target is None:
        if checker.is_admin():
            abort(404)
        deny("canModifyUserData")
    if not checker.can_modify_user_data(target.id, target.role, target.family_id):
        deny("canModifyUserData")

    payload = json_body()
    errors, missing = user_service.validate_update_payload(
        s,
        target,
        payload,
        checker,
        family_max_members=current_app.config["FAMILY_MAX_MEMBERS"],
    )
    if missing:
        deny(missing)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400

    user_service.update_user(s, target, payload, g.current_user)
    s.commit()
    return jsonify({"user": user_service.serialize_user(target)})


@bp.delete("/users/<int:user_id>")
@require_login
def delete_user(user_id: int):
    s = db_session()
    checker = current_checker()
    if not checker.can_manage_users():
        deny("canManageUsers")
    target = s.get(User, user_id)
    if target is None:
        abort(404)
    if target.id == checker.user_id:
        return jsonify({"error": "You cannot delete your own account."}), 400
    if not checker.can_delete_user(target.role):
        deny("canDeleteUser")

    user_service.deactivate_user(s, target, g.current_user)
    s.commit()
    current_app.logger.info("User %s deactivated by %s", target.id, checker.user_id)
    return jsonify({"ok": True, "message": f"User {target.display_name} has been deactivated."})
