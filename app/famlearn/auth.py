from __future__ import annotations

import uuid
from datetime import datetime

from flask import Blueprint, abort, current_app, g, jsonify, request, session
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from app.famlearn.audit import record_activity
from app.famlearn.constants import YEAR_LEVELS, Role
from app.famlearn.db import db_session
from app.famlearn.login_attempts import LoginAttemptTracker
from app.famlearn.models import Family, User
from app.famlearn.modules.families.service import serialize_family
from app.famlearn.modules.users import service as user_service
from app.famlearn.rbac import Permission, current_checker, deny, require_login, require_permission
from app.famlearn.security import ensure_csrf_token, validate_password_strength, verify_password
from app.famlearn.utils import json_body, parse_int

bp = Blueprint("auth", __name__)

# Mutating auth endpoints that run without a CSRF token
CSRF_EXEMPT_ENDPOINTS = frozenset({"auth.login", "auth.logout"})


def _tracker() -> LoginAttemptTracker:
    return current_app.extensions["login_attempts"]


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except (SQLAlchemyError, TypeError, ValueError) as e:
        current_app.logger.error("load_current_user failed (clearing session): %s", e)
        user = None
    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/csrf")
def csrf():
    return jsonify({"csrf_token": ensure_csrf_token()})


@bp.post("/login")
def login():
    payload = json_body()
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    if not username or not password:
        return jsonify({"error": "Username and password are required."}), 400

    tracker = _tracker()
    limit = tracker.check_limits(username)
    if not limit.allowed:
        current_app.logger.warning("Login locked out for username=%s request_id=%s", username, g.request_id)
        return (
            jsonify(
                {
                    "error": f"Too many failed attempts. Try again in {limit.retry_after_minutes} minutes.",
                    "retry_after_minutes": limit.retry_after_minutes,
                }
            ),
            429,
        )

    s = db_session()
    user = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is None or not user.is_active or not verify_password(user.password_hash, password):
        tracker.record_failure(username)
        if user is not None:
            reason = "inactive" if not user.is_active else "bad_password"
            record_activity(
                s,
                actor=user,
                action="LOGIN_FAILED",
                resource_type="User",
                resource_id=user.id,
                details={"reason": reason, "failed_attempts": tracker.failure_count(username)},
            )
            s.commit()
        return jsonify({"error": "Invalid username or password."}), 401

    tracker.clear_failures(username)
    user.last_login_at = datetime.utcnow()
    record_activity(s, actor=user, action="LOGIN", resource_type="User", resource_id=user.id)
    s.commit()

    session.clear()
    session["user_id"] = user.id
    session.permanent = bool(payload.get("remember_me"))
    g.current_user = user
    current_app.logger.info("Login ok user_id=%s request_id=%s", user.id, g.request_id)
    return jsonify(
        {
            "user": user_service.serialize_user(user),
            "permissions": current_checker().permission_map(),
            "csrf_token": ensure_csrf_token(),
        }
    )


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_activity(s, actor=user, action="LOGOUT", resource_type="User", resource_id=user.id)
        s.commit()
    session.clear()
    return jsonify({"ok": True})


@bp.get("/me")
@require_login
def me():
    s = db_session()
    user: User = g.current_user
    checker = current_checker()
    permissions = checker.permission_map()
    permissions.update(
        {
            "isAdmin": checker.is_admin(),
            "isParent": checker.is_parent(),
            "isStudent": checker.is_student(),
        }
    )
    data = user_service.serialize_user(user, include_family=False)
    data["parental_code"] = user.parental_code
    return jsonify(
        {
            "user": data,
            "family": serialize_family(user.family) if user.family else None,
            "permissions": permissions,
            "stats": user_service.user_stats(s, user),
        }
    )


@bp.get("/register")
@require_permission(Permission.MANAGE_USERS)
def register_info():
    s = db_session()
    families = s.execute(select(Family).order_by(Family.name)).scalars().all()
    return jsonify(
        {
            "families": [serialize_family(f) for f in families],
            "user_stats": user_service.role_counts(s),
            "config": {
                "max_family_members": current_app.config["FAMILY_MAX_MEMBERS"],
                "supported_roles": [r.value for r in Role],
                "year_levels": list(YEAR_LEVELS),
            },
        }
    )


@bp.post("/register")
@require_permission(Permission.MANAGE_USERS)
def register():
    s = db_session()
    payload = json_body()
    errors = user_service.validate_register_payload(
        s,
        payload,
        password_min_length=current_app.config["PASSWORD_MIN_LENGTH"],
        family_max_members=current_app.config["FAMILY_MAX_MEMBERS"],
    )
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400

    user = user_service.create_user(s, payload, g.current_user, default_timezone=current_app.config["DEFAULT_TIMEZONE"])
    s.commit()
    current_app.logger.info("Registered user_id=%s role=%s by %s", user.id, Role(user.role).value, g.current_user.id)
    return jsonify({"user": user_service.serialize_user(user)}), 201


def _validate_new_password(payload: dict) -> tuple[list[str], int | None]:
    new_password = payload.get("new_password") or ""
    confirm = payload.get("confirm_password") or ""
    if not new_password:
        return ["New password is required."], None
    if new_password != confirm:
        return ["New password and confirmation do not match."], None
    errors, score = validate_password_strength(new_password, min_length=current_app.config["PASSWORD_MIN_LENGTH"])
    return errors, score


@bp.post("/reset-password")
@require_login
def reset_password():
    s = db_session()
    actor: User = g.current_user
    checker = current_checker()
    payload = json_body()

    target_id = parse_int(payload.get("user_id")) if payload.get("user_id") is not None else actor.id
    if target_id is None:
        return jsonify({"error": "user_id must be an integer."}), 400
    is_own = target_id == actor.id

    target = actor if is_own else s.get(User, target_id)
    target_family_id = target.family_id if target is not None else None
    # Same answer for "no such user" and "not yours" unless the caller may see everyone.
    if not checker.can_reset_password(target_id, target_family_id):
        deny("canResetPassword")
    if target is None:
        abort(404)

    errors, score = _validate_new_password(payload)
    if errors:
        return jsonify({"error": "New password does not meet requirements.", "errors": errors, "score": score}), 400

    if is_own:
        current_password = payload.get("current_password") or ""
        if not current_password:
            return jsonify({"error": "Current password is required to change your own password."}), 400
        if not verify_password(target.password_hash, current_password):
            return jsonify({"error": "Current password is incorrect."}), 400

    if verify_password(target.password_hash, payload["new_password"]):
        return jsonify({"error": "New password must differ from the current password."}), 400

    user_service.set_password(s, target, payload["new_password"], actor)
    s.commit()
    return jsonify({"ok": True, "message": "Password changed." if is_own else "Password reset."})


@bp.put("/reset-password")
@require_login
def force_reset_password():
    s = db_session()
    actor: User = g.current_user
    checker = current_checker()
    if not checker.is_admin():
        deny("isAdmin")

    payload = json_body()
    target_id = parse_int(payload.get("user_id"))
    if target_id is None:
        return jsonify({"error": "user_id is required."}), 400
    if target_id == actor.id:
        return jsonify({"error": "Use POST /auth/reset-password to change your own password."}), 400

    target = s.get(User, target_id)
    if target is None:
        abort(404)

    errors, score = _validate_new_password(payload)
    if errors:
        return jsonify({"error": "New password does not meet requirements.", "errors": errors, "score": score}), 400

    user_service.set_password(s, target, payload["new_password"], actor, forced=True)
    s.commit()
    current_app.logger.warning("Admin %s force-reset password for user_id=%s", actor.id, target.id)
    return jsonify({"ok": True, "message": f"Password for {target.display_name} has been reset."})
