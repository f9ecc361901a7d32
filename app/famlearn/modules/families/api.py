from flask import Blueprint, current_app, g, jsonify

from app.famlearn.db import db_session
from app.famlearn.modules.families import service as family_service
from app.famlearn.rbac import Permission, current_checker, require_login, require_permission
from app.famlearn.utils import json_body

bp = Blueprint("families", __name__)


@bp.get("/families")
@require_login
def list_families():
    s = db_session()
    families = family_service.visible_families(s, current_checker())
    return jsonify({"families": [family_service.serialize_family(f) for f in families]})


@bp.post("/families")
@require_permission(Permission.MANAGE_USERS)
def create_family():
    s = db_session()
    payload = json_body()
    errors = family_service.validate_family_payload(s, payload)
    if errors:
        return jsonify({"error": "Validation failed.", "errors": errors}), 400

    family = family_service.create_family(
        s, payload, g.current_user, default_timezone=current_app.config["DEFAULT_TIMEZONE"]
    )
    s.commit()
    return jsonify({"family": family_service.serialize_family(family)}), 201
