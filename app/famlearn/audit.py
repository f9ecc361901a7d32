import json
import logging
from datetime import datetime
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.famlearn.models import ActivityLog, User

logger = logging.getLogger(__name__)


def client_ip() -> str:
    if not has_request_context():
        return "unknown"
    return request.remote_addr or "unknown"


def record_activity(
    s: Session,
    *,
    actor: User | None,
    action: str,
    resource_type: str | None = None,
    resource_id: str | int | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> ActivityLog | None:
    """
    Append-only activity log helper.

    Audit logging is best-effort: the row is written in a savepoint, so a
    failed insert is logged and rolled back on its own without touching the
    login or content change that triggered it.
    """
    rid = request_id or (getattr(g, "request_id", None) if has_request_context() else None)
    payload = dict(details or {})
    payload.setdefault("timestamp", datetime.utcnow().isoformat())
    if has_request_context():
        payload.setdefault("user_agent", request.headers.get("User-Agent"))
    try:
        entry = ActivityLog(
            request_id=rid,
            user_id=actor.id if actor else None,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details_json=json.dumps(payload, sort_keys=True, default=str),
            ip_address=client_ip(),
        )
        with s.begin_nested():
            s.add(entry)
            s.flush()
        return entry
    except (SQLAlchemyError, TypeError, ValueError):
        logger.exception("Failed to record activity action=%s resource=%s/%s", action, resource_type, resource_id)
        return None
