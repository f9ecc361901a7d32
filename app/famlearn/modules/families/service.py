from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from app.famlearn.audit import record_activity
from app.famlearn.constants import Role
from app.famlearn.models import Family, User
from app.famlearn.utils import is_valid_timezone, iso

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.rbac import PermissionChecker


_ROLE_ORDER = {Role.ADMIN: 0, Role.PARENT: 1, Role.STUDENT: 2}


def serialize_family(f: Family, *, with_members: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": f.id,
        "name": f.name,
        "timezone": f.timezone,
        "created_at": iso(f.created_at),
        "member_count": len(f.members),
    }
    if with_members:
        members = sorted(f.members, key=lambda m: (_ROLE_ORDER.get(Role(m.role), 9), m.created_at or datetime.min))
        data["members"] = [
            {
                "id": m.id,
                "username": m.username,
                "display_name": m.display_name,
                "role": Role(m.role).value,
                "is_active": m.is_active,
                "year_level": m.year_level,
                "last_login_at": iso(m.last_login_at),
            }
            for m in members
        ]
    return data


def visible_families(s: "Session", checker: "PermissionChecker") -> list[Family]:
    if checker.is_admin():
        return list(s.execute(select(Family).order_by(Family.created_at.desc())).scalars().all())
    if checker.family_id is None:
        return []
    family = s.get(Family, checker.family_id)
    return [family] if family else []


def validate_family_payload(s: "Session", payload: dict) -> list[str]:
    errors: list[str] = []
    name = (payload.get("name") or "").strip()
    if not name:
        errors.append("Family name is required.")
    elif len(name) > 100:
        errors.append("Family name must be at most 100 characters.")
    elif s.scalar(select(Family.id).where(Family.name == name)) is not None:
        errors.append("A family with that name already exists.")

    tz = payload.get("timezone")
    if tz is not None and not is_valid_timezone(str(tz)):
        errors.append("Timezone is not a valid IANA zone name.")
    return errors


def create_family(s: "Session", payload: dict, user: User, *, default_timezone: str) -> Family:
    now = datetime.utcnow()
    family = Family(
        name=(payload.get("name") or "").strip(),
        timezone=(payload.get("timezone") or "").strip() or default_timezone,
        created_at=now,
        updated_at=now,
    )
    s.add(family)
    s.flush()
    record_activity(
        s,
        actor=user,
        action="CREATE_FAMILY",
        resource_type="Family",
        resource_id=family.id,
        details={"name": family.name, "timezone": family.timezone},
    )
    return family
