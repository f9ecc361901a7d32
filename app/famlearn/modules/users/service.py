from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select

from app.famlearn.audit import record_activity
from app.famlearn.constants import MIN_BIRTH_YEAR, YEAR_LEVELS, Role
from app.famlearn.models import Family, User
from app.famlearn.security import generate_parental_code, hash_password, validate_password_strength
from app.famlearn.utils import is_valid_timezone, iso, parse_bool, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.famlearn.rbac import PermissionChecker


USERNAME_RE = re.compile(r"^[A-Za-z0-9_-]{3,50}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Fields a caller may send to PUT /api/users/<id>
UPDATABLE_FIELDS = ("display_name", "email", "role", "is_active", "year_level", "birth_year", "family_id", "timezone")


def serialize_user(u: User, *, include_family: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": u.id,
        "username": u.username,
        "email": u.email,
        "display_name": u.display_name,
        "role": Role(u.role).value,
        "is_active": u.is_active,
        "timezone": u.timezone,
        "year_level": u.year_level,
        "birth_year": u.birth_year,
        "family_id": u.family_id,
        "last_login_at": iso(u.last_login_at),
        "created_at": iso(u.created_at),
        "updated_at": iso(u.updated_at),
    }
    if include_family:
        data["family"] = {"id": u.family.id, "name": u.family.name} if u.family else None
    return data


def serialize_member(u: User) -> dict[str, Any]:
    return {
        "id": u.id,
        "username": u.username,
        "display_name": u.display_name,
        "role": Role(u.role).value,
        "is_active": u.is_active,
    }


def active_member_count(s: "Session", family_id: int) -> int:
    return s.scalar(
        select(func.count()).select_from(User).where(User.family_id == family_id, User.is_active.is_(True))
    ) or 0


def family_has_room(s: "Session", family_id: int, max_members: int) -> bool:
    return active_member_count(s, family_id) < max_members


def _validate_common(payload: dict, errors: list[str]) -> None:
    if "display_name" in payload:
        display_name = (payload.get("display_name") or "").strip()
        if not (1 <= len(display_name) <= 100):
            errors.append("Display name must be 1-100 characters.")

    email = (payload.get("email") or "").strip()
    if email and not EMAIL_RE.match(email):
        errors.append("Email address is invalid.")

    if payload.get("year_level") is not None:
        year_level = parse_int(payload.get("year_level"))
        if year_level not in YEAR_LEVELS:
            errors.append("Year level must be between 1 and 12.")

    if payload.get("birth_year") is not None:
        birth_year = parse_int(payload.get("birth_year"))
        if birth_year is None or not (MIN_BIRTH_YEAR <= birth_year <= datetime.utcnow().year):
            errors.append(f"Birth year must be between {MIN_BIRTH_YEAR} and the current year.")

    tz = payload.get("timezone")
    if tz is not None and not is_valid_timezone(str(tz)):
        errors.append("Timezone is not a valid IANA zone name.")


def validate_register_payload(s: "Session", payload: dict, *, password_min_length: int, family_max_members: int) -> list[str]:
    """Validate POST /auth/register. Returns list of errors."""
    errors: list[str] = []
    username = (payload.get("username") or "").strip()
    if not USERNAME_RE.match(username):
        errors.append("Username must be 3-50 characters of letters, digits, '_' or '-'.")
    elif s.scalar(select(User.id).where(User.username == username)) is not None:
        errors.append("Username is already taken.")

    email = (payload.get("email") or "").strip().lower()
    if email and s.scalar(select(User.id).where(User.email == email)) is not None:
        errors.append("Email is already registered.")

    password = payload.get("password") or ""
    pw_errors, _score = validate_password_strength(password, min_length=password_min_length)
    errors.extend(pw_errors)

    if "display_name" not in payload:
        errors.append("Display name is required.")

    try:
        role = Role((payload.get("role") or "").strip().upper())
    except ValueError:
        errors.append(f"Role must be one of: {', '.join(r.value for r in Role)}")
        role = None

    if role is Role.STUDENT:
        if payload.get("year_level") is None:
            errors.append("Students require a year level.")
        if payload.get("birth_year") is None:
            errors.append("Students require a birth year.")

    _validate_common(payload, errors)

    family_id = parse_int(payload.get("family_id"))
    if payload.get("family_id") is not None:
        family = s.get(Family, family_id) if family_id is not None else None
        if family is None:
            errors.append("Family does not exist.")
        elif not family_has_room(s, family.id, family_max_members):
            errors.append(f"Family already has the maximum of {family_max_members} members.")
    return errors


def create_user(s: "Session", payload: dict, actor: User | None, *, default_timezone: str) -> User:
    """Create a user from an already-validated register payload."""
    now = datetime.utcnow()
    role = Role((payload.get("role") or "").strip().upper())
    user = User(
        username=(payload.get("username") or "").strip(),
        email=(payload.get("email") or "").strip().lower() or None,
        password_hash=hash_password(payload.get("password") or ""),
        display_name=(payload.get("display_name") or "").strip(),
        role=role,
        is_active=True,
        timezone=(payload.get("timezone") or "").strip() or default_timezone,
        family_id=parse_int(payload.get("family_id")),
        created_at=now,
        updated_at=now,
    )
    if role is Role.STUDENT:
        user.year_level = parse_int(payload.get("year_level"))
        user.birth_year = parse_int(payload.get("birth_year"))
        user.parental_code = generate_parental_code()
    s.add(user)
    s.flush()

    record_activity(
        s,
        actor=actor,
        action="CREATE_USER",
        resource_type="User",
        resource_id=user.id,
        details={"username": user.username, "role": role.value, "family_id": user.family_id},
    )
    return user


def list_users_query(checker: "PermissionChecker", args: dict):
    """Role-scoped user query with optional filters. Returns (stmt, error)."""
    stmt = select(User)
    if checker.is_admin():
        family_id = parse_int(args.get("family_id"))
        if family_id is not None:
            stmt = stmt.where(User.family_id == family_id)
    elif checker.is_parent():
        if checker.family_id is None:
            return None, "Parent accounts must belong to a family."
        stmt = stmt.where(User.family_id == checker.family_id)
    else:
        stmt = stmt.where(User.id == checker.user_id)

    role = (args.get("role") or "").strip().upper()
    if role:
        try:
            stmt = stmt.where(User.role == Role(role))
        except ValueError:
            return None, f"Role must be one of: {', '.join(r.value for r in Role)}"

    is_active = parse_bool(args.get("is_active"))
    if is_active is not None:
        stmt = stmt.where(User.is_active.is_(is_active))

    search = (args.get("search") or "").strip()
    if search:
        like = f"%{search.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(User.username).like(like),
                func.lower(User.display_name).like(like),
                func.lower(func.coalesce(User.email, "")).like(like),
            )
        )
    return stmt, None


def validate_update_payload(
    s: "Session",
    target: User,
    payload: dict,
    checker: "PermissionChecker",
    *,
    family_max_members: int,
) -> tuple[list[str], str | None]:
    """
    Returns (errors, missing_permission). A non-None missing_permission means
    the caller must answer 403 rather than 400.
    """
    errors: list[str] = []
    unknown = sorted(set(payload) - set(UPDATABLE_FIELDS) - {"csrf_token"})
    if unknown:
        errors.append(f"Unknown fields: {', '.join(unknown)}")

    if "role" in payload:
        try:
            new_role = Role((payload.get("role") or "").strip().upper())
        except ValueError:
            errors.append(f"Role must be one of: {', '.join(r.value for r in Role)}")
            new_role = None
        if new_role is not None and new_role != Role(target.role) and not checker.can_change_user_role(target.id):
            return errors, "canChangeUserRole"

    if ("is_active" in payload or "family_id" in payload) and not checker.can_manage_users():
        return errors, "canManageUsers"

    if "is_active" in payload and not isinstance(payload.get("is_active"), bool):
        errors.append("is_active must be a boolean.")

    _validate_common(payload, errors)

    email = (payload.get("email") or "").strip().lower()
    if email:
        clash = s.scalar(select(User.id).where(User.email == email, User.id != target.id))
        if clash is not None:
            errors.append("Email is already used by another account.")

    if payload.get("family_id") is not None:
        family_id = parse_int(payload.get("family_id"))
        family = s.get(Family, family_id) if family_id is not None else None
        if family is None:
            errors.append("Family does not exist.")
        elif target.family_id != family.id and not family_has_room(s, family.id, family_max_members):
            errors.append(f"Family already has the maximum of {family_max_members} members.")
    return errors, None


def update_user(s: "Session", target: User, payload: dict, actor: User) -> User:
    changes: dict[str, dict[str, Any]] = {}

    def _set(field: str, value: Any) -> None:
        old = getattr(target, field)
        if old != value:
            changes[field] = {"old": old.value if isinstance(old, Role) else old, "new": value.value if isinstance(value, Role) else value}
            setattr(target, field, value)

    if "display_name" in payload:
        _set("display_name", (payload.get("display_name") or "").strip())
    if "email" in payload:
        _set("email", (payload.get("email") or "").strip().lower() or None)
    if "role" in payload:
        _set("role", Role((payload.get("role") or "").strip().upper()))
    if "is_active" in payload:
        _set("is_active", bool(payload["is_active"]))
    if "year_level" in payload:
        _set("year_level", parse_int(payload.get("year_level")))
    if "birth_year" in payload:
        _set("birth_year", parse_int(payload.get("birth_year")))
    if "family_id" in payload:
        _set("family_id", parse_int(payload.get("family_id")))
    if "timezone" in payload:
        _set("timezone", str(payload["timezone"]).strip())

    if changes:
        target.updated_at = datetime.utcnow()
        record_activity(
            s,
            actor=actor,
            action="UPDATE_USER",
            resource_type="User",
            resource_id=target.id,
            details={"changes": changes},
        )
    return target


def deactivate_user(s: "Session", target: User, actor: User) -> User:
    target.is_active = False
    target.updated_at = datetime.utcnow()
    record_activity(
        s,
        actor=actor,
        action="DELETE_USER",
        resource_type="User",
        resource_id=target.id,
        details={"username": target.username},
    )
    return target


def set_password(s: "Session", target: User, new_password: str, actor: User, *, forced: bool = False) -> None:
    target.password_hash = hash_password(new_password)
    target.updated_at = datetime.utcnow()
    record_activity(
        s,
        actor=actor,
        action="FORCE_RESET_PASSWORD" if forced else "RESET_PASSWORD",
        resource_type="User",
        resource_id=target.id,
        details={"self": actor.id == target.id},
    )


def role_counts(s: "Session") -> dict[str, int]:
    rows = s.execute(
        select(User.role, func.count()).where(User.is_active.is_(True)).group_by(User.role)
    ).all()
    counts = {r.value: 0 for r in Role}
    for role, n in rows:
        counts[Role(role).value] = n
    return counts


def user_stats(s: "Session", user: User) -> dict[str, int]:
    """Role-specific dashboard counters."""
    from app.famlearn.modules.exercises.models import Exercise, ExerciseSubmission
    from app.famlearn.modules.homework.models import HomeworkAssignment, HomeworkSubmission
    from app.famlearn.modules.mistakes.models import MistakeEntry
    from app.famlearn.modules.vocabulary.models import VocabularyProgress

    def _count(stmt) -> int:
        return s.scalar(stmt) or 0

    role = Role(user.role)
    if role is Role.STUDENT:
        return {
            "total_submissions": _count(
                select(func.count()).select_from(ExerciseSubmission).where(ExerciseSubmission.user_id == user.id)
            ),
            "homework_assignments": _count(
                select(func.count()).select_from(HomeworkSubmission).where(HomeworkSubmission.student_id == user.id)
            ),
            "vocabulary_words": _count(
                select(func.count()).select_from(VocabularyProgress).where(VocabularyProgress.user_id == user.id)
            ),
            "active_mistakes": _count(
                select(func.count())
                .select_from(MistakeEntry)
                .where(MistakeEntry.user_id == user.id, MistakeEntry.is_mastered.is_(False))
            ),
        }
    if role is Role.PARENT:
        if user.family_id is None:
            return {}
        children_ids = list(
            s.execute(
                select(User.id).where(User.family_id == user.family_id, User.role == Role.STUDENT)
            ).scalars()
        )
        if not children_ids:
            return {"children_count": 0}
        return {
            "children_count": len(children_ids),
            "children_submissions": _count(
                select(func.count()).select_from(ExerciseSubmission).where(ExerciseSubmission.user_id.in_(children_ids))
            ),
            "assigned_homework": _count(
                select(func.count()).select_from(HomeworkAssignment).where(HomeworkAssignment.assigned_by_id == user.id)
            ),
        }
    return {
        "total_users": _count(select(func.count()).select_from(User)),
        "total_exercises": _count(select(func.count()).select_from(Exercise)),
        "total_submissions": _count(select(func.count()).select_from(ExerciseSubmission)),
    }
