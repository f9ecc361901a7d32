from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import abort, g

from app.famlearn.constants import Role
from app.famlearn.models import User


class Permission(str, enum.Enum):
    CREATE_CONTENT = "canCreateContent"
    EDIT_CONTENT = "canEditContent"
    DELETE_CONTENT = "canDeleteContent"
    VIEW_OWN_PROGRESS = "canViewOwnProgress"
    SUBMIT_EXERCISES = "canSubmitExercises"
    VIEW_VOCABULARY = "canViewVocabulary"
    ACCESS_HOMEWORK = "canAccessHomework"
    MANAGE_USERS = "canManageUsers"
    VIEW_SYSTEM_LOGS = "canViewSystemLogs"
    VIEW_CHILDREN_PROGRESS = "canViewChildrenProgress"
    ASSIGN_HOMEWORK = "canAssignHomework"
    MANAGE_UNLOCK_RULES = "canManageUnlockRules"
    MANAGE_SYSTEM = "canManageSystem"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.STUDENT: frozenset(
        {
            Permission.VIEW_OWN_PROGRESS,
            Permission.SUBMIT_EXERCISES,
            Permission.VIEW_VOCABULARY,
            Permission.ACCESS_HOMEWORK,
        }
    ),
    Role.PARENT: frozenset(
        {
            Permission.VIEW_OWN_PROGRESS,
            Permission.ACCESS_HOMEWORK,
            Permission.VIEW_CHILDREN_PROGRESS,
            Permission.ASSIGN_HOMEWORK,
            Permission.MANAGE_UNLOCK_RULES,
        }
    ),
    Role.ADMIN: frozenset(Permission),
}


def _verify_role_table() -> None:
    missing = set(Role) - set(ROLE_PERMISSIONS)
    if missing:
        raise RuntimeError(f"ROLE_PERMISSIONS has no entry for: {sorted(r.value for r in missing)}")
    if ROLE_PERMISSIONS[Role.ADMIN] != frozenset(Permission):
        raise RuntimeError("ADMIN must hold every permission.")


_verify_role_table()


def _coerce_role(value: Any) -> Role | None:
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class PermissionChecker:
    """
    Snapshot of the requesting user. Build one per request; never cache it
    across requests, role and active flag must reflect the latest DB state.
    """

    user_id: int | None
    role: Role | None
    family_id: int | None
    is_active: bool

    @classmethod
    def from_user(cls, user: User | None) -> "PermissionChecker":
        if user is None:
            return cls(user_id=None, role=None, family_id=None, is_active=False)
        return cls(
            user_id=user.id,
            role=_coerce_role(user.role),
            family_id=user.family_id,
            is_active=bool(user.is_active),
        )

    def can(self, permission: Permission | str) -> bool:
        # Unknown keys are a programmer error, not a silent denial.
        perm = Permission(permission)
        if self.role is None:
            return False
        return perm in ROLE_PERMISSIONS.get(self.role, frozenset())

    def permission_map(self) -> dict[str, bool]:
        return {p.value: self.can(p) for p in Permission}

    # ---------- role checks ----------
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def is_parent(self) -> bool:
        return self.role is Role.PARENT

    def is_student(self) -> bool:
        return self.role is Role.STUDENT

    def is_parent_or_admin(self) -> bool:
        return self.is_parent() or self.is_admin()

    # ---------- capability shortcuts ----------
    def can_manage_users(self) -> bool:
        return self.can(Permission.MANAGE_USERS)

    def can_create_content(self) -> bool:
        return self.can(Permission.CREATE_CONTENT)

    def can_edit_content(self) -> bool:
        return self.can(Permission.EDIT_CONTENT)

    def can_delete_content(self) -> bool:
        return self.can(Permission.DELETE_CONTENT)

    def can_view_children_progress(self) -> bool:
        return self.can(Permission.VIEW_CHILDREN_PROGRESS)

    def can_assign_homework(self) -> bool:
        return self.can(Permission.ASSIGN_HOMEWORK)

    def can_manage_unlock_rules(self) -> bool:
        return self.can(Permission.MANAGE_UNLOCK_RULES)

    def can_view_system_logs(self) -> bool:
        return self.can(Permission.VIEW_SYSTEM_LOGS)

    # ---------- resource-scoped checks ----------
    def _is_self(self, target_user_id: int | None) -> bool:
        return self.user_id is not None and target_user_id is not None and self.user_id == target_user_id

    def _same_family(self, target_family_id: int | None) -> bool:
        return self.family_id is not None and target_family_id is not None and self.family_id == target_family_id

    def can_access_user_data(self, target_user_id: int | None, target_family_id: int | None = None) -> bool:
        if self._is_self(target_user_id):
            return True
        if self.is_admin():
            return True
        if self.is_parent():
            return self._same_family(target_family_id)
        return False

    def can_modify_user_data(
        self,
        target_user_id: int | None,
        target_role: Role | str | None,
        target_family_id: int | None = None,
    ) -> bool:
        if self._is_self(target_user_id):
            return True
        if self.is_admin():
            return True
        if self.is_parent() and _coerce_role(target_role) is Role.STUDENT:
            return self._same_family(target_family_id)
        return False

    def can_delete_user(self, target_role: Role | str | None) -> bool:
        if not self.is_admin():
            return False
        # Admin accounts cannot be removed through the API.
        return _coerce_role(target_role) is not Role.ADMIN

    def can_change_user_role(self, target_user_id: int | None) -> bool:
        if not self.is_admin():
            return False
        return not self._is_self(target_user_id)

    def can_reset_password(self, target_user_id: int | None, target_family_id: int | None = None) -> bool:
        if self._is_self(target_user_id):
            return True
        if self.is_admin():
            return True
        if self.is_parent():
            return self._same_family(target_family_id)
        return False


def current_checker() -> PermissionChecker:
    return PermissionChecker.from_user(getattr(g, "current_user", None))


def user_has_permission(user: User | None, permission: Permission | str) -> bool:
    if not user or not user.is_active:
        return False
    return PermissionChecker.from_user(user).can(permission)


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            abort(401)
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission: Permission) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401, authenticated but unauthorized -> 403
            if not user or not user.is_active:
                abort(401)
            if not user_has_permission(user, permission):
                g.missing_permission = permission.value
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def deny(permission: str | None = None) -> None:
    """Abort with 403, naming the capability that was missing."""
    if permission:
        g.missing_permission = permission
    abort(403)
