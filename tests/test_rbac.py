import pytest

from app.famlearn.constants import Role
from app.famlearn.rbac import ROLE_PERMISSIONS, Permission, PermissionChecker


def _checker(role, user_id=1, family_id=None):
    return PermissionChecker(user_id=user_id, role=role, family_id=family_id, is_active=True)


def test_admin_holds_every_permission():
    admin = _checker(Role.ADMIN)
    assert all(admin.permission_map().values())
    assert set(admin.permission_map()) == {p.value for p in Permission}


def test_student_permissions():
    student = _checker(Role.STUDENT)
    assert student.can("canSubmitExercises")
    assert student.can(Permission.ACCESS_HOMEWORK)
    assert not student.can_manage_users()
    assert not student.can_create_content()
    assert not student.can_assign_homework()
    assert not student.can_manage_unlock_rules()


def test_parent_permissions():
    parent = _checker(Role.PARENT)
    assert parent.can_view_children_progress()
    assert parent.can_assign_homework()
    assert parent.can_manage_unlock_rules()
    assert not parent.can_manage_users()
    assert not parent.can(Permission.SUBMIT_EXERCISES)


def test_unknown_permission_key_raises():
    with pytest.raises(ValueError):
        _checker(Role.ADMIN).can("canLaunchRockets")


def test_missing_role_denies_everything():
    anon = PermissionChecker.from_user(None)
    assert not any(anon.permission_map().values())
    assert not anon.can_access_user_data(1, 1)


def test_every_role_has_a_table_entry():
    assert set(ROLE_PERMISSIONS) == set(Role)
    assert ROLE_PERMISSIONS[Role.ADMIN] == frozenset(Permission)


def test_parent_reset_password_family_scope():
    parent_f1 = _checker(Role.PARENT, user_id=10, family_id=1)
    assert parent_f1.can_reset_password(11, 1)
    assert not parent_f1.can_reset_password(21, 2)
    assert not parent_f1.can_reset_password(31, None)
    assert parent_f1.can_reset_password(10, None)


def test_parent_without_family_cannot_reach_others():
    orphan = _checker(Role.PARENT, user_id=10, family_id=None)
    assert not orphan.can_access_user_data(11, None)
    assert orphan.can_access_user_data(10, None)


def test_student_only_sees_self():
    student = _checker(Role.STUDENT, user_id=5, family_id=1)
    assert student.can_access_user_data(5, 1)
    assert not student.can_access_user_data(6, 1)
    assert not student.can_reset_password(6, 1)


def test_modify_user_data_parent_only_students_in_family():
    parent = _checker(Role.PARENT, user_id=10, family_id=1)
    assert parent.can_modify_user_data(11, Role.STUDENT, 1)
    assert parent.can_modify_user_data(11, "STUDENT", 1)
    assert not parent.can_modify_user_data(12, Role.PARENT, 1)
    assert not parent.can_modify_user_data(21, Role.STUDENT, 2)


def test_delete_and_role_change_rules():
    admin = _checker(Role.ADMIN, user_id=1)
    assert admin.can_delete_user(Role.STUDENT)
    assert not admin.can_delete_user(Role.ADMIN)
    assert admin.can_change_user_role(2)
    assert not admin.can_change_user_role(1)
    assert not _checker(Role.PARENT).can_delete_user(Role.STUDENT)
    assert not _checker(Role.PARENT).can_change_user_role(2)
