from app.famlearn.db import session_scope
from app.famlearn.models import User


def test_admin_lists_everyone(client, people, login):
    login("admin")
    r = client.get("/api/users")
    assert r.status_code == 200
    assert r.json["pagination"]["total"] == 5
    roles = [u["role"] for u in r.json["users"]]
    assert roles == sorted(roles)


def test_parent_lists_own_family(client, people, login):
    login("parent1")
    r = client.get("/api/users")
    names = {u["username"] for u in r.json["users"]}
    assert names == {"parent1", "student1"}


def test_student_lists_self(client, people, login):
    login("student2")
    r = client.get("/api/users?role=parent")
    assert r.json["users"] == []
    r = client.get("/api/users")
    assert [u["username"] for u in r.json["users"]] == ["student2"]


def test_list_filters_and_pagination(client, people, login):
    login("admin")
    r = client.get("/api/users?role=STUDENT&limit=1&page=2")
    assert r.json["pagination"] == {
        "page": 2,
        "limit": 1,
        "total": 2,
        "pages": 2,
        "has_next": False,
        "has_prev": True,
    }
    assert client.get("/api/users?role=WIZARD").status_code == 400
    r = client.get("/api/users?search=parent")
    assert {u["username"] for u in r.json["users"]} == {"parent1", "parent2"}


def test_get_user_hides_existence_from_non_admins(client, people, login):
    login("parent1")
    foreign = client.get(f"/api/users/{people['student2']}")
    missing = client.get("/api/users/99999")
    assert foreign.status_code == missing.status_code == 403

    own_child = client.get(f"/api/users/{people['student1']}")
    assert own_child.status_code == 200
    assert "total_submissions" in own_child.json["stats"]
    assert {m["username"] for m in own_child.json["user"]["family"]["members"]} == {"parent1", "student1"}


def test_admin_gets_404_for_missing_user(client, people, login):
    login("admin")
    assert client.get("/api/users/99999").status_code == 404


def test_parent_updates_child_but_not_role(client, people, login):
    headers = login("parent1")
    r = client.put(f"/api/users/{people['student1']}", json={"year_level": 5}, headers=headers)
    assert r.status_code == 200
    assert r.json["user"]["year_level"] == 5

    r = client.put(f"/api/users/{people['student1']}", json={"role": "PARENT"}, headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "canChangeUserRole"

    r = client.put(f"/api/users/{people['student1']}", json={"is_active": False}, headers=headers)
    assert r.status_code == 403


def test_update_rejects_unknown_fields_and_bad_timezone(client, people, login):
    headers = login("student1")
    r = client.put(
        f"/api/users/{people['student1']}",
        json={"password_hash": "x", "timezone": "Mars/Olympus"},
        headers=headers,
    )
    assert r.status_code == 400
    assert any("Unknown fields" in e for e in r.json["errors"])
    assert any("Timezone" in e for e in r.json["errors"])


def test_admin_cannot_change_own_role(client, people, login):
    headers = login("admin")
    r = client.put(f"/api/users/{people['admin']}", json={"role": "PARENT"}, headers=headers)
    assert r.status_code == 403


def test_family_capacity_on_move(client, people, login, app):
    app.config["FAMILY_MAX_MEMBERS"] = 2
    headers = login("admin")
    r = client.put(f"/api/users/{people['student2']}", json={"family_id": people["F1"]}, headers=headers)
    assert r.status_code == 400
    assert "maximum" in r.json["errors"][0]


def test_delete_is_soft_and_admin_only(client, people, login, app):
    headers = login("parent1")
    assert client.delete(f"/api/users/{people['student1']}", headers=headers).status_code == 403
    client.post("/auth/logout")

    headers = login("admin")
    assert client.delete(f"/api/users/{people['student1']}", headers=headers).status_code == 200
    assert client.delete(f"/api/users/{people['admin']}", headers=headers).status_code == 400
    with session_scope(app) as s:
        assert s.get(User, people["student1"]).is_active is False


def test_deactivated_session_is_dropped(client, people, login, app):
    login("student1")
    with session_scope(app) as s:
        s.get(User, people["student1"]).is_active = False
    assert client.get("/auth/me").status_code == 401


def test_families_visible_by_role(client, people, login):
    login("parent2")
    r = client.get("/api/families")
    assert [f["name"] for f in r.json["families"]] == ["F2"]
    members = r.json["families"][0]["members"]
    assert [m["role"] for m in members] == ["PARENT", "STUDENT"]


def test_create_family(client, people, login):
    headers = login("admin")
    r = client.post("/api/families", json={"name": "Lee", "timezone": "Australia/Sydney"}, headers=headers)
    assert r.status_code == 201
    assert r.json["family"]["timezone"] == "Australia/Sydney"

    dup = client.post("/api/families", json={"name": "Lee"}, headers=headers)
    assert dup.status_code == 400
    bad_tz = client.post("/api/families", json={"name": "Park", "timezone": "Nowhere/Land"}, headers=headers)
    assert bad_tz.status_code == 400


def test_parent_cannot_create_family(client, people, login):
    headers = login("parent1")
    assert client.post("/api/families", json={"name": "Mine"}, headers=headers).status_code == 403
