import pytest


pytestmark = pytest.mark.anyio


async def test_leader_sees_only_own_department(client, org, auth_headers):
    response = await client.get("/departments", headers=auth_headers(org.leader))
    assert response.status_code == 200
    assert [department["id"] for department in response.json()] == [org.engineering]


async def test_admin_sees_every_department(client, org, auth_headers):
    response = await client.get("/departments", headers=auth_headers(org.admin))
    assert {department["name"] for department in response.json()} == {"Engineering", "Sales"}


async def test_get_department_is_scope_checked(client, org, auth_headers):
    response = await client.get(f"/departments/{org.engineering}", headers=auth_headers(org.leader))
    assert response.status_code == 200

    response = await client.get(f"/departments/{org.sales}", headers=auth_headers(org.leader))
    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "out_of_scope"


async def test_department_groups(client, org, auth_headers):
    response = await client.get(f"/departments/{org.engineering}/groups", headers=auth_headers(org.admin))
    assert response.status_code == 200
    assert {group["name"] for group in response.json()} == {"Backend", "Frontend"}


async def test_create_child_department(client, org, auth_headers):
    response = await client.post(
        "/departments", json={"name": "Platform", "parent_id": org.engineering}, headers=auth_headers(org.admin)
    )
    assert response.status_code == 201
    assert response.json()["parent_id"] == org.engineering

    response = await client.post(
        "/departments", json={"name": "Orphan", "parent_id": "missing"}, headers=auth_headers(org.admin)
    )
    assert response.status_code == 400


async def test_department_cannot_become_its_own_ancestor(client, org, auth_headers):
    response = await client.post(
        "/departments", json={"name": "Platform", "parent_id": org.engineering}, headers=auth_headers(org.admin)
    )
    platform = response.json()["id"]

    response = await client.put(
        f"/departments/{org.engineering}", json={"parent_id": platform}, headers=auth_headers(org.admin)
    )
    assert response.status_code == 400


async def test_delete_department_with_groups_is_refused(client, org, auth_headers):
    response = await client.delete(f"/departments/{org.engineering}", headers=auth_headers(org.admin))
    assert response.status_code == 409


async def test_delete_empty_department(client, org, auth_headers):
    response = await client.post("/departments", json={"name": "Temporary"}, headers=auth_headers(org.admin))
    department_id = response.json()["id"]

    response = await client.delete(f"/departments/{department_id}", headers=auth_headers(org.admin))
    assert response.status_code == 204


async def test_employee_cannot_create_department(client, org, auth_headers):
    response = await client.post("/departments", json={"name": "Rogue"}, headers=auth_headers(org.employee))
    assert response.status_code == 403


async def test_leader_lists_own_group_only(client, org, auth_headers):
    response = await client.get("/groups", headers=auth_headers(org.leader))
    assert [group["id"] for group in response.json()] == [org.backend]


async def test_manager_lists_every_group(client, org, auth_headers):
    response = await client.get("/groups", headers=auth_headers(org.manager))
    assert response.status_code == 200
    assert {group["name"] for group in response.json()} == {"Backend", "Frontend", "Field"}


async def test_leader_cannot_open_foreign_group(client, org, auth_headers):
    response = await client.get(f"/groups/{org.field}", headers=auth_headers(org.leader))
    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "out_of_scope"


async def test_group_members(client, org, auth_headers):
    response = await client.get(f"/groups/{org.backend}/users", headers=auth_headers(org.leader))
    assert response.status_code == 200
    assert {user["username"] for user in response.json()} == {"leader", "employee"}


async def test_create_group_requires_existing_department(client, org, auth_headers):
    response = await client.post(
        "/groups", json={"name": "Nowhere", "department_id": "missing"}, headers=auth_headers(org.admin)
    )
    assert response.status_code == 400

    response = await client.post(
        "/groups", json={"name": "Mobile", "department_id": org.engineering}, headers=auth_headers(org.admin)
    )
    assert response.status_code == 201


async def test_delete_group_clears_members(client, org, auth_headers):
    response = await client.delete(f"/groups/{org.field}", headers=auth_headers(org.admin))
    assert response.status_code == 204

    response = await client.get(f"/users/{org.outsider}", headers=auth_headers(org.admin))
    assert response.json()["group_id"] is None


async def test_changes_are_audited(client, org, auth_headers):
    response = await client.post("/departments", json={"name": "Research"}, headers=auth_headers(org.admin))
    department_id = response.json()["id"]

    response = await client.get("/audit?resource_type=department", headers=auth_headers(org.admin))
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    entry = body["items"][0]
    assert entry["action"] == "create"
    assert entry["resource_id"] == department_id
    assert entry["user_id"] == org.admin


async def test_cannot_move_department_under_unreachable_parent(client, org, auth_headers):
    admin = auth_headers(org.admin)
    response = await client.get("/permissions?search=department:update", headers=admin)
    department_update = next(p["id"] for p in response.json() if p["code"] == "department:update")

    response = await client.post(
        "/roles",
        json={"code": "department_editor", "name": "Department editor", "permission_ids": [department_update]},
        headers=admin,
    )
    response = await client.post(
        f"/users/{org.employee}/roles", json={"role_id": response.json()["id"]}, headers=admin
    )
    assert response.status_code == 200

    response = await client.put(
        f"/departments/{org.engineering}", json={"parent_id": org.sales}, headers=auth_headers(org.employee)
    )
    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "out_of_scope"

    response = await client.put(
        f"/departments/{org.engineering}", json={"description": "Builds things"}, headers=auth_headers(org.employee)
    )
    assert response.status_code == 200
    assert response.json()["parent_id"] is None
