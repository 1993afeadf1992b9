from datetime import timedelta

import pytest


pytestmark = pytest.mark.anyio


async def test_requires_bearer_token(client, org):
    response = await client.get("/users")
    assert response.status_code in (401, 403)


async def test_rejects_expired_token(client, org, token_for):
    token = token_for(org.admin, expires_in=timedelta(minutes=-5))
    response = await client.get("/users", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


async def test_rejects_unknown_user(client, org, auth_headers):
    response = await client.get("/users/me", headers=auth_headers("01HZZZZZZZZZZZZZZZZZZZZZZZ"))
    assert response.status_code == 401


async def test_me(client, org, auth_headers):
    response = await client.get("/users/me", headers=auth_headers(org.employee))
    assert response.status_code == 200
    body = response.json()
    assert body["username"] == "employee"
    assert [role["code"] for role in body["roles"]] == ["employee"]
    assert body["last_login_at"] is not None


async def test_employee_reads_own_record(client, org, auth_headers):
    response = await client.get(f"/users/{org.employee}", headers=auth_headers(org.employee))
    assert response.status_code == 200
    assert response.json()["id"] == org.employee


async def test_employee_cannot_read_others(client, org, auth_headers):
    response = await client.get(f"/users/{org.leader}", headers=auth_headers(org.employee))
    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "missing_permission"


async def test_leader_reads_within_group(client, org, auth_headers):
    response = await client.get(f"/users/{org.employee}", headers=auth_headers(org.leader))
    assert response.status_code == 200


async def test_leader_cannot_read_outside_scope(client, org, auth_headers):
    response = await client.get(f"/users/{org.outsider}", headers=auth_headers(org.leader))
    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["reason"] == "out_of_scope"
    assert detail["permissions"] == ["user:read"]


async def test_admin_lists_and_filters_users(client, org, auth_headers):
    response = await client.get("/users", headers=auth_headers(org.admin))
    assert response.status_code == 200
    assert len(response.json()) == 5

    response = await client.get(f"/users?group_id={org.backend}", headers=auth_headers(org.admin))
    assert {user["username"] for user in response.json()} == {"leader", "employee"}

    response = await client.get(f"/users?role_id={org.roles['employee']}", headers=auth_headers(org.admin))
    assert {user["username"] for user in response.json()} == {"employee", "outsider"}

    response = await client.get("/users?search=outs", headers=auth_headers(org.admin))
    assert [user["username"] for user in response.json()] == ["outsider"]


async def test_stats_overview(client, org, auth_headers):
    response = await client.get("/users/stats/overview", headers=auth_headers(org.admin))
    assert response.status_code == 200
    stats = response.json()
    assert stats["total"] == 5
    assert stats["active"] == 5
    assert stats["by_department"][org.engineering] == 3
    assert stats["by_role"]["employee"] == 2


async def test_effective_permissions_of_self(client, org, auth_headers):
    response = await client.get(f"/users/{org.employee}/permissions", headers=auth_headers(org.employee))
    assert response.status_code == 200
    body = response.json()
    assert "user:update_self" in body["permissions"]
    assert body["sources"]["user:update_self"] == ["job_level", "role"]
    assert body["department_access"] == [org.engineering]
    assert body["group_access"] == [org.backend]
    assert body["roles"] == ["employee"]


async def test_create_user(client, org, auth_headers):
    payload = {
        "username": "newbie",
        "email": "newbie@example.com",
        "name": "New Bie",
        "department_id": org.engineering,
        "group_id": org.frontend,
        "job_level_id": org.levels["P1"],
        "role_ids": [org.roles["employee"]],
    }
    response = await client.post("/users", json=payload, headers=auth_headers(org.admin))
    assert response.status_code == 201
    body = response.json()
    assert body["group_id"] == org.frontend
    assert [role["code"] for role in body["roles"]] == ["employee"]

    response = await client.post("/users", json=payload, headers=auth_headers(org.admin))
    assert response.status_code == 409


async def test_create_user_with_unknown_group(client, org, auth_headers):
    payload = {"username": "ghost", "email": "ghost@example.com", "name": "Ghost", "group_id": "missing"}
    response = await client.post("/users", json=payload, headers=auth_headers(org.admin))
    assert response.status_code == 400


async def test_create_user_validation_error(client, org, auth_headers):
    payload = {"username": "bad", "email": "not-an-email", "name": "Bad"}
    response = await client.post("/users", json=payload, headers=auth_headers(org.admin))
    assert response.status_code == 400
    assert "email" in response.json()


async def test_self_update_of_plain_fields(client, org, auth_headers):
    response = await client.put(
        f"/users/{org.employee}", json={"name": "Renamed"}, headers=auth_headers(org.employee)
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Renamed"


async def test_self_update_of_placement_needs_manage(client, org, auth_headers):
    response = await client.put(
        f"/users/{org.employee}", json={"job_level_id": org.levels["M1"]}, headers=auth_headers(org.employee)
    )
    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "missing_permission"


async def test_manager_moves_user(client, org, auth_headers):
    response = await client.put(
        f"/users/{org.employee}", json={"group_id": org.frontend}, headers=auth_headers(org.manager)
    )
    assert response.status_code == 200
    assert response.json()["group_id"] == org.frontend


async def test_role_eligibility_by_job_level(client, org, auth_headers):
    response = await client.post(
        f"/users/{org.employee}/roles", json={"role_id": org.roles["group_leader"]}, headers=auth_headers(org.admin)
    )
    assert response.status_code == 400


async def test_assign_and_remove_role(client, org, auth_headers):
    response = await client.post(
        f"/users/{org.leader}/roles", json={"role_id": org.roles["employee"]}, headers=auth_headers(org.admin)
    )
    assert response.status_code == 200

    response = await client.get(f"/users/{org.leader}", headers=auth_headers(org.admin))
    assert {role["code"] for role in response.json()["roles"]} == {"group_leader", "employee"}

    response = await client.delete(f"/users/{org.leader}/roles/{org.roles['employee']}", headers=auth_headers(org.admin))
    assert response.status_code == 204

    response = await client.delete(f"/users/{org.leader}/roles/{org.roles['employee']}", headers=auth_headers(org.admin))
    assert response.status_code == 404


async def test_direct_permission_grant_takes_effect(client, org, auth_headers):
    response = await client.get("/permissions?resource=audit", headers=auth_headers(org.admin))
    audit_read = response.json()[0]["id"]

    response = await client.get("/audit", headers=auth_headers(org.employee))
    assert response.status_code == 403

    response = await client.post(
        f"/users/{org.employee}/permissions", json={"permission_id": audit_read}, headers=auth_headers(org.admin)
    )
    assert response.status_code == 200

    response = await client.get("/audit", headers=auth_headers(org.employee))
    assert response.status_code == 200


async def test_cannot_delete_self(client, org, auth_headers):
    response = await client.delete(f"/users/{org.admin}", headers=auth_headers(org.admin))
    assert response.status_code == 400


async def test_delete_user(client, org, auth_headers):
    response = await client.delete(f"/users/{org.outsider}", headers=auth_headers(org.admin))
    assert response.status_code == 204

    response = await client.get(f"/users/{org.outsider}", headers=auth_headers(org.admin))
    assert response.status_code == 404


async def test_inactive_user_is_rejected(client, org, auth_headers):
    response = await client.put(f"/users/{org.outsider}", json={"is_active": False}, headers=auth_headers(org.admin))
    assert response.status_code == 200

    response = await client.get("/users/me", headers=auth_headers(org.outsider))
    assert response.status_code == 403


async def _permission_id(client, org, auth_headers, code):
    response = await client.get(f"/permissions?search={code}", headers=auth_headers(org.admin))
    return next(p["id"] for p in response.json() if p["code"] == code)


async def test_manager_cannot_grant_self_direct_permissions(client, org, auth_headers):
    system_admin = await _permission_id(client, org, auth_headers, "system:admin")

    response = await client.put(
        f"/users/{org.manager}", json={"permission_ids": [system_admin]}, headers=auth_headers(org.manager)
    )
    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "missing_permission"

    response = await client.post(
        "/permissions/check", json={"resource": "role", "action": "delete"}, headers=auth_headers(org.manager)
    )
    assert response.json()["allowed"] is False


async def test_manager_cannot_grant_self_super_admin_role(client, org, auth_headers):
    role_ids = [org.roles["department_manager"], org.roles["super_admin"]]

    response = await client.put(f"/users/{org.manager}", json={"role_ids": role_ids}, headers=auth_headers(org.manager))
    assert response.status_code == 403
    assert response.json()["detail"]["permissions"] == ["system:admin"]

    response = await client.post(
        f"/users/{org.manager}/roles", json={"role_id": org.roles["super_admin"]}, headers=auth_headers(org.manager)
    )
    assert response.status_code == 403

    response = await client.get(f"/users/{org.manager}", headers=auth_headers(org.admin))
    assert [role["code"] for role in response.json()["roles"]] == ["department_manager"]


async def test_manager_assigns_roles_within_own_permissions(client, org, auth_headers):
    response = await client.put(
        f"/users/{org.leader}",
        json={"role_ids": [org.roles["group_leader"], org.roles["employee"]]},
        headers=auth_headers(org.manager),
    )
    assert response.status_code == 200
    assert {role["code"] for role in response.json()["roles"]} == {"group_leader", "employee"}
