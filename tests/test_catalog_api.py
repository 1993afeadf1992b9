import pytest


pytestmark = pytest.mark.anyio


async def _permission_id(client, headers, code):
    response = await client.get(f"/permissions?search={code}", headers=headers)
    return next(p["id"] for p in response.json() if p["code"] == code)


async def test_initialize_is_idempotent(client, org, auth_headers):
    headers = auth_headers(org.admin)

    first = await client.post("/permissions/initialize", headers=headers)
    second = await client.post("/permissions/initialize", headers=headers)

    assert first.status_code == 200
    assert first.json() == second.json()
    assert first.json()["roles"] == 4


async def test_initialize_needs_system_admin(client, org, auth_headers):
    response = await client.post("/permissions/initialize", headers=auth_headers(org.manager))
    assert response.status_code == 403


async def test_filter_permissions_by_category(client, org, auth_headers):
    response = await client.get("/permissions?category=data", headers=auth_headers(org.admin))
    assert [p["code"] for p in response.json()] == ["audit:read"]


async def test_create_permission(client, org, auth_headers):
    payload = {"code": "report:export", "resource": "report", "action": "export", "name": "Export reports"}
    response = await client.post("/permissions", json=payload, headers=auth_headers(org.admin))
    assert response.status_code == 201
    assert response.json()["is_system"] is False

    response = await client.post("/permissions", json=payload, headers=auth_headers(org.admin))
    assert response.status_code == 409


async def test_permission_code_must_match_parts(client, org, auth_headers):
    payload = {"code": "report:export", "resource": "report", "action": "print", "name": "Mismatch"}
    response = await client.post("/permissions", json=payload, headers=auth_headers(org.admin))
    assert response.status_code == 400


async def test_system_permission_cannot_be_deleted(client, org, auth_headers):
    headers = auth_headers(org.admin)
    permission_id = await _permission_id(client, headers, "role:delete")

    response = await client.delete(f"/permissions/{permission_id}", headers=headers)
    assert response.status_code == 400


async def test_deactivated_permission_stops_granting(client, org, auth_headers):
    headers = auth_headers(org.admin)
    permission_id = await _permission_id(client, headers, "group:read")

    response = await client.get("/groups", headers=auth_headers(org.employee))
    assert response.status_code == 200

    response = await client.put(f"/permissions/{permission_id}", json={"is_active": False}, headers=headers)
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    response = await client.get("/groups", headers=auth_headers(org.employee))
    assert response.status_code == 403


async def test_check_by_resource_and_action(client, org, auth_headers):
    response = await client.post(
        "/permissions/check",
        json={"resource": "user", "action": "read", "target_user_id": org.outsider},
        headers=auth_headers(org.leader),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["allowed"] is False
    assert body["reason"] == "out_of_scope"
    assert body["matched_permissions"] == ["user:read"]


async def test_check_by_route(client, org, auth_headers):
    response = await client.post(
        "/permissions/check", json={"method": "GET", "path": "/audit"}, headers=auth_headers(org.admin)
    )
    body = response.json()
    assert body["allowed"] is True
    assert body["reason"] == "system_admin"
    assert (body["resource"], body["action"]) == ("audit", "read")

    response = await client.post(
        "/permissions/check", json={"method": "TRACE", "path": "/audit"}, headers=auth_headers(org.admin)
    )
    assert response.json()["reason"] == "unmapped_route"


async def test_check_needs_a_target(client, org, auth_headers):
    response = await client.post("/permissions/check", json={"resource": "user"}, headers=auth_headers(org.admin))
    assert response.status_code == 400


async def test_system_role_cannot_be_deleted_or_recoded(client, org, auth_headers):
    headers = auth_headers(org.admin)
    role_id = org.roles["employee"]

    response = await client.delete(f"/roles/{role_id}", headers=headers)
    assert response.status_code == 400

    response = await client.put(f"/roles/{role_id}", json={"code": "staff"}, headers=headers)
    assert response.status_code == 400

    response = await client.put(f"/roles/{role_id}", json={"name": "Staff"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["name"] == "Staff"


async def test_role_lifecycle(client, org, auth_headers):
    headers = auth_headers(org.admin)
    audit_read = await _permission_id(client, headers, "audit:read")

    response = await client.post(
        "/roles",
        json={"code": "auditor", "name": "Auditor", "scope": "global", "job_level_ids": [org.levels["M1"]]},
        headers=headers,
    )
    assert response.status_code == 201
    role = response.json()
    assert role["scope"] == "global"
    assert [level["code"] for level in role["job_levels"]] == ["M1"]

    response = await client.post(f"/roles/{role['id']}/permissions", json={"permission_id": audit_read}, headers=headers)
    assert response.status_code == 200

    response = await client.get(f"/roles/{role['id']}", headers=headers)
    assert [p["code"] for p in response.json()["permissions"]] == ["audit:read"]

    response = await client.post(f"/users/{org.manager}/roles", json={"role_id": role["id"]}, headers=headers)
    assert response.status_code == 200

    response = await client.get("/audit", headers=auth_headers(org.manager))
    assert response.status_code == 200

    response = await client.delete(f"/roles/{role['id']}", headers=headers)
    assert response.status_code == 204

    response = await client.get("/audit", headers=auth_headers(org.manager))
    assert response.status_code == 403


async def test_role_with_unknown_permission(client, org, auth_headers):
    response = await client.post(
        "/roles", json={"code": "broken", "name": "Broken", "permission_ids": ["missing"]},
        headers=auth_headers(org.admin),
    )
    assert response.status_code == 400


async def test_job_levels_are_sorted_and_unique(client, org, auth_headers):
    headers = auth_headers(org.admin)

    response = await client.get("/job-levels", headers=headers)
    assert response.status_code == 200
    assert [level["code"] for level in response.json()] == ["P1", "P3", "M1"]

    response = await client.post("/job-levels", json={"code": "P2", "name": "Mid", "level": 3}, headers=headers)
    assert response.status_code == 409

    response = await client.post("/job-levels", json={"code": "P2", "name": "Mid", "level": 2}, headers=headers)
    assert response.status_code == 201

    response = await client.get("/job-levels?min_level=2&max_level=3", headers=headers)
    assert [level["code"] for level in response.json()] == ["P2", "P3"]


async def test_delete_job_level_clears_users(client, org, auth_headers):
    headers = auth_headers(org.admin)

    response = await client.delete(f"/job-levels/{org.levels['P1']}", headers=headers)
    assert response.status_code == 204

    response = await client.get(f"/users/{org.employee}", headers=headers)
    assert response.json()["job_level_id"] is None
