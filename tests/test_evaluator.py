from dataclasses import replace

import pytest

from app.features.permissions.directory import (
    DepartmentRecord,
    DirectorySnapshot,
    GroupRecord,
    PermissionRecord,
    RoleRecord,
    RoleScope,
    UserRecord,
)
from app.features.permissions.evaluator import AccessContext, ReasonCode, check, decide
from app.features.permissions.exceptions import MalformedContextError
from app.features.permissions.resolver import GrantSource, resolve


CODES = [
    "system:admin",
    "user:read",
    "user:update",
    "user:update_self",
    "user:*",
    "user:manage",
    "department:manage",
    "department:manage_all",
    "group:manage_all",
]

PERMISSIONS = [
    PermissionRecord(id=code, code=code, resource=code.split(":")[0], action=code.split(":")[1])
    for code in CODES
]


def build(actor_codes=(), scope=RoleScope.GROUP, direct=(), others=()):
    """Snapshot with an actor in D1/G1 holding `actor_codes` through one role."""
    role = RoleRecord(id="r1", code="r1", permission_ids=frozenset(actor_codes), scope=scope)
    actor = UserRecord(
        id="actor",
        role_ids=frozenset({"r1"}),
        department_id="D1",
        group_id="G1",
        permission_ids=frozenset(direct),
    )
    directory = DirectorySnapshot.from_records(
        users=[actor, *others],
        roles=[role],
        permissions=PERMISSIONS,
        departments=[DepartmentRecord(id="D1"), DepartmentRecord(id="D2")],
        groups=[
            GroupRecord(id="G1", department_id="D1"),
            GroupRecord(id="G2", department_id="D1"),
            GroupRecord(id="G3", department_id="D2"),
        ],
    )
    return actor, directory


def run(actor, directory, resource, action, **targets):
    context = AccessContext(actor=actor, resource=resource, action=action, **targets)
    return decide(context, resolve(actor, directory), directory)


def test_system_admin_allows_everything():
    actor, directory = build(["system:admin"])

    decision = run(actor, directory, "anything", "whatever", target_department_id="D2", target_group_id="nowhere")

    assert decision.allowed
    assert decision.reason == ReasonCode.SYSTEM_ADMIN
    assert decision.granted_by == GrantSource.SYSTEM
    assert decision.matched_permissions == ("system:admin",)


def test_exact_match():
    actor, directory = build(["user:read"])

    decision = run(actor, directory, "user", "read")

    assert decision.allowed
    assert decision.reason == ReasonCode.EXACT_MATCH
    assert decision.granted_by == GrantSource.ROLE
    assert decision.matched_permissions == ("user:read",)


def test_exact_match_reports_direct_source():
    actor, directory = build(direct=["user:read"])

    decision = run(actor, directory, "user", "read")

    assert decision.allowed
    assert decision.granted_by == GrantSource.DIRECT


def test_exact_match_is_preferred_over_wildcard():
    actor, directory = build(["user:read", "user:*"])

    decision = run(actor, directory, "user", "read")

    assert decision.reason == ReasonCode.EXACT_MATCH


def test_wildcard_match():
    actor, directory = build(["user:*"])

    decision = run(actor, directory, "user", "delete")

    assert decision.allowed
    assert decision.reason == ReasonCode.WILDCARD_MATCH
    assert decision.matched_permissions == ("user:*",)


def test_manage_match():
    actor, directory = build(["user:manage"])

    decision = run(actor, directory, "user", "delete")

    assert decision.allowed
    assert decision.reason == ReasonCode.MANAGE_MATCH


def test_self_action_applies_only_to_own_record():
    other = UserRecord(id="other", department_id="D1", group_id="G1")
    actor, directory = build(["user:update_self"], others=[other])

    own = run(actor, directory, "user", "update", target_user_id="actor")
    foreign = run(actor, directory, "user", "update", target_user_id="other")

    assert own.allowed
    assert own.reason == ReasonCode.SELF_ACTION
    assert own.matched_permissions == ("user:update_self",)
    assert not foreign.allowed
    assert foreign.reason == ReasonCode.MISSING_PERMISSION


def test_general_action_does_not_need_self_code():
    actor, directory = build(["user:update"])

    decision = run(actor, directory, "user", "update", target_user_id="actor")

    assert decision.allowed
    assert decision.reason == ReasonCode.EXACT_MATCH


def test_missing_permission():
    actor, directory = build(["user:read"])

    decision = run(actor, directory, "user", "delete")

    assert not decision.allowed
    assert decision.reason == ReasonCode.MISSING_PERMISSION
    assert decision.matched_permissions == ()
    assert decision.granted_by is None


def test_group_scoped_role_example():
    actor, directory = build(["user:read"], scope=RoleScope.GROUP)

    denied = run(actor, directory, "user", "read", target_group_id="G2")
    allowed = run(actor, directory, "user", "read", target_group_id="G1")

    assert not denied.allowed
    assert denied.reason == ReasonCode.OUT_OF_SCOPE
    assert denied.matched_permissions == ("user:read",)
    assert allowed.allowed


def test_unreachable_department_is_out_of_scope():
    actor, directory = build(["department:manage"], scope=RoleScope.GROUP)

    decision = run(actor, directory, "department", "update", target_department_id="D2")

    assert not decision.allowed
    assert decision.reason == ReasonCode.OUT_OF_SCOPE


def test_department_scope_reaches_other_departments():
    actor, directory = build(["department:manage"], scope=RoleScope.DEPARTMENT)

    decision = run(actor, directory, "department", "update", target_department_id="D2")

    assert decision.allowed


def test_manage_all_bypasses_its_dimension_only():
    actor, directory = build(["user:read", "department:manage_all"], scope=RoleScope.GROUP)

    department = run(actor, directory, "user", "read", target_department_id="D2")
    group = run(actor, directory, "user", "read", target_group_id="G3")

    assert department.allowed
    assert not group.allowed
    assert group.reason == ReasonCode.OUT_OF_SCOPE


def test_target_user_is_narrowed_by_their_placement():
    near = UserRecord(id="near", department_id="D1", group_id="G1")
    far = UserRecord(id="far", department_id="D2", group_id="G3")
    actor, directory = build(["user:read"], others=[near, far])

    assert run(actor, directory, "user", "read", target_user_id="near").allowed
    decision = run(actor, directory, "user", "read", target_user_id="far")
    assert decision.reason == ReasonCode.OUT_OF_SCOPE


def test_unknown_target_user_is_out_of_scope():
    actor, directory = build(["user:read"])

    decision = run(actor, directory, "user", "read", target_user_id="ghost")

    assert not decision.allowed
    assert decision.reason == ReasonCode.OUT_OF_SCOPE


def test_check_resolves_and_decides():
    actor, directory = build(["user:read"])

    decision = check(AccessContext(actor=actor, resource="user", action="read"), directory)

    assert decision.allowed


@pytest.mark.parametrize("resource,action", [("", "read"), ("user", ""), (None, "read")])
def test_malformed_context_raises(resource, action):
    actor, directory = build(["system:admin"])

    with pytest.raises(MalformedContextError):
        run(actor, directory, resource, action)


def test_missing_actor_raises():
    _, directory = build()

    with pytest.raises(MalformedContextError):
        check(AccessContext(actor=None, resource="user", action="read"), directory)


def test_foreign_effective_permissions_raise():
    other = UserRecord(id="other")
    actor, directory = build(["user:read"], others=[other])

    context = AccessContext(actor=actor, resource="user", action="read")
    with pytest.raises(MalformedContextError):
        decide(context, resolve(other, directory), directory)


def test_inactive_actor_is_denied_even_as_system_admin():
    actor, directory = build(["system:admin"])
    inactive = replace(actor, is_active=False)
    directory = replace(directory, users={**directory.users, "actor": inactive})

    decision = run(inactive, directory, "user", "read")

    assert not decision.allowed
    assert decision.reason == ReasonCode.INACTIVE_ACTOR
    assert decision.matched_permissions == ()
