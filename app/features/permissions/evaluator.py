"""
Access decisions.

`decide` turns an access context and the actor's effective permissions into
an allow/deny verdict. Rules are evaluated in order and the first one that
matches wins. An inactive actor is denied (`inactive_actor`) before any rule
is tried.

1. `system:admin` allows everything.
2. `resource:action`
3. `resource:*`
4. `resource:manage`
5. `resource:action_self`, only when the actor targets their own record.
6. When a target department, group or user is named, an allow from 2-5 is
   downgraded to `out_of_scope` unless the target is reachable (or the
   matching `<resource>:manage_all` code is held).
7. Otherwise `missing_permission`.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from app.features.permissions import codes
from app.features.permissions.directory import DirectorySnapshot, UserRecord
from app.features.permissions.exceptions import MalformedContextError
from app.features.permissions.resolver import EffectivePermissions, GrantSource, resolve
from app.utils import get_logger


log = get_logger(__name__)


class ReasonCode(str, enum.Enum):
    SYSTEM_ADMIN = "system_admin"
    EXACT_MATCH = "exact_match"
    WILDCARD_MATCH = "wildcard_match"
    MANAGE_MATCH = "manage_match"
    SELF_ACTION = "self_action"
    SELF_ROUTE = "self_route"
    OUT_OF_SCOPE = "out_of_scope"
    MISSING_PERMISSION = "missing_permission"
    UNMAPPED_ROUTE = "unmapped_route"
    INACTIVE_ACTOR = "inactive_actor"


@dataclass(frozen=True)
class AccessContext:
    actor: UserRecord
    resource: str
    action: str
    target_user_id: Optional[str] = None
    target_group_id: Optional[str] = None
    target_department_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: ReasonCode
    granted_by: Optional[GrantSource] = None
    matched_permissions: tuple[str, ...] = ()


def _validate(context: AccessContext, effective: EffectivePermissions) -> None:
    if context is None or not isinstance(context.actor, UserRecord):
        raise MalformedContextError("Access context requires an actor")
    if not context.resource or not context.action:
        raise MalformedContextError("Access context requires a resource and an action")
    if effective is None or effective.user_id != context.actor.id:
        raise MalformedContextError(
            f"Effective permissions do not belong to actor {context.actor.id!r}"
        )


def _match(context: AccessContext, effective: EffectivePermissions) -> Optional[tuple[str, ReasonCode]]:
    resource, action = context.resource, context.action
    candidates = [
        (codes.exact(resource, action), ReasonCode.EXACT_MATCH),
        (codes.wildcard(resource), ReasonCode.WILDCARD_MATCH),
        (codes.manage(resource), ReasonCode.MANAGE_MATCH),
    ]
    if context.target_user_id is not None and context.target_user_id == context.actor.id:
        candidates.append((codes.self_action(resource, action), ReasonCode.SELF_ACTION))

    for code, reason in candidates:
        if effective.has(code):
            return code, reason
    return None


def _department_reachable(department_id: Optional[str], effective: EffectivePermissions) -> bool:
    if not department_id or effective.has(codes.DEPARTMENT_MANAGE_ALL):
        return True
    return effective.can_reach_department(department_id)


def _group_reachable(group_id: Optional[str], effective: EffectivePermissions) -> bool:
    if not group_id or effective.has(codes.GROUP_MANAGE_ALL):
        return True
    return effective.can_reach_group(group_id)


def _in_scope(
    context: AccessContext,
    effective: EffectivePermissions,
    directory: Optional[DirectorySnapshot],
) -> bool:
    if not _department_reachable(context.target_department_id, effective):
        return False
    if not _group_reachable(context.target_group_id, effective):
        return False

    target_user_id = context.target_user_id
    if target_user_id is None or target_user_id == context.actor.id:
        return True

    target = directory.users.get(target_user_id) if directory is not None else None
    if target is None:
        # A target that cannot be resolved is never reachable
        return False
    return (
        _department_reachable(target.department_id, effective)
        and _group_reachable(target.group_id, effective)
    )


def decide(
    context: AccessContext,
    effective: EffectivePermissions,
    directory: Optional[DirectorySnapshot] = None,
) -> Decision:
    """
    Decide whether `context.actor` may perform `context.action` on
    `context.resource`.

    Args:
        context: Actor, resource, action and optional targets
        effective: The actor's resolved permissions
        directory: Snapshot used to look up a target user's department and group

    Returns:
        Decision; denials are results, not exceptions

    Raises:
        MalformedContextError: If the context is missing required fields
    """
    _validate(context, effective)
    actor_id = context.actor.id

    if not context.actor.is_active:
        log.debug(f"User {actor_id} is inactive - denied {context.action} on {context.resource}")
        return Decision(allowed=False, reason=ReasonCode.INACTIVE_ACTOR)

    if effective.has(codes.SYSTEM_ADMIN):
        log.debug(f"User {actor_id} is system admin - granted {context.action} on {context.resource}")
        return Decision(
            allowed=True,
            reason=ReasonCode.SYSTEM_ADMIN,
            granted_by=GrantSource.SYSTEM,
            matched_permissions=(codes.SYSTEM_ADMIN,),
        )

    match = _match(context, effective)
    if match is None:
        log.debug(f"User {actor_id} denied {context.action} on {context.resource}: missing permission")
        return Decision(allowed=False, reason=ReasonCode.MISSING_PERMISSION)

    code, reason = match
    granted_by = effective.granted_by(code) or GrantSource.ROLE

    if not _in_scope(context, effective, directory):
        log.debug(
            f"User {actor_id} holds {code} but target is out of scope "
            f"(user={context.target_user_id}, group={context.target_group_id}, "
            f"department={context.target_department_id})"
        )
        return Decision(
            allowed=False,
            reason=ReasonCode.OUT_OF_SCOPE,
            granted_by=granted_by,
            matched_permissions=(code,),
        )

    log.debug(f"User {actor_id} granted {context.action} on {context.resource} via {code} ({granted_by.value})")
    return Decision(allowed=True, reason=reason, granted_by=granted_by, matched_permissions=(code,))


def check(context: AccessContext, directory: DirectorySnapshot) -> Decision:
    """Resolve the actor's permissions from `directory` and decide in one step."""
    if context is None or not isinstance(context.actor, UserRecord):
        raise MalformedContextError("Access context requires an actor")
    return decide(context, resolve(context.actor, directory), directory)
