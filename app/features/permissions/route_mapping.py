"""
Route-to-resource mapping.

Translates an HTTP method and path into the `(resource, action)` pair the
evaluator works with, and checks route-level permission requirements.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from app.features.permissions.codes import InvalidPermissionCode, PermissionCode, exact
from app.features.permissions.directory import DirectorySnapshot, UserRecord
from app.features.permissions.evaluator import AccessContext, Decision, ReasonCode, decide
from app.features.permissions.resolver import EffectivePermissions, resolve
from app.utils import get_logger


log = get_logger(__name__)

UNKNOWN = "unknown"

METHOD_ACTIONS = {
    "GET": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}

# 24 hex characters: opaque record ids are skipped when deriving the resource
_OPAQUE_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")


def action_for_method(method: str) -> str:
    return METHOD_ACTIONS.get((method or "").upper(), UNKNOWN)


def resource_for_path(path: str) -> str:
    for segment in (path or "").split("/"):
        if segment and not _OPAQUE_ID_RE.match(segment):
            return segment.lower()
    return UNKNOWN


def map_route(method: str, path: str) -> tuple[str, str]:
    """
    Derive `(resource, action)` from a request.

    >>> map_route("PATCH", "/users/5f8d0d55b54764421b7156c9")
    ('users', 'update')
    """
    return resource_for_path(path), action_for_method(method)


@dataclass(frozen=True)
class RouteRequirement:
    """
    Permission requirements bound to a route.

    An empty `required_permissions` means the requirement is derived from the
    request method and path.
    """
    required_permissions: tuple[str, ...] = ()
    check_department: bool = False
    check_group: bool = False
    allow_self: bool = False


def required_permissions(requirement: RouteRequirement, method: str = "", path: str = "") -> list[str]:
    """Codes a route demands, falling back to the derived `resource:action`."""
    if requirement.required_permissions:
        return list(requirement.required_permissions)
    resource, action = map_route(method, path)
    return [exact(resource, action)]


@dataclass(frozen=True)
class RouteRequest:
    method: str
    path: str
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    department_id: Optional[str] = None


@dataclass(frozen=True)
class RouteVerdict:
    allowed: bool
    reason: ReasonCode
    required: tuple[str, ...] = ()
    decisions: tuple[Decision, ...] = ()
    denied_permission: Optional[str] = None

    @property
    def decision(self) -> Decision:
        """The deciding verdict: the failing one on deny, the last one on allow."""
        if self.decisions:
            return self.decisions[-1]
        return Decision(allowed=self.allowed, reason=self.reason)


def authorize_route(
    actor: UserRecord,
    requirement: RouteRequirement,
    request: RouteRequest,
    directory: DirectorySnapshot,
    effective: Optional[EffectivePermissions] = None,
) -> RouteVerdict:
    """
    Check `actor` against a route's requirement.

    Self-service routes let an active actor through when the path's user id is
    their own, without consulting the evaluator. Otherwise every required code must
    be allowed.
    """
    if (
        requirement.allow_self
        and actor.is_active
        and request.user_id is not None
        and request.user_id == actor.id
    ):
        log.debug(f"User {actor.id} allowed on {request.method} {request.path} as self")
        return RouteVerdict(allowed=True, reason=ReasonCode.SELF_ROUTE)

    required = tuple(required_permissions(requirement, request.method, request.path))
    if effective is None:
        effective = resolve(actor, directory)

    decisions = []
    for code in required:
        try:
            parsed = PermissionCode.parse(code)
        except InvalidPermissionCode:
            parsed = None

        if parsed is None or UNKNOWN in (parsed.resource, parsed.action):
            log.debug(f"Route {request.method} {request.path} maps to {code!r}, denying")
            return RouteVerdict(
                allowed=False,
                reason=ReasonCode.UNMAPPED_ROUTE,
                required=required,
                decisions=tuple(decisions),
                denied_permission=code,
            )

        context = AccessContext(
            actor=actor,
            resource=parsed.resource,
            action=parsed.action,
            target_user_id=request.user_id,
            target_group_id=request.group_id if requirement.check_group else None,
            target_department_id=request.department_id if requirement.check_department else None,
        )
        decision = decide(context, effective, directory)
        decisions.append(decision)
        if not decision.allowed:
            return RouteVerdict(
                allowed=False,
                reason=decision.reason,
                required=required,
                decisions=tuple(decisions),
                denied_permission=code,
            )

    return RouteVerdict(
        allowed=True,
        reason=decisions[-1].reason,
        required=required,
        decisions=tuple(decisions),
    )
