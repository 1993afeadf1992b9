"""
Permission code grammar.

Permission codes are ASCII strings shared between the catalog and the
evaluator. The grammar is closed:

    code      := resource ":" action
    resource  := [a-z][a-z0-9_]*
    action    := "*" | [a-z][a-z0-9_]*

with these reserved forms:

    system:admin            universal override
    <resource>:*            every action on a resource
    <resource>:manage       every action on a resource
    <resource>:<action>_self  the action, restricted to the actor's own record
    <resource>:manage_all   bypass department/group reachability checks
"""
import re
from dataclasses import dataclass


SEPARATOR = ":"
WILDCARD = "*"
MANAGE = "manage"
MANAGE_ALL = "manage_all"
SELF_SUFFIX = "_self"

SYSTEM_ADMIN = "system:admin"
DEPARTMENT_MANAGE_ALL = "department:manage_all"
GROUP_MANAGE_ALL = "group:manage_all"

_NAME = r"[a-z][a-z0-9_]*"
_CODE_RE = re.compile(rf"^(?P<resource>{_NAME}):(?P<action>\*|{_NAME})$")


class InvalidPermissionCode(ValueError):
    """Raised when a string does not follow the permission code grammar."""


@dataclass(frozen=True)
class PermissionCode:
    resource: str
    action: str

    @classmethod
    def parse(cls, code: str) -> "PermissionCode":
        match = _CODE_RE.match(code or "")
        if match is None:
            raise InvalidPermissionCode(
                f"Invalid permission code {code!r}: expected 'resource:action'"
            )
        return cls(resource=match.group("resource"), action=match.group("action"))

    @property
    def is_wildcard(self) -> bool:
        return self.action == WILDCARD

    @property
    def is_manage(self) -> bool:
        return self.action == MANAGE

    @property
    def is_manage_all(self) -> bool:
        return self.action == MANAGE_ALL

    @property
    def is_self(self) -> bool:
        return self.action.endswith(SELF_SUFFIX)

    def __str__(self) -> str:
        return f"{self.resource}{SEPARATOR}{self.action}"


def is_valid(code: str) -> bool:
    return _CODE_RE.match(code or "") is not None


def exact(resource: str, action: str) -> str:
    return f"{resource}{SEPARATOR}{action}"


def wildcard(resource: str) -> str:
    return exact(resource, WILDCARD)


def manage(resource: str) -> str:
    return exact(resource, MANAGE)


def manage_all(resource: str) -> str:
    return exact(resource, MANAGE_ALL)


def self_action(resource: str, action: str) -> str:
    """`user`, `update` -> `user:update_self`."""
    return exact(resource, f"{action}{SELF_SUFFIX}")
