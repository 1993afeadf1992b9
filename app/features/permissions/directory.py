"""
Immutable directory records consumed by the access-control engine.

The engine never talks to the database. Callers load a `DirectorySnapshot`
once per request (see `dependencies.load_directory`) and pass it to the
resolver and evaluator.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional


class RoleScope(str, enum.Enum):
    """How far a role's grants reach beyond the holder's own unit."""

    GLOBAL = "global"
    DEPARTMENT = "department"
    GROUP = "group"


class PermissionCategory(str, enum.Enum):
    SYSTEM = "system"
    BUSINESS = "business"
    DATA = "data"


@dataclass(frozen=True)
class UserRecord:
    id: str
    role_ids: frozenset[str] = frozenset()
    job_level_id: Optional[str] = None
    department_id: Optional[str] = None
    group_id: Optional[str] = None
    leader_id: Optional[str] = None
    permission_ids: frozenset[str] = frozenset()
    is_active: bool = True


@dataclass(frozen=True)
class RoleRecord:
    id: str
    code: str
    permission_ids: frozenset[str] = frozenset()
    job_level_ids: frozenset[str] = frozenset()
    scope: RoleScope = RoleScope.GROUP
    is_active: bool = True
    is_system: bool = False


@dataclass(frozen=True)
class PermissionRecord:
    id: str
    code: str
    resource: str
    action: str
    category: PermissionCategory = PermissionCategory.BUSINESS
    is_active: bool = True
    is_system: bool = False


@dataclass(frozen=True)
class JobLevelRecord:
    id: str
    code: str
    level: int
    permission_ids: frozenset[str] = frozenset()
    is_active: bool = True


@dataclass(frozen=True)
class DepartmentRecord:
    id: str
    parent_id: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class GroupRecord:
    id: str
    department_id: str
    is_active: bool = True


def _index(records: Iterable) -> dict:
    return {record.id: record for record in records}


@dataclass(frozen=True)
class DirectorySnapshot:
    """A consistent, read-only view of every directory record."""

    users: Mapping[str, UserRecord] = field(default_factory=dict)
    roles: Mapping[str, RoleRecord] = field(default_factory=dict)
    permissions: Mapping[str, PermissionRecord] = field(default_factory=dict)
    job_levels: Mapping[str, JobLevelRecord] = field(default_factory=dict)
    departments: Mapping[str, DepartmentRecord] = field(default_factory=dict)
    groups: Mapping[str, GroupRecord] = field(default_factory=dict)

    @classmethod
    def from_records(
        cls,
        users: Iterable[UserRecord] = (),
        roles: Iterable[RoleRecord] = (),
        permissions: Iterable[PermissionRecord] = (),
        job_levels: Iterable[JobLevelRecord] = (),
        departments: Iterable[DepartmentRecord] = (),
        groups: Iterable[GroupRecord] = (),
    ) -> "DirectorySnapshot":
        return cls(
            users=_index(users),
            roles=_index(roles),
            permissions=_index(permissions),
            job_levels=_index(job_levels),
            departments=_index(departments),
            groups=_index(groups),
        )

    def active_permission_codes(self, permission_ids: Iterable[str]) -> set[str]:
        """Codes of the given permissions that exist and are active."""
        codes = set()
        for permission_id in permission_ids:
            permission = self.permissions.get(permission_id)
            if permission is not None and permission.is_active:
                codes.add(permission.code)
        return codes

    def active_department_ids(self) -> set[str]:
        return {d.id for d in self.departments.values() if d.is_active}

    def active_group_ids(self) -> set[str]:
        return {g.id for g in self.groups.values() if g.is_active}
