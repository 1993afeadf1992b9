"""
Effective permission resolution.

Combines the permission codes a user receives from roles, job level and
direct grants, and computes which departments and groups the user's roles
let them reach.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Mapping, Optional

from app.features.permissions.directory import DirectorySnapshot, RoleScope, UserRecord


class GrantSource(str, enum.Enum):
    """Where an allow verdict came from."""

    ROLE = "role"
    JOB_LEVEL = "job_level"
    DIRECT = "direct"
    SYSTEM = "system"


# Reported when a code arrives through several sources
_SOURCE_PRIORITY = (GrantSource.ROLE, GrantSource.JOB_LEVEL, GrantSource.DIRECT)


@dataclass(frozen=True)
class EffectivePermissions:
    user_id: str
    permissions: frozenset[str] = frozenset()
    department_access: frozenset[str] = frozenset()
    group_access: frozenset[str] = frozenset()
    sources: Mapping[str, frozenset[GrantSource]] = field(default_factory=dict)

    def has(self, code: str) -> bool:
        return code in self.permissions

    def granted_by(self, code: str) -> Optional[GrantSource]:
        """Most specific source that granted `code`, or None if not held."""
        found = self.sources.get(code, frozenset())
        for source in _SOURCE_PRIORITY:
            if source in found:
                return source
        return None

    def can_reach_department(self, department_id: str) -> bool:
        return department_id in self.department_access

    def can_reach_group(self, group_id: str) -> bool:
        return group_id in self.group_access


def resolve(user: UserRecord, directory: DirectorySnapshot) -> EffectivePermissions:
    """
    Compute the effective permissions and reachability of `user`.

    Roles, job levels and permissions that are missing from the snapshot or
    inactive contribute nothing. Inactive permissions never contribute, even
    when granted by an active role.

    Args:
        user: The user whose permissions are resolved
        directory: Snapshot the user's references are looked up in

    Returns:
        EffectivePermissions with provenance for every code
    """
    sources: dict[str, set[GrantSource]] = {}

    def grant(codes: set[str], source: GrantSource) -> None:
        for code in codes:
            sources.setdefault(code, set()).add(source)

    departments: set[str] = set()
    groups: set[str] = set()
    if user.department_id:
        departments.add(user.department_id)
    if user.group_id:
        groups.add(user.group_id)

    for role_id in sorted(user.role_ids):
        role = directory.roles.get(role_id)
        if role is None or not role.is_active:
            continue

        grant(directory.active_permission_codes(role.permission_ids), GrantSource.ROLE)

        if role.scope == RoleScope.GLOBAL:
            departments |= directory.active_department_ids()
            groups |= directory.active_group_ids()
        elif role.scope == RoleScope.DEPARTMENT:
            # Reaches every active department; groups stay limited to the own one
            departments |= directory.active_department_ids()

    if user.job_level_id:
        job_level = directory.job_levels.get(user.job_level_id)
        if job_level is not None and job_level.is_active:
            grant(directory.active_permission_codes(job_level.permission_ids), GrantSource.JOB_LEVEL)

    grant(directory.active_permission_codes(user.permission_ids), GrantSource.DIRECT)

    return EffectivePermissions(
        user_id=user.id,
        permissions=frozenset(sources),
        department_access=frozenset(departments),
        group_access=frozenset(groups),
        sources={code: frozenset(found) for code, found in sources.items()},
    )
