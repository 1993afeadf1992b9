"""
Access-control dependencies for route protection.

Implements:
- Loading a directory snapshot for the access-control engine
- FastAPI dependencies that guard routes with permission requirements
- Audit logging helpers
"""
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Any, Iterable, Optional
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, AsyncSessionLocal
from app.features.users.dependencies import get_current_user
from app.features.users.models import User, user_roles, user_permissions
from app.features.departments.models import Department
from app.features.groups.models import Group
from app.features.job_levels.models import JobLevel, job_level_permissions
from app.features.permissions.models import (
    Permission,
    Role,
    AuditLog,
    role_permissions,
    role_job_levels,
)
from app.features.permissions import codes
from app.features.permissions.directory import (
    DirectorySnapshot,
    UserRecord,
    RoleRecord,
    PermissionRecord,
    JobLevelRecord,
    DepartmentRecord,
    GroupRecord,
    RoleScope,
    PermissionCategory,
)
from app.features.permissions.evaluator import AccessContext, Decision, ReasonCode, decide
from app.features.permissions.exceptions import PermissionDenied
from app.features.permissions.resolver import EffectivePermissions, resolve
from app.features.permissions.route_mapping import RouteRequirement, RouteRequest, authorize_route
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Directory Snapshot
# ============================================================================

async def _pairs(db: AsyncSession, left, right) -> Dict[str, set]:
    result = await db.execute(select(left, right))
    grouped: Dict[str, set] = defaultdict(set)
    for key, value in result.all():
        grouped[key].add(value)
    return grouped


async def load_directory(db: AsyncSession) -> DirectorySnapshot:
    """
    Read every directory record into an immutable snapshot.

    All reads go through one session so the engine sees a consistent view.
    """
    user_role_ids = await _pairs(db, user_roles.c.user_id, user_roles.c.role_id)
    user_permission_ids = await _pairs(db, user_permissions.c.user_id, user_permissions.c.permission_id)
    role_permission_ids = await _pairs(db, role_permissions.c.role_id, role_permissions.c.permission_id)
    role_job_level_ids = await _pairs(db, role_job_levels.c.role_id, role_job_levels.c.job_level_id)
    job_level_permission_ids = await _pairs(
        db, job_level_permissions.c.job_level_id, job_level_permissions.c.permission_id
    )

    users = await db.execute(select(
        User.id, User.job_level_id, User.department_id, User.group_id, User.leader_id, User.is_active
    ))
    roles = await db.execute(select(Role.id, Role.code, Role.scope, Role.is_active, Role.is_system))
    permissions = await db.execute(select(
        Permission.id, Permission.code, Permission.resource, Permission.action,
        Permission.category, Permission.is_active, Permission.is_system
    ))
    job_levels = await db.execute(select(JobLevel.id, JobLevel.code, JobLevel.level, JobLevel.is_active))
    departments = await db.execute(select(Department.id, Department.parent_id, Department.is_active))
    groups = await db.execute(select(Group.id, Group.department_id, Group.is_active))

    return DirectorySnapshot.from_records(
        users=[
            UserRecord(
                id=row.id,
                role_ids=frozenset(user_role_ids.get(row.id, ())),
                job_level_id=row.job_level_id,
                department_id=row.department_id,
                group_id=row.group_id,
                leader_id=row.leader_id,
                permission_ids=frozenset(user_permission_ids.get(row.id, ())),
                is_active=row.is_active,
            )
            for row in users.all()
        ],
        roles=[
            RoleRecord(
                id=row.id,
                code=row.code,
                permission_ids=frozenset(role_permission_ids.get(row.id, ())),
                job_level_ids=frozenset(role_job_level_ids.get(row.id, ())),
                scope=RoleScope(row.scope),
                is_active=row.is_active,
                is_system=row.is_system,
            )
            for row in roles.all()
        ],
        permissions=[
            PermissionRecord(
                id=row.id,
                code=row.code,
                resource=row.resource,
                action=row.action,
                category=PermissionCategory(row.category),
                is_active=row.is_active,
                is_system=row.is_system,
            )
            for row in permissions.all()
        ],
        job_levels=[
            JobLevelRecord(
                id=row.id,
                code=row.code,
                level=row.level,
                permission_ids=frozenset(job_level_permission_ids.get(row.id, ())),
                is_active=row.is_active,
            )
            for row in job_levels.all()
        ],
        departments=[
            DepartmentRecord(id=row.id, parent_id=row.parent_id, is_active=row.is_active)
            for row in departments.all()
        ],
        groups=[
            GroupRecord(id=row.id, department_id=row.department_id, is_active=row.is_active)
            for row in groups.all()
        ],
    )


# ============================================================================
# FastAPI Dependencies
# ============================================================================

@dataclass
class Principal:
    """The authenticated caller together with the snapshot they were checked against."""
    user: User
    actor: UserRecord
    directory: DirectorySnapshot
    effective: EffectivePermissions

    def decide(
        self,
        resource: str,
        action: str,
        target_user_id: Optional[str] = None,
        target_group_id: Optional[str] = None,
        target_department_id: Optional[str] = None,
    ) -> Decision:
        context = AccessContext(
            actor=self.actor,
            resource=resource,
            action=action,
            target_user_id=target_user_id,
            target_group_id=target_group_id,
            target_department_id=target_department_id,
        )
        return decide(context, self.effective, self.directory)

    def require(self, resource: str, action: str, **targets: Optional[str]) -> Decision:
        """Like `decide`, but raise PermissionDenied on deny."""
        decision = self.decide(resource, action, **targets)
        if not decision.allowed:
            raise PermissionDenied(decision, message=f"Permission denied: {action} on {resource}")
        return decision

    def holds(self, code: str) -> bool:
        """Whether the caller is allowed the action a permission code stands for."""
        try:
            parsed = codes.PermissionCode.parse(code)
        except codes.InvalidPermissionCode:
            return False
        return self.decide(parsed.resource, parsed.action).allowed

    def require_grantable(self, permission_codes: Iterable[str]) -> None:
        """Raise PermissionDenied unless the caller holds every code they hand out."""
        missing = sorted(code for code in set(permission_codes) if not self.holds(code))
        if missing:
            log.info(f"User {self.actor.id} tried to grant codes they do not hold: {missing}")
            raise PermissionDenied(
                Decision(allowed=False, reason=ReasonCode.MISSING_PERMISSION),
                message="Cannot grant permissions you do not hold",
                permissions=missing,
            )


async def get_principal(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
) -> Principal:
    """Authenticate the caller and resolve their effective permissions."""
    directory = await load_directory(db)
    actor = directory.users.get(current_user.id)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )
    return Principal(
        user=current_user,
        actor=actor,
        directory=directory,
        effective=resolve(actor, directory),
    )


def require_route(
    *required_permissions: str,
    check_department: bool = False,
    check_group: bool = False,
    allow_self: bool = False,
):
    """
    FastAPI dependency to guard a route with permission requirements.

    Usage:
        @router.put("/{user_id}")
        async def update_user(
            user_id: str,
            principal: Principal = Depends(require_route("user:update", allow_self=True))
        ):
            # Caller holds user:update for this user, or is the user
            pass

    Args:
        required_permissions: Codes that must all be allowed; when empty the
            code is derived from the request method and path
        check_department: Narrow to the `department_id` path parameter
        check_group: Narrow to the `group_id` path parameter
        allow_self: Let the caller through when `user_id` is their own id

    Returns:
        Dependency function that returns the Principal if access is allowed

    Raises:
        PermissionDenied: 403 with the deciding reason code
    """
    requirement = RouteRequirement(
        required_permissions=tuple(required_permissions),
        check_department=check_department,
        check_group=check_group,
        allow_self=allow_self,
    )

    async def route_dependency(
        request: Request,
        principal: Principal = Depends(get_principal)
    ) -> Principal:
        params = request.path_params
        route_request = RouteRequest(
            method=request.method,
            path=request.url.path,
            user_id=params.get("user_id"),
            group_id=params.get("group_id"),
            department_id=params.get("department_id"),
        )
        verdict = authorize_route(
            principal.actor, requirement, route_request, principal.directory, principal.effective
        )
        if not verdict.allowed:
            log.info(
                f"Denied {request.method} {request.url.path} for user {principal.actor.id}: "
                f"{verdict.reason.value} ({verdict.denied_permission})"
            )
            raise PermissionDenied(
                verdict.decision,
                message=f"Missing required permissions: {', '.join(verdict.required)}",
            )
        return principal

    return route_dependency


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> AuditLog:
    """
    Create an audit log entry.

    Runs as a background task after the response, so it opens its own session.

    Args:
        user_id: User performing the action
        action: Action performed (e.g., "create", "update", "delete", "assign_role")
        resource_type: Type of resource (e.g., "role", "permission", "user")
        resource_id: ID of the resource
        details: Additional details
        ip_address: Client IP address
        user_agent: Client user agent

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent
    )

    async with AsyncSessionLocal() as db:
        db.add(audit_log)
        await db.commit()
        await db.refresh(audit_log)

    log.info(f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id}")

    return audit_log


def audit(
    background_tasks,
    request: Request,
    principal: Principal,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Schedule an audit log entry for the current request."""
    background_tasks.add_task(
        create_audit_log,
        user_id=principal.user.id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )
