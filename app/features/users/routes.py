"""
User feature routes.
"""
from collections import Counter
from typing import Annotated
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy import select, delete, insert, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.database.helpers import get_or_404, load_by_ids, ensure_exists
from app.features.departments.models import Department
from app.features.groups.models import Group
from app.features.job_levels.models import JobLevel
from app.features.permissions.dependencies import Principal, audit, get_principal, require_route
from app.features.permissions.models import Permission, Role
from app.features.permissions.resolver import resolve
from app.features.users.models import User, user_roles, user_permissions
from app.features.users.schemas import (
    UserCreate,
    UserUpdate,
    UserResponse,
    AssignRoleToUser,
    AssignPermissionToUser,
    UserPermissionsResponse,
    UserStatsResponse,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["users"])

# Changing any of these needs user:manage on the target
PRIVILEGED_FIELDS = ("department_id", "group_id", "job_level_id", "is_active", "role_ids", "permission_ids")


# ============================================================================
# Helpers
# ============================================================================

async def _ensure_unique(db: AsyncSession, username: str | None, email: str | None, exclude_id: str | None = None):
    conditions = []
    if username is not None:
        conditions.append(User.username == username)
    if email is not None:
        conditions.append(User.email == email)
    if not conditions:
        return

    stmt = select(User).where(or_(*conditions))
    if exclude_id:
        stmt = stmt.where(User.id != exclude_id)
    result = await db.execute(stmt)
    existing = result.scalars().first()
    if existing:
        field = "username" if existing.username == username else "email"
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"User with this {field} already exists"
        )


async def _validate_placement(
    db: AsyncSession,
    department_id: str | None,
    group_id: str | None,
    job_level_id: str | None,
    leader_id: str | None,
) -> None:
    await ensure_exists(db, Department, department_id, "Department")
    await ensure_exists(db, JobLevel, job_level_id, "Job level")
    await ensure_exists(db, User, leader_id, "Leader")
    if group_id is not None:
        group = await db.get(Group, group_id)
        if group is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Group {group_id} does not exist")
        if department_id is not None and group.department_id != department_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Group does not belong to the given department"
            )


def _check_role_eligibility(roles: list[Role], job_level_id: str | None) -> None:
    """A role that lists job levels may only go to users on one of them."""
    for role in roles:
        eligible = {job_level.id for job_level in role.job_levels}
        if eligible and job_level_id not in eligible:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Role '{role.code}' is not available for the user's job level"
            )


def _granted_codes(roles=(), permissions=()) -> set[str]:
    """Active permission codes handed out by assigning `roles` and `permissions`."""
    granted = {p.code for role in roles for p in role.permissions if p.is_active}
    granted |= {p.code for p in permissions if p.is_active}
    return granted


def _privileged_changes(user: User, update_data: dict) -> list[str]:
    changed = []
    for field in PRIVILEGED_FIELDS:
        if field not in update_data:
            continue
        value = update_data[field]
        if field == "role_ids":
            current = {role.id for role in user.roles}
            if set(value or ()) != current:
                changed.append(field)
        elif field == "permission_ids":
            current = {permission.id for permission in user.direct_permissions}
            if set(value or ()) != current:
                changed.append(field)
        elif value != getattr(user, field):
            changed.append(field)
    return changed


# ============================================================================
# User Routes
# ============================================================================

@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    principal: Annotated[Principal, Depends(get_principal)]
):
    """Get current authenticated user's profile."""
    return principal.user


@router.get("/stats/overview", response_model=UserStatsResponse)
async def get_user_stats(
    principal: Annotated[Principal, Depends(require_route("user:read"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Totals of users overall, by department, by job level and by role."""
    result = await db.execute(select(User.is_active, User.department_id, User.job_level_id))
    rows = result.all()
    active = sum(1 for row in rows if row.is_active)

    role_counts = await db.execute(
        select(Role.code, func.count(user_roles.c.user_id))
        .join(user_roles, user_roles.c.role_id == Role.id)
        .group_by(Role.code)
    )

    return UserStatsResponse(
        total=len(rows),
        active=active,
        inactive=len(rows) - active,
        by_department=dict(Counter(row.department_id for row in rows if row.department_id)),
        by_job_level=dict(Counter(row.job_level_id for row in rows if row.job_level_id)),
        by_role={code: count for code, count in role_counts.all()},
    )


@router.get("", response_model=list[UserResponse])
async def list_users(
    principal: Annotated[Principal, Depends(require_route("user:read"))],
    db: Annotated[AsyncSession, Depends(get_db)],
    department_id: str | None = None,
    group_id: str | None = None,
    job_level_id: str | None = None,
    role_id: str | None = None,
    active: bool | None = None,
    search: str | None = None,
    skip: int = 0,
    limit: int = 50
):
    """List users with optional filtering."""
    stmt = select(User)

    if department_id:
        stmt = stmt.where(User.department_id == department_id)
    if group_id:
        stmt = stmt.where(User.group_id == group_id)
    if job_level_id:
        stmt = stmt.where(User.job_level_id == job_level_id)
    if role_id:
        stmt = stmt.join(user_roles, user_roles.c.user_id == User.id).where(user_roles.c.role_id == role_id)
    if active is not None:
        stmt = stmt.where(User.is_active == active)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(
            or_(User.username.ilike(pattern), User.email.ilike(pattern), User.name.ilike(pattern))
        )

    result = await db.execute(stmt.order_by(User.username).offset(skip).limit(limit))
    return result.scalars().all()


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_in: UserCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Annotated[Principal, Depends(require_route("user:create"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Create a user, optionally placed and granted roles in one step."""
    await _ensure_unique(db, user_in.username, user_in.email)
    await _validate_placement(db, user_in.department_id, user_in.group_id, user_in.job_level_id, user_in.leader_id)

    principal.require(
        "user", "create",
        target_department_id=user_in.department_id,
        target_group_id=user_in.group_id,
    )
    if user_in.role_ids:
        principal.require("role", "assign")
    if user_in.permission_ids:
        principal.require("permission", "assign")

    roles = await load_by_ids(db, Role, user_in.role_ids, "roles")
    _check_role_eligibility(roles, user_in.job_level_id)
    permissions = await load_by_ids(db, Permission, user_in.permission_ids, "permissions")
    principal.require_grantable(_granted_codes(roles, permissions))

    db_user = User(
        **user_in.model_dump(exclude={"role_ids", "permission_ids"}),
        roles=roles,
        direct_permissions=permissions,
    )
    db.add(db_user)
    await db.commit()
    await db.refresh(db_user)

    audit(background_tasks, request, principal, "create", "user", db_user.id,
          details=user_in.model_dump(mode="json"))
    return db_user


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_by_id(
    user_id: str,
    principal: Annotated[Principal, Depends(require_route("user:read", allow_self=True))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get a user by ID."""
    return await get_or_404(db, User, user_id, "User")


@router.get("/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    principal: Annotated[Principal, Depends(require_route("user:read", allow_self=True))]
):
    """Effective permissions of a user, with the source of each code."""
    target = principal.directory.users.get(user_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    effective = resolve(target, principal.directory)
    roles = [principal.directory.roles[role_id] for role_id in target.role_ids if role_id in principal.directory.roles]

    return UserPermissionsResponse(
        user_id=user_id,
        permissions=sorted(effective.permissions),
        department_access=sorted(effective.department_access),
        group_access=sorted(effective.group_access),
        sources={
            code: sorted(source.value for source in found)
            for code, found in sorted(effective.sources.items())
        },
        roles=sorted(role.code for role in roles if role.is_active),
    )


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    update_in: UserUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Annotated[Principal, Depends(require_route("user:update", allow_self=True))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Update a user.

    Anyone allowed on the route may change name, username and email.
    Placement, grants and the active flag additionally need `user:manage`.
    """
    db_user = await get_or_404(db, User, user_id, "User")
    update_data = update_in.model_dump(exclude_unset=True)

    privileged = _privileged_changes(db_user, update_data)
    if privileged:
        log.debug(f"User {principal.user.id} changing {privileged} on {user_id}")
        principal.require("user", "manage", target_user_id=user_id)
    if "role_ids" in privileged:
        principal.require("role", "assign", target_user_id=user_id)
    if "permission_ids" in privileged:
        principal.require("permission", "assign", target_user_id=user_id)

    await _ensure_unique(db, update_data.get("username"), update_data.get("email"), exclude_id=user_id)

    department_id = update_data.get("department_id", db_user.department_id)
    group_id = update_data.get("group_id", db_user.group_id)
    job_level_id = update_data.get("job_level_id", db_user.job_level_id)
    await _validate_placement(db, department_id, group_id, job_level_id, update_data.get("leader_id"))
    if update_data.get("leader_id") == user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A user cannot lead themselves")

    held_roles = {role.id for role in db_user.roles}
    if "role_ids" in update_data:
        roles = await load_by_ids(db, Role, update_data.pop("role_ids") or [], "roles")
        principal.require_grantable(_granted_codes(roles=[r for r in roles if r.id not in held_roles]))
    else:
        roles = list(db_user.roles)
    _check_role_eligibility(roles, job_level_id)
    db_user.roles = roles

    if "permission_ids" in update_data:
        held_permissions = {p.id for p in db_user.direct_permissions}
        permissions = await load_by_ids(db, Permission, update_data.pop("permission_ids") or [], "permissions")
        principal.require_grantable(
            _granted_codes(permissions=[p for p in permissions if p.id not in held_permissions])
        )
        db_user.direct_permissions = permissions

    for key, value in update_data.items():
        if value is None and key in ("username", "email", "name", "is_active"):
            continue
        setattr(db_user, key, value)

    await db.commit()
    await db.refresh(db_user)

    audit(background_tasks, request, principal, "update", "user", user_id,
          details=update_in.model_dump(mode="json", exclude_unset=True))
    return db_user


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Annotated[Principal, Depends(require_route("user:delete"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Delete a user."""
    db_user = await get_or_404(db, User, user_id, "User")

    # Prevent self-deletion
    if db_user.id == principal.user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete your own account"
        )

    username = db_user.username
    await db.execute(delete(user_roles).where(user_roles.c.user_id == user_id))
    await db.execute(delete(user_permissions).where(user_permissions.c.user_id == user_id))
    await db.delete(db_user)
    await db.commit()

    audit(background_tasks, request, principal, "delete", "user", user_id, details={"username": username})
    return None


# ============================================================================
# Role Assignment Routes
# ============================================================================

@router.post("/{user_id}/roles", status_code=status.HTTP_200_OK)
async def assign_role_to_user(
    user_id: str,
    assignment: AssignRoleToUser,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Annotated[Principal, Depends(require_route("role:assign"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Assign a role to a user."""
    db_user = await get_or_404(db, User, user_id, "User")
    role = await get_or_404(db, Role, assignment.role_id, "Role")

    if role.id in {r.id for r in db_user.roles}:
        return {"message": f"Role '{role.code}' already assigned to user '{db_user.username}'"}

    _check_role_eligibility([role], db_user.job_level_id)
    principal.require_grantable(_granted_codes(roles=[role]))

    await db.execute(
        insert(user_roles).values(user_id=user_id, role_id=role.id, assigned_by_id=principal.user.id)
    )
    await db.commit()

    audit(background_tasks, request, principal, "assign_role", "user", user_id,
          details={"role_id": role.id, "role_code": role.code})
    return {"message": f"Role '{role.code}' assigned to user '{db_user.username}'"}


@router.delete("/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role_from_user(
    user_id: str,
    role_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Annotated[Principal, Depends(require_route("role:assign"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Remove a role from a user."""
    condition = and_(user_roles.c.user_id == user_id, user_roles.c.role_id == role_id)
    check_result = await db.execute(select(user_roles).where(condition))
    if not check_result.first():
        raise HTTPException(status_code=404, detail="Role assignment not found")

    await db.execute(delete(user_roles).where(condition))
    await db.commit()

    audit(background_tasks, request, principal, "remove_role", "user", user_id, details={"role_id": role_id})
    return None


# ============================================================================
# Direct Permission Routes
# ============================================================================

@router.post("/{user_id}/permissions", status_code=status.HTTP_200_OK)
async def assign_permission_to_user(
    user_id: str,
    assignment: AssignPermissionToUser,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Annotated[Principal, Depends(require_route("permission:assign"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Grant a permission directly to a user."""
    db_user = await get_or_404(db, User, user_id, "User")
    permission = await get_or_404(db, Permission, assignment.permission_id, "Permission")

    if permission.id in {p.id for p in db_user.direct_permissions}:
        return {"message": f"Permission '{permission.code}' already granted to user '{db_user.username}'"}

    principal.require_grantable(_granted_codes(permissions=[permission]))

    await db.execute(
        insert(user_permissions).values(
            user_id=user_id, permission_id=permission.id, assigned_by_id=principal.user.id
        )
    )
    await db.commit()

    audit(background_tasks, request, principal, "assign_permission", "user", user_id,
          details={"permission_id": permission.id, "permission_code": permission.code})
    return {"message": f"Permission '{permission.code}' granted to user '{db_user.username}'"}


@router.delete("/{user_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_permission_from_user(
    user_id: str,
    permission_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    principal: Annotated[Principal, Depends(require_route("permission:assign"))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Revoke a direct permission grant."""
    condition = and_(user_permissions.c.user_id == user_id, user_permissions.c.permission_id == permission_id)
    check_result = await db.execute(select(user_permissions).where(condition))
    if not check_result.first():
        raise HTTPException(status_code=404, detail="Permission assignment not found")

    await db.execute(delete(user_permissions).where(condition))
    await db.commit()

    audit(background_tasks, request, principal, "remove_permission", "user", user_id,
          details={"permission_id": permission_id})
    return None
