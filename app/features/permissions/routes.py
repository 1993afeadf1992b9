"""
Permission management API routes.

Provides endpoints for the permission catalog, roles and their permissions,
access checks for the current user, and the audit trail.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request, BackgroundTasks
from sqlalchemy import select, delete, and_, or_, insert, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from app.core.database.engine import get_db
from app.core.database.helpers import get_or_404, load_by_ids
from app.features.job_levels.models import JobLevel, job_level_permissions
from app.features.users.models import user_roles, user_permissions
from app.features.permissions import codes
from app.features.permissions.models import (
    Permission,
    Role,
    AuditLog,
    role_permissions,
    role_job_levels,
)
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    RoleWithPermissions,
    AssignPermissionToRole,
    PermissionCheckRequest,
    PermissionCheckResponse,
    InitializeResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.defaults import seed_defaults
from app.features.permissions.dependencies import (
    Principal,
    audit,
    get_principal,
    require_route,
)
from app.features.permissions.directory import PermissionCategory, RoleScope
from app.features.permissions.evaluator import ReasonCode
from app.features.permissions.route_mapping import UNKNOWN, map_route
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()
role_router = APIRouter()
audit_router = APIRouter()


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("permission:create"))
):
    """Create a new permission."""
    try:
        db_permission = Permission(**permission.model_dump(mode="json"))
        db.add(db_permission)
        await db.commit()
        await db.refresh(db_permission)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Permission with this code already exists"
        )

    audit(background_tasks, request, principal, "create", "permission", db_permission.id,
          details=permission.model_dump(mode="json"))
    return db_permission


@router.get("", response_model=List[PermissionResponse])
async def list_permissions(
    skip: int = 0,
    limit: int = 100,
    category: Optional[PermissionCategory] = None,
    resource: Optional[str] = None,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("permission:read"))
):
    """List permissions with optional filtering."""
    stmt = select(Permission)

    if category:
        stmt = stmt.where(Permission.category == category.value)
    if resource:
        stmt = stmt.where(Permission.resource == resource)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(
            or_(
                Permission.code.ilike(pattern),
                Permission.name.ilike(pattern),
                Permission.description.ilike(pattern),
            )
        )

    stmt = stmt.order_by(Permission.resource, Permission.action).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/initialize", response_model=InitializeResponse)
async def initialize_permissions(
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("system:admin"))
):
    """Seed the default permission catalog, job levels and roles."""
    counts = await seed_defaults(db)
    audit(background_tasks, request, principal, "initialize", "permission", details=counts)
    return InitializeResponse(message="System permissions initialized successfully", **counts)


@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    principal: Principal = Depends(get_principal)
):
    """Check whether the current user may perform an action."""
    if check_request.resource and check_request.action:
        resource, action = check_request.resource, check_request.action
    else:
        resource, action = map_route(check_request.method, check_request.path)

    if UNKNOWN in (resource, action) or not codes.is_valid(codes.exact(resource, action)):
        return PermissionCheckResponse(
            allowed=False,
            reason=ReasonCode.UNMAPPED_ROUTE.value,
            resource=resource,
            action=action,
        )

    decision = principal.decide(
        resource,
        action,
        target_user_id=check_request.target_user_id,
        target_group_id=check_request.target_group_id,
        target_department_id=check_request.target_department_id,
    )
    return PermissionCheckResponse(
        allowed=decision.allowed,
        reason=decision.reason.value,
        resource=resource,
        action=action,
        granted_by=decision.granted_by.value if decision.granted_by else None,
        matched_permissions=list(decision.matched_permissions),
    )


@router.get("/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("permission:read"))
):
    """Get a specific permission by ID."""
    permission = await get_or_404(db, Permission, permission_id, "Permission")
    return permission


@router.put("/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("permission:update"))
):
    """Update a permission. The code of a permission never changes."""
    db_permission = await get_or_404(db, Permission, permission_id, "Permission")

    update_data = permission_update.model_dump(mode="json", exclude_unset=True)
    for key, value in update_data.items():
        if value is None and key != "description":
            continue
        setattr(db_permission, key, value)

    await db.commit()
    await db.refresh(db_permission)

    audit(background_tasks, request, principal, "update", "permission", permission_id,
          details=permission_update.model_dump(mode="json", exclude_unset=True))
    return db_permission


@router.delete("/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("permission:delete"))
):
    """Delete a permission and every grant of it."""
    db_permission = await get_or_404(db, Permission, permission_id, "Permission")

    if db_permission.is_system:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="System permissions cannot be deleted"
        )

    permission_code = db_permission.code
    await db.execute(delete(role_permissions).where(role_permissions.c.permission_id == permission_id))
    await db.execute(delete(user_permissions).where(user_permissions.c.permission_id == permission_id))
    await db.execute(
        delete(job_level_permissions).where(job_level_permissions.c.permission_id == permission_id)
    )
    await db.delete(db_permission)
    await db.commit()

    audit(background_tasks, request, principal, "delete", "permission", permission_id,
          details={"code": permission_code})
    return None


# ============================================================================
# Role Routes
# ============================================================================

@role_router.post("", response_model=RoleWithPermissions, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("role:create"))
):
    """Create a new role with optional permissions and eligible job levels."""
    permissions = await load_by_ids(db, Permission, role.permission_ids, "permissions")
    job_levels = await load_by_ids(db, JobLevel, role.job_level_ids, "job levels")

    try:
        db_role = Role(
            **role.model_dump(mode="json", exclude={"permission_ids", "job_level_ids"}),
            permissions=permissions,
            job_levels=job_levels,
        )
        db.add(db_role)
        await db.commit()
        await db.refresh(db_role)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this code already exists"
        )

    audit(background_tasks, request, principal, "create", "role", db_role.id,
          details=role.model_dump(mode="json"))
    return db_role


@role_router.get("", response_model=List[RoleResponse])
async def list_roles(
    skip: int = 0,
    limit: int = 100,
    scope: Optional[RoleScope] = None,
    active: Optional[bool] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("role:read"))
):
    """List roles with optional filtering."""
    stmt = select(Role)

    if scope:
        stmt = stmt.where(Role.scope == scope.value)
    if active is not None:
        stmt = stmt.where(Role.is_active == active)

    stmt = stmt.order_by(Role.code).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@role_router.get("/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("role:read"))
):
    """Get a specific role with its permissions and eligible job levels."""
    role = await get_or_404(db, Role, role_id, "Role")
    return role


@role_router.put("/{role_id}", response_model=RoleWithPermissions)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("role:update"))
):
    """Update a role."""
    db_role = await get_or_404(db, Role, role_id, "Role")

    update_data = role_update.model_dump(mode="json", exclude_unset=True)

    if db_role.is_system and "code" in update_data and update_data["code"] != db_role.code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="The code of a system role cannot change"
        )

    if "permission_ids" in update_data:
        db_role.permissions = await load_by_ids(
            db, Permission, update_data.pop("permission_ids") or [], "permissions"
        )
    if "job_level_ids" in update_data:
        db_role.job_levels = await load_by_ids(
            db, JobLevel, update_data.pop("job_level_ids") or [], "job levels"
        )
    for key, value in update_data.items():
        if value is None and key != "description":
            continue
        setattr(db_role, key, value)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role with this code already exists"
        )
    await db.refresh(db_role)

    audit(background_tasks, request, principal, "update", "role", role_id,
          details=role_update.model_dump(mode="json", exclude_unset=True))
    return db_role


@role_router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("role:delete"))
):
    """Delete a role and unassign it from every user."""
    db_role = await get_or_404(db, Role, role_id, "Role")

    if db_role.is_system:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="System roles cannot be deleted"
        )

    role_code = db_role.code
    await db.execute(delete(user_roles).where(user_roles.c.role_id == role_id))
    await db.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
    await db.execute(delete(role_job_levels).where(role_job_levels.c.role_id == role_id))
    await db.delete(db_role)
    await db.commit()

    audit(background_tasks, request, principal, "delete", "role", role_id, details={"code": role_code})
    return None


@role_router.post("/{role_id}/permissions", status_code=status.HTTP_200_OK)
async def assign_permission_to_role(
    role_id: str,
    assignment: AssignPermissionToRole,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("role:update", "permission:assign"))
):
    """Assign a permission to a role."""
    role = await get_or_404(db, Role, role_id, "Role")

    permission = await db.get(Permission, assignment.permission_id)
    if not permission:
        raise HTTPException(status_code=404, detail="Permission not found")

    # Check if already assigned
    check_stmt = select(role_permissions).where(
        and_(
            role_permissions.c.role_id == role_id,
            role_permissions.c.permission_id == assignment.permission_id
        )
    )
    check_result = await db.execute(check_stmt)
    if check_result.first():
        return {"message": f"Permission '{permission.code}' already assigned to role '{role.code}'"}

    await db.execute(insert(role_permissions).values(role_id=role_id, permission_id=assignment.permission_id))
    await db.commit()

    audit(background_tasks, request, principal, "assign_permission", "role", role_id,
          details={"permission_id": permission.id, "permission_code": permission.code})
    return {"message": f"Permission '{permission.code}' assigned to role '{role.code}'"}


@role_router.delete("/{role_id}/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_permission_from_role(
    role_id: str,
    permission_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("role:update", "permission:assign"))
):
    """Remove a permission from a role."""
    condition = and_(
        role_permissions.c.role_id == role_id,
        role_permissions.c.permission_id == permission_id
    )
    check_result = await db.execute(select(role_permissions).where(condition))
    if not check_result.first():
        raise HTTPException(status_code=404, detail="Permission assignment not found")

    await db.execute(delete(role_permissions).where(condition))
    await db.commit()

    audit(background_tasks, request, principal, "remove_permission", "role", role_id,
          details={"permission_id": permission_id})
    return None


# ============================================================================
# Audit Log Routes
# ============================================================================

@audit_router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    # GET /audit -> audit:read
    principal: Principal = Depends(require_route())
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
