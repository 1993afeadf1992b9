"""
Group API routes.

Reads and writes on a single group are narrowed to the groups the caller can
reach, unless they hold `group:manage_all`.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, status, Request, BackgroundTasks
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.database.helpers import get_or_404, ensure_exists
from app.features.departments.models import Department
from app.features.groups.models import Group
from app.features.groups.schemas import GroupCreate, GroupUpdate, GroupResponse
from app.features.permissions import codes
from app.features.permissions.dependencies import Principal, audit, require_route
from app.features.users.models import User
from app.features.users.schemas import UserResponse
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


@router.get("", response_model=List[GroupResponse])
async def list_groups(
    department_id: Optional[str] = None,
    active: Optional[bool] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("group:read"))
):
    """List the groups the caller can reach."""
    stmt = select(Group)

    effective = principal.effective
    if not (effective.has(codes.GROUP_MANAGE_ALL) or effective.has(codes.SYSTEM_ADMIN)):
        stmt = stmt.where(Group.id.in_(list(effective.group_access)))
    if department_id:
        stmt = stmt.where(Group.department_id == department_id)
    if active is not None:
        stmt = stmt.where(Group.is_active == active)

    result = await db.execute(stmt.order_by(Group.name))
    return result.scalars().all()


@router.post("", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    group: GroupCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("group:create"))
):
    """Create a group inside an existing department."""
    await ensure_exists(db, Department, group.department_id, "Department")
    principal.require("group", "create", target_department_id=group.department_id)
    await ensure_exists(db, User, group.leader_id, "Leader")

    db_group = Group(**group.model_dump())
    db.add(db_group)
    await db.commit()
    await db.refresh(db_group)

    audit(background_tasks, request, principal, "create", "group", db_group.id,
          details=group.model_dump(mode="json"))
    return db_group


@router.get("/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("group:read", check_group=True))
):
    return await get_or_404(db, Group, group_id, "Group")


@router.get("/{group_id}/users", response_model=List[UserResponse])
async def list_group_users(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("group:read", "user:read", check_group=True))
):
    """List the members of a group."""
    await get_or_404(db, Group, group_id, "Group")
    result = await db.execute(select(User).where(User.group_id == group_id).order_by(User.username))
    return result.scalars().all()


@router.put("/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("group:update", check_group=True))
):
    db_group = await get_or_404(db, Group, group_id, "Group")
    update_data = group_update.model_dump(exclude_unset=True)

    if update_data.get("department_id"):
        await ensure_exists(db, Department, update_data["department_id"], "Department")
        principal.require("group", "update", target_department_id=update_data["department_id"])
    await ensure_exists(db, User, update_data.get("leader_id"), "Leader")

    for key, value in update_data.items():
        if value is None and key not in ("description", "leader_id"):
            continue
        setattr(db_group, key, value)

    await db.commit()
    await db.refresh(db_group)

    audit(background_tasks, request, principal, "update", "group", group_id,
          details=group_update.model_dump(mode="json", exclude_unset=True))
    return db_group


@router.delete("/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("group:delete", check_group=True))
):
    """Delete a group. Members are left without a group."""
    db_group = await get_or_404(db, Group, group_id, "Group")
    group_name = db_group.name

    await db.execute(update(User).where(User.group_id == group_id).values(group_id=None))
    await db.delete(db_group)
    await db.commit()

    audit(background_tasks, request, principal, "delete", "group", group_id, details={"name": group_name})
    return None
