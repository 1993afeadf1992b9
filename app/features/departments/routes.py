"""
Department API routes.

Reads and writes on a single department are narrowed to the departments the
caller can reach, unless they hold `department:manage_all`.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request, BackgroundTasks
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.database.helpers import get_or_404, ensure_exists
from app.features.departments.models import Department
from app.features.departments.schemas import DepartmentCreate, DepartmentUpdate, DepartmentResponse
from app.features.groups.models import Group
from app.features.groups.schemas import GroupResponse
from app.features.permissions import codes
from app.features.permissions.dependencies import Principal, audit, require_route
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


async def _would_cycle(db: AsyncSession, department_id: str, parent_id: Optional[str]) -> bool:
    """True if making `parent_id` the parent of `department_id` closes a loop."""
    seen = set()
    current = parent_id
    while current is not None and current not in seen:
        if current == department_id:
            return True
        seen.add(current)
        parent = await db.get(Department, current)
        current = parent.parent_id if parent else None
    return current is not None


@router.get("", response_model=List[DepartmentResponse])
async def list_departments(
    active: Optional[bool] = None,
    parent_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("department:read"))
):
    """List the departments the caller can reach."""
    stmt = select(Department)

    effective = principal.effective
    if not (effective.has(codes.DEPARTMENT_MANAGE_ALL) or effective.has(codes.SYSTEM_ADMIN)):
        stmt = stmt.where(Department.id.in_(list(effective.department_access)))
    if active is not None:
        stmt = stmt.where(Department.is_active == active)
    if parent_id:
        stmt = stmt.where(Department.parent_id == parent_id)

    result = await db.execute(stmt.order_by(Department.name))
    return result.scalars().all()


@router.post("", response_model=DepartmentResponse, status_code=status.HTTP_201_CREATED)
async def create_department(
    department: DepartmentCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("department:create"))
):
    """Create a department, optionally under an existing parent."""
    if department.parent_id:
        await ensure_exists(db, Department, department.parent_id, "Parent department")
        principal.require("department", "create", target_department_id=department.parent_id)
    await ensure_exists(db, User, department.leader_id, "Leader")

    db_department = Department(**department.model_dump())
    db.add(db_department)
    await db.commit()
    await db.refresh(db_department)

    audit(background_tasks, request, principal, "create", "department", db_department.id,
          details=department.model_dump(mode="json"))
    return db_department


@router.get("/{department_id}", response_model=DepartmentResponse)
async def get_department(
    department_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("department:read", check_department=True))
):
    return await get_or_404(db, Department, department_id, "Department")


@router.get("/{department_id}/groups", response_model=List[GroupResponse])
async def list_department_groups(
    department_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("department:read", check_department=True))
):
    """List the groups that belong to a department."""
    await get_or_404(db, Department, department_id, "Department")
    result = await db.execute(
        select(Group).where(Group.department_id == department_id).order_by(Group.name)
    )
    return result.scalars().all()


@router.put("/{department_id}", response_model=DepartmentResponse)
async def update_department(
    department_id: str,
    department_update: DepartmentUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("department:update", check_department=True))
):
    db_department = await get_or_404(db, Department, department_id, "Department")
    update_data = department_update.model_dump(exclude_unset=True)

    if update_data.get("parent_id"):
        parent_id = update_data["parent_id"]
        await ensure_exists(db, Department, parent_id, "Parent department")
        principal.require("department", "update", target_department_id=parent_id)
        if await _would_cycle(db, department_id, parent_id):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="A department cannot be its own ancestor"
            )
    await ensure_exists(db, User, update_data.get("leader_id"), "Leader")

    for key, value in update_data.items():
        if value is None and key not in ("description", "parent_id", "leader_id"):
            continue
        setattr(db_department, key, value)

    await db.commit()
    await db.refresh(db_department)

    audit(background_tasks, request, principal, "update", "department", department_id,
          details=department_update.model_dump(mode="json", exclude_unset=True))
    return db_department


@router.delete("/{department_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_department(
    department_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("department:delete", check_department=True))
):
    """Delete an empty department. Members are left without a department."""
    db_department = await get_or_404(db, Department, department_id, "Department")

    children = await db.scalar(
        select(func.count()).select_from(Department).where(Department.parent_id == department_id)
    )
    groups = await db.scalar(
        select(func.count()).select_from(Group).where(Group.department_id == department_id)
    )
    if children or groups:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Department still has child departments or groups"
        )

    department_name = db_department.name
    await db.execute(update(User).where(User.department_id == department_id).values(department_id=None))
    await db.delete(db_department)
    await db.commit()

    audit(background_tasks, request, principal, "delete", "department", department_id,
          details={"name": department_name})
    return None
