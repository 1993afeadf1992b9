"""
Job level API routes.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status, Request, BackgroundTasks
from sqlalchemy import select, delete, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from app.core.database.engine import get_db
from app.core.database.helpers import get_or_404, load_by_ids
from app.features.job_levels.models import JobLevel, job_level_permissions
from app.features.job_levels.schemas import JobLevelCreate, JobLevelUpdate, JobLevelResponse
from app.features.permissions.dependencies import Principal, audit, require_route
from app.features.permissions.models import Permission, role_job_levels
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


async def _ensure_unique(db: AsyncSession, code: Optional[str], level: Optional[int], exclude_id: Optional[str] = None):
    conditions = []
    if code is not None:
        conditions.append(JobLevel.code == code)
    if level is not None:
        conditions.append(JobLevel.level == level)
    if not conditions:
        return

    stmt = select(JobLevel).where(or_(*conditions))
    if exclude_id:
        stmt = stmt.where(JobLevel.id != exclude_id)
    result = await db.execute(stmt)
    existing = result.scalars().first()
    if existing:
        field = "code" if existing.code == code else "level"
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job level with this {field} already exists"
        )


@router.get("", response_model=List[JobLevelResponse])
async def list_job_levels(
    active: Optional[bool] = None,
    min_level: Optional[int] = None,
    max_level: Optional[int] = None,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("job_level:read"))
):
    """List job levels, lowest level first."""
    stmt = select(JobLevel)

    if active is not None:
        stmt = stmt.where(JobLevel.is_active == active)
    if min_level is not None:
        stmt = stmt.where(JobLevel.level >= min_level)
    if max_level is not None:
        stmt = stmt.where(JobLevel.level <= max_level)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(
            or_(JobLevel.code.ilike(pattern), JobLevel.name.ilike(pattern), JobLevel.description.ilike(pattern))
        )

    result = await db.execute(stmt.order_by(JobLevel.level))
    return result.scalars().all()


@router.get("/{job_level_id}", response_model=JobLevelResponse)
async def get_job_level(
    job_level_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("job_level:read"))
):
    return await get_or_404(db, JobLevel, job_level_id, "Job level")


@router.post("", response_model=JobLevelResponse, status_code=status.HTTP_201_CREATED)
async def create_job_level(
    job_level: JobLevelCreate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("job_level:create"))
):
    """Create a job level. Code and level must both be unused."""
    await _ensure_unique(db, job_level.code, job_level.level)
    permissions = await load_by_ids(db, Permission, job_level.permission_ids, "permissions")

    try:
        db_job_level = JobLevel(**job_level.model_dump(exclude={"permission_ids"}), permissions=permissions)
        db.add(db_job_level)
        await db.commit()
        await db.refresh(db_job_level)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job level with this code or level already exists"
        )

    audit(background_tasks, request, principal, "create", "job_level", db_job_level.id,
          details=job_level.model_dump(mode="json"))
    return db_job_level


@router.put("/{job_level_id}", response_model=JobLevelResponse)
async def update_job_level(
    job_level_id: str,
    job_level_update: JobLevelUpdate,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("job_level:update"))
):
    db_job_level = await get_or_404(db, JobLevel, job_level_id, "Job level")

    update_data = job_level_update.model_dump(exclude_unset=True)
    await _ensure_unique(db, update_data.get("code"), update_data.get("level"), exclude_id=job_level_id)

    if "permission_ids" in update_data:
        db_job_level.permissions = await load_by_ids(
            db, Permission, update_data.pop("permission_ids") or [], "permissions"
        )

    for key, value in update_data.items():
        if value is None and key != "description":
            continue
        setattr(db_job_level, key, value)

    await db.commit()
    await db.refresh(db_job_level)

    audit(background_tasks, request, principal, "update", "job_level", job_level_id,
          details=job_level_update.model_dump(mode="json", exclude_unset=True))
    return db_job_level


@router.delete("/{job_level_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job_level(
    job_level_id: str,
    background_tasks: BackgroundTasks,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_route("job_level:delete"))
):
    """Delete a job level. Users on it are left without a job level."""
    db_job_level = await get_or_404(db, JobLevel, job_level_id, "Job level")
    job_level_code = db_job_level.code

    await db.execute(update(User).where(User.job_level_id == job_level_id).values(job_level_id=None))
    await db.execute(delete(job_level_permissions).where(job_level_permissions.c.job_level_id == job_level_id))
    await db.execute(delete(role_job_levels).where(role_job_levels.c.job_level_id == job_level_id))
    await db.delete(db_job_level)
    await db.commit()

    log.info(f"Deleted job level {job_level_code}")
    audit(background_tasks, request, principal, "delete", "job_level", job_level_id,
          details={"code": job_level_code})
    return None
