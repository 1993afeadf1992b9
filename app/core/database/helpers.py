"""
Query helpers shared by the feature routers.
"""
from typing import Iterable, Type, TypeVar

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.base import Base


ModelT = TypeVar("ModelT", bound=Base)


async def get_or_404(db: AsyncSession, model: Type[ModelT], id: str, label: str) -> ModelT:
    """
    Fetch a row by primary key or raise 404.

    Usage:
        role = await get_or_404(db, Role, role_id, "Role")
    """
    instance = await db.get(model, id)
    if instance is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return instance


async def load_by_ids(db: AsyncSession, model: Type[ModelT], ids: Iterable[str], label: str) -> list[ModelT]:
    """Fetch every row in `ids`, or raise 400 naming the missing ones."""
    wanted = set(ids or ())
    if not wanted:
        return []
    result = await db.execute(select(model).where(model.id.in_(wanted)))
    found = list(result.scalars().all())
    missing = wanted - {row.id for row in found}
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown {label}: {', '.join(sorted(missing))}"
        )
    return found


async def ensure_exists(db: AsyncSession, model: Type[ModelT], id: str | None, label: str) -> None:
    """Raise 400 when a referenced row is missing. `None` references are allowed."""
    if id is not None and await db.get(model, id) is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{label} {id} does not exist"
        )
