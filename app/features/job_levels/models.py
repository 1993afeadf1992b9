"""
Job level model.

A job level is a rung on the seniority ladder. It grants permissions on its
own, independent of the roles a user holds.
"""
from sqlalchemy import String, ForeignKey, Table, Column, Integer, Text, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid


# Job level-Permission relationship
job_level_permissions = Table(
    "job_level_permissions",
    Base.metadata,
    Column("job_level_id", String(26), ForeignKey("job_levels.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


class JobLevel(Base, TimestampMixin):
    """
    Job level model.

    Examples: P1 (level 1, junior), P5 (level 5, senior), M2 (level 8, manager)
    """
    __tablename__ = "job_levels"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Higher is more senior; unique across job levels
    level: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(  # type: ignore
        "Permission",
        secondary=job_level_permissions,
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<JobLevel(id={self.id}, code={self.code!r}, level={self.level})>"
