import os
import tempfile
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from httpx import AsyncClient, ASGITransport

# Point the app at a throwaway on-disk SQLite database before it is imported
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/test.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["RATE_LIMIT_ENABLED"] = "0"

from app.main import app  # noqa: E402
from app.core import config  # noqa: E402
from app.core.database.base import Base  # noqa: E402
from app.core.database.engine import AsyncSessionLocal, engine, init_db  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db_session():
    # ASGITransport does not run startup events
    await init_db()
    async with AsyncSessionLocal() as session:
        yield session

    async with engine.begin() as conn:
        # delete in reverse order to respect FK constraints
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())


@pytest.fixture
async def client(db_session):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def make_token(user_id: str, expires_in: timedelta = timedelta(minutes=5)) -> str:
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture
def token_for():
    return make_token


@pytest.fixture
def auth_headers():
    return auth


@pytest.fixture
async def org(db_session):
    """
    A small seeded directory:

    Engineering (Backend, Frontend) and Sales (Field), with an admin, a
    department manager, a Backend group leader, a Backend employee and a
    Field employee.
    """
    from types import SimpleNamespace
    from sqlalchemy import select

    from app.features.departments.models import Department
    from app.features.groups.models import Group
    from app.features.job_levels.models import JobLevel
    from app.features.permissions.defaults import seed_defaults
    from app.features.permissions.models import Role
    from app.features.users.models import User

    await seed_defaults(db_session)
    roles = {role.code: role for role in (await db_session.execute(select(Role))).scalars()}
    levels = {level.code: level for level in (await db_session.execute(select(JobLevel))).scalars()}

    engineering = Department(name="Engineering")
    sales = Department(name="Sales")
    db_session.add_all([engineering, sales])
    await db_session.commit()

    backend = Group(name="Backend", department_id=engineering.id)
    frontend = Group(name="Frontend", department_id=engineering.id)
    field = Group(name="Field", department_id=sales.id)
    db_session.add_all([backend, frontend, field])
    await db_session.commit()

    def member(username, role, level=None, department=None, group=None):
        return User(
            username=username,
            email=f"{username}@example.com",
            name=username.title(),
            roles=[roles[role]],
            job_level_id=levels[level].id if level else None,
            department_id=department.id if department else None,
            group_id=group.id if group else None,
        )

    admin = member("admin", "super_admin")
    manager = member("manager", "department_manager", "M1", engineering)
    leader = member("leader", "group_leader", "P3", engineering, backend)
    employee = member("employee", "employee", "P1", engineering, backend)
    outsider = member("outsider", "employee", "P1", sales, field)
    db_session.add_all([admin, manager, leader, employee, outsider])
    await db_session.commit()

    return SimpleNamespace(
        roles={code: role.id for code, role in roles.items()},
        levels={code: level.id for code, level in levels.items()},
        engineering=engineering.id,
        sales=sales.id,
        backend=backend.id,
        frontend=frontend.id,
        field=field.id,
        admin=admin.id,
        manager=manager.id,
        leader=leader.id,
        employee=employee.id,
        outsider=outsider.id,
    )
