"""
Default permission catalog, roles and job levels.

`seed_defaults` is idempotent: records that already exist (matched by code)
are left untouched, so it is safe to run on every deploy.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.job_levels.models import JobLevel
from app.features.permissions.codes import PermissionCode
from app.features.permissions.models import Permission, Role
from app.utils import get_logger


log = get_logger(__name__)


# (code, name, category, description)
DEFAULT_PERMISSIONS = [
    # System
    ("system:admin", "System administrator", "system", "Unrestricted access to every resource"),

    # User management
    ("user:read", "View users", "business", "View user information"),
    ("user:create", "Create users", "business", "Create new users"),
    ("user:update", "Update users", "business", "Update user information"),
    ("user:delete", "Delete users", "business", "Delete users"),
    ("user:manage", "Manage users", "business", "Every action on users, including placement and grants"),
    ("user:read_self", "View own user", "business", "View one's own user record"),
    ("user:update_self", "Update own user", "business", "Update one's own user record"),
    ("profile:read", "View profile", "business", "View one's own profile"),

    # Role management
    ("role:read", "View roles", "system", "View roles"),
    ("role:create", "Create roles", "system", "Create roles"),
    ("role:update", "Update roles", "system", "Update roles"),
    ("role:delete", "Delete roles", "system", "Delete roles"),
    ("role:assign", "Assign roles", "system", "Assign roles to users"),
    ("role:manage", "Manage roles", "system", "Every action on roles"),

    # Permission management
    ("permission:read", "View permissions", "system", "View the permission catalog"),
    ("permission:create", "Create permissions", "system", "Create permissions"),
    ("permission:update", "Update permissions", "system", "Update permissions"),
    ("permission:delete", "Delete permissions", "system", "Delete permissions"),
    ("permission:assign", "Assign permissions", "system", "Grant permissions directly to users"),

    # Department management
    ("department:read", "View departments", "business", "View departments"),
    ("department:create", "Create departments", "business", "Create departments"),
    ("department:update", "Update departments", "business", "Update departments"),
    ("department:delete", "Delete departments", "business", "Delete departments"),
    ("department:manage", "Manage departments", "business", "Every action on departments"),
    ("department:manage_all", "Manage all departments", "business", "Act on departments outside one's reach"),

    # Group management
    ("group:read", "View groups", "business", "View groups"),
    ("group:create", "Create groups", "business", "Create groups"),
    ("group:update", "Update groups", "business", "Update groups"),
    ("group:delete", "Delete groups", "business", "Delete groups"),
    ("group:manage", "Manage groups", "business", "Every action on groups"),
    ("group:manage_all", "Manage all groups", "business", "Act on groups outside one's reach"),

    # Job level management
    ("job_level:read", "View job levels", "business", "View job levels"),
    ("job_level:create", "Create job levels", "business", "Create job levels"),
    ("job_level:update", "Update job levels", "business", "Update job levels"),
    ("job_level:delete", "Delete job levels", "business", "Delete job levels"),

    # Audit logs
    ("audit:read", "View audit logs", "data", "View the administrative audit trail"),
]


# (code, name, level, description, permissions)
DEFAULT_JOB_LEVELS = [
    ("P1", "Junior", 1, "Entry level", ["profile:read", "user:read_self", "user:update_self"]),
    ("P3", "Senior", 3, "Senior individual contributor", ["profile:read", "user:read_self", "user:update_self", "user:read"]),
    ("M1", "Manager", 10, "First-line manager", ["profile:read", "user:read_self", "user:update_self", "user:read"]),
]


DEFAULT_ROLES = {
    "super_admin": {
        "name": "Super administrator",
        "description": "Unrestricted access",
        "scope": "global",
        "permissions": ["system:admin"],
        "job_levels": [],
    },
    "department_manager": {
        "name": "Department manager",
        "description": "Manages the users and groups of a department",
        "scope": "department",
        "permissions": [
            "user:read", "user:create", "user:update", "user:manage",
            "role:read", "role:assign",
            "department:read", "department:update",
            "group:manage", "group:manage_all",
            "job_level:read",
        ],
        "job_levels": ["M1"],
    },
    "group_leader": {
        "name": "Group leader",
        "description": "Leads a single group",
        "scope": "group",
        "permissions": [
            "user:read", "user:update",
            "group:read", "group:update",
            "department:read",
            "job_level:read",
        ],
        "job_levels": ["P3", "M1"],
    },
    "employee": {
        "name": "Employee",
        "description": "Baseline access for every member",
        "scope": "group",
        "permissions": [
            "profile:read", "user:read_self", "user:update_self",
            "department:read", "group:read",
        ],
        "job_levels": [],
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create the default permission catalog.

    Returns:
        Dictionary mapping permission codes to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map = {}
    created = 0

    for code, name, category, description in DEFAULT_PERMISSIONS:
        result = await db.execute(select(Permission).where(Permission.code == code))
        existing = result.scalars().first()

        if existing:
            log.debug(f"Permission '{code}' already exists, skipping")
            permissions_map[code] = existing
            continue

        parsed = PermissionCode.parse(code)
        permission = Permission(
            code=code,
            name=name,
            resource=parsed.resource,
            action=parsed.action,
            category=category,
            description=description,
            is_system=True,
        )
        db.add(permission)
        permissions_map[code] = permission
        created += 1

    await db.commit()
    for permission in permissions_map.values():
        await db.refresh(permission)

    log.info(f"Created {created} of {len(DEFAULT_PERMISSIONS)} default permissions")
    return permissions_map


async def seed_job_levels(db: AsyncSession, permissions_map: dict[str, Permission]) -> dict[str, JobLevel]:
    log.info("Creating default job levels...")
    job_levels_map = {}

    for code, name, level, description, permission_codes in DEFAULT_JOB_LEVELS:
        result = await db.execute(select(JobLevel).where(JobLevel.code == code))
        existing = result.scalars().first()
        if existing:
            job_levels_map[code] = existing
            continue

        # A custom job level may already occupy this rung
        result = await db.execute(select(JobLevel).where(JobLevel.level == level))
        if result.scalars().first():
            log.warning(f"Job level {level} already taken, skipping default '{code}'")
            continue

        job_level = JobLevel(
            code=code,
            name=name,
            level=level,
            description=description,
            permissions=[permissions_map[c] for c in permission_codes],
        )
        db.add(job_level)
        job_levels_map[code] = job_level
        log.info(f"Created job level '{code}'")

    await db.commit()
    for job_level in job_levels_map.values():
        await db.refresh(job_level)
    return job_levels_map


async def seed_roles(
    db: AsyncSession,
    permissions_map: dict[str, Permission],
    job_levels_map: dict[str, JobLevel],
) -> dict[str, Role]:
    """
    Create default roles and assign permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission code -> Permission object
        job_levels_map: Dictionary of job level code -> JobLevel object
    """
    log.info("Creating default roles...")
    roles_map = {}

    for role_code, role_config in DEFAULT_ROLES.items():
        result = await db.execute(select(Role).where(Role.code == role_code))
        existing = result.scalars().first()

        if existing:
            log.debug(f"Role '{role_code}' already exists, skipping")
            roles_map[role_code] = existing
            continue

        role = Role(
            code=role_code,
            name=role_config["name"],
            description=role_config["description"],
            scope=role_config["scope"],
            is_system=True,
            permissions=[permissions_map[c] for c in role_config["permissions"]],
            job_levels=[job_levels_map[c] for c in role_config["job_levels"] if c in job_levels_map],
        )
        db.add(role)
        roles_map[role_code] = role
        log.info(f"Created role '{role_code}' with {len(role.permissions)} permissions")

    await db.commit()
    for role in roles_map.values():
        await db.refresh(role)
    return roles_map


async def seed_defaults(db: AsyncSession) -> dict[str, int]:
    """Seed permissions, job levels and roles. Returns how many of each exist."""
    permissions_map = await seed_permissions(db)
    job_levels_map = await seed_job_levels(db, permissions_map)
    roles_map = await seed_roles(db, permissions_map, job_levels_map)
    return {
        "permissions": len(permissions_map),
        "job_levels": len(job_levels_map),
        "roles": len(roles_map),
    }
