"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field


class RoleSummary(BaseModel):
    id: str
    code: str
    name: str
    scope: str

    model_config = {"from_attributes": True}


class PermissionSummary(BaseModel):
    id: str
    code: str

    model_config = {"from_attributes": True}


class UserBase(BaseModel):
    """Base user schema with common fields."""
    username: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserCreate(UserBase):
    """Schema for creating a new user."""
    department_id: str | None = None
    group_id: str | None = None
    job_level_id: str | None = None
    leader_id: str | None = None
    is_active: bool = True
    role_ids: list[str] = Field(default_factory=list)
    permission_ids: list[str] = Field(default_factory=list, description="Direct permission grants")


class UserUpdate(BaseModel):
    """
    Schema for updating user information.

    Placement, grants and the active flag are privileged: changing them
    requires `user:manage` on the target user.
    """
    username: str | None = Field(None, min_length=1, max_length=50)
    email: EmailStr | None = None
    name: str | None = Field(None, min_length=1, max_length=255)
    department_id: str | None = None
    group_id: str | None = None
    job_level_id: str | None = None
    leader_id: str | None = None
    is_active: bool | None = None
    role_ids: list[str] | None = None
    permission_ids: list[str] | None = None


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    is_active: bool
    department_id: str | None = None
    group_id: str | None = None
    job_level_id: str | None = None
    leader_id: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    roles: list[RoleSummary] = []
    direct_permissions: list[PermissionSummary] = []

    model_config = {"from_attributes": True}


class AssignRoleToUser(BaseModel):
    role_id: str = Field(..., description="Role ID")


class AssignPermissionToUser(BaseModel):
    permission_id: str = Field(..., description="Permission ID")


class UserPermissionsResponse(BaseModel):
    """Effective permissions of a user and where each one comes from."""
    user_id: str
    permissions: list[str] = []
    department_access: list[str] = []
    group_access: list[str] = []
    sources: dict[str, list[str]] = {}
    roles: list[str] = []


class UserStatsResponse(BaseModel):
    total: int
    active: int
    inactive: int
    by_department: dict[str, int] = {}
    by_job_level: dict[str, int] = {}
    by_role: dict[str, int] = {}
