"""
Pydantic schemas for permission management.

Request and response models for permissions, roles, access checks and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from app.features.permissions import codes
from app.features.permissions.directory import PermissionCategory, RoleScope


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    category: PermissionCategory = Field(PermissionCategory.BUSINESS, description="system, business or data")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""
    code: str = Field(..., min_length=3, max_length=100, description="Code of the form 'resource:action'")
    resource: str = Field(..., min_length=1, max_length=50, description="Resource (e.g., 'user', 'department')")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g., 'read', 'manage', '*')")

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Validate permission code format."""
        if not codes.is_valid(v):
            raise ValueError("Permission code must look like 'resource:action' in lowercase")
        return v

    @model_validator(mode='after')
    def code_matches_parts(self) -> "PermissionCreate":
        if self.code != codes.exact(self.resource, self.action):
            raise ValueError("Permission code must equal 'resource:action'")
        return self


class PermissionUpdate(BaseModel):
    """Schema for updating a permission."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    category: Optional[PermissionCategory] = None
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    code: str
    resource: str
    action: str
    is_active: bool
    is_system: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    scope: RoleScope = Field(RoleScope.GROUP, description="global, department or group")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    code: str = Field(..., min_length=1, max_length=50, description="Unique role code")
    permission_ids: List[str] = Field(default_factory=list)
    job_level_ids: List[str] = Field(default_factory=list, description="Eligible job levels (empty = any)")

    @field_validator('code')
    @classmethod
    def code_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role code format."""
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Role code must contain only alphanumeric characters, underscores, and hyphens')
        return v


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    scope: Optional[RoleScope] = None
    is_active: Optional[bool] = None
    permission_ids: Optional[List[str]] = None
    job_level_ids: Optional[List[str]] = None


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    code: str
    is_active: bool
    is_system: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class JobLevelSummary(BaseModel):
    id: str
    code: str
    name: str
    level: int

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions and eligible job levels."""
    permissions: List[PermissionResponse] = []
    job_levels: List[JobLevelSummary] = []

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignPermissionToRole(BaseModel):
    """Schema for assigning a permission to a role."""
    permission_id: str = Field(..., description="Permission ID")


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """
    Check a decision for the current user.

    Either `resource` and `action`, or `method` and `path`, must be given.
    """
    resource: Optional[str] = Field(None, description="Resource")
    action: Optional[str] = Field(None, description="Action")
    method: Optional[str] = Field(None, description="HTTP method, mapped to an action")
    path: Optional[str] = Field(None, description="Request path, mapped to a resource")
    target_user_id: Optional[str] = None
    target_group_id: Optional[str] = None
    target_department_id: Optional[str] = None

    @model_validator(mode='after')
    def resource_action_or_route(self) -> "PermissionCheckRequest":
        if not (self.resource and self.action) and not (self.method and self.path):
            raise ValueError("Provide either resource and action, or method and path")
        return self


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    allowed: bool
    reason: str
    resource: str
    action: str
    granted_by: Optional[str] = None
    matched_permissions: List[str] = []


# ============================================================================
# Seeding
# ============================================================================

class InitializeResponse(BaseModel):
    message: str
    permissions: int
    job_levels: int
    roles: int


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
