"""
Pydantic schemas for job levels.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from app.features.permissions.schemas import PermissionResponse


class JobLevelBase(BaseModel):
    code: str = Field(..., min_length=1, max_length=50, description="Unique code, e.g. 'P5'")
    name: str = Field(..., min_length=1, max_length=100)
    level: int = Field(..., ge=0, description="Seniority; higher is more senior")
    description: Optional[str] = Field(None, max_length=1000)


class JobLevelCreate(JobLevelBase):
    permission_ids: List[str] = Field(default_factory=list)


class JobLevelUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    level: Optional[int] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None
    permission_ids: Optional[List[str]] = None


class JobLevelResponse(JobLevelBase):
    id: str
    is_active: bool
    permissions: List[PermissionResponse] = []
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
