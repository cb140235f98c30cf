from pydantic import BaseModel, Field, field_validator
from pydantic_core import PydanticCustomError


def strip_role_name(v):
    """Trim surrounding whitespace; a name left empty is blank"""
    if isinstance(v, str):
        v = v.strip()
        if not v:
            raise PydanticCustomError("blank", "can't be blank")
    return v


class RoleCreate(BaseModel):
    """Schema for creating a custom role"""

    name: str = Field(..., min_length=1, max_length=50)
    description: str | None = Field(None, max_length=500)

    @field_validator("name", mode="before")
    @classmethod
    def name_not_blank(cls, v):
        return strip_role_name(v)


class RoleUpdate(BaseModel):
    """Schema for updating a role (only provided fields change)"""

    name: str | None = Field(None, min_length=1, max_length=50)
    description: str | None = Field(None, max_length=500)
    is_system_role: bool | None = None

    @field_validator("name", mode="before")
    @classmethod
    def name_not_blank(cls, v):
        return strip_role_name(v)


class RoleStats(BaseModel):
    """Account totals and per-system-role counts"""

    total_users: int = 0
    owner_count: int = 0
    admin_count: int = 0
    user_count: int = 0


class ExtendedRoleStats(RoleStats):
    """Role stats plus activity and confirmation breakdown"""

    active_users: int = 0
    inactive_users: int = 0
    confirmed_users: int = 0
    pending_users: int = 0


class BulkAssignmentResult(BaseModel):
    """Outcome of retrofitting roles onto existing accounts"""

    assigned_owner: int = 0
    assigned_users: int = 0
    total_processed: int = 0
