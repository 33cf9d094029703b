import enum
from datetime import datetime

from pydantic import BaseModel, Field


class OverrideTarget(str, enum.Enum):
    ROLE = "role"
    MEMBER = "member"


class Role(BaseModel):
    id: str
    name: str
    color: str | None = None
    position: int = 0
    permissions: int = Field(0, ge=0)
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class Member(BaseModel):
    """A user within one server. The @everyone role (id == server_id) is implicit."""

    user_id: str
    server_id: str
    role_ids: set[str] = set()

    def all_role_ids(self) -> set[str]:
        return {self.server_id} | self.role_ids


class ChannelOverride(BaseModel):
    channel_id: str
    target_type: OverrideTarget = OverrideTarget.ROLE
    target_id: str
    allow: int = Field(0, ge=0)
    deny: int = Field(0, ge=0)

    model_config = {"from_attributes": True}


class OverrideUpdate(BaseModel):
    target_type: OverrideTarget
    allow: int = Field(0, ge=0)
    deny: int = Field(0, ge=0)
