from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class TokenCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    device_type: str | None = Field(default=None, max_length=50)
    expires_in: Literal["30d", "90d", "6m", "1y", "never"] = "90d"

    @field_validator("name")
    @classmethod
    def _name_strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Token name is required")
        return value


class TokenPublic(BaseModel):
    id: int
    name: str
    device_type: str | None = None
    token_prefix: str
    created_at: datetime
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    is_current: bool = False

    model_config = {"from_attributes": True}


class TokenCreated(TokenPublic):
    # Shown once; only a hash is kept server-side.
    token: str
