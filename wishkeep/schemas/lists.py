from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class UnlockRequest(BaseModel):
    password: str = Field(min_length=1, max_length=128)


class UnlockResponse(BaseModel):
    list_id: int
    unlocked: bool = True


class ListPasswordUpdate(BaseModel):
    password: str | None = Field(default=None, max_length=128)


class WishPositionUpdate(BaseModel):
    sort_order: float
    expected_updated_at: datetime


class WishPositionOut(BaseModel):
    list_id: int
    wish_id: int
    sort_order: float | None = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class ListAdminAdd(BaseModel):
    user_id: int


class ListShareRequest(BaseModel):
    group_id: int


class AdminBulkUsersRequest(BaseModel):
    action: Literal["suspend", "reactivate", "revoke_admin"]
    user_ids: list[int] = Field(min_length=1)
