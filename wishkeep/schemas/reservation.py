from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, field_validator


class ReservationCreate(BaseModel):
    password: str | None = Field(default=None, max_length=128)


class PublicReservationCreate(BaseModel):
    wish_id: int
    reserver_name: str | None = Field(default=None, max_length=120)
    reserver_email: EmailStr | None = None
    password: str | None = Field(default=None, max_length=128)

    @field_validator("reserver_name")
    @classmethod
    def _strip_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class ReservationPublic(BaseModel):
    """Claimant-side view. Never served to wish owners."""

    id: int
    wish_id: int
    reserved_at: datetime
    purchased_at: datetime | None = None
    purchased_date: date | None = None
    reserver_name: str | None = None

    model_config = {"from_attributes": True}


class ReservationCreated(ReservationPublic):
    access_token: str | None = None


class PurchaseRequest(BaseModel):
    purchased_date: date | None = None


class BulkReservationRequest(BaseModel):
    action: Literal["cancel", "markPurchased", "unmarkPurchased"]
    reservation_ids: list[int] = Field(min_length=1)
    purchased_date: date | None = None


class BulkFailurePublic(BaseModel):
    id: int
    reason: str

    model_config = {"from_attributes": True}


class BulkResultPublic(BaseModel):
    succeeded: list[int]
    failed: list[BulkFailurePublic]
    total_processed: int

    model_config = {"from_attributes": True}


class TokenLookupRequest(BaseModel):
    tokens: list[str] = Field(min_length=1, max_length=50)


class ReservationStatusOut(BaseModel):
    wishes: dict[int, bool]
