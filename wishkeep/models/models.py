import secrets
from datetime import date, datetime
from enum import Enum as StrEnumBase

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wishkeep.core.security import utcnow
from wishkeep.db.session import Base


def _share_token() -> str:
    return secrets.token_urlsafe(16)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    lists: Mapped[list["WishList"]] = relationship(back_populates="owner")
    reservations: Mapped[list["Reservation"]] = relationship(back_populates="user")

    @property
    def is_suspended(self) -> bool:
        return self.suspended_at is not None


class VisibilityEnum(str, StrEnumBase):
    PRIVATE = "private"
    PUBLIC = "public"
    PASSWORD = "password"


class WishList(Base):
    __tablename__ = "lists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    visibility: Mapped[str] = mapped_column(String(20), default=VisibilityEnum.PRIVATE.value, nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    share_token: Mapped[str] = mapped_column(String(64), unique=True, index=True, default=_share_token)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    owner: Mapped[User] = relationship(back_populates="lists")
    entries: Mapped[list["ListWish"]] = relationship(back_populates="wish_list", cascade="all, delete-orphan")
    admins: Mapped[list["ListAdmin"]] = relationship(cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("owner_id", "slug", name="uq_lists_owner_slug"),
        CheckConstraint(
            "visibility IN ('private', 'public', 'password')",
            name="ck_lists_visibility",
        ),
    )


class ListAdmin(Base):
    __tablename__ = "list_admins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    list_id: Mapped[int] = mapped_column(ForeignKey("lists.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("list_id", "user_id", name="uq_list_admins_list_user"),)


class Wish(Base):
    __tablename__ = "wishes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    price: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    entries: Mapped[list["ListWish"]] = relationship(
        back_populates="wish",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    reservation: Mapped["Reservation | None"] = relationship(
        back_populates="wish",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ListWish(Base):
    __tablename__ = "list_wishes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    list_id: Mapped[int] = mapped_column(ForeignKey("lists.id", ondelete="CASCADE"), index=True)
    wish_id: Mapped[int] = mapped_column(ForeignKey("wishes.id", ondelete="CASCADE"), index=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    wish_level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    sort_order: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    wish_list: Mapped[WishList] = relationship(back_populates="entries")
    wish: Mapped[Wish] = relationship(back_populates="entries")

    __table_args__ = (UniqueConstraint("list_id", "wish_id", name="uq_list_wishes_list_wish"),)


class GroupRoleEnum(str, StrEnumBase):
    ADMIN = "admin"
    MEMBER = "member"


class Group(Base):
    __tablename__ = "groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    members_can_invite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    members: Mapped[list["GroupMember"]] = relationship(cascade="all, delete-orphan")


class GroupMember(Base):
    __tablename__ = "group_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(20), default=GroupRoleEnum.MEMBER.value, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),)


class ListGroup(Base):
    __tablename__ = "list_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    list_id: Mapped[int] = mapped_column(ForeignKey("lists.id", ondelete="CASCADE"), index=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("groups.id", ondelete="CASCADE"), index=True)
    shared_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    shared_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("list_id", "group_id", name="uq_list_groups_list_group"),)


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # One row per wish: the unique index is what serialises competing claims.
    wish_id: Mapped[int] = mapped_column(ForeignKey("wishes.id", ondelete="CASCADE"), unique=True, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    reserver_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    reserver_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    access_token_hash: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    legacy_access_token: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    purchased_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    wish: Mapped[Wish] = relationship(back_populates="reservation")
    user: Mapped[User | None] = relationship(back_populates="reservations")

    __table_args__ = (
        CheckConstraint(
            "user_id IS NOT NULL OR access_token_hash IS NOT NULL OR legacy_access_token IS NOT NULL",
            name="ck_reservations_claimant_present",
        ),
    )

    @property
    def is_purchased(self) -> bool:
        return self.purchased_at is not None


class PersonalAccessToken(Base):
    __tablename__ = "personal_access_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    device_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    token_prefix: Mapped[str] = mapped_column(String(16), unique=True, index=True, nullable=False)
    token_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
