"""Request-scoped data access for the permission and reservation engines.

Everything the engines read or write goes through ``Store``; nothing above
this layer builds SQL.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from wishkeep.core.errors import TransactionTimeoutError
from wishkeep.models.models import (
    Group,
    GroupMember,
    ListAdmin,
    ListGroup,
    ListWish,
    PersonalAccessToken,
    Reservation,
    User,
    Wish,
    WishList,
)


logger = logging.getLogger("wishkeep.store")

T = TypeVar("T")


class Store:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    # ---- transactions -------------------------------------------------

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    async def transaction(self, fn: Callable[["Store"], Awaitable[T]], timeout: float | None = None) -> T:
        """Run ``fn`` and commit, or roll back everything it did.

        A run that exceeds ``timeout`` seconds is cancelled, rolled back and
        reported as ``TransactionTimeoutError``.
        """
        async def _run() -> T:
            try:
                result = await fn(self)
                await self.session.commit()
                return result
            except BaseException:
                await self.session.rollback()
                raise

        if timeout is None:
            return await _run()
        try:
            return await asyncio.wait_for(_run(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Transaction exceeded %.1fs and was rolled back", timeout)
            try:
                await self.session.rollback()
            except Exception:
                logger.exception("Rollback after transaction timeout failed")
            raise TransactionTimeoutError() from None

    # ---- users --------------------------------------------------------

    async def get_user(self, user_id: int) -> User | None:
        return await self.session.get(User, user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def get_users(self, user_ids: Iterable[int]) -> dict[int, User]:
        ids = list(user_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(User).where(User.id.in_(ids)))
        return {user.id: user for user in result.scalars()}

    async def add_user(self, email: str, name: str, hashed_password: str) -> User:
        user = User(email=email, name=name, hashed_password=hashed_password)
        self.session.add(user)
        await self.session.flush()
        return user

    # ---- lists --------------------------------------------------------

    async def get_list(self, list_id: int) -> WishList | None:
        return await self.session.get(WishList, list_id)

    async def get_list_by_share_token(self, share_token: str) -> WishList | None:
        result = await self.session.execute(select(WishList).where(WishList.share_token == share_token))
        return result.scalar_one_or_none()

    async def is_list_admin(self, list_id: int, user_id: int) -> bool:
        result = await self.session.execute(
            select(ListAdmin.id).where(ListAdmin.list_id == list_id, ListAdmin.user_id == user_id)
        )
        return result.first() is not None

    async def get_list_admin(self, list_id: int, user_id: int) -> ListAdmin | None:
        result = await self.session.execute(
            select(ListAdmin).where(ListAdmin.list_id == list_id, ListAdmin.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def add_list_admin(self, list_id: int, user_id: int) -> ListAdmin:
        admin = ListAdmin(list_id=list_id, user_id=user_id)
        self.session.add(admin)
        await self.session.flush()
        return admin

    async def remove_list_admin(self, admin: ListAdmin) -> None:
        await self.session.delete(admin)
        await self.session.flush()

    async def is_list_shared_with_user_group(self, list_id: int, user_id: int) -> bool:
        result = await self.session.execute(
            select(ListGroup.id)
            .join(GroupMember, GroupMember.group_id == ListGroup.group_id)
            .where(ListGroup.list_id == list_id, GroupMember.user_id == user_id)
            .limit(1)
        )
        return result.first() is not None

    async def get_list_group(self, list_id: int, group_id: int) -> ListGroup | None:
        result = await self.session.execute(
            select(ListGroup).where(ListGroup.list_id == list_id, ListGroup.group_id == group_id)
        )
        return result.scalar_one_or_none()

    async def add_list_group(self, list_id: int, group_id: int, shared_by: int) -> ListGroup:
        link = ListGroup(list_id=list_id, group_id=group_id, shared_by=shared_by)
        self.session.add(link)
        await self.session.flush()
        return link

    async def lists_containing_wish(self, wish_id: int) -> list[WishList]:
        result = await self.session.execute(
            select(WishList).join(ListWish, ListWish.list_id == WishList.id).where(ListWish.wish_id == wish_id)
        )
        return list(result.scalars().unique())

    async def get_list_wish(self, list_id: int, wish_id: int, *, fresh: bool = False) -> ListWish | None:
        stmt = select(ListWish).where(ListWish.list_id == list_id, ListWish.wish_id == wish_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def move_list_wish_if_unchanged(
        self,
        list_id: int,
        wish_id: int,
        sort_order: float,
        expected_updated_at: datetime,
        updated_at: datetime,
    ) -> bool:
        """Compare-and-set on ``updated_at``; ``False`` when the row moved on or is gone."""
        result = await self.session.execute(
            update(ListWish)
            .where(
                ListWish.list_id == list_id,
                ListWish.wish_id == wish_id,
                ListWish.updated_at == expected_updated_at,
            )
            .values(sort_order=sort_order, updated_at=updated_at)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def list_wish_owners(self, list_id: int) -> list[tuple[int, int]]:
        """``(wish_id, wish_owner_id)`` for every wish on the list."""
        result = await self.session.execute(
            select(Wish.id, Wish.owner_id)
            .join(ListWish, ListWish.wish_id == Wish.id)
            .where(ListWish.list_id == list_id)
            .order_by(ListWish.sort_order, ListWish.id)
        )
        return [(row[0], row[1]) for row in result.all()]

    # ---- groups -------------------------------------------------------

    async def get_group(self, group_id: int) -> Group | None:
        return await self.session.get(Group, group_id)

    async def get_group_membership(self, group_id: int, user_id: int) -> GroupMember | None:
        result = await self.session.execute(
            select(GroupMember).where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
        )
        return result.scalar_one_or_none()

    # ---- wishes -------------------------------------------------------

    async def get_wish(self, wish_id: int) -> Wish | None:
        return await self.session.get(Wish, wish_id)

    # ---- reservations -------------------------------------------------

    async def create_reservation_if_unclaimed(self, wish_id: int, **fields: Any) -> Reservation | None:
        """Insert a claim; ``None`` when the wish already has one.

        Relies on the unique index on ``reservations.wish_id``, so two racing
        inserts can never both succeed. Must be the only write in its
        transaction: a lost race rolls the session back.
        """
        reservation = Reservation(wish_id=wish_id, **fields)
        self.session.add(reservation)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info("Claim lost race for wish_id=%s", wish_id)
            return None
        return reservation

    async def get_reservation(self, reservation_id: int) -> Reservation | None:
        return await self.session.get(Reservation, reservation_id)

    async def get_reservations(self, reservation_ids: Iterable[int], *, for_update: bool = False) -> dict[int, Reservation]:
        ids = list(reservation_ids)
        if not ids:
            return {}
        stmt = select(Reservation).where(Reservation.id.in_(ids))
        if for_update and self.dialect_name == "postgresql":
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return {reservation.id: reservation for reservation in result.scalars()}

    async def get_reservation_for_wish(self, wish_id: int) -> Reservation | None:
        result = await self.session.execute(select(Reservation).where(Reservation.wish_id == wish_id))
        return result.scalar_one_or_none()

    async def get_reservation_by_token_hash(self, token_hash: str) -> Reservation | None:
        result = await self.session.execute(select(Reservation).where(Reservation.access_token_hash == token_hash))
        return result.scalar_one_or_none()

    async def get_reservation_by_legacy_token(self, token: str) -> Reservation | None:
        result = await self.session.execute(select(Reservation).where(Reservation.legacy_access_token == token))
        return result.scalar_one_or_none()

    async def reservations_for_user(self, user_id: int) -> list[Reservation]:
        result = await self.session.execute(
            select(Reservation).where(Reservation.user_id == user_id).order_by(Reservation.reserved_at.desc())
        )
        return list(result.scalars())

    async def reserved_wish_ids(self, wish_ids: Iterable[int]) -> set[int]:
        ids = list(wish_ids)
        if not ids:
            return set()
        result = await self.session.execute(select(Reservation.wish_id).where(Reservation.wish_id.in_(ids)))
        return set(result.scalars())

    async def delete_reservation(self, reservation: Reservation) -> None:
        await self.session.delete(reservation)
        await self.session.flush()

    async def delete_reservations(self, reservation_ids: Iterable[int]) -> int:
        ids = list(reservation_ids)
        if not ids:
            return 0
        result = await self.session.execute(delete(Reservation).where(Reservation.id.in_(ids)))
        return result.rowcount or 0

    async def flush(self) -> None:
        await self.session.flush()

    async def reservations_due_reminder(self, reserved_before: datetime) -> list[Reservation]:
        result = await self.session.execute(
            select(Reservation).where(
                Reservation.purchased_at.is_(None),
                Reservation.reminder_sent_at.is_(None),
                Reservation.reserved_at < reserved_before,
                or_(Reservation.user_id.is_not(None), Reservation.reserver_email.is_not(None)),
            )
        )
        return list(result.scalars())

    async def duplicate_reservation_wish_ids(self) -> list[tuple[int, int]]:
        result = await self.session.execute(
            select(Reservation.wish_id, func.count(Reservation.id))
            .group_by(Reservation.wish_id)
            .having(func.count(Reservation.id) > 1)
        )
        return [(row[0], row[1]) for row in result.all()]

    # ---- personal access tokens --------------------------------------

    async def add_token(self, token: PersonalAccessToken) -> PersonalAccessToken:
        self.session.add(token)
        await self.session.flush()
        return token

    async def get_token(self, token_id: int) -> PersonalAccessToken | None:
        return await self.session.get(PersonalAccessToken, token_id)

    async def get_token_by_prefix(self, prefix: str) -> PersonalAccessToken | None:
        result = await self.session.execute(
            select(PersonalAccessToken).where(PersonalAccessToken.token_prefix == prefix)
        )
        return result.scalar_one_or_none()

    async def list_tokens(self, user_id: int) -> list[PersonalAccessToken]:
        result = await self.session.execute(
            select(PersonalAccessToken)
            .where(PersonalAccessToken.user_id == user_id, PersonalAccessToken.revoked_at.is_(None))
            .order_by(PersonalAccessToken.created_at.desc())
        )
        return list(result.scalars())

    async def active_token_prefixes(self, user_id: int) -> list[str]:
        result = await self.session.execute(
            select(PersonalAccessToken.token_prefix).where(
                PersonalAccessToken.user_id == user_id,
                PersonalAccessToken.revoked_at.is_(None),
            )
        )
        return list(result.scalars())

    async def revoke_user_tokens(self, user_id: int, revoked_at: datetime) -> int:
        result = await self.session.execute(
            update(PersonalAccessToken)
            .where(PersonalAccessToken.user_id == user_id, PersonalAccessToken.revoked_at.is_(None))
            .values(revoked_at=revoked_at)
        )
        return result.rowcount or 0

    async def touch_token(self, token_id: int, used_at: datetime) -> None:
        await self.session.execute(
            update(PersonalAccessToken).where(PersonalAccessToken.id == token_id).values(last_used_at=used_at)
        )

    async def delete_stale_tokens(self, expired_before: datetime, revoked_before: datetime) -> int:
        result = await self.session.execute(
            delete(PersonalAccessToken).where(
                or_(
                    and_(PersonalAccessToken.expires_at.is_not(None), PersonalAccessToken.expires_at < expired_before),
                    and_(PersonalAccessToken.revoked_at.is_not(None), PersonalAccessToken.revoked_at < revoked_before),
                )
            )
        )
        return result.rowcount or 0
