import logging
from dataclasses import dataclass
from datetime import datetime

from wishkeep.core.errors import STALE_WRITE, ConflictError, ForbiddenError, NotFoundError, ValidationError
from wishkeep.core.list_access import ListAccessCodec
from wishkeep.core.security import as_utc, get_password_hash, utcnow, verify_password
from wishkeep.db.store import Store
from wishkeep.models.models import ListWish, VisibilityEnum, WishList
from wishkeep.services.permissions import Action, PermissionEngine, Resource


logger = logging.getLogger("wishkeep.lists")

MIN_LIST_PASSWORD_LENGTH = 4


@dataclass(frozen=True)
class UnlockResult:
    list_id: int
    cookie: str
    max_age: int


class ListService:
    def __init__(self, store: Store, permissions: PermissionEngine, list_access: ListAccessCodec) -> None:
        self.store = store
        self.permissions = permissions
        self.list_access = list_access

    async def _unlock(self, wish_list: WishList | None, password: str, existing_cookie: str | None) -> UnlockResult:
        if wish_list is None or wish_list.visibility == VisibilityEnum.PRIVATE.value:
            raise NotFoundError("List not found")
        if wish_list.visibility != VisibilityEnum.PASSWORD.value or not wish_list.password_hash:
            raise ValidationError("This list is not password protected")
        if not verify_password(password, wish_list.password_hash):
            logger.info("List unlock failed list_id=%s", wish_list.id)
            raise ForbiddenError("Invalid password")
        cookie = self.list_access.grant(existing_cookie, wish_list.id, wish_list.password_hash)
        logger.info("List unlocked list_id=%s", wish_list.id)
        return UnlockResult(list_id=wish_list.id, cookie=cookie, max_age=self.list_access.ttl_seconds)

    async def unlock(self, list_id: int, password: str, existing_cookie: str | None = None) -> UnlockResult:
        return await self._unlock(await self.store.get_list(list_id), password, existing_cookie)

    async def unlock_by_share_token(
        self,
        share_token: str,
        password: str,
        existing_cookie: str | None = None,
    ) -> UnlockResult:
        return await self._unlock(await self.store.get_list_by_share_token(share_token), password, existing_cookie)

    async def set_password(self, list_id: int, actor_id: int, password: str | None) -> WishList:
        """Set or clear the list password. Either way every earlier unlock stops working."""
        await self.permissions.require(actor_id, Action.ADMIN, Resource.list(list_id))
        wish_list = await self.store.get_list(list_id)
        if password:
            if len(password) < MIN_LIST_PASSWORD_LENGTH:
                raise ValidationError(
                    f"Password must be at least {MIN_LIST_PASSWORD_LENGTH} characters",
                    field="password",
                )
            wish_list.password_hash = get_password_hash(password)
            wish_list.visibility = VisibilityEnum.PASSWORD.value
        else:
            wish_list.password_hash = None
            wish_list.visibility = VisibilityEnum.PRIVATE.value
        await self.store.commit()
        logger.info("List password %s list_id=%s", "set" if password else "cleared", list_id)
        return wish_list

    async def reorder_wish(
        self,
        list_id: int,
        wish_id: int,
        sort_order: float,
        expected_updated_at: datetime,
        actor_id: int,
    ) -> ListWish:
        """Move a wish within a list, refusing to overwrite a concurrent edit."""
        await self.permissions.require(actor_id, Action.EDIT, Resource.list(list_id))
        moved = await self.store.move_list_wish_if_unchanged(
            list_id,
            wish_id,
            sort_order,
            as_utc(expected_updated_at),
            utcnow(),
        )
        if not moved:
            await self.store.rollback()
            if await self.store.get_list_wish(list_id, wish_id) is None:
                raise NotFoundError("Wish not found")
            logger.info("Stale reorder rejected list_id=%s wish_id=%s", list_id, wish_id)
            raise ConflictError("This list was changed by someone else. Reload and try again.", code=STALE_WRITE)
        await self.store.commit()
        return await self.store.get_list_wish(list_id, wish_id, fresh=True)

    async def add_admin(self, list_id: int, user_id: int, actor_id: int) -> None:
        await self.permissions.require(actor_id, Action.ADMIN, Resource.list(list_id))
        wish_list = await self.store.get_list(list_id)
        if user_id == wish_list.owner_id:
            raise ValidationError("The list owner is already an admin", field="user_id")
        if await self.store.get_user(user_id) is None:
            raise NotFoundError("User not found")
        if await self.store.get_list_admin(list_id, user_id) is not None:
            raise ConflictError("User is already an admin of this list")
        await self.store.add_list_admin(list_id, user_id)
        await self.store.commit()
        logger.info("List admin added list_id=%s user_id=%s", list_id, user_id)

    async def remove_admin(self, list_id: int, user_id: int, actor_id: int) -> None:
        await self.permissions.require(actor_id, Action.ADMIN, Resource.list(list_id))
        admin = await self.store.get_list_admin(list_id, user_id)
        if admin is None:
            raise NotFoundError("Admin not found")
        await self.store.remove_list_admin(admin)
        await self.store.commit()
        logger.info("List admin removed list_id=%s user_id=%s", list_id, user_id)

    async def share_with_group(self, list_id: int, group_id: int, actor_id: int) -> None:
        await self.permissions.require(actor_id, Action.SHARE, Resource.list(list_id))
        await self.permissions.require(actor_id, Action.SHARE, Resource.group(group_id))
        if await self.store.get_list_group(list_id, group_id) is not None:
            raise ConflictError("List is already shared with this group")
        await self.store.add_list_group(list_id, group_id, shared_by=actor_id)
        await self.store.commit()
        logger.info("List shared list_id=%s group_id=%s", list_id, group_id)
