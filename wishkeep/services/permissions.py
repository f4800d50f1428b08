"""Capability checks for lists, groups, wishes and reservations.

Every mutation asks this engine first. Denials come in two flavours:

* not found - the resource is missing *or* the actor may not even see it.
  Both produce the same message so existence never leaks.
* forbidden - the actor can see the resource but may not perform the action.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from wishkeep.core.errors import AppError, ForbiddenError, NotFoundError
from wishkeep.core.list_access import ListAccessCodec
from wishkeep.core.security import verify_password
from wishkeep.db.store import Store
from wishkeep.models.models import GroupRoleEnum, VisibilityEnum, WishList


logger = logging.getLogger("wishkeep.permissions")


class ResourceKind(str, Enum):
    LIST = "list"
    GROUP = "group"
    WISH = "wish"
    RESERVATION = "reservation"


class Action(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    ADMIN = "admin"
    SHARE = "share"
    INVITE = "invite"
    RESERVE = "reserve"


@dataclass(frozen=True)
class Resource:
    kind: ResourceKind
    id: int

    @classmethod
    def list(cls, list_id: int) -> "Resource":
        return cls(ResourceKind.LIST, list_id)

    @classmethod
    def group(cls, group_id: int) -> "Resource":
        return cls(ResourceKind.GROUP, group_id)

    @classmethod
    def wish(cls, wish_id: int) -> "Resource":
        return cls(ResourceKind.WISH, wish_id)

    @classmethod
    def reservation(cls, reservation_id: int) -> "Resource":
        return cls(ResourceKind.RESERVATION, reservation_id)


@dataclass(frozen=True)
class ListAccess:
    """Proof of access to password-protected lists: the password itself or an unlock cookie."""

    password: str | None = None
    cookie: str | None = None


class Denial(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: str
    denial: Denial | None = None
    message: str | None = None

    def to_error(self) -> AppError:
        if self.denial is Denial.NOT_FOUND:
            return NotFoundError(self.message or "Not found")
        return ForbiddenError(self.message or "Permission denied")


NOT_FOUND_MESSAGES = {
    ResourceKind.LIST: "List not found",
    ResourceKind.GROUP: "Group not found",
    ResourceKind.WISH: "Wish not found",
    ResourceKind.RESERVATION: "Reservation not found",
}

LIST_CO_ADMIN_ACTIONS = frozenset({Action.VIEW, Action.EDIT, Action.SHARE, Action.INVITE})
GROUP_ADMIN_ACTIONS = frozenset({Action.VIEW, Action.EDIT, Action.INVITE, Action.ADMIN, Action.DELETE, Action.SHARE})
GROUP_MEMBER_ACTIONS = frozenset({Action.VIEW, Action.SHARE})
WISH_OWNER_ACTIONS = frozenset({Action.VIEW, Action.EDIT, Action.DELETE})
WISH_VIEWER_ACTIONS = frozenset({Action.VIEW, Action.RESERVE})
RESERVATION_CLAIMANT_ACTIONS = frozenset({Action.VIEW, Action.EDIT, Action.DELETE})


def _allow(reason: str) -> PermissionDecision:
    return PermissionDecision(allowed=True, reason=reason)


def _not_found(kind: ResourceKind, reason: str) -> PermissionDecision:
    return PermissionDecision(
        allowed=False,
        reason=reason,
        denial=Denial.NOT_FOUND,
        message=NOT_FOUND_MESSAGES[kind],
    )


def _forbidden(reason: str, message: str = "Permission denied") -> PermissionDecision:
    return PermissionDecision(allowed=False, reason=reason, denial=Denial.FORBIDDEN, message=message)


Handler = Callable[[int | None, Action, int, ListAccess | None], Awaitable[PermissionDecision]]


class PermissionEngine:
    def __init__(self, store: Store, list_access: ListAccessCodec) -> None:
        self.store = store
        self.list_access = list_access
        self._handlers = self._build_handlers()
        missing = set(ResourceKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No permission handler for resource kinds: {sorted(k.value for k in missing)}")

    def _build_handlers(self) -> dict[ResourceKind, Handler]:
        return {
            ResourceKind.LIST: self._check_list,
            ResourceKind.GROUP: self._check_group,
            ResourceKind.WISH: self._check_wish,
            ResourceKind.RESERVATION: self._check_reservation,
        }

    async def check(
        self,
        actor_id: int | None,
        action: Action,
        resource: Resource,
        access: ListAccess | None = None,
    ) -> PermissionDecision:
        if actor_id is not None and await self.is_suspended(actor_id):
            decision = _forbidden("actor suspended", "Account suspended")
        else:
            handler = self._handlers[resource.kind]
            decision = await handler(actor_id, action, resource.id, access)
        if not decision.allowed:
            logger.debug(
                "Permission denied actor_id=%s action=%s resource=%s:%s reason=%s",
                actor_id,
                action.value,
                resource.kind.value,
                resource.id,
                decision.reason,
            )
        return decision

    async def can(
        self,
        actor_id: int | None,
        action: Action,
        resource: Resource,
        access: ListAccess | None = None,
    ) -> bool:
        return (await self.check(actor_id, action, resource, access)).allowed

    async def require(
        self,
        actor_id: int | None,
        action: Action,
        resource: Resource,
        access: ListAccess | None = None,
    ) -> None:
        decision = await self.check(actor_id, action, resource, access)
        if not decision.allowed:
            raise decision.to_error()

    async def is_suspended(self, actor_id: int) -> bool:
        user = await self.store.get_user(actor_id)
        return user is not None and user.is_suspended

    async def require_active(self, actor_id: int) -> None:
        if await self.is_suspended(actor_id):
            raise ForbiddenError("Account suspended")

    def has_password_access(self, wish_list: WishList, access: ListAccess | None) -> bool:
        """A valid unlock cookie for this list, or the right password."""
        if wish_list.visibility != VisibilityEnum.PASSWORD.value or access is None:
            return False
        if access.cookie and self.list_access.has_valid_access(access.cookie, wish_list.id, wish_list.password_hash):
            return True
        if access.password and wish_list.password_hash:
            return verify_password(access.password, wish_list.password_hash)
        return False

    # ---- lists --------------------------------------------------------

    async def _check_list(
        self,
        actor_id: int | None,
        action: Action,
        list_id: int,
        access: ListAccess | None,
    ) -> PermissionDecision:
        wish_list = await self.store.get_list(list_id)
        if wish_list is None:
            return _not_found(ResourceKind.LIST, "list missing")
        return await self._check_list_row(actor_id, action, wish_list, access)

    async def _check_list_row(
        self,
        actor_id: int | None,
        action: Action,
        wish_list: WishList,
        access: ListAccess | None,
    ) -> PermissionDecision:
        if actor_id is not None and wish_list.owner_id == actor_id:
            if action is Action.RESERVE:
                return _forbidden("lists are not reservable")
            return _allow("list owner")

        if actor_id is not None and await self.store.is_list_admin(wish_list.id, actor_id):
            if action in LIST_CO_ADMIN_ACTIONS:
                return _allow("list co-admin")
            return _forbidden("co-admins cannot delete or manage admins")

        if not await self._can_view_list(actor_id, wish_list, access):
            return _not_found(ResourceKind.LIST, "list not visible")
        if action is Action.VIEW:
            return _allow("list viewer")
        return _forbidden("viewers may only view")

    async def _can_view_list(self, actor_id: int | None, wish_list: WishList, access: ListAccess | None) -> bool:
        if wish_list.visibility == VisibilityEnum.PUBLIC.value:
            return True
        if actor_id is not None and await self.store.is_list_shared_with_user_group(wish_list.id, actor_id):
            return True
        return self.has_password_access(wish_list, access)

    # ---- groups -------------------------------------------------------

    async def _check_group(
        self,
        actor_id: int | None,
        action: Action,
        group_id: int,
        access: ListAccess | None,
    ) -> PermissionDecision:
        if actor_id is None:
            return _not_found(ResourceKind.GROUP, "anonymous")
        group = await self.store.get_group(group_id)
        if group is None:
            return _not_found(ResourceKind.GROUP, "group missing")
        membership = await self.store.get_group_membership(group_id, actor_id)
        if membership is None:
            return _not_found(ResourceKind.GROUP, "not a member")

        if membership.role == GroupRoleEnum.ADMIN.value:
            if action in GROUP_ADMIN_ACTIONS:
                return _allow("group admin")
            return _forbidden("groups are not reservable")

        if action in GROUP_MEMBER_ACTIONS:
            return _allow("group member")
        if action is Action.INVITE and group.members_can_invite:
            return _allow("members may invite")
        return _forbidden("members cannot perform this action")

    # ---- wishes -------------------------------------------------------

    async def _check_wish(
        self,
        actor_id: int | None,
        action: Action,
        wish_id: int,
        access: ListAccess | None,
    ) -> PermissionDecision:
        wish = await self.store.get_wish(wish_id)
        if wish is None:
            return _not_found(ResourceKind.WISH, "wish missing")

        if actor_id is not None and wish.owner_id == actor_id:
            if action is Action.RESERVE:
                return _forbidden("self reservation", "You cannot reserve your own wish")
            if action in WISH_OWNER_ACTIONS:
                return _allow("wish owner")
            return _forbidden("not a wish action")

        viewable = False
        for wish_list in await self.store.lists_containing_wish(wish_id):
            decision = await self._check_list_row(actor_id, Action.VIEW, wish_list, access)
            if decision.allowed:
                viewable = True
                break
        if not viewable:
            return _not_found(ResourceKind.WISH, "no visible list contains the wish")
        if action in WISH_VIEWER_ACTIONS:
            return _allow("wish visible through a list")
        return _forbidden("only the owner may change a wish")

    # ---- reservations -------------------------------------------------

    async def _check_reservation(
        self,
        actor_id: int | None,
        action: Action,
        reservation_id: int,
        access: ListAccess | None,
    ) -> PermissionDecision:
        reservation = await self.store.get_reservation(reservation_id)
        # The wish owner lands here too: they must not learn a reservation exists.
        if reservation is None or actor_id is None or reservation.user_id != actor_id:
            return _not_found(ResourceKind.RESERVATION, "not the claimant")
        if action in RESERVATION_CLAIMANT_ACTIONS:
            return _allow("claimant")
        return _forbidden("not a reservation action")
