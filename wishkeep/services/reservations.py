"""Claiming, releasing and purchase-marking wishes.

A wish moves Unclaimed -> Reserved -> Purchased, or back to Unclaimed on
release. The claimant is either a signed-in user or whoever holds the
anonymous management token handed out at claim time. Nothing returned from
an owner-reachable path carries claimant identity.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, timedelta

from wishkeep.core.config import Settings
from wishkeep.core.errors import ALREADY_RESERVED, ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from wishkeep.core.mailer import Mailer
from wishkeep.core.security import sha256_hex, today, utcnow
from wishkeep.db.store import Store
from wishkeep.models.models import Reservation, VisibilityEnum
from wishkeep.services.permissions import Action, ListAccess, PermissionEngine, Resource


logger = logging.getLogger("wishkeep.reservations")

MAX_TOKEN_LOOKUPS = 50


@dataclass(frozen=True)
class Claimant:
    user_id: int | None = None
    access_token: str | None = None

    def __post_init__(self) -> None:
        if self.user_id is None and not self.access_token:
            raise ValueError("Claimant needs a user id or an access token")


@dataclass(frozen=True)
class ClaimResult:
    reservation: Reservation
    # Only set for anonymous claims; returned to the caller once and never stored.
    access_token: str | None = None


@dataclass(frozen=True)
class BulkFailure:
    id: int
    reason: str


@dataclass
class BulkResult:
    succeeded: list[int] = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)
    total_processed: int = 0


class BulkOperation:
    CANCEL = "cancel"
    MARK_PURCHASED = "mark_purchased"
    UNMARK_PURCHASED = "unmark_purchased"


def new_access_token() -> str:
    return secrets.token_urlsafe(32)


class ReservationService:
    def __init__(
        self,
        store: Store,
        permissions: PermissionEngine,
        settings: Settings,
        mailer: Mailer | None = None,
    ) -> None:
        self.store = store
        self.permissions = permissions
        self.settings = settings
        self.mailer = mailer

    @property
    def _timeout(self) -> float:
        return self.settings.reservation_tx_timeout_seconds

    # ---- claims -------------------------------------------------------

    async def claim(self, wish_id: int, actor_id: int | None, access: ListAccess | None = None) -> ClaimResult:
        if actor_id is None:
            raise UnauthorizedError()
        await self.permissions.require(actor_id, Action.RESERVE, Resource.wish(wish_id), access)
        reservation = await self._insert_claim(wish_id, user_id=actor_id)
        logger.info("Wish reserved wish_id=%s reservation_id=%s", wish_id, reservation.id)
        return ClaimResult(reservation=reservation)

    async def claim_via_share_token(
        self,
        share_token: str,
        wish_id: int,
        actor_id: int | None = None,
        reserver_name: str | None = None,
        reserver_email: str | None = None,
        access: ListAccess | None = None,
    ) -> ClaimResult:
        wish_list = await self.store.get_list_by_share_token(share_token)
        if wish_list is None or wish_list.visibility == VisibilityEnum.PRIVATE.value:
            raise NotFoundError("List not found")
        # Membership is only looked up once the caller may see the list.
        if wish_list.visibility == VisibilityEnum.PASSWORD.value:
            privileged = actor_id is not None and (
                wish_list.owner_id == actor_id or await self.store.is_list_admin(wish_list.id, actor_id)
            )
            if not privileged and not self.permissions.has_password_access(wish_list, access):
                raise ForbiddenError("Password required")
        if await self.store.get_list_wish(wish_list.id, wish_id) is None:
            raise NotFoundError("Wish not found")

        if actor_id is not None:
            await self.permissions.require(actor_id, Action.RESERVE, Resource.wish(wish_id), access)
            reservation = await self._insert_claim(wish_id, user_id=actor_id)
            logger.info("Wish reserved via share link wish_id=%s reservation_id=%s", wish_id, reservation.id)
            return ClaimResult(reservation=reservation)

        await self.permissions.require(None, Action.VIEW, Resource.list(wish_list.id), access)
        token = new_access_token()
        reservation = await self._insert_claim(
            wish_id,
            access_token_hash=sha256_hex(token),
            reserver_name=reserver_name,
            reserver_email=reserver_email,
        )
        logger.info("Wish reserved anonymously wish_id=%s reservation_id=%s", wish_id, reservation.id)
        return ClaimResult(reservation=reservation, access_token=token)

    async def _insert_claim(self, wish_id: int, **fields) -> Reservation:
        async def _insert(store: Store) -> Reservation | None:
            return await store.create_reservation_if_unclaimed(wish_id, **fields)

        reservation = await self.store.transaction(_insert, timeout=self._timeout)
        if reservation is None:
            raise ConflictError("This wish is already reserved", code=ALREADY_RESERVED)
        return reservation

    # ---- claimant-side changes ----------------------------------------

    async def _claimed_reservation(self, reservation_id: int, claimant: Claimant, action: Action) -> Reservation:
        if claimant.user_id is not None:
            await self.permissions.require(claimant.user_id, action, Resource.reservation(reservation_id))
            reservation = await self.store.get_reservation(reservation_id)
        else:
            reservation = await self.find_by_token(claimant.access_token)
            if reservation is not None and reservation.id != reservation_id:
                reservation = None
        if reservation is None:
            raise NotFoundError("Reservation not found")
        return reservation

    async def release(self, reservation_id: int, claimant: Claimant) -> Reservation:
        reservation = await self._claimed_reservation(reservation_id, claimant, Action.DELETE)
        return await self._delete(reservation)

    async def release_by_token(self, token: str) -> Reservation:
        reservation = await self.get_by_token(token)
        return await self._delete(reservation)

    async def _delete(self, reservation: Reservation) -> Reservation:
        async def _remove(store: Store) -> Reservation:
            await store.delete_reservation(reservation)
            return reservation

        await self.store.transaction(_remove, timeout=self._timeout)
        logger.info("Reservation released reservation_id=%s wish_id=%s", reservation.id, reservation.wish_id)
        return reservation

    async def mark_purchased(
        self,
        reservation_id: int,
        claimant: Claimant,
        purchased_date: date | None = None,
    ) -> Reservation:
        reservation = await self._claimed_reservation(reservation_id, claimant, Action.EDIT)
        if reservation.is_purchased:
            return reservation

        async def _mark(store: Store) -> Reservation:
            reservation.purchased_at = utcnow()
            reservation.purchased_date = purchased_date or today()
            await store.flush()
            return reservation

        return await self.store.transaction(_mark, timeout=self._timeout)

    async def mark_purchased_by_token(self, token: str, purchased_date: date | None = None) -> Reservation:
        reservation = await self.get_by_token(token)
        return await self.mark_purchased(reservation.id, Claimant(access_token=token), purchased_date)

    async def unmark_purchased_by_token(self, token: str) -> Reservation:
        reservation = await self.get_by_token(token)
        return await self.unmark_purchased(reservation.id, Claimant(access_token=token))

    async def unmark_purchased(self, reservation_id: int, claimant: Claimant) -> Reservation:
        reservation = await self._claimed_reservation(reservation_id, claimant, Action.EDIT)
        if not reservation.is_purchased:
            raise ValidationError("Reservation is not marked as purchased")

        async def _unmark(store: Store) -> Reservation:
            reservation.purchased_at = None
            reservation.purchased_date = None
            await store.flush()
            return reservation

        return await self.store.transaction(_unmark, timeout=self._timeout)

    # ---- bulk ---------------------------------------------------------

    def _normalize_ids(self, reservation_ids: list[int]) -> list[int]:
        ids = list(dict.fromkeys(reservation_ids))
        if not ids:
            raise ValidationError("At least one reservation id is required", field="reservation_ids")
        if len(ids) > self.settings.bulk_max_ids:
            raise ValidationError(
                f"At most {self.settings.bulk_max_ids} reservations can be processed at once",
                field="reservation_ids",
            )
        return ids

    async def bulk_cancel(self, reservation_ids: list[int], actor_id: int) -> BulkResult:
        return await self._bulk(BulkOperation.CANCEL, reservation_ids, actor_id)

    async def bulk_mark_purchased(
        self,
        reservation_ids: list[int],
        actor_id: int,
        purchased_date: date | None = None,
    ) -> BulkResult:
        return await self._bulk(BulkOperation.MARK_PURCHASED, reservation_ids, actor_id, purchased_date)

    async def bulk_unmark_purchased(self, reservation_ids: list[int], actor_id: int) -> BulkResult:
        return await self._bulk(BulkOperation.UNMARK_PURCHASED, reservation_ids, actor_id)

    async def _bulk(
        self,
        operation: str,
        reservation_ids: list[int],
        actor_id: int,
        purchased_date: date | None = None,
    ) -> BulkResult:
        ids = self._normalize_ids(reservation_ids)
        await self.permissions.require_active(actor_id)

        async def _apply(store: Store) -> BulkResult:
            rows = await store.get_reservations(ids, for_update=True)
            result = BulkResult(total_processed=len(ids))
            targets: list[Reservation] = []
            # Classify everything first; nothing is written until every id has a verdict.
            for reservation_id in ids:
                reservation = rows.get(reservation_id)
                if reservation is None or reservation.user_id != actor_id:
                    result.failed.append(BulkFailure(reservation_id, "not_found"))
                elif operation == BulkOperation.UNMARK_PURCHASED and not reservation.is_purchased:
                    result.failed.append(BulkFailure(reservation_id, "not_purchased"))
                else:
                    targets.append(reservation)

            if operation == BulkOperation.CANCEL:
                await store.delete_reservations([r.id for r in targets])
            elif operation == BulkOperation.MARK_PURCHASED:
                now = utcnow()
                for reservation in targets:
                    if not reservation.is_purchased:
                        reservation.purchased_at = now
                        reservation.purchased_date = purchased_date or today()
            else:
                for reservation in targets:
                    reservation.purchased_at = None
                    reservation.purchased_date = None
            await store.flush()
            result.succeeded = [r.id for r in targets]
            return result

        result = await self.store.transaction(_apply, timeout=self._timeout)
        logger.info(
            "Bulk %s actor_id=%s succeeded=%d failed=%d",
            operation,
            actor_id,
            len(result.succeeded),
            len(result.failed),
        )
        return result

    # ---- read paths ---------------------------------------------------

    async def list_reservation_status(
        self,
        list_id: int,
        actor_id: int | None,
        access: ListAccess | None = None,
    ) -> dict[int, bool]:
        """Reserved flag per wish. Never says who reserved anything."""
        await self.permissions.require(actor_id, Action.VIEW, Resource.list(list_id), access)
        wishes = await self.store.list_wish_owners(list_id)
        reserved = await self.store.reserved_wish_ids(wish_id for wish_id, _ in wishes)
        reveal = self.settings.reveal_reserved_flag_to_owner
        status: dict[int, bool] = {}
        for wish_id, owner_id in wishes:
            if owner_id == actor_id and not reveal:
                status[wish_id] = False
            else:
                status[wish_id] = wish_id in reserved
        return status

    async def my_reservations(self, actor_id: int) -> list[Reservation]:
        await self.permissions.require_active(actor_id)
        return await self.store.reservations_for_user(actor_id)

    async def find_by_token(self, token: str | None) -> Reservation | None:
        """Digest lookup, then the legacy plaintext column; legacy hits are upgraded in place."""
        if not token:
            return None
        digest = sha256_hex(token)
        reservation = await self.store.get_reservation_by_token_hash(digest)
        if reservation is not None:
            return reservation

        reservation = await self.store.get_reservation_by_legacy_token(token)
        if reservation is None:
            return None
        reservation.access_token_hash = digest
        reservation.legacy_access_token = None
        await self.store.commit()
        logger.info("Upgraded legacy reservation token reservation_id=%s", reservation.id)
        return reservation

    async def get_by_token(self, token: str) -> Reservation:
        reservation = await self.find_by_token(token)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        return reservation

    async def reservations_by_tokens(self, tokens: list[str]) -> list[Reservation]:
        found: list[Reservation] = []
        seen: set[int] = set()
        for token in list(dict.fromkeys(tokens))[:MAX_TOKEN_LOOKUPS]:
            reservation = await self.find_by_token(token)
            if reservation is not None and reservation.id not in seen:
                seen.add(reservation.id)
                found.append(reservation)
        return found

    # ---- reminders ----------------------------------------------------

    async def send_purchase_reminders(self, older_than_days: int | None = None) -> int:
        """Nudge claimants of long-unpurchased reservations, once each."""
        if self.mailer is None:
            raise RuntimeError("ReservationService needs a mailer to send reminders")
        days = older_than_days if older_than_days is not None else self.settings.reminder_after_days
        cutoff = utcnow() - timedelta(days=days)
        due = await self.store.reservations_due_reminder(cutoff)
        users = await self.store.get_users({r.user_id for r in due if r.user_id is not None})

        sent = 0
        for reservation in due:
            if reservation.user_id is not None:
                user = users.get(reservation.user_id)
                email = user.email if user is not None else None
            else:
                email = reservation.reserver_email
            if not email:
                continue
            wish = await self.store.get_wish(reservation.wish_id)
            if wish is None:
                continue
            if await self.mailer.send_reservation_reminder(email, wish.title):
                reservation.reminder_sent_at = utcnow()
                sent += 1
        await self.store.commit()
        logger.info("Purchase reminders sent=%d due=%d", sent, len(due))
        return sent
