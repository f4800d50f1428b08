import logging

from wishkeep.core.errors import ForbiddenError, ValidationError
from wishkeep.core.security import utcnow
from wishkeep.db.store import Store
from wishkeep.services.reservations import BulkFailure, BulkResult
from wishkeep.services.tokens import TokenService


logger = logging.getLogger("wishkeep.admin")

BULK_USER_ACTIONS = ("suspend", "reactivate", "revoke_admin")


class AdminService:
    def __init__(self, store: Store, tokens: TokenService, max_ids: int = 100) -> None:
        self.store = store
        self.tokens = tokens
        self.max_ids = max_ids

    async def bulk_update_users(self, actor_id: int, action: str, user_ids: list[int]) -> BulkResult:
        actor = await self.store.get_user(actor_id)
        if actor is None or not actor.is_admin or actor.is_suspended:
            raise ForbiddenError("Admin access required")
        if action not in BULK_USER_ACTIONS:
            raise ValidationError(f"action must be one of: {', '.join(BULK_USER_ACTIONS)}", field="action")
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            raise ValidationError("At least one user id is required", field="user_ids")
        if len(ids) > self.max_ids:
            raise ValidationError(f"At most {self.max_ids} users can be processed at once", field="user_ids")
        # Self-inclusion rejects the whole request, not just that id.
        if actor_id in ids:
            raise ValidationError("You cannot include your own account in a bulk action", field="user_ids")

        users = await self.store.get_users(ids)
        result = BulkResult(total_processed=len(ids))
        now = utcnow()
        for user_id in ids:
            user = users.get(user_id)
            if user is None:
                result.failed.append(BulkFailure(user_id, "not_found"))
                continue
            if action == "suspend":
                if user.suspended_at is None:
                    user.suspended_at = now
                await self.tokens.revoke_all(user.id, commit=False)
            elif action == "reactivate":
                user.suspended_at = None
            else:
                user.is_admin = False
            result.succeeded.append(user_id)
        await self.store.commit()
        logger.info(
            "Admin bulk %s actor_id=%s succeeded=%d failed=%d",
            action,
            actor_id,
            len(result.succeeded),
            len(result.failed),
        )
        return result
