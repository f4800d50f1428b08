import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from wishkeep.core.config import Settings
from wishkeep.core.errors import ForbiddenError, UnauthorizedError
from wishkeep.core.security import decode_access_token
from wishkeep.db.store import Store

if TYPE_CHECKING:
    from wishkeep.services.tokens import TokenService


logger = logging.getLogger("wishkeep.auth")


class AuthMethod(str, Enum):
    SESSION = "session"
    API_TOKEN = "api_token"


@dataclass(frozen=True)
class Actor:
    user_id: int
    auth_method: AuthMethod
    token_id: int | None = None


class IdentityResolver:
    """Turns a session JWT or a personal API token into an ``Actor``."""

    def __init__(self, store: Store, settings: Settings, tokens: "TokenService") -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens

    async def resolve(self, session_token: str | None, bearer: str | None) -> Actor | None:
        """``None`` means anonymous. Presented but bad credentials raise."""
        if bearer:
            if self.tokens.is_api_token(bearer):
                return await self._from_api_token(bearer)
            return await self._from_session(bearer)
        if session_token:
            return await self._from_session(session_token)
        return None

    async def _from_session(self, token: str) -> Actor:
        payload = decode_access_token(token, self.settings)
        if not payload or "sub" not in payload:
            logger.info("Session token invalid")
            raise UnauthorizedError("Invalid token")
        try:
            user_id = int(payload["sub"])
        except (TypeError, ValueError):
            raise UnauthorizedError("Invalid token") from None
        user = await self.store.get_user(user_id)
        if user is None:
            logger.info("Session user missing user_id=%s", user_id)
            raise UnauthorizedError("User not found")
        if user.is_suspended:
            raise ForbiddenError("Account suspended")
        return Actor(user_id=user.id, auth_method=AuthMethod.SESSION)

    async def _from_api_token(self, secret: str) -> Actor:
        result = await self.tokens.validate(secret)
        if not result.is_valid:
            raise UnauthorizedError(f"API token {result.status.value}")
        return Actor(user_id=result.user_id, auth_method=AuthMethod.API_TOKEN, token_id=result.token_id)
