"""Personal API tokens for non-browser clients.

Format: ``wk_`` followed by 43 url-safe characters. The first 12 characters
are stored in plaintext as a lookup key; the full secret only as a
pbkdf2_sha256 hash.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from passlib.context import CryptContext

from wishkeep.core.errors import ForbiddenError, NotFoundError, ValidationError
from wishkeep.core.security import as_utc, utcnow
from wishkeep.core.token_cache import CachedTokenRecord, TokenLookupCache
from wishkeep.db.store import Store
from wishkeep.models.models import PersonalAccessToken
from wishkeep.services.identity import Actor, AuthMethod


logger = logging.getLogger("wishkeep.tokens")

TOKEN_PREFIX = "wk_"
PREFIX_LENGTH = 12
SECRET_BYTES = 32
EXPIRED_RETENTION = timedelta(days=7)
REVOKED_RETENTION = timedelta(days=30)

EXPIRY_OPTIONS: dict[str, timedelta | None] = {
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "6m": timedelta(days=180),
    "1y": timedelta(days=365),
    "never": None,
}
DEFAULT_EXPIRY = "90d"

# Token secrets carry 256 bits of entropy; the hash only has to be one-way.
token_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class TokenStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass(frozen=True)
class TokenValidation:
    status: TokenStatus
    user_id: int | None = None
    token_id: int | None = None

    @property
    def is_valid(self) -> bool:
        return self.status is TokenStatus.VALID


@dataclass(frozen=True)
class CreatedToken:
    record: PersonalAccessToken
    secret: str


@dataclass(frozen=True)
class TokenSummary:
    id: int
    name: str
    device_type: str | None
    token_prefix: str
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None
    is_current: bool


def generate_token_secret() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_urlsafe(SECRET_BYTES)}"


def looks_like_token(value: str | None) -> bool:
    return bool(value) and value.startswith(TOKEN_PREFIX) and len(value) > PREFIX_LENGTH


def _to_record(token: PersonalAccessToken) -> CachedTokenRecord:
    return CachedTokenRecord(
        id=token.id,
        user_id=token.user_id,
        token_hash=token.token_hash,
        expires_at=as_utc(token.expires_at),
        revoked_at=as_utc(token.revoked_at),
    )


class TokenService:
    def __init__(self, store: Store, cache: TokenLookupCache) -> None:
        self.store = store
        self.cache = cache

    @staticmethod
    def is_api_token(value: str | None) -> bool:
        return looks_like_token(value)

    async def create_token(
        self,
        actor: Actor,
        name: str,
        device_type: str | None = None,
        expires_in: str = DEFAULT_EXPIRY,
    ) -> CreatedToken:
        if actor.auth_method is not AuthMethod.SESSION:
            raise ForbiddenError("API tokens can only be created from a signed-in session")
        user = await self.store.get_user(actor.user_id)
        if user is None or user.is_suspended:
            raise ForbiddenError("Account suspended")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Token name is required", field="name")
        if expires_in not in EXPIRY_OPTIONS:
            raise ValidationError(
                f"expires_in must be one of: {', '.join(EXPIRY_OPTIONS)}",
                field="expires_in",
            )

        secret = generate_token_secret()
        while await self.store.get_token_by_prefix(secret[:PREFIX_LENGTH]) is not None:
            secret = generate_token_secret()

        lifetime = EXPIRY_OPTIONS[expires_in]
        record = PersonalAccessToken(
            user_id=actor.user_id,
            name=name,
            device_type=device_type,
            token_prefix=secret[:PREFIX_LENGTH],
            token_hash=token_context.hash(secret),
            expires_at=utcnow() + lifetime if lifetime is not None else None,
        )
        await self.store.add_token(record)
        await self.store.commit()
        logger.info("API token created user_id=%s token_id=%s expires_in=%s", actor.user_id, record.id, expires_in)
        return CreatedToken(record=record, secret=secret)

    async def _load(self, prefix: str) -> CachedTokenRecord | None:
        token = await self.store.get_token_by_prefix(prefix)
        if token is None:
            return None
        record = _to_record(token)
        self.cache.set(prefix, record)
        return record

    @staticmethod
    def _verify(record: CachedTokenRecord, secret: str) -> TokenStatus:
        if record.revoked_at is not None:
            return TokenStatus.REVOKED
        if record.expires_at is not None and record.expires_at <= utcnow():
            return TokenStatus.EXPIRED
        try:
            matches = token_context.verify(secret, record.token_hash)
        except (ValueError, TypeError):
            matches = False
        return TokenStatus.VALID if matches else TokenStatus.INVALID

    async def validate(self, secret: str | None) -> TokenValidation:
        if not looks_like_token(secret):
            return TokenValidation(TokenStatus.INVALID)
        prefix = secret[:PREFIX_LENGTH]

        record = self.cache.get(prefix)
        from_cache = record is not None
        if record is None:
            record = await self._load(prefix)
        if record is None:
            return TokenValidation(TokenStatus.INVALID)

        status = self._verify(record, secret)
        if status is not TokenStatus.VALID and from_cache:
            # The cached row may be stale (rotated or un-revoked); ask the store once.
            self.cache.invalidate(prefix)
            record = await self._load(prefix)
            if record is None:
                return TokenValidation(TokenStatus.INVALID)
            status = self._verify(record, secret)
        if status is not TokenStatus.VALID:
            logger.info("API token rejected prefix=%s status=%s", prefix, status.value)
            return TokenValidation(status, token_id=record.id)

        user = await self.store.get_user(record.user_id)
        if user is None or user.is_suspended:
            return TokenValidation(TokenStatus.INVALID, token_id=record.id)

        await self.store.touch_token(record.id, utcnow())
        await self.store.commit()
        return TokenValidation(TokenStatus.VALID, user_id=record.user_id, token_id=record.id)

    async def list_tokens(self, user_id: int, current_token_id: int | None = None) -> list[TokenSummary]:
        return [
            TokenSummary(
                id=token.id,
                name=token.name,
                device_type=token.device_type,
                token_prefix=token.token_prefix,
                created_at=token.created_at,
                expires_at=token.expires_at,
                last_used_at=token.last_used_at,
                is_current=token.id == current_token_id,
            )
            for token in await self.store.list_tokens(user_id)
        ]

    async def revoke_token(self, token_id: int, user_id: int) -> None:
        token = await self.store.get_token(token_id)
        if token is None or token.user_id != user_id or token.revoked_at is not None:
            raise NotFoundError("Token not found")
        token.revoked_at = utcnow()
        await self.store.commit()
        self.cache.invalidate(token.token_prefix)
        logger.info("API token revoked user_id=%s token_id=%s", user_id, token_id)

    async def revoke_all(self, user_id: int, *, commit: bool = True) -> int:
        prefixes = await self.store.active_token_prefixes(user_id)
        count = await self.store.revoke_user_tokens(user_id, utcnow())
        if commit:
            await self.store.commit()
        for prefix in prefixes:
            self.cache.invalidate(prefix)
        if count:
            logger.info("Revoked %d API tokens user_id=%s", count, user_id)
        return count

    async def cleanup_expired_tokens(self) -> int:
        now = utcnow()
        deleted = await self.store.delete_stale_tokens(now - EXPIRED_RETENTION, now - REVOKED_RETENTION)
        await self.store.commit()
        self.cache.clear()
        logger.info("Token cleanup deleted=%d", deleted)
        return deleted
