from datetime import date, datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt
from passlib.context import CryptContext

from wishkeep.core.config import Settings

_dev_logger = logging.getLogger("wishkeep.security")
_insecure_keys = {"CHANGE_ME", "your-secret-key-here-change-in-production", "secret", "jwt_secret", "changeme", ""}

ACCESS_TOKEN_TYPE = "access"


def ensure_secure_secret(settings: Settings) -> None:
    """Replace an insecure JWT secret with an ephemeral one locally, refuse elsewhere."""
    key = settings.jwt_secret_key
    if key and key not in _insecure_keys and len(key) >= 32:
        return
    if settings.is_local:
        settings.jwt_secret_key = secrets.token_urlsafe(64)
        _dev_logger.warning("JWT_SECRET_KEY was missing/insecure; generated ephemeral key for local dev")
        return
    raise RuntimeError("JWT_SECRET_KEY must be set to a secure value (32+ chars) in production")


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(
    subject: str,
    settings: Settings,
    expires_delta_minutes: int | None = None,
) -> str:
    expire_minutes = expires_delta_minutes or settings.access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=expire_minutes)
    to_encode: dict[str, Any] = {"sub": subject, "exp": expire, "type": ACCESS_TOKEN_TYPE, "jti": str(uuid4())}
    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str, settings: Settings) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None
    if payload.get("type") != ACCESS_TOKEN_TYPE:
        return None
    return payload


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today() -> date:
    return utcnow().date()


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
