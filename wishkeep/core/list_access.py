"""Signed cookie remembering which password-protected lists a browser unlocked.

One cookie covers many lists. Each entry pins a fingerprint of the list's
password hash at grant time, so changing a list's password drops access to
that list only.
"""

import hashlib
import logging
import time
from typing import Any

from jose import JWTError, jwt

from wishkeep.core.config import Settings


logger = logging.getLogger("wishkeep.list_access")

COOKIE_VERSION = 1
TOKEN_TYPE = "list_access"
NO_PASSWORD_VERSION = "none"


def password_version(password_hash: str | None) -> str:
    if not password_hash:
        return NO_PASSWORD_VERSION
    return hashlib.sha256(password_hash.encode("utf-8")).hexdigest()[:16]


class ListAccessCodec:
    def __init__(self, secret: str, *, ttl_seconds: int = 86400, algorithm: str = "HS256") -> None:
        if not secret:
            raise ValueError("List access codec needs a signing secret")
        self._key = hashlib.sha256(f"{secret}_list_access".encode("utf-8")).hexdigest()
        self._ttl = ttl_seconds
        self._algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: Settings) -> "ListAccessCodec":
        return cls(
            settings.jwt_secret_key,
            ttl_seconds=settings.list_access_ttl_seconds,
            algorithm=settings.jwt_algorithm,
        )

    def parse(self, cookie_value: str | None) -> dict[str, dict[str, Any]] | None:
        """Return the verified ``lists`` mapping, or None for anything untrusted."""
        if not cookie_value:
            return None
        try:
            payload = jwt.decode(
                cookie_value,
                self._key,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError:
            logger.warning("List access cookie failed signature check")
            return None
        if payload.get("typ") != TOKEN_TYPE or payload.get("v") != COOKIE_VERSION:
            logger.debug("List access cookie has wrong type or version")
            return None
        lists = payload.get("lists")
        if not isinstance(lists, dict):
            return None
        return lists

    def has_valid_access(
        self,
        cookie_value: str | None,
        list_id: int,
        current_password_hash: str | None,
    ) -> bool:
        lists = self.parse(cookie_value)
        if not lists:
            return False
        entry = lists.get(str(list_id))
        if not isinstance(entry, dict):
            return False
        try:
            expires_at = int(entry.get("exp", 0))
        except (TypeError, ValueError):
            return False
        if expires_at < int(time.time()):
            logger.debug("List access expired list_id=%s", list_id)
            return False
        if entry.get("pwv") != password_version(current_password_hash):
            logger.debug("List access password version mismatch list_id=%s", list_id)
            return False
        return True

    def grant(self, existing_cookie: str | None, list_id: int, password_hash: str | None) -> str:
        """Add (or refresh) access to one list, pruning expired entries."""
        now = int(time.time())
        lists = self.parse(existing_cookie) or {}
        kept: dict[str, dict[str, Any]] = {}
        for key, entry in lists.items():
            if isinstance(entry, dict) and int(entry.get("exp", 0)) >= now:
                kept[key] = entry
        kept[str(list_id)] = {"exp": now + self._ttl, "pwv": password_version(password_hash)}
        payload = {"typ": TOKEN_TYPE, "v": COOKIE_VERSION, "lists": kept}
        return jwt.encode(payload, self._key, algorithm=self._algorithm)

    @property
    def ttl_seconds(self) -> int:
        return self._ttl
