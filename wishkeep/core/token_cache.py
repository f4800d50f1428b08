import time
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class CachedTokenRecord:
    """Snapshot of a personal access token row, enough to validate without the DB."""

    id: int
    user_id: int
    token_hash: str
    expires_at: datetime | None
    revoked_at: datetime | None


class TokenLookupCache:
    """Small in-process TTL cache of prefix -> token record."""

    def __init__(self, ttl_seconds: int = 60, max_items: int = 1000) -> None:
        self._ttl = max(1, int(ttl_seconds))
        self._max_items = max_items
        self._items: dict[str, tuple[float, CachedTokenRecord]] = {}

    def get(self, prefix: str) -> CachedTokenRecord | None:
        now = time.monotonic()
        entry = self._items.get(prefix)
        if not entry:
            return None
        expires_at, record = entry
        if expires_at <= now:
            self._items.pop(prefix, None)
            return None
        return record

    def set(self, prefix: str, record: CachedTokenRecord) -> None:
        now = time.monotonic()
        self._items[prefix] = (now + self._ttl, record)
        if len(self._items) <= self._max_items:
            return
        expired = [k for k, (exp, _) in self._items.items() if exp <= now]
        for k in expired:
            self._items.pop(k, None)
        if len(self._items) <= self._max_items:
            return
        overflow = len(self._items) - self._max_items
        for k in list(self._items.keys())[:overflow]:
            self._items.pop(k, None)

    def invalidate(self, prefix: str) -> None:
        self._items.pop(prefix, None)

    def clear(self) -> None:
        self._items.clear()
