"""
Tests for the signed multi-list unlock cookie.
"""
import time

import pytest
from jose import jwt

from wishkeep.core.list_access import ListAccessCodec, password_version


SECRET = "unit-test-secret-key-with-32-chars!!"


@pytest.fixture
def codec() -> ListAccessCodec:
    return ListAccessCodec(SECRET, ttl_seconds=3600)


class TestGrant:
    def test_cookie_for_one_list_does_not_unlock_another(self, codec):
        cookie = codec.grant(None, 1, "hash-a")
        assert codec.has_valid_access(cookie, 1, "hash-a")
        assert not codec.has_valid_access(cookie, 2, "hash-b")

    def test_one_cookie_holds_many_lists(self, codec):
        cookie = codec.grant(None, 1, "hash-a")
        cookie = codec.grant(cookie, 2, "hash-b")
        assert codec.has_valid_access(cookie, 1, "hash-a")
        assert codec.has_valid_access(cookie, 2, "hash-b")

    def test_password_change_revokes_only_that_list(self, codec):
        cookie = codec.grant(codec.grant(None, 1, "hash-a"), 2, "hash-b")
        assert not codec.has_valid_access(cookie, 1, "hash-a-rotated")
        assert codec.has_valid_access(cookie, 2, "hash-b")

    def test_missing_cookie_grants_nothing(self, codec):
        assert not codec.has_valid_access(None, 1, "hash-a")
        assert not codec.has_valid_access("", 1, "hash-a")


class TestTrust:
    def test_tampered_cookie_is_ignored(self, codec):
        cookie = codec.grant(None, 1, "hash-a")
        tampered = cookie[:-4] + ("AAAA" if not cookie.endswith("AAAA") else "BBBB")
        assert codec.parse(tampered) is None
        assert not codec.has_valid_access(tampered, 1, "hash-a")

    def test_cookie_from_another_secret_is_ignored(self, codec):
        other = ListAccessCodec("another-secret-key-with-32-chars!!!")
        assert not codec.has_valid_access(other.grant(None, 1, "hash-a"), 1, "hash-a")

    def test_session_jwt_is_not_an_unlock_cookie(self, codec):
        forged = jwt.encode({"typ": "access", "v": 1, "lists": {}}, SECRET, algorithm="HS256")
        assert codec.parse(forged) is None

    def test_requires_secret(self):
        with pytest.raises(ValueError):
            ListAccessCodec("")


class TestExpiry:
    def test_expired_entry_is_rejected_and_pruned(self):
        codec = ListAccessCodec(SECRET, ttl_seconds=-10)
        cookie = codec.grant(None, 1, "hash-a")
        assert not codec.has_valid_access(cookie, 1, "hash-a")

        fresh = ListAccessCodec(SECRET, ttl_seconds=3600)
        refreshed = fresh.grant(cookie, 2, "hash-b")
        assert set(fresh.parse(refreshed)) == {"2"}

    def test_entry_carries_password_version(self, codec):
        cookie = codec.grant(None, 7, "hash-a")
        entry = codec.parse(cookie)["7"]
        assert entry["pwv"] == password_version("hash-a")
        assert entry["exp"] > int(time.time())
