"""
Tests for the security helpers: password hashing, session JWTs, secret checks.
"""
import pytest
from datetime import datetime, timedelta, timezone

from jose import jwt

from wishkeep.core.config import Settings
from wishkeep.core.security import (
    as_utc,
    create_access_token,
    decode_access_token,
    ensure_secure_secret,
    get_password_hash,
    sha256_hex,
    verify_password,
)


SECRET = "unit-test-secret-key-with-32-chars!!"


def _settings(**overrides) -> Settings:
    values = {"jwt_secret_key": SECRET, "environment": "local"}
    values.update(overrides)
    return Settings(**values)


class TestPasswordHashing:
    """Password hashing."""

    def test_password_hash_creates_different_hashes(self):
        """Same password, different salts."""
        password = "MySecurePassword123!"
        hash1 = get_password_hash(password)
        hash2 = get_password_hash(password)

        assert hash1 != hash2
        assert hash1 != password

    def test_verify_password(self):
        password = "MySecurePassword123!"
        hashed = get_password_hash(password)

        assert verify_password(password, hashed) is True
        assert verify_password("WrongPassword", hashed) is False
        assert verify_password("", hashed) is False
        assert verify_password(password.upper(), hashed) is False

    def test_verify_against_missing_or_garbage_hash(self):
        assert verify_password("anything", "") is False
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_password_hash_bcrypt_format(self):
        hashed = get_password_hash("test123")
        # bcrypt hashes start with $2b$
        assert hashed.startswith("$2b$")


class TestAccessToken:
    """Session JWTs."""

    def test_create_access_token_contains_subject(self):
        settings = _settings()
        token = create_access_token("42", settings)
        payload = decode_access_token(token, settings)

        assert payload is not None
        assert payload["sub"] == "42"
        assert payload["type"] == "access"

    def test_custom_expiry(self):
        settings = _settings()
        token = create_access_token("42", settings, expires_delta_minutes=5)
        payload = decode_access_token(token, settings)
        expires = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        assert expires - datetime.now(timezone.utc) <= timedelta(minutes=5, seconds=5)

    def test_tokens_for_same_subject_differ(self):
        settings = _settings()
        assert create_access_token("1", settings) != create_access_token("1", settings)

    def test_decode_invalid_token_returns_none(self):
        settings = _settings()
        assert decode_access_token("invalid.token.here", settings) is None
        assert decode_access_token("", settings) is None

    def test_token_signed_with_other_secret_is_rejected(self):
        token = create_access_token("42", _settings(jwt_secret_key="another-secret-key-with-32-chars!!!"))
        assert decode_access_token(token, _settings()) is None

    def test_expired_token_is_rejected(self):
        expired = jwt.encode(
            {"sub": "42", "type": "access", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            SECRET,
            algorithm="HS256",
        )
        assert decode_access_token(expired, _settings()) is None

    def test_wrong_token_type_is_rejected(self):
        other = jwt.encode(
            {"sub": "42", "type": "list_access", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            SECRET,
            algorithm="HS256",
        )
        assert decode_access_token(other, _settings()) is None


class TestSecretCheck:
    def test_secure_secret_is_kept(self):
        settings = _settings()
        ensure_secure_secret(settings)
        assert settings.jwt_secret_key == SECRET

    def test_insecure_secret_replaced_locally(self):
        settings = _settings(jwt_secret_key="CHANGE_ME")
        ensure_secure_secret(settings)
        assert settings.jwt_secret_key != "CHANGE_ME"
        assert len(settings.jwt_secret_key) >= 32

    def test_insecure_secret_refused_in_production(self):
        settings = _settings(jwt_secret_key="short", environment="production")
        with pytest.raises(RuntimeError):
            ensure_secure_secret(settings)


class TestHelpers:
    def test_as_utc_treats_naive_as_utc(self):
        naive = datetime(2024, 5, 1, 12, 0)
        assert as_utc(naive) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def test_as_utc_converts_other_zones(self):
        plus_two = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_utc(plus_two) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert as_utc(None) is None

    def test_sha256_hex_is_stable(self):
        assert sha256_hex("abc") == sha256_hex("abc")
        assert len(sha256_hex("abc")) == 64
