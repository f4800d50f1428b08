"""Audit logging for critical operations."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import Request


logger = logging.getLogger("wishkeep.audit")

_REDACTED_KEYS = {"password", "token", "access_token", "secret", "key", "authorization", "cookie"}


class AuditAction(str, Enum):
    """Audit action types."""
    # Authentication
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"
    REGISTER = "register"

    # Personal access tokens
    TOKEN_CREATE = "token_create"
    TOKEN_REVOKE = "token_revoke"

    # Lists
    LIST_UNLOCK = "list_unlock"
    LIST_UNLOCK_FAILED = "list_unlock_failed"

    # Reservations
    RESERVATION_CREATE = "reservation_create"
    RESERVATION_CANCEL = "reservation_cancel"
    RESERVATION_PURCHASED = "reservation_purchased"
    RESERVATION_UNPURCHASED = "reservation_unpurchased"
    RESERVATION_BULK = "reservation_bulk"

    # Admin
    ADMIN_BULK_USERS = "admin_bulk_users"

    # Rate limit
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


def _client_host(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[-1].strip()
    return request.client.host if request.client else None


def audit_log(
    action: AuditAction,
    request: Request | None = None,
    user_id: int | str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """
    Log an audit event.

    Args:
        action: The action being performed
        request: FastAPI request object (for IP, user agent, request id)
        user_id: ID of the user performing the action
        details: Additional details about the action
        success: Whether the action was successful
    """
    event: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "success": success,
    }

    if user_id is not None:
        event["user_id"] = str(user_id)

    if request is not None:
        event["ip"] = _client_host(request)
        event["user_agent"] = request.headers.get("User-Agent", "")[:200]
        event["request_id"] = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id", "")

    if details:
        event["details"] = {
            key: "***REDACTED***" if key in _REDACTED_KEYS else value
            for key, value in details.items()
        }

    if success:
        logger.info("AUDIT: %s", event)
    else:
        logger.warning("AUDIT: %s", event)


def audit_reservation_action(
    action: AuditAction,
    request: Request | None,
    user_id: int | None,
    reservation_id: int,
    wish_id: int | None = None,
) -> None:
    details: dict[str, Any] = {"reservation_id": reservation_id}
    if wish_id is not None:
        details["wish_id"] = wish_id
    audit_log(action, request=request, user_id=user_id, details=details)


def audit_bulk_action(
    request: Request | None,
    user_id: int,
    operation: str,
    succeeded: int,
    failed: int,
) -> None:
    audit_log(
        AuditAction.RESERVATION_BULK,
        request=request,
        user_id=user_id,
        details={"operation": operation, "succeeded": succeeded, "failed": failed},
        success=failed == 0,
    )


def audit_rate_limit_exceeded(request: Request, action: str, retry_after: int) -> None:
    audit_log(
        AuditAction.RATE_LIMIT_EXCEEDED,
        request=request,
        details={"action": action, "retry_after": retry_after},
        success=False,
    )
