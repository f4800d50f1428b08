from dataclasses import dataclass
from typing import Annotated, TypedDict
import logging

from fastapi import Cookie, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from wishkeep.core.audit import audit_rate_limit_exceeded
from wishkeep.core.config import Settings
from wishkeep.core.errors import RateLimitedError, UnauthorizedError
from wishkeep.core.list_access import ListAccessCodec
from wishkeep.core.mailer import Mailer
from wishkeep.core.rate_limit import RateLimiter, build_rate_limiter, client_identifier
from wishkeep.core.token_cache import TokenLookupCache
from wishkeep.db.session import get_db
from wishkeep.db.store import Store
from wishkeep.services.admin import AdminService
from wishkeep.services.identity import Actor, IdentityResolver
from wishkeep.services.lists import ListService
from wishkeep.services.permissions import ListAccess, PermissionEngine
from wishkeep.services.reservations import ReservationService
from wishkeep.services.tokens import TokenService


logger = logging.getLogger("wishkeep.auth")


@dataclass
class ServiceContainer:
    """Process-wide collaborators, built once per app by ``create_app``."""

    settings: Settings
    rate_limiter: RateLimiter
    token_cache: TokenLookupCache
    list_access: ListAccessCodec
    mailer: Mailer

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContainer":
        return cls(
            settings=settings,
            rate_limiter=build_rate_limiter(settings),
            token_cache=TokenLookupCache(
                ttl_seconds=settings.token_cache_ttl_seconds,
                max_items=settings.token_cache_max_items,
            ),
            list_access=ListAccessCodec.from_settings(settings),
            mailer=Mailer(settings),
        )


@dataclass
class Services:
    """Request-scoped services sharing one DB session."""

    container: ServiceContainer
    store: Store
    permissions: PermissionEngine
    tokens: TokenService
    identity: IdentityResolver
    reservations: ReservationService
    lists: ListService
    admin: AdminService

    @classmethod
    def build(cls, container: ServiceContainer, session: AsyncSession) -> "Services":
        store = Store(session)
        permissions = PermissionEngine(store, container.list_access)
        tokens = TokenService(store, container.token_cache)
        return cls(
            container=container,
            store=store,
            permissions=permissions,
            tokens=tokens,
            identity=IdentityResolver(store, container.settings, tokens),
            reservations=ReservationService(store, permissions, container.settings, container.mailer),
            lists=ListService(store, permissions, container.list_access),
            admin=AdminService(store, tokens, max_ids=container.settings.bulk_max_ids),
        )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
ContainerDep = Annotated[ServiceContainer, Depends(get_container)]


async def get_services(db: DbSessionDep, container: ContainerDep) -> Services:
    return Services.build(container, db)


ServicesDep = Annotated[Services, Depends(get_services)]


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return None


async def get_optional_actor(
    request: Request,
    services: ServicesDep,
    access_token: str | None = Cookie(default=None, alias="access_token"),
) -> Actor | None:
    return await services.identity.resolve(access_token, _bearer_token(request))


OptionalActorDep = Annotated[Actor | None, Depends(get_optional_actor)]


async def get_current_actor(request: Request, actor: OptionalActorDep) -> Actor:
    if actor is None:
        logger.info(
            "Auth token missing path=%s ip=%s",
            request.url.path,
            request.client.host if request.client else None,
        )
        raise UnauthorizedError()
    return actor


CurrentActorDep = Annotated[Actor, Depends(get_current_actor)]


def list_access_from_request(request: Request, container: ServiceContainer, password: str | None = None) -> ListAccess:
    cookie = request.cookies.get(container.settings.list_access_cookie_name)
    return ListAccess(password=password, cookie=cookie)


def rate_limit_identifier(request: Request, actor: Actor | None = None) -> str:
    if actor is not None:
        return f"user:{actor.user_id}"
    return client_identifier(request.headers, request.client.host if request.client else None)


async def enforce_rate_limit(request: Request, container: ServiceContainer, action: str, identifier: str) -> None:
    result = await container.rate_limiter.check(action, identifier)
    if result.allowed:
        return
    retry_after = result.retry_after_seconds or container.rate_limiter.policy_for(action).window_seconds
    audit_rate_limit_exceeded(request, action, retry_after)
    raise RateLimitedError(retry_after)


class CookieOptions(TypedDict, total=False):
    samesite: str
    secure: bool


def cookie_options(settings: Settings) -> CookieOptions:
    """Lax + plain HTTP locally; cross-site capable everywhere else."""
    if settings.is_local:
        return {"samesite": "lax", "secure": False}
    return {"samesite": "none", "secure": True}
