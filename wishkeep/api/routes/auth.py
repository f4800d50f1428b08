import logging

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from wishkeep.api.deps import (
    ContainerDep,
    CurrentActorDep,
    ServicesDep,
    cookie_options,
    enforce_rate_limit,
    rate_limit_identifier,
)
from wishkeep.core.audit import AuditAction, audit_log
from wishkeep.core.config import Settings
from wishkeep.core.errors import ForbiddenError, UnauthorizedError
from wishkeep.core.security import create_access_token, get_password_hash, verify_password
from wishkeep.schemas.auth import LoginRequest, RegisterRequest, UserPublic
from wishkeep.schemas.tokens import TokenCreate, TokenCreated, TokenPublic


router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("wishkeep.auth")

DEFAULT_SESSION_DAYS = 30
ALLOWED_SESSION_DAYS = {7, 30}


def _resolve_cookie_max_age(remember_me: bool, session_days: int | None) -> int | None:
    if not remember_me:
        return None
    days = session_days if session_days in ALLOWED_SESSION_DAYS else DEFAULT_SESSION_DAYS
    return days * 24 * 60 * 60


def _set_auth_cookie(
    response: Response,
    token: str,
    settings: Settings,
    *,
    remember_me: bool = True,
    session_days: int | None = DEFAULT_SESSION_DAYS,
) -> None:
    response.set_cookie(
        "access_token",
        token,
        httponly=True,
        max_age=_resolve_cookie_max_age(remember_me, session_days),
        path="/",
        **cookie_options(settings),
    )


@router.post("/register", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: RegisterRequest,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
    response: Response,
) -> UserPublic:
    await enforce_rate_limit(request, container, "register", rate_limit_identifier(request))

    # Same status for a taken email so registration cannot reveal which accounts exist.
    if await services.store.get_user_by_email(payload.email) is not None:
        return JSONResponse(status_code=status.HTTP_201_CREATED, content={})

    user = await services.store.add_user(
        email=payload.email,
        name=payload.name,
        hashed_password=get_password_hash(payload.password),
    )
    await services.store.commit()

    _set_auth_cookie(
        response,
        create_access_token(str(user.id), container.settings),
        container.settings,
        remember_me=payload.remember_me,
        session_days=payload.session_days,
    )
    audit_log(AuditAction.REGISTER, request=request, user_id=user.id)
    return UserPublic.model_validate(user)


@router.post("/login", response_model=UserPublic)
async def login_user(
    payload: LoginRequest,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
    response: Response,
) -> UserPublic:
    await enforce_rate_limit(request, container, "login", rate_limit_identifier(request))

    request_id = getattr(request.state, "request_id", None)
    user = await services.store.get_user_by_email(payload.email)
    if user is None or not verify_password(payload.password, user.hashed_password):
        logger.info("Auth login failed id=%s", request_id)
        audit_log(AuditAction.LOGIN_FAILED, request=request, success=False)
        raise UnauthorizedError("Invalid email or password")
    if user.is_suspended:
        audit_log(AuditAction.LOGIN_FAILED, request=request, user_id=user.id, details={"reason": "suspended"}, success=False)
        raise ForbiddenError("Account suspended")

    _set_auth_cookie(
        response,
        create_access_token(str(user.id), container.settings),
        container.settings,
        remember_me=payload.remember_me,
        session_days=payload.session_days,
    )
    audit_log(AuditAction.LOGIN, request=request, user_id=user.id)
    logger.info("Auth login success id=%s user_id=%s", request_id, user.id)
    return UserPublic.model_validate(user)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout_user(response: Response, container: ContainerDep, request: Request) -> None:
    response.delete_cookie("access_token", path="/", **cookie_options(container.settings))
    audit_log(AuditAction.LOGOUT, request=request)


@router.get("/me", response_model=UserPublic)
async def read_me(actor: CurrentActorDep, services: ServicesDep) -> UserPublic:
    user = await services.store.get_user(actor.user_id)
    if user is None:
        raise UnauthorizedError("User not found")
    return UserPublic.model_validate(user)


@router.post("/tokens", response_model=TokenCreated, status_code=status.HTTP_201_CREATED)
async def create_api_token(
    payload: TokenCreate,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> TokenCreated:
    await enforce_rate_limit(request, container, "token-create", rate_limit_identifier(request, actor))
    created = await services.tokens.create_token(
        actor,
        payload.name,
        device_type=payload.device_type,
        expires_in=payload.expires_in,
    )
    audit_log(
        AuditAction.TOKEN_CREATE,
        request=request,
        user_id=actor.user_id,
        details={"token_id": created.record.id, "expires_in": payload.expires_in},
    )
    return TokenCreated(
        **TokenPublic.model_validate(created.record).model_dump(),
        token=created.secret,
    )


@router.get("/tokens", response_model=list[TokenPublic])
async def list_api_tokens(actor: CurrentActorDep, services: ServicesDep) -> list[TokenPublic]:
    summaries = await services.tokens.list_tokens(actor.user_id, current_token_id=actor.token_id)
    return [TokenPublic.model_validate(summary) for summary in summaries]


@router.delete("/tokens/{token_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_token(
    token_id: int,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> None:
    await enforce_rate_limit(request, container, "token-revoke", rate_limit_identifier(request, actor))
    await services.tokens.revoke_token(token_id, actor.user_id)
    audit_log(AuditAction.TOKEN_REVOKE, request=request, user_id=actor.user_id, details={"token_id": token_id})
