from fastapi import APIRouter, Request, Response, status

from wishkeep.api.deps import (
    ContainerDep,
    CurrentActorDep,
    OptionalActorDep,
    ServiceContainer,
    ServicesDep,
    cookie_options,
    enforce_rate_limit,
    list_access_from_request,
    rate_limit_identifier,
)
from wishkeep.core.audit import AuditAction, audit_log
from wishkeep.core.errors import ForbiddenError
from wishkeep.schemas.lists import (
    ListAdminAdd,
    ListPasswordUpdate,
    ListShareRequest,
    UnlockRequest,
    UnlockResponse,
    WishPositionOut,
    WishPositionUpdate,
)
from wishkeep.schemas.reservation import ReservationStatusOut
from wishkeep.services.lists import UnlockResult


router = APIRouter(prefix="/lists", tags=["lists"])


def _set_list_access_cookie(response: Response, container: ServiceContainer, result: UnlockResult) -> None:
    response.set_cookie(
        container.settings.list_access_cookie_name,
        result.cookie,
        httponly=True,
        max_age=result.max_age,
        path="/",
        **cookie_options(container.settings),
    )


@router.get("/{list_id}/reservation-status", response_model=ReservationStatusOut)
async def reservation_status(
    list_id: int,
    actor: OptionalActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> ReservationStatusOut:
    await enforce_rate_limit(request, container, "reservation-status", rate_limit_identifier(request, actor))
    wishes = await services.reservations.list_reservation_status(
        list_id,
        actor.user_id if actor else None,
        list_access_from_request(request, container),
    )
    return ReservationStatusOut(wishes=wishes)


async def _unlock(
    request: Request,
    response: Response,
    container: ServiceContainer,
    unlock,
    identifier_suffix: str,
) -> UnlockResponse:
    identifier = f"{rate_limit_identifier(request)}:{identifier_suffix}"
    await enforce_rate_limit(request, container, "list-password", identifier)
    try:
        result = await unlock(request.cookies.get(container.settings.list_access_cookie_name))
    except ForbiddenError:
        audit_log(AuditAction.LIST_UNLOCK_FAILED, request=request, details={"list": identifier_suffix}, success=False)
        raise
    _set_list_access_cookie(response, container, result)
    audit_log(AuditAction.LIST_UNLOCK, request=request, details={"list_id": result.list_id})
    return UnlockResponse(list_id=result.list_id)


@router.post("/{list_id}/unlock", response_model=UnlockResponse)
async def unlock_list(
    list_id: int,
    payload: UnlockRequest,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
    response: Response,
) -> UnlockResponse:
    async def _do(cookie: str | None) -> UnlockResult:
        return await services.lists.unlock(list_id, payload.password, cookie)

    return await _unlock(request, response, container, _do, f"list:{list_id}")


@router.post("/public/{share_token}/unlock", response_model=UnlockResponse)
async def unlock_shared_list(
    share_token: str,
    payload: UnlockRequest,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
    response: Response,
) -> UnlockResponse:
    async def _do(cookie: str | None) -> UnlockResult:
        return await services.lists.unlock_by_share_token(share_token, payload.password, cookie)

    return await _unlock(request, response, container, _do, f"share:{share_token[:16]}")


@router.put("/{list_id}/password", status_code=status.HTTP_204_NO_CONTENT)
async def set_list_password(
    list_id: int,
    payload: ListPasswordUpdate,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> None:
    await enforce_rate_limit(request, container, "list-manage", rate_limit_identifier(request, actor))
    await services.lists.set_password(list_id, actor.user_id, payload.password)


@router.patch("/{list_id}/wishes/{wish_id}/position", response_model=WishPositionOut)
async def move_wish(
    list_id: int,
    wish_id: int,
    payload: WishPositionUpdate,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> WishPositionOut:
    await enforce_rate_limit(request, container, "list-manage", rate_limit_identifier(request, actor))
    entry = await services.lists.reorder_wish(
        list_id,
        wish_id,
        payload.sort_order,
        payload.expected_updated_at,
        actor.user_id,
    )
    return WishPositionOut.model_validate(entry)


@router.post("/{list_id}/admins", status_code=status.HTTP_204_NO_CONTENT)
async def add_list_admin(
    list_id: int,
    payload: ListAdminAdd,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> None:
    await enforce_rate_limit(request, container, "list-manage", rate_limit_identifier(request, actor))
    await services.lists.add_admin(list_id, payload.user_id, actor.user_id)


@router.delete("/{list_id}/admins/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_list_admin(
    list_id: int,
    user_id: int,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> None:
    await enforce_rate_limit(request, container, "list-manage", rate_limit_identifier(request, actor))
    await services.lists.remove_admin(list_id, user_id, actor.user_id)


@router.post("/{list_id}/groups", status_code=status.HTTP_204_NO_CONTENT)
async def share_list_with_group(
    list_id: int,
    payload: ListShareRequest,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> None:
    await enforce_rate_limit(request, container, "list-manage", rate_limit_identifier(request, actor))
    await services.lists.share_with_group(list_id, payload.group_id, actor.user_id)
