import logging

from fastapi import APIRouter, Request, status

from wishkeep.api.deps import (
    ContainerDep,
    CurrentActorDep,
    OptionalActorDep,
    ServicesDep,
    enforce_rate_limit,
    list_access_from_request,
    rate_limit_identifier,
)
from wishkeep.core.audit import AuditAction, audit_bulk_action, audit_reservation_action
from wishkeep.schemas.reservation import (
    BulkReservationRequest,
    BulkResultPublic,
    PublicReservationCreate,
    PurchaseRequest,
    ReservationCreate,
    ReservationCreated,
    ReservationPublic,
    TokenLookupRequest,
)
from wishkeep.services.reservations import BulkResult, Claimant


router = APIRouter(tags=["reservations"])
logger = logging.getLogger("wishkeep.reservations")


def _bulk_out(result: BulkResult) -> BulkResultPublic:
    return BulkResultPublic.model_validate(result)


@router.post(
    "/wishes/{wish_id}/reservation",
    response_model=ReservationCreated,
    status_code=status.HTTP_201_CREATED,
)
async def reserve_wish(
    wish_id: int,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
    payload: ReservationCreate | None = None,
) -> ReservationCreated:
    await enforce_rate_limit(request, container, "reservation-create", rate_limit_identifier(request, actor))
    access = list_access_from_request(request, container, payload.password if payload else None)
    result = await services.reservations.claim(wish_id, actor.user_id, access)
    audit_reservation_action(AuditAction.RESERVATION_CREATE, request, actor.user_id, result.reservation.id, wish_id)
    return ReservationCreated.model_validate(result.reservation)


@router.post(
    "/lists/public/{share_token}/reservations",
    response_model=ReservationCreated,
    status_code=status.HTTP_201_CREATED,
)
async def reserve_via_share_link(
    share_token: str,
    payload: PublicReservationCreate,
    actor: OptionalActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> ReservationCreated:
    await enforce_rate_limit(request, container, "public-reservation", rate_limit_identifier(request, actor))
    result = await services.reservations.claim_via_share_token(
        share_token,
        payload.wish_id,
        actor_id=actor.user_id if actor else None,
        reserver_name=payload.reserver_name,
        reserver_email=payload.reserver_email,
        access=list_access_from_request(request, container, payload.password),
    )
    audit_reservation_action(
        AuditAction.RESERVATION_CREATE,
        request,
        actor.user_id if actor else None,
        result.reservation.id,
        payload.wish_id,
    )
    out = ReservationCreated.model_validate(result.reservation)
    out.access_token = result.access_token
    return out


@router.get("/reservations/mine", response_model=list[ReservationPublic])
async def my_reservations(actor: CurrentActorDep, services: ServicesDep) -> list[ReservationPublic]:
    reservations = await services.reservations.my_reservations(actor.user_id)
    return [ReservationPublic.model_validate(r) for r in reservations]


@router.post("/reservations/bulk", response_model=BulkResultPublic)
async def bulk_reservations(
    payload: BulkReservationRequest,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> BulkResultPublic:
    await enforce_rate_limit(request, container, "bulk-operation", rate_limit_identifier(request, actor))
    reservations = services.reservations
    if payload.action == "cancel":
        result = await reservations.bulk_cancel(payload.reservation_ids, actor.user_id)
    elif payload.action == "markPurchased":
        result = await reservations.bulk_mark_purchased(payload.reservation_ids, actor.user_id, payload.purchased_date)
    else:
        result = await reservations.bulk_unmark_purchased(payload.reservation_ids, actor.user_id)
    audit_bulk_action(request, actor.user_id, payload.action, len(result.succeeded), len(result.failed))
    return _bulk_out(result)


@router.post("/reservations/access", response_model=list[ReservationPublic])
async def reservations_by_tokens(
    payload: TokenLookupRequest,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> list[ReservationPublic]:
    await enforce_rate_limit(request, container, "public-list-access", rate_limit_identifier(request))
    reservations = await services.reservations.reservations_by_tokens(payload.tokens)
    return [ReservationPublic.model_validate(r) for r in reservations]


@router.get("/reservations/access/{token}", response_model=ReservationPublic)
async def reservation_by_token(
    token: str,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> ReservationPublic:
    await enforce_rate_limit(request, container, "public-list-access", rate_limit_identifier(request))
    return ReservationPublic.model_validate(await services.reservations.get_by_token(token))


@router.delete("/reservations/access/{token}", status_code=status.HTTP_204_NO_CONTENT)
async def release_by_token(
    token: str,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> None:
    await enforce_rate_limit(request, container, "reservation-manage", rate_limit_identifier(request))
    reservation = await services.reservations.release_by_token(token)
    audit_reservation_action(AuditAction.RESERVATION_CANCEL, request, None, reservation.id)


@router.delete("/reservations/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def release_reservation(
    reservation_id: int,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> None:
    await enforce_rate_limit(request, container, "reservation-manage", rate_limit_identifier(request, actor))
    await services.reservations.release(reservation_id, Claimant(user_id=actor.user_id))
    audit_reservation_action(AuditAction.RESERVATION_CANCEL, request, actor.user_id, reservation_id)


@router.post("/reservations/{reservation_id}/purchase", response_model=ReservationPublic)
async def mark_purchased(
    reservation_id: int,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
    payload: PurchaseRequest | None = None,
) -> ReservationPublic:
    await enforce_rate_limit(request, container, "reservation-manage", rate_limit_identifier(request, actor))
    reservation = await services.reservations.mark_purchased(
        reservation_id,
        Claimant(user_id=actor.user_id),
        payload.purchased_date if payload else None,
    )
    audit_reservation_action(AuditAction.RESERVATION_PURCHASED, request, actor.user_id, reservation_id)
    return ReservationPublic.model_validate(reservation)


@router.delete("/reservations/{reservation_id}/purchase", response_model=ReservationPublic)
async def unmark_purchased(
    reservation_id: int,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> ReservationPublic:
    await enforce_rate_limit(request, container, "reservation-manage", rate_limit_identifier(request, actor))
    reservation = await services.reservations.unmark_purchased(reservation_id, Claimant(user_id=actor.user_id))
    audit_reservation_action(AuditAction.RESERVATION_UNPURCHASED, request, actor.user_id, reservation_id)
    return ReservationPublic.model_validate(reservation)


@router.post("/reservations/access/{token}/purchase", response_model=ReservationPublic)
async def mark_purchased_by_token(
    token: str,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
    payload: PurchaseRequest | None = None,
) -> ReservationPublic:
    await enforce_rate_limit(request, container, "reservation-manage", rate_limit_identifier(request))
    reservation = await services.reservations.mark_purchased_by_token(
        token,
        payload.purchased_date if payload else None,
    )
    audit_reservation_action(AuditAction.RESERVATION_PURCHASED, request, None, reservation.id)
    return ReservationPublic.model_validate(reservation)


@router.delete("/reservations/access/{token}/purchase", response_model=ReservationPublic)
async def unmark_purchased_by_token(
    token: str,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> ReservationPublic:
    await enforce_rate_limit(request, container, "reservation-manage", rate_limit_identifier(request))
    reservation = await services.reservations.unmark_purchased_by_token(token)
    audit_reservation_action(AuditAction.RESERVATION_UNPURCHASED, request, None, reservation.id)
    return ReservationPublic.model_validate(reservation)
