from fastapi import APIRouter, Request

from wishkeep.api.deps import ContainerDep, CurrentActorDep, ServicesDep, enforce_rate_limit, rate_limit_identifier
from wishkeep.core.audit import AuditAction, audit_log
from wishkeep.schemas.lists import AdminBulkUsersRequest
from wishkeep.schemas.reservation import BulkResultPublic


router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/users/bulk", response_model=BulkResultPublic)
async def bulk_update_users(
    payload: AdminBulkUsersRequest,
    actor: CurrentActorDep,
    services: ServicesDep,
    container: ContainerDep,
    request: Request,
) -> BulkResultPublic:
    await enforce_rate_limit(request, container, "admin-bulk", rate_limit_identifier(request, actor))
    result = await services.admin.bulk_update_users(actor.user_id, payload.action, payload.user_ids)
    audit_log(
        AuditAction.ADMIN_BULK_USERS,
        request=request,
        user_id=actor.user_id,
        details={
            "operation": payload.action,
            "succeeded": len(result.succeeded),
            "failed": len(result.failed),
        },
    )
    return BulkResultPublic.model_validate(result)
