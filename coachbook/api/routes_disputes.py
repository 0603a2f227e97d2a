from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.api.deps import get_current_user, require_admin
from coachbook.domain.disputes import schemas as dispute_schemas
from coachbook.domain.disputes import service as dispute_service
from coachbook.domain.users.db_models import User
from coachbook.infra.db import get_db_session

router = APIRouter()


@router.post(
    "/v1/disputes",
    response_model=dispute_schemas.DisputeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def open_dispute(
    payload: dispute_schemas.DisputeCreateRequest,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> dispute_schemas.DisputeResponse:
    dispute = await dispute_service.open_dispute(session, user, payload.booking_id, payload.reason)
    return dispute_schemas.DisputeResponse.model_validate(dispute)


@router.post("/v1/disputes/{dispute_id}/review", response_model=dispute_schemas.DisputeResponse)
async def review_dispute(
    dispute_id: str,
    session: AsyncSession = Depends(get_db_session),
    admin: User = Depends(require_admin),
) -> dispute_schemas.DisputeResponse:
    dispute = await dispute_service.mark_under_review(session, admin, dispute_id)
    return dispute_schemas.DisputeResponse.model_validate(dispute)


@router.post("/v1/disputes/{dispute_id}/resolve", response_model=dispute_schemas.DisputeResponse)
async def resolve_dispute(
    dispute_id: str,
    payload: dispute_schemas.DisputeCloseRequest,
    session: AsyncSession = Depends(get_db_session),
    admin: User = Depends(require_admin),
) -> dispute_schemas.DisputeResponse:
    dispute = await dispute_service.resolve_dispute(session, admin, dispute_id, payload.resolution_notes)
    return dispute_schemas.DisputeResponse.model_validate(dispute)


@router.post("/v1/disputes/{dispute_id}/reject", response_model=dispute_schemas.DisputeResponse)
async def reject_dispute(
    dispute_id: str,
    payload: dispute_schemas.DisputeCloseRequest,
    session: AsyncSession = Depends(get_db_session),
    admin: User = Depends(require_admin),
) -> dispute_schemas.DisputeResponse:
    dispute = await dispute_service.reject_dispute(session, admin, dispute_id, payload.resolution_notes)
    return dispute_schemas.DisputeResponse.model_validate(dispute)
