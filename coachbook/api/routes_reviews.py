from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.api.deps import get_current_user
from coachbook.domain.reviews import schemas as review_schemas
from coachbook.domain.reviews import service as review_service
from coachbook.domain.users.db_models import User
from coachbook.infra.db import get_db_session

router = APIRouter()


@router.post(
    "/v1/reviews",
    response_model=review_schemas.ReviewResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_review(
    payload: review_schemas.ReviewCreateRequest,
    session: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> review_schemas.ReviewResponse:
    review = await review_service.create_review(
        session,
        user,
        payload.booking_id,
        payload.rating,
        payload.comment,
        is_public=payload.is_public,
    )
    return review_schemas.ReviewResponse.model_validate(review)
