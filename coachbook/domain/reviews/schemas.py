from pydantic import BaseModel, ConfigDict, Field


class ReviewCreateRequest(BaseModel):
    booking_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str | None = Field(None, max_length=4000)
    is_public: bool = True


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    review_id: str
    booking_id: str
    reviewer_id: str
    target_user_id: str
    rating: int
    comment: str | None = None
    is_public: bool
