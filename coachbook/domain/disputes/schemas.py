from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class DisputeCreateRequest(BaseModel):
    booking_id: str
    reason: str = Field(..., min_length=1, max_length=4000)


class DisputeCloseRequest(BaseModel):
    resolution_notes: str | None = Field(None, max_length=4000)


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: str
    booking_id: str
    opened_by: str
    reason: str
    status: str
    resolution_notes: str | None = None
    admin_id: str | None = None
    opened_at: datetime
    resolved_at: datetime | None = None
