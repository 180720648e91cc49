"""Internal completion-delivery schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class CompletionDeliveryRequest(BaseModel):
    """Completion record written by the external job runner.

    ``correlation_id`` and ``script`` are optional because the runner does not
    reliably echo them back.
    """

    user_id: str = Field(min_length=1)
    video_url: str = Field(min_length=1)
    title: str | None = None
    correlation_id: str | None = None
    script: str | None = None


class CompletionDeliveryResponse(BaseModel):
    id: str
    user_id: str
    correlation_id: str | None = None
    created_at: datetime
