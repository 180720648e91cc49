"""Internal routes called by the job runner."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.core.logging_safety import safe_log_identifier
from app.repositories.base import TrackerStore
from app.core.clock import Clock
from app.routes.dependencies import get_clock, get_store, require_callback_secret
from app.schemas.error import ErrorResponse
from app.schemas.internal import CompletionDeliveryRequest, CompletionDeliveryResponse

router = APIRouter(prefix="/internal", tags=["Internal"])
logger = logging.getLogger(__name__)


@router.post(
    "/completions",
    response_model=CompletionDeliveryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={401: {"model": ErrorResponse}},
)
async def deliver_completion(
    payload: CompletionDeliveryRequest,
    __: Annotated[None, Depends(require_callback_secret)],
    store: Annotated[TrackerStore, Depends(get_store)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> CompletionDeliveryResponse:
    record = await store.insert_completion(
        user_id=payload.user_id,
        video_url=payload.video_url,
        title=payload.title,
        correlation_id=payload.correlation_id or None,
        script=payload.script,
        created_at=clock.now(),
    )
    logger.info(
        "completion.delivered user_id=%s correlation_id=%s has_script=%s",
        safe_log_identifier(record.user_id, prefix="uid"),
        safe_log_identifier(record.correlation_id, prefix="cid"),
        record.script is not None,
    )
    return CompletionDeliveryResponse(
        id=record.id,
        user_id=record.user_id,
        correlation_id=record.correlation_id,
        created_at=record.created_at,
    )
