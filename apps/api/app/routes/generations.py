"""Generation tracking routes."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from app.core.clock import Clock
from app.core.config import Settings, get_settings
from app.core.logging_safety import safe_log_identifier
from app.domain.policy import MonitoringPolicy, format_remaining
from app.errors import ApiError
from app.repositories.base import GenerationRequestRecord, TrackerStore
from app.routes.dependencies import (
    get_authenticated_principal,
    get_clock,
    get_launcher,
    get_matcher,
    get_policy,
    get_recovery,
    get_scheduler,
    get_store,
)
from app.schemas.auth import AuthPrincipal
from app.schemas.error import ErrorResponse, GenerationInProgressError, NoLeakNotFoundError
from app.schemas.generation import (
    CompletionArtifact,
    GenerationRequest,
    ManualCheckResponse,
    MonitoringSessionView,
    RecoveryOutcome,
    StartGenerationRequest,
    StartGenerationResponse,
    SweepResponse,
)
from app.services.launcher import JobLauncher
from app.services.matcher import CompletionMatcher
from app.services.recovery import RecoveryCoordinator
from app.services.scheduler import MonitoringScheduler

router = APIRouter(prefix="/generations", tags=["Generations"])
logger = logging.getLogger(__name__)


def _not_found() -> ApiError:
    return ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")


def _to_generation(record: GenerationRequestRecord, policy: MonitoringPolicy, clock: Clock) -> GenerationRequest:
    remaining = policy.remaining_seconds(record.start_time, clock.now())
    return GenerationRequest(
        correlation_id=record.correlation_id,
        status=record.status,
        script=record.script,
        start_time=record.start_time,
        last_check_time=record.last_check_time,
        created_at=record.created_at,
        remaining_seconds=remaining,
        remaining_display=format_remaining(remaining),
    )


def _server_callbacks(user_id: str) -> dict:
    """Callbacks for server-run sessions; clients read the outcome from the monitoring view."""
    safe_user_id = safe_log_identifier(user_id, prefix="uid")

    def on_found(artifact: CompletionArtifact) -> None:
        logger.info(
            "generation.found user_id=%s correlation_id=%s",
            safe_user_id,
            safe_log_identifier(artifact.correlation_id, prefix="cid"),
        )

    def on_debug(message: str) -> None:
        logger.debug("generation.status user_id=%s message=%s", safe_user_id, message)

    def on_expired() -> None:
        logger.info("generation.expired user_id=%s", safe_user_id)

    return {"on_found": on_found, "on_debug": on_debug, "on_expired": on_expired}


@router.post(
    "",
    response_model=StartGenerationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={401: {"model": ErrorResponse}, 409: {"model": GenerationInProgressError}},
)
async def start_generation(
    payload: StartGenerationRequest,
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    launcher: Annotated[JobLauncher, Depends(get_launcher)],
    policy: Annotated[MonitoringPolicy, Depends(get_policy)],
    clock: Annotated[Clock, Depends(get_clock)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> StartGenerationResponse:
    result = await launcher.start(
        user_id=principal.user_id,
        script=payload.script,
        metadata=payload.metadata,
        monitor=settings.auto_monitor,
        **_server_callbacks(principal.user_id),
    )
    return StartGenerationResponse(
        correlation_id=result.correlation_id,
        status=result.request.status,
        start_time=result.request.start_time,
        acknowledged=result.acknowledged,
        monitoring=result.monitoring,
        remaining_seconds=policy.remaining_seconds(result.request.start_time, clock.now()),
    )


@router.get(
    "/current",
    response_model=GenerationRequest,
    responses={401: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def get_current_generation(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    store: Annotated[TrackerStore, Depends(get_store)],
    policy: Annotated[MonitoringPolicy, Depends(get_policy)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> GenerationRequest:
    record = await store.get_processing_request(user_id=principal.user_id)
    if record is None:
        raise _not_found()
    return _to_generation(record, policy, clock)


@router.post(
    "/current/cancel",
    response_model=GenerationRequest,
    responses={401: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def cancel_current_generation(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    launcher: Annotated[JobLauncher, Depends(get_launcher)],
    policy: Annotated[MonitoringPolicy, Depends(get_policy)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> GenerationRequest:
    record = await launcher.cancel(user_id=principal.user_id)
    return _to_generation(record, policy, clock)


@router.post(
    "/recover",
    response_model=RecoveryOutcome,
    responses={401: {"model": ErrorResponse}},
)
async def recover_generation(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    recovery: Annotated[RecoveryCoordinator, Depends(get_recovery)],
    settings: Annotated[Settings, Depends(get_settings)],
    auto_resume: Annotated[bool | None, Query()] = None,
) -> RecoveryOutcome:
    return await recovery.recover(
        user_id=principal.user_id,
        auto_resume=settings.recovery_auto_resume if auto_resume is None else auto_resume,
        **_server_callbacks(principal.user_id),
    )


@router.post(
    "/check",
    response_model=ManualCheckResponse,
    responses={401: {"model": ErrorResponse}},
)
async def check_generation(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    scheduler: Annotated[MonitoringScheduler, Depends(get_scheduler)],
    correlation_id: Annotated[str | None, Query(min_length=1)] = None,
) -> ManualCheckResponse:
    artifact = await scheduler.manual_check(user_id=principal.user_id, correlation_id=correlation_id)
    return ManualCheckResponse(found=artifact is not None, artifact=artifact)


@router.post(
    "/sweep",
    response_model=SweepResponse,
    responses={401: {"model": ErrorResponse}},
)
async def sweep_expired_generations(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    matcher: Annotated[CompletionMatcher, Depends(get_matcher)],
) -> SweepResponse:
    return SweepResponse(reconciled=await matcher.sweep_expired(user_id=principal.user_id))


@router.post(
    "/cleanup",
    response_model=list[str],
    responses={401: {"model": ErrorResponse}},
)
async def cleanup_stale_generations(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    recovery: Annotated[RecoveryCoordinator, Depends(get_recovery)],
) -> list[str]:
    return await recovery.cleanup_stale(user_id=principal.user_id)


@router.get(
    "/monitoring",
    response_model=MonitoringSessionView,
    responses={401: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def get_monitoring_session(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    scheduler: Annotated[MonitoringScheduler, Depends(get_scheduler)],
) -> MonitoringSessionView:
    view = scheduler.view(principal.user_id)
    if view is None:
        raise _not_found()
    return view
