"""FastAPI application entrypoint.

Run with ``uvicorn app.main:create_app --factory``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.adapters.trigger import HttpJobTrigger, JobTrigger, RecordingJobTrigger
from app.core.clock import Clock
from app.core.config import Settings, get_settings
from app.core.logging_config import configure_logging
from app.domain.policy import MonitoringPolicy
from app.errors import ApiError
from app.repositories.base import TrackerStore
from app.repositories.memory import InMemoryStore
from app.repositories.sql import SqlTrackerStore
from app.routes import completions_router, generations_router, internal_router
from app.schemas.error import ErrorResponse
from app.services.launcher import JobLauncher
from app.services.matcher import CompletionMatcher
from app.services.recovery import RecoveryCoordinator
from app.services.scheduler import MonitoringScheduler, SessionRegistry

logger = logging.getLogger(__name__)


def _build_store(settings: Settings) -> TrackerStore:
    if settings.store_backend == "sql":
        return SqlTrackerStore.from_url(settings.database_url)
    return InMemoryStore()


def _build_trigger(settings: Settings) -> JobTrigger:
    if settings.trigger_provider == "mock":
        return RecordingJobTrigger()
    return HttpJobTrigger(settings.trigger_url, timeout_seconds=settings.trigger_timeout_seconds)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    await app.state.scheduler.shutdown()
    logger.info("app.shutdown sessions_stopped=true")


def create_app(
    settings: Settings | None = None,
    *,
    store: TrackerStore | None = None,
    trigger: JobTrigger | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Reeltrack API", version="1.0.0", lifespan=_lifespan)
    app.state.clock = clock or Clock()
    app.state.policy = MonitoringPolicy.from_settings(settings)
    app.state.store = store if store is not None else _build_store(settings)
    app.state.trigger = trigger if trigger is not None else _build_trigger(settings)
    app.state.matcher = CompletionMatcher(app.state.store, app.state.policy, clock=app.state.clock)
    app.state.scheduler = MonitoringScheduler(
        store=app.state.store,
        matcher=app.state.matcher,
        policy=app.state.policy,
        registry=SessionRegistry(),
        clock=app.state.clock,
    )
    app.state.launcher = JobLauncher(
        store=app.state.store,
        trigger=app.state.trigger,
        policy=app.state.policy,
        scheduler=app.state.scheduler,
        clock=app.state.clock,
    )
    app.state.recovery = RecoveryCoordinator(
        store=app.state.store,
        matcher=app.state.matcher,
        policy=app.state.policy,
        scheduler=app.state.scheduler,
        clock=app.state.clock,
    )

    @app.exception_handler(ApiError)
    async def handle_api_error(_, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload.model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        payload = ErrorResponse(
            code="VALIDATION_ERROR",
            message="Request validation failed",
            details={"errors": jsonable_encoder(exc.errors())},
        )
        return JSONResponse(status_code=422, content=payload.model_dump(mode="json"))

    api_prefix = "/api/v1"
    app.include_router(generations_router, prefix=api_prefix)
    app.include_router(completions_router, prefix=api_prefix)
    app.include_router(internal_router, prefix=api_prefix)

    logger.info(
        "app.created store_backend=%s trigger_provider=%s auth_provider=%s",
        settings.store_backend,
        settings.trigger_provider,
        settings.auth_provider,
    )
    return app
