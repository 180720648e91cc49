"""Generation launch and cancel."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
import logging
import secrets
import string
from typing import Any
import weakref

from app.adapters.trigger import JobTrigger, JobTriggerError, TriggerPayload
from app.core.clock import Clock
from app.core.logging_safety import safe_log_identifier, safe_script_fingerprint
from app.domain.policy import MonitoringPolicy
from app.errors import ApiError
from app.repositories.base import GenerationRequestRecord, TrackerStore
from app.schemas.generation import GenerationStatus
from app.services.scheduler import DebugCallback, ExpiredCallback, FoundCallback, MonitoringScheduler

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH = 6


def new_correlation_id(now: datetime) -> str:
    """Millisecond timestamp plus a random base-36 suffix."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"{int(now.timestamp() * 1000)}-{suffix}"


@dataclass(slots=True)
class LaunchResult:
    correlation_id: str
    request: GenerationRequestRecord
    acknowledged: bool
    monitoring: bool


class JobLauncher:
    def __init__(
        self,
        *,
        store: TrackerStore,
        trigger: JobTrigger,
        policy: MonitoringPolicy,
        scheduler: MonitoringScheduler | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._trigger = trigger
        self._policy = policy
        self._scheduler = scheduler
        self._clock = clock or Clock()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def start(
        self,
        *,
        user_id: str,
        script: str,
        metadata: dict[str, Any] | None = None,
        monitor: bool = True,
        on_found: FoundCallback | None = None,
        on_debug: DebugCallback | None = None,
        on_expired: ExpiredCallback | None = None,
    ) -> LaunchResult:
        """Create a ``processing`` request and hand it to the runner.

        Rejects with ``GENERATION_IN_PROGRESS`` before any write if the user
        already has a live job. A failed trigger call leaves the request
        ``processing`` and is reported as ``acknowledged=False``.
        """
        if not script.strip():
            raise ApiError(
                status_code=422,
                code="VALIDATION_ERROR",
                message="Request validation failed",
                details={"errors": [{"loc": ["body", "script"], "msg": "Script must not be blank"}]},
            )

        safe_user_id = safe_log_identifier(user_id, prefix="uid")
        async with self._lock_for(user_id):
            await self._ensure_no_live_job(user_id)

            now = self._clock.now()
            correlation_id = new_correlation_id(now)
            await self._store.create_request(
                user_id=user_id,
                correlation_id=correlation_id,
                script=script,
                start_time=now,
            )
            request = await self._store.transition_request_status(
                user_id=user_id,
                correlation_id=correlation_id,
                new_status=GenerationStatus.PROCESSING,
                checked_at=now,
            )

        safe_correlation_id = safe_log_identifier(correlation_id, prefix="cid")
        logger.info(
            "launch.created user_id=%s correlation_id=%s script=%s",
            safe_user_id,
            safe_correlation_id,
            safe_script_fingerprint(script),
        )

        acknowledged = True
        try:
            await self._trigger.dispatch(
                TriggerPayload(
                    user_id=user_id,
                    correlation_id=correlation_id,
                    script=script,
                    submitted_at=now,
                    metadata=dict(metadata or {}),
                )
            )
        except JobTriggerError as exc:
            # The runner may still have the job; monitoring proceeds either way.
            acknowledged = False
            logger.warning(
                "launch.unacknowledged user_id=%s correlation_id=%s reason=%s",
                safe_user_id,
                safe_correlation_id,
                exc,
            )

        monitoring = False
        if monitor and self._scheduler is not None:
            self._scheduler.start(
                user_id=user_id,
                correlation_id=correlation_id,
                script=script,
                on_found=on_found,
                on_debug=on_debug,
                on_expired=on_expired,
                job_started_at=request.start_time,
            )
            monitoring = True

        return LaunchResult(
            correlation_id=correlation_id,
            request=request,
            acknowledged=acknowledged,
            monitoring=monitoring,
        )

    async def cancel(self, *, user_id: str) -> GenerationRequestRecord:
        """Give up on the current job: mark it ``expired`` and stop monitoring.

        A late artifact is still picked up by the expired-sweep.
        """
        async with self._lock_for(user_id):
            request = await self._store.get_processing_request(user_id=user_id)
            if request is None:
                raise ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")
            if self._scheduler is not None:
                self._scheduler.stop(user_id)
            cancelled = await self._store.transition_request_status(
                user_id=user_id,
                correlation_id=request.correlation_id,
                new_status=GenerationStatus.EXPIRED,
                checked_at=self._clock.now(),
            )
        logger.info(
            "launch.cancelled user_id=%s correlation_id=%s",
            safe_log_identifier(user_id, prefix="uid"),
            safe_log_identifier(request.correlation_id, prefix="cid"),
        )
        return cancelled

    async def _ensure_no_live_job(self, user_id: str) -> None:
        now = self._clock.now()
        for request in await self._store.list_processing_requests(user_id=user_id):
            if self._policy.is_exhausted(request.start_time, now):
                await self._store.transition_request_status(
                    user_id=user_id,
                    correlation_id=request.correlation_id,
                    new_status=GenerationStatus.EXPIRED,
                    checked_at=now,
                )
                logger.info(
                    "launch.stale_expired user_id=%s correlation_id=%s",
                    safe_log_identifier(user_id, prefix="uid"),
                    safe_log_identifier(request.correlation_id, prefix="cid"),
                )
                continue
            raise ApiError(
                status_code=409,
                code="GENERATION_IN_PROGRESS",
                message="A generation is already in progress",
                details={
                    "correlation_id": request.correlation_id,
                    "remaining_seconds": self._policy.remaining_seconds(request.start_time, now),
                },
            )

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock
