"""Session-start reconciliation of a job left in ``processing``."""

from __future__ import annotations

import logging

from app.core.clock import Clock
from app.core.logging_safety import safe_log_identifier
from app.domain.policy import MonitoringPolicy
from app.errors import ApiError
from app.repositories.base import TrackerStore
from app.schemas.generation import GenerationStatus, RecoveryOutcome, RecoveryOutcomeKind
from app.services.matcher import CompletionMatcher
from app.services.scheduler import DebugCallback, ExpiredCallback, FoundCallback, MonitoringScheduler

logger = logging.getLogger(__name__)


class RecoveryCoordinator:
    """Runs once per client session start.

    Late artifacts for expired requests are reconciled first, then the current
    ``processing`` request is either short-circuited (already done), expired,
    or handed back to monitoring with its original start time.
    """

    def __init__(
        self,
        *,
        store: TrackerStore,
        matcher: CompletionMatcher,
        policy: MonitoringPolicy,
        scheduler: MonitoringScheduler | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._matcher = matcher
        self._policy = policy
        self._scheduler = scheduler
        self._clock = clock or Clock()

    async def recover(
        self,
        *,
        user_id: str,
        auto_resume: bool = False,
        on_found: FoundCallback | None = None,
        on_debug: DebugCallback | None = None,
        on_expired: ExpiredCallback | None = None,
    ) -> RecoveryOutcome:
        safe_user_id = safe_log_identifier(user_id, prefix="uid")
        reconciled = await self._matcher.sweep_expired(user_id=user_id)

        request = await self._store.get_processing_request(user_id=user_id)
        if request is None:
            logger.info("recovery.nothing user_id=%s reconciled=%s", safe_user_id, len(reconciled))
            return RecoveryOutcome(outcome=RecoveryOutcomeKind.NOTHING_TO_RECOVER, reconciled=reconciled)

        safe_correlation_id = safe_log_identifier(request.correlation_id, prefix="cid")
        now = self._clock.now()
        remaining = self._policy.remaining_seconds(request.start_time, now)
        await self._store.touch_last_check(user_id=user_id, correlation_id=request.correlation_id, checked_at=now)

        try:
            artifact = await self._matcher.find_completion(
                user_id=user_id,
                correlation_id=request.correlation_id,
                script=request.script,
            )
        except ApiError:
            raise
        except Exception as exc:
            # Treated as a miss; a resumed session or the expired-sweep will look again.
            logger.warning(
                "recovery.lookup_failed user_id=%s correlation_id=%s reason=%s",
                safe_user_id,
                safe_correlation_id,
                type(exc).__name__,
            )
            artifact = None

        if artifact is not None:
            logger.info("recovery.already_done user_id=%s correlation_id=%s", safe_user_id, safe_correlation_id)
            return RecoveryOutcome(
                outcome=RecoveryOutcomeKind.ALREADY_DONE,
                correlation_id=request.correlation_id,
                script=request.script,
                start_time=request.start_time,
                remaining_seconds=remaining,
                artifact=artifact,
                reconciled=reconciled,
            )

        if self._policy.is_exhausted(request.start_time, now):
            await self._store.transition_request_status(
                user_id=user_id,
                correlation_id=request.correlation_id,
                new_status=GenerationStatus.EXPIRED,
                checked_at=now,
            )
            logger.info("recovery.expired user_id=%s correlation_id=%s", safe_user_id, safe_correlation_id)
            return RecoveryOutcome(
                outcome=RecoveryOutcomeKind.EXPIRED,
                correlation_id=request.correlation_id,
                script=request.script,
                start_time=request.start_time,
                remaining_seconds=0,
                reconciled=reconciled,
            )

        monitoring = False
        if auto_resume and self._scheduler is not None:
            self._scheduler.start(
                user_id=user_id,
                correlation_id=request.correlation_id,
                script=request.script,
                on_found=on_found,
                on_debug=on_debug,
                on_expired=on_expired,
                job_started_at=request.start_time,
            )
            monitoring = True

        logger.info(
            "recovery.resume user_id=%s correlation_id=%s remaining_seconds=%s monitoring=%s",
            safe_user_id,
            safe_correlation_id,
            remaining,
            monitoring,
        )
        return RecoveryOutcome(
            outcome=RecoveryOutcomeKind.RESUME,
            correlation_id=request.correlation_id,
            script=request.script,
            start_time=request.start_time,
            remaining_seconds=remaining,
            reconciled=reconciled,
            monitoring=monitoring,
        )

    async def cleanup_stale(self, *, user_id: str) -> list[str]:
        """Expire every ``processing`` request whose budget already ran out.

        Never run implicitly by a tick; returns the correlation ids it expired.
        """
        now = self._clock.now()
        expired: list[str] = []
        for request in await self._store.list_processing_requests(user_id=user_id):
            if not self._policy.is_exhausted(request.start_time, now):
                continue
            await self._store.transition_request_status(
                user_id=user_id,
                correlation_id=request.correlation_id,
                new_status=GenerationStatus.EXPIRED,
                checked_at=now,
            )
            expired.append(request.correlation_id)
        if expired:
            logger.info(
                "recovery.stale_cleanup user_id=%s expired=%s",
                safe_log_identifier(user_id, prefix="uid"),
                len(expired),
            )
        return expired
