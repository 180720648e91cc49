"""Completion lookup and request reconciliation."""

from __future__ import annotations

import logging

from app.core.clock import Clock
from app.core.logging_safety import safe_log_identifier
from app.domain.policy import MonitoringPolicy
from app.repositories.base import CompletionRecord, GenerationRequestRecord, TrackerStore
from app.schemas.generation import CompletionArtifact, GenerationStatus

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Generated video"


def to_artifact(record: CompletionRecord) -> CompletionArtifact:
    return CompletionArtifact(
        video_url=record.video_url,
        title=record.title or DEFAULT_TITLE,
        correlation_id=record.correlation_id,
        created_at=record.created_at,
    )


class CompletionMatcher:
    """Finds the completion record for a request.

    Tier 1 matches ``(user_id, correlation_id)``. Tier 2 matches the exact
    script among completions created inside the recency window, for runners
    that lose or mangle the correlation id. A hit marks the owning request
    ``completed``; repeated hits leave it unchanged.
    """

    def __init__(self, store: TrackerStore, policy: MonitoringPolicy, clock: Clock | None = None) -> None:
        self._store = store
        self._policy = policy
        self._clock = clock or Clock()

    async def find_completion(
        self,
        *,
        user_id: str,
        correlation_id: str | None,
        script: str | None,
    ) -> CompletionArtifact | None:
        safe_user_id = safe_log_identifier(user_id, prefix="uid")
        safe_correlation_id = safe_log_identifier(correlation_id, prefix="cid")

        record, tier = await self._lookup(user_id=user_id, correlation_id=correlation_id, script=script)
        if record is None:
            logger.debug("matcher.miss user_id=%s correlation_id=%s", safe_user_id, safe_correlation_id)
            return None

        logger.info(
            "matcher.hit user_id=%s correlation_id=%s tier=%s",
            safe_user_id,
            safe_correlation_id,
            tier,
        )
        await self._reconcile(user_id=user_id, correlation_id=correlation_id, script=script, record=record)
        return to_artifact(record)

    async def sweep_expired(self, *, user_id: str) -> list[CompletionArtifact]:
        """Upgrade recent ``expired`` requests whose artifact arrived after the client gave up."""
        expired = await self._store.list_expired_requests(user_id=user_id, limit=self._policy.expired_sweep_limit)
        reconciled: list[CompletionArtifact] = []
        for request in expired:
            record = await self._store.find_completion_by_correlation(
                user_id=user_id,
                correlation_id=request.correlation_id,
            )
            if record is None:
                continue
            await self._mark_completed(request)
            logger.info(
                "matcher.expired_corrected user_id=%s correlation_id=%s",
                safe_log_identifier(user_id, prefix="uid"),
                safe_log_identifier(request.correlation_id, prefix="cid"),
            )
            reconciled.append(to_artifact(record))
        return reconciled

    async def _lookup(
        self,
        *,
        user_id: str,
        correlation_id: str | None,
        script: str | None,
    ) -> tuple[CompletionRecord | None, str | None]:
        if correlation_id:
            record = await self._store.find_completion_by_correlation(user_id=user_id, correlation_id=correlation_id)
            if record is not None:
                return record, "correlation"

        if script:
            since = self._clock.now() - self._policy.script_match_window
            record = await self._store.find_completion_by_script(user_id=user_id, script=script, since=since)
            if record is not None:
                return record, "script"

        return None, None

    async def _reconcile(
        self,
        *,
        user_id: str,
        correlation_id: str | None,
        script: str | None,
        record: CompletionRecord,
    ) -> None:
        request: GenerationRequestRecord | None = None
        if correlation_id:
            request = await self._store.get_request(user_id=user_id, correlation_id=correlation_id)
        if request is None and script:
            # Only the newest request for a script may claim a script-matched artifact,
            # and only if the artifact is not older than it.
            request = await self._store.find_latest_request_by_script(user_id=user_id, script=script)
            if request is not None and request.created_at > record.created_at:
                self._log_reconcile_skipped(user_id, correlation_id, "artifact_predates_request")
                return
        if request is None:
            self._log_reconcile_skipped(user_id, correlation_id, "request_missing")
            return
        await self._mark_completed(request)

    @staticmethod
    def _log_reconcile_skipped(user_id: str, correlation_id: str | None, reason: str) -> None:
        logger.warning(
            "matcher.reconcile_skipped user_id=%s correlation_id=%s reason=%s",
            safe_log_identifier(user_id, prefix="uid"),
            safe_log_identifier(correlation_id, prefix="cid"),
            reason,
        )

    async def _mark_completed(self, request: GenerationRequestRecord) -> None:
        now = self._clock.now()
        if request.status is GenerationStatus.COMPLETED:
            await self._store.touch_last_check(
                user_id=request.user_id,
                correlation_id=request.correlation_id,
                checked_at=now,
            )
            return
        await self._store.transition_request_status(
            user_id=request.user_id,
            correlation_id=request.correlation_id,
            new_status=GenerationStatus.COMPLETED,
            checked_at=now,
        )
