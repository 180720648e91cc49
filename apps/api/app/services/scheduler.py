"""Per-user completion polling.

A monitoring session checks for the artifact at fixed offsets from its start
(a stuck check, a first real check, then a steady interval) until the job
resolves, the budget runs out, or the session is stopped or superseded.
Each session runs as one asyncio task, and a per-user lock keeps its ticks and
any manual check strictly sequential.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import weakref

from app.core.clock import Clock
from app.core.logging_safety import safe_log_identifier
from app.domain.policy import MonitoringPolicy, format_remaining
from app.errors import ApiError
from app.repositories.base import TrackerStore
from app.schemas.generation import CompletionArtifact, GenerationStatus, MonitoringSessionView, SessionState
from app.services.matcher import CompletionMatcher

logger = logging.getLogger(__name__)

FoundCallback = Callable[[CompletionArtifact], None]
DebugCallback = Callable[[str], None]
ExpiredCallback = Callable[[], None]

_DEBUG_HISTORY = 50
_FINISHED_HISTORY = 1024


@dataclass(slots=True, eq=False)
class MonitoringSession:
    user_id: str
    correlation_id: str
    script: str
    started_at: datetime
    job_started_at: datetime
    last_successful_check_time: datetime
    on_found: FoundCallback | None = None
    on_debug: DebugCallback | None = None
    on_expired: ExpiredCallback | None = None
    state: SessionState = SessionState.IDLE
    attempt_count: int = 0
    health_check_count: int = 0
    last_attempt_time: datetime | None = None
    artifact: CompletionArtifact | None = None
    debug_messages: deque[str] = field(default_factory=lambda: deque(maxlen=_DEBUG_HISTORY))
    task: asyncio.Task | None = None

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE


class SessionRegistry:
    """Holds at most one monitoring session per user, plus that user's check lock."""

    def __init__(self) -> None:
        self._sessions: dict[str, MonitoringSession] = {}
        # A lock lives only while some coroutine holds or awaits it.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, user_id: str) -> MonitoringSession | None:
        return self._sessions.get(user_id)

    def put(self, session: MonitoringSession) -> None:
        current = self._sessions.get(session.user_id)
        if current is not None and current is not session and current.is_active:
            raise RuntimeError("An active monitoring session already exists for this user")
        self._sessions[session.user_id] = session

    def remove(self, session: MonitoringSession) -> None:
        if self._sessions.get(session.user_id) is session:
            del self._sessions[session.user_id]

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def sessions(self) -> list[MonitoringSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)


class MonitoringScheduler:
    def __init__(
        self,
        *,
        store: TrackerStore,
        matcher: CompletionMatcher,
        policy: MonitoringPolicy,
        registry: SessionRegistry | None = None,
        clock: Clock | None = None,
        finished_history: int = _FINISHED_HISTORY,
    ) -> None:
        self._store = store
        self._matcher = matcher
        self._policy = policy
        self._registry = registry if registry is not None else SessionRegistry()
        self._clock = clock or Clock()
        self._finished: OrderedDict[str, MonitoringSession] = OrderedDict()
        self._finished_history = finished_history

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def start(
        self,
        *,
        user_id: str,
        correlation_id: str,
        script: str,
        on_found: FoundCallback | None = None,
        on_debug: DebugCallback | None = None,
        on_expired: ExpiredCallback | None = None,
        job_started_at: datetime | None = None,
    ) -> MonitoringSession:
        """Begin polling for ``correlation_id``; must be called from a running event loop.

        An existing session for the user is superseded before the new one exists.
        ``job_started_at`` keeps a recovered job's budget continuous.
        """
        loop = asyncio.get_running_loop()
        existing = self._registry.get(user_id)
        if existing is not None:
            self._halt(existing, SessionState.SUPERSEDED)
            logger.info(
                "monitor.superseded user_id=%s correlation_id=%s",
                safe_log_identifier(user_id, prefix="uid"),
                safe_log_identifier(existing.correlation_id, prefix="cid"),
            )

        now = self._clock.now()
        session = MonitoringSession(
            user_id=user_id,
            correlation_id=correlation_id,
            script=script,
            started_at=now,
            job_started_at=job_started_at or now,
            last_successful_check_time=now,
            on_found=on_found,
            on_debug=on_debug,
            on_expired=on_expired,
            state=SessionState.ACTIVE,
        )
        self._registry.put(session)
        session.task = loop.create_task(self._run(session))

        remaining = self._policy.remaining_seconds(session.job_started_at, now)
        logger.info(
            "monitor.started user_id=%s correlation_id=%s remaining_seconds=%s",
            safe_log_identifier(user_id, prefix="uid"),
            safe_log_identifier(correlation_id, prefix="cid"),
            remaining,
        )
        self._debug(session, f"Monitoring started, {format_remaining(remaining)} left")
        return session

    def stop(self, user_id: str) -> None:
        """Stop the user's session, if any. Safe to call repeatedly and from inside callbacks."""
        session = self._registry.get(user_id)
        if session is None:
            return
        self._halt(session, SessionState.STOPPED)
        logger.info(
            "monitor.stopped user_id=%s correlation_id=%s",
            safe_log_identifier(user_id, prefix="uid"),
            safe_log_identifier(session.correlation_id, prefix="cid"),
        )

    async def shutdown(self) -> None:
        """Stop every session and wait for their tasks to unwind."""
        tasks = [session.task for session in self._registry.sessions() if session.task is not None]
        for session in self._registry.sessions():
            self._halt(session, SessionState.STOPPED)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def session_for(self, user_id: str) -> MonitoringSession | None:
        return self._registry.get(user_id)

    def view(self, user_id: str) -> MonitoringSessionView | None:
        """Snapshot of the user's active session, or of the last one to finish."""
        session = self._registry.get(user_id) or self._finished.get(user_id)
        if session is None:
            return None
        return MonitoringSessionView(
            correlation_id=session.correlation_id,
            state=session.state,
            started_at=session.started_at,
            job_started_at=session.job_started_at,
            attempt_count=session.attempt_count,
            health_check_count=session.health_check_count,
            last_attempt_time=session.last_attempt_time,
            last_successful_check_time=session.last_successful_check_time,
            remaining_seconds=self._policy.remaining_seconds(session.job_started_at, self._clock.now()),
            artifact=session.artifact,
            debug_messages=list(session.debug_messages),
        )

    async def manual_check(
        self,
        *,
        user_id: str,
        correlation_id: str | None = None,
    ) -> CompletionArtifact | None:
        """Run one lookup now, outside the cadence, whether or not a session is active.

        Lookup errors propagate to the caller since this is an explicit user action.
        """
        session = self._registry.get(user_id)
        if session is not None and correlation_id in (None, session.correlation_id):
            target_correlation_id, script = session.correlation_id, session.script
        else:
            session = None
            if correlation_id:
                request = await self._store.get_request(user_id=user_id, correlation_id=correlation_id)
            else:
                # Nothing processing means the last job already resolved; check that one.
                request = await self._store.get_processing_request(
                    user_id=user_id
                ) or await self._store.get_latest_request(user_id=user_id)
            if request is None:
                return None
            target_correlation_id, script = request.correlation_id, request.script

        async with self._registry.lock_for(user_id):
            now = self._clock.now()
            if session is not None:
                session.attempt_count += 1
                session.last_attempt_time = now
            artifact = await self._matcher.find_completion(
                user_id=user_id,
                correlation_id=target_correlation_id,
                script=script,
            )
            logger.info(
                "monitor.manual_check user_id=%s correlation_id=%s found=%s",
                safe_log_identifier(user_id, prefix="uid"),
                safe_log_identifier(target_correlation_id, prefix="cid"),
                artifact is not None,
            )
            if artifact is None:
                await self._store.touch_last_check(
                    user_id=user_id,
                    correlation_id=target_correlation_id,
                    checked_at=now,
                )
                if session is not None and session.is_active:
                    session.last_successful_check_time = self._clock.now()
                    self._debug(session, "Manual check: video not ready yet")
                return None
            if session is not None and session.is_active:
                self._resolve(session, artifact)
            return artifact

    async def _run(self, session: MonitoringSession) -> None:
        deadline = self._policy.deadline_for(session.job_started_at)
        poll_interval = timedelta(seconds=self._policy.poll_interval_seconds)
        for offset, steady_state in self._policy.check_offsets():
            fire_at = session.started_at + timedelta(seconds=offset)
            if steady_state and fire_at + poll_interval <= self._clock.now():
                # Timers were suspended; collapse the backlog into the next due tick.
                continue
            wake_at = min(fire_at, deadline)
            await self._clock.sleep((wake_at - self._clock.now()).total_seconds())
            if not session.is_active:
                return
            if self._clock.now() >= deadline:
                await self._expire(session)
                return
            async with self._registry.lock_for(session.user_id):
                if not session.is_active:
                    return
                if steady_state:
                    self._health_check(session)
                await self._check(session)
            if not session.is_active:
                return

    async def _check(self, session: MonitoringSession) -> None:
        now = self._clock.now()
        session.attempt_count += 1
        session.last_attempt_time = now
        safe_user_id = safe_log_identifier(session.user_id, prefix="uid")
        safe_correlation_id = safe_log_identifier(session.correlation_id, prefix="cid")

        try:
            request = await self._store.get_request(user_id=session.user_id, correlation_id=session.correlation_id)
            if request is None or request.status is not GenerationStatus.PROCESSING:
                self._finish_externally_resolved(session, request.status if request is not None else None)
                return
            await self._store.touch_last_check(
                user_id=session.user_id,
                correlation_id=session.correlation_id,
                checked_at=now,
            )
            artifact = await self._matcher.find_completion(
                user_id=session.user_id,
                correlation_id=session.correlation_id,
                script=session.script,
            )
        except Exception as exc:
            # Any failure here is transient: keep polling but let the health check look sooner.
            session.last_successful_check_time -= timedelta(seconds=self._policy.failure_backdate_seconds)
            logger.warning(
                "monitor.check_failed user_id=%s correlation_id=%s attempt=%s reason=%s",
                safe_user_id,
                safe_correlation_id,
                session.attempt_count,
                type(exc).__name__,
            )
            self._debug(session, f"Check #{session.attempt_count} failed, retrying on the next tick")
            return

        if artifact is None:
            session.last_successful_check_time = self._clock.now()
            remaining = self._policy.remaining_seconds(session.job_started_at, self._clock.now())
            logger.debug(
                "monitor.tick user_id=%s correlation_id=%s attempt=%s found=false remaining_seconds=%s",
                safe_user_id,
                safe_correlation_id,
                session.attempt_count,
                remaining,
            )
            self._debug(
                session,
                f"Check #{session.attempt_count}: video not ready, {format_remaining(remaining)} left",
            )
            return

        self._resolve(session, artifact)

    def _health_check(self, session: MonitoringSession) -> None:
        silence = (self._clock.now() - session.last_successful_check_time).total_seconds()
        if silence <= self._policy.health_stall_threshold_seconds:
            return
        session.health_check_count += 1
        logger.warning(
            "monitor.stalled user_id=%s correlation_id=%s silence_seconds=%s health_checks=%s",
            safe_log_identifier(session.user_id, prefix="uid"),
            safe_log_identifier(session.correlation_id, prefix="cid"),
            int(silence),
            session.health_check_count,
        )
        self._debug(session, f"Health check: no successful check for {int(silence)}s")

    async def _expire(self, session: MonitoringSession) -> None:
        async with self._registry.lock_for(session.user_id):
            if not session.is_active:
                return
            session.attempt_count += 1
            session.last_attempt_time = self._clock.now()
            safe_user_id = safe_log_identifier(session.user_id, prefix="uid")
            safe_correlation_id = safe_log_identifier(session.correlation_id, prefix="cid")

            try:
                artifact = await self._matcher.find_completion(
                    user_id=session.user_id,
                    correlation_id=session.correlation_id,
                    script=session.script,
                )
            except Exception as exc:
                logger.warning(
                    "monitor.final_check_failed user_id=%s correlation_id=%s reason=%s",
                    safe_user_id,
                    safe_correlation_id,
                    type(exc).__name__,
                )
                artifact = None
            if artifact is not None:
                self._resolve(session, artifact)
                return

            try:
                await self._store.transition_request_status(
                    user_id=session.user_id,
                    correlation_id=session.correlation_id,
                    new_status=GenerationStatus.EXPIRED,
                    checked_at=self._clock.now(),
                )
            except ApiError as exc:
                logger.info(
                    "monitor.expire_skipped user_id=%s correlation_id=%s code=%s",
                    safe_user_id,
                    safe_correlation_id,
                    exc.payload.code,
                )
            except Exception as exc:
                logger.warning(
                    "monitor.expire_failed user_id=%s correlation_id=%s reason=%s",
                    safe_user_id,
                    safe_correlation_id,
                    type(exc).__name__,
                )

            self._halt(session, SessionState.EXPIRED)
            logger.info("monitor.expired user_id=%s correlation_id=%s", safe_user_id, safe_correlation_id)
            self._debug(session, "Time budget exhausted; the video may still appear in your library later")
            self._notify(session.on_expired)

    def _resolve(self, session: MonitoringSession, artifact: CompletionArtifact) -> None:
        session.artifact = artifact
        self._halt(session, SessionState.RESOLVED)
        logger.info(
            "monitor.resolved user_id=%s correlation_id=%s attempts=%s",
            safe_log_identifier(session.user_id, prefix="uid"),
            safe_log_identifier(session.correlation_id, prefix="cid"),
            session.attempt_count,
        )
        self._debug(session, "Video found")
        self._notify(session.on_found, artifact)

    def _finish_externally_resolved(self, session: MonitoringSession, status: GenerationStatus | None) -> None:
        if status is GenerationStatus.COMPLETED:
            final_state = SessionState.RESOLVED
        elif status is GenerationStatus.EXPIRED:
            final_state = SessionState.EXPIRED
        else:
            final_state = SessionState.STOPPED
        self._halt(session, final_state)
        logger.info(
            "monitor.closed user_id=%s correlation_id=%s request_status=%s",
            safe_log_identifier(session.user_id, prefix="uid"),
            safe_log_identifier(session.correlation_id, prefix="cid"),
            status.value if status is not None else "missing",
        )
        self._debug(session, f"Request is {status.value if status is not None else 'gone'}; monitoring stopped")

    def _halt(self, session: MonitoringSession, state: SessionState) -> None:
        if session.is_active:
            session.state = state
        self._registry.remove(session)
        self._finished[session.user_id] = session
        self._finished.move_to_end(session.user_id)
        while len(self._finished) > self._finished_history:
            self._finished.popitem(last=False)
        task = session.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _debug(self, session: MonitoringSession, message: str) -> None:
        session.debug_messages.append(message)
        self._notify(session.on_debug, message)

    @staticmethod
    def _notify(callback: Callable[..., None] | None, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("monitor.callback_failed callback=%s", getattr(callback, "__name__", repr(callback)))
