"""Session-start recovery tests."""

from __future__ import annotations

from datetime import timedelta
import unittest

from app.domain.policy import MonitoringPolicy
from app.repositories.memory import InMemoryStore
from app.schemas.generation import GenerationStatus, RecoveryOutcomeKind, SessionState
from app.services.matcher import CompletionMatcher
from app.services.recovery import RecoveryCoordinator
from app.services.scheduler import MonitoringScheduler
from fakes import T0, CallbackRecorder, FakeClock


class RecoveryCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.policy = MonitoringPolicy()
        self.store = InMemoryStore()
        self.matcher = CompletionMatcher(self.store, self.policy, clock=self.clock)
        self.scheduler = MonitoringScheduler(
            store=self.store,
            matcher=self.matcher,
            policy=self.policy,
            clock=self.clock,
        )
        self.recovery = RecoveryCoordinator(
            store=self.store,
            matcher=self.matcher,
            policy=self.policy,
            scheduler=self.scheduler,
            clock=self.clock,
        )

    async def asyncTearDown(self) -> None:
        await self.scheduler.shutdown()

    async def _processing(self, correlation_id: str, *, started_ago: timedelta, script: str = "S") -> None:
        start = self.clock.now() - started_ago
        await self.store.create_request(user_id="user-1", correlation_id=correlation_id, script=script, start_time=start)
        await self.store.transition_request_status(
            user_id="user-1",
            correlation_id=correlation_id,
            new_status=GenerationStatus.PROCESSING,
            checked_at=start,
        )

    async def _status(self, correlation_id: str) -> GenerationStatus:
        record = await self.store.get_request(user_id="user-1", correlation_id=correlation_id)
        return record.status

    async def test_nothing_to_recover(self) -> None:
        outcome = await self.recovery.recover(user_id="user-1")
        self.assertEqual(outcome.outcome, RecoveryOutcomeKind.NOTHING_TO_RECOVER)
        self.assertIsNone(outcome.correlation_id)
        self.assertEqual(outcome.reconciled, [])

    async def test_resume_keeps_remaining_time_continuous(self) -> None:
        await self._processing("abc", started_ago=timedelta(minutes=10))

        outcome = await self.recovery.recover(user_id="user-1")

        self.assertEqual(outcome.outcome, RecoveryOutcomeKind.RESUME)
        self.assertEqual(outcome.correlation_id, "abc")
        self.assertEqual(outcome.script, "S")
        self.assertEqual(outcome.remaining_seconds, self.policy.job_budget_seconds - 600)
        self.assertFalse(outcome.monitoring)
        self.assertIsNone(self.scheduler.session_for("user-1"))
        record = await self.store.get_request(user_id="user-1", correlation_id="abc")
        self.assertEqual(record.last_check_time, self.clock.now())

    async def test_auto_resume_starts_monitoring_from_original_start(self) -> None:
        await self._processing("abc", started_ago=timedelta(minutes=10))
        callbacks = CallbackRecorder()

        outcome = await self.recovery.recover(user_id="user-1", auto_resume=True, **callbacks.as_kwargs())

        self.assertTrue(outcome.monitoring)
        session = self.scheduler.session_for("user-1")
        self.assertEqual(session.state, SessionState.ACTIVE)
        self.assertEqual(session.job_started_at, T0 - timedelta(minutes=10))
        self.assertEqual(self.scheduler.view("user-1").remaining_seconds, 1740)
        self.assertIn("29:00", callbacks.debug[0])

    async def test_already_done_short_circuits(self) -> None:
        await self._processing("abc", started_ago=timedelta(minutes=10))
        await self.store.insert_completion(
            user_id="user-1",
            video_url="https://cdn.example/abc.mp4",
            correlation_id="abc",
            created_at=self.clock.now() - timedelta(minutes=1),
        )

        outcome = await self.recovery.recover(user_id="user-1", auto_resume=True)

        self.assertEqual(outcome.outcome, RecoveryOutcomeKind.ALREADY_DONE)
        self.assertEqual(outcome.artifact.video_url, "https://cdn.example/abc.mp4")
        self.assertEqual(await self._status("abc"), GenerationStatus.COMPLETED)
        self.assertIsNone(self.scheduler.session_for("user-1"))

    async def test_exhausted_budget_expires_request(self) -> None:
        await self._processing("abc", started_ago=timedelta(minutes=40))

        outcome = await self.recovery.recover(user_id="user-1", auto_resume=True)

        self.assertEqual(outcome.outcome, RecoveryOutcomeKind.EXPIRED)
        self.assertEqual(outcome.remaining_seconds, 0)
        self.assertEqual(await self._status("abc"), GenerationStatus.EXPIRED)
        self.assertIsNone(self.scheduler.session_for("user-1"))

    async def test_lookup_failure_is_treated_as_miss(self) -> None:
        await self._processing("abc", started_ago=timedelta(minutes=5))
        self.store.lookup_failure_message = "connection reset"

        with self.assertLogs("app.services.recovery", level="WARNING"):
            outcome = await self.recovery.recover(user_id="user-1")

        self.assertEqual(outcome.outcome, RecoveryOutcomeKind.RESUME)
        self.assertEqual(await self._status("abc"), GenerationStatus.PROCESSING)

    async def test_recover_runs_expired_sweep_first(self) -> None:
        await self._processing("late", started_ago=timedelta(hours=1))
        await self.store.transition_request_status(
            user_id="user-1",
            correlation_id="late",
            new_status=GenerationStatus.EXPIRED,
            checked_at=self.clock.now() - timedelta(minutes=20),
        )
        await self.store.insert_completion(
            user_id="user-1",
            video_url="https://cdn.example/late.mp4",
            correlation_id="late",
            created_at=self.clock.now() - timedelta(minutes=5),
        )

        outcome = await self.recovery.recover(user_id="user-1")

        self.assertEqual(outcome.outcome, RecoveryOutcomeKind.NOTHING_TO_RECOVER)
        self.assertEqual([artifact.correlation_id for artifact in outcome.reconciled], ["late"])
        self.assertEqual(await self._status("late"), GenerationStatus.COMPLETED)

    async def test_cleanup_stale_expires_only_exhausted_rows(self) -> None:
        await self._processing("stale", started_ago=timedelta(hours=2))
        await self._processing("live", started_ago=timedelta(minutes=1))

        expired = await self.recovery.cleanup_stale(user_id="user-1")

        self.assertEqual(expired, ["stale"])
        self.assertEqual(await self._status("stale"), GenerationStatus.EXPIRED)
        self.assertEqual(await self._status("live"), GenerationStatus.PROCESSING)


if __name__ == "__main__":
    unittest.main()
