"""Timing policy for generation monitoring."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.config import Settings


@dataclass(frozen=True, slots=True)
class MonitoringPolicy:
    job_budget_seconds: int = 39 * 60
    stuck_check_delay_seconds: float = 2.0
    first_check_delay_seconds: float = 10.0
    poll_interval_seconds: float = 60.0
    health_stall_threshold_seconds: float = 90.0
    failure_backdate_seconds: float = 30.0
    script_match_window_seconds: int = 2 * 60 * 60
    expired_sweep_limit: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> MonitoringPolicy:
        return cls(
            job_budget_seconds=settings.job_budget_seconds,
            stuck_check_delay_seconds=settings.stuck_check_delay_seconds,
            first_check_delay_seconds=settings.first_check_delay_seconds,
            poll_interval_seconds=settings.poll_interval_seconds,
            health_stall_threshold_seconds=settings.health_stall_threshold_seconds,
            failure_backdate_seconds=settings.failure_backdate_seconds,
            script_match_window_seconds=settings.script_match_window_seconds,
            expired_sweep_limit=settings.expired_sweep_limit,
        )

    @property
    def budget(self) -> timedelta:
        return timedelta(seconds=self.job_budget_seconds)

    @property
    def script_match_window(self) -> timedelta:
        return timedelta(seconds=self.script_match_window_seconds)

    def deadline_for(self, start_time: datetime) -> datetime:
        return start_time + self.budget

    def remaining_seconds(self, start_time: datetime, now: datetime) -> int:
        """Whole seconds left in the budget, never negative."""
        elapsed = (now - start_time).total_seconds()
        return max(0, int(self.job_budget_seconds - elapsed))

    def is_exhausted(self, start_time: datetime, now: datetime) -> bool:
        return now >= self.deadline_for(start_time)

    def check_offsets(self):
        """Yield check offsets in seconds from session start: stuck check, first check, then steady state.

        Each item is ``(offset, steady_state)``.
        """
        yield self.stuck_check_delay_seconds, False
        yield self.first_check_delay_seconds, False
        tick = 1
        while True:
            yield self.poll_interval_seconds * tick, True
            tick += 1


def format_remaining(seconds: int) -> str:
    """Render a countdown as ``MM:SS``."""
    seconds = max(0, int(seconds))
    minutes, rest = divmod(seconds, 60)
    return f"{minutes:02d}:{rest:02d}"
