"""Persistence interface for generation requests and completion records."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from app.schemas.generation import GenerationStatus


@dataclass(slots=True)
class GenerationRequestRecord:
    id: str
    user_id: str
    correlation_id: str
    script: str
    status: GenerationStatus
    start_time: datetime
    last_check_time: datetime
    created_at: datetime
    updated_at: datetime | None = None


@dataclass(slots=True)
class CompletionRecord:
    id: str
    user_id: str
    video_url: str
    created_at: datetime
    correlation_id: str | None = None
    script: str | None = None
    title: str | None = None


class TrackerStore(ABC):
    """Durable tables of generation requests and completion records, both keyed by user.

    Returned records are snapshots; every mutation goes through a store method.
    """

    @abstractmethod
    async def create_request(
        self,
        *,
        user_id: str,
        correlation_id: str,
        script: str,
        start_time: datetime,
    ) -> GenerationRequestRecord:
        """Insert a ``pending`` request."""

    @abstractmethod
    async def get_request(self, *, user_id: str, correlation_id: str) -> GenerationRequestRecord | None:
        """Point lookup by ``(user_id, correlation_id)``."""

    @abstractmethod
    async def get_processing_request(self, *, user_id: str) -> GenerationRequestRecord | None:
        """Most recently created ``processing`` request for the user."""

    @abstractmethod
    async def get_latest_request(self, *, user_id: str) -> GenerationRequestRecord | None:
        """Most recently created request for the user, whatever its status."""

    @abstractmethod
    async def list_processing_requests(self, *, user_id: str) -> list[GenerationRequestRecord]:
        """All ``processing`` requests for the user, newest first."""

    @abstractmethod
    async def find_latest_request_by_script(self, *, user_id: str, script: str) -> GenerationRequestRecord | None:
        """Newest request, of any status, whose script matches exactly."""

    @abstractmethod
    async def transition_request_status(
        self,
        *,
        user_id: str,
        correlation_id: str,
        new_status: GenerationStatus,
        checked_at: datetime,
    ) -> GenerationRequestRecord:
        """Apply an FSM-validated status change and stamp ``last_check_time``."""

    @abstractmethod
    async def touch_last_check(self, *, user_id: str, correlation_id: str, checked_at: datetime) -> None:
        """Update ``last_check_time`` without changing status."""

    @abstractmethod
    async def list_expired_requests(self, *, user_id: str, limit: int) -> list[GenerationRequestRecord]:
        """Most recent ``expired`` requests, newest first."""

    @abstractmethod
    async def insert_completion(
        self,
        *,
        user_id: str,
        video_url: str,
        title: str | None = None,
        correlation_id: str | None = None,
        script: str | None = None,
        created_at: datetime | None = None,
    ) -> CompletionRecord:
        """Write path used by the job runner."""

    @abstractmethod
    async def find_completion_by_correlation(self, *, user_id: str, correlation_id: str) -> CompletionRecord | None:
        """Newest completion for ``(user_id, correlation_id)``."""

    @abstractmethod
    async def find_completion_by_script(
        self,
        *,
        user_id: str,
        script: str,
        since: datetime,
    ) -> CompletionRecord | None:
        """Newest completion for ``(user_id, script)`` created at or after ``since``."""

    @abstractmethod
    async def list_completions(self, *, user_id: str, limit: int) -> list[CompletionRecord]:
        """User's completion records, newest first."""
