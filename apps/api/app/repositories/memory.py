"""In-memory tracker store used for local development and tests."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from uuid import uuid4

from app.domain.generation_fsm import ensure_transition, is_noop_transition
from app.errors import ApiError
from app.repositories.base import CompletionRecord, GenerationRequestRecord, TrackerStore
from app.schemas.generation import GenerationStatus


@dataclass(slots=True)
class InMemoryStore(TrackerStore):
    """Simple, deterministic persistence layer for scaffolding and tests."""

    requests: dict[tuple[str, str], GenerationRequestRecord] = field(default_factory=dict)
    completions: list[CompletionRecord] = field(default_factory=list)
    request_write_count: int = 0
    completion_lookup_count: int = 0
    lookup_failure_message: str | None = None

    async def create_request(
        self,
        *,
        user_id: str,
        correlation_id: str,
        script: str,
        start_time: datetime,
    ) -> GenerationRequestRecord:
        key = (user_id, correlation_id)
        if key in self.requests:
            raise ApiError(
                status_code=409,
                code="CORRELATION_ID_CONFLICT",
                message="A request with this correlation id already exists.",
            )
        record = GenerationRequestRecord(
            id=str(uuid4()),
            user_id=user_id,
            correlation_id=correlation_id,
            script=script,
            status=GenerationStatus.PENDING,
            start_time=start_time,
            last_check_time=start_time,
            created_at=start_time,
            updated_at=start_time,
        )
        self.requests[key] = record
        self.request_write_count += 1
        return replace(record)

    async def get_request(self, *, user_id: str, correlation_id: str) -> GenerationRequestRecord | None:
        record = self.requests.get((user_id, correlation_id))
        return replace(record) if record is not None else None

    async def get_processing_request(self, *, user_id: str) -> GenerationRequestRecord | None:
        processing = await self.list_processing_requests(user_id=user_id)
        return processing[0] if processing else None

    async def get_latest_request(self, *, user_id: str) -> GenerationRequestRecord | None:
        requests = self._requests_for(user_id)
        return requests[0] if requests else None

    async def list_processing_requests(self, *, user_id: str) -> list[GenerationRequestRecord]:
        return self._requests_for(user_id, GenerationStatus.PROCESSING)

    async def find_latest_request_by_script(self, *, user_id: str, script: str) -> GenerationRequestRecord | None:
        candidates = [record for record in self._requests_for(user_id) if record.script == script]
        return candidates[0] if candidates else None

    async def transition_request_status(
        self,
        *,
        user_id: str,
        correlation_id: str,
        new_status: GenerationStatus,
        checked_at: datetime,
    ) -> GenerationRequestRecord:
        """Apply an FSM-validated status mutation with consistent write bookkeeping."""
        record = self._require(user_id, correlation_id)
        noop = is_noop_transition(record.status, new_status)
        ensure_transition(record.status, new_status)
        record.status = new_status
        record.last_check_time = checked_at
        if not noop:
            record.updated_at = checked_at
            self.request_write_count += 1
        return replace(record)

    async def touch_last_check(self, *, user_id: str, correlation_id: str, checked_at: datetime) -> None:
        record = self.requests.get((user_id, correlation_id))
        if record is not None:
            record.last_check_time = checked_at

    async def list_expired_requests(self, *, user_id: str, limit: int) -> list[GenerationRequestRecord]:
        return self._requests_for(user_id, GenerationStatus.EXPIRED)[:limit]

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
        record = CompletionRecord(
            id=str(uuid4()),
            user_id=user_id,
            video_url=video_url,
            title=title,
            correlation_id=correlation_id,
            script=script,
            created_at=created_at or datetime.now(UTC),
        )
        self.completions.append(record)
        return replace(record)

    async def find_completion_by_correlation(self, *, user_id: str, correlation_id: str) -> CompletionRecord | None:
        self._before_completion_lookup()
        matches = [
            record
            for record in self._completions_for(user_id)
            if record.correlation_id == correlation_id
        ]
        return matches[0] if matches else None

    async def find_completion_by_script(
        self,
        *,
        user_id: str,
        script: str,
        since: datetime,
    ) -> CompletionRecord | None:
        self._before_completion_lookup()
        matches = [
            record
            for record in self._completions_for(user_id)
            if record.script == script and record.created_at >= since
        ]
        return matches[0] if matches else None

    async def list_completions(self, *, user_id: str, limit: int) -> list[CompletionRecord]:
        return self._completions_for(user_id)[:limit]

    def _require(self, user_id: str, correlation_id: str) -> GenerationRequestRecord:
        record = self.requests.get((user_id, correlation_id))
        if record is None:
            raise ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")
        return record

    def _requests_for(
        self,
        user_id: str,
        status: GenerationStatus | None = None,
    ) -> list[GenerationRequestRecord]:
        # dict preserves insertion order, so the index breaks created_at ties.
        indexed = [
            (index, record)
            for index, record in enumerate(self.requests.values())
            if record.user_id == user_id and (status is None or record.status is status)
        ]
        indexed.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [replace(record) for _, record in indexed]

    def _completions_for(self, user_id: str) -> list[CompletionRecord]:
        indexed = [
            (index, record)
            for index, record in enumerate(self.completions)
            if record.user_id == user_id
        ]
        indexed.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [replace(record) for _, record in indexed]

    def _before_completion_lookup(self) -> None:
        self.completion_lookup_count += 1
        if self.lookup_failure_message is not None:
            message = self.lookup_failure_message
            self.lookup_failure_message = None
            raise RuntimeError(message)
