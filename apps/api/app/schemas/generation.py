"""Generation tracking API schemas."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPIRED = "expired"


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"
    STOPPED = "stopped"


class RecoveryOutcomeKind(str, Enum):
    NOTHING_TO_RECOVER = "nothing-to-recover"
    ALREADY_DONE = "already-done"
    EXPIRED = "expired"
    RESUME = "resume"


class CompletionArtifact(BaseModel):
    video_url: str
    title: str
    correlation_id: str | None = None
    created_at: datetime


class GenerationRequest(BaseModel):
    correlation_id: str
    status: GenerationStatus
    script: str
    start_time: datetime
    last_check_time: datetime
    created_at: datetime
    remaining_seconds: int
    remaining_display: str


class StartGenerationRequest(BaseModel):
    script: str = Field(min_length=1)
    metadata: dict[str, Any] | None = None


class StartGenerationResponse(BaseModel):
    correlation_id: str
    status: GenerationStatus
    start_time: datetime
    acknowledged: bool
    monitoring: bool
    remaining_seconds: int


class RecoveryOutcome(BaseModel):
    outcome: RecoveryOutcomeKind
    correlation_id: str | None = None
    script: str | None = None
    start_time: datetime | None = None
    remaining_seconds: int | None = None
    artifact: CompletionArtifact | None = None
    reconciled: list[CompletionArtifact] = Field(default_factory=list)
    monitoring: bool = False


class ManualCheckResponse(BaseModel):
    found: bool
    artifact: CompletionArtifact | None = None


class SweepResponse(BaseModel):
    reconciled: list[CompletionArtifact]


class MonitoringSessionView(BaseModel):
    correlation_id: str
    state: SessionState
    started_at: datetime
    job_started_at: datetime
    attempt_count: int
    health_check_count: int
    last_attempt_time: datetime | None = None
    last_successful_check_time: datetime
    remaining_seconds: int
    artifact: CompletionArtifact | None = None
    debug_messages: list[str] = Field(default_factory=list)
