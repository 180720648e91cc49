"""Job runner trigger adapters."""

from .base import JobTrigger, JobTriggerError, TriggerPayload
from .http_trigger import HttpJobTrigger
from .mock_trigger import RecordingJobTrigger

__all__ = [
    "JobTrigger",
    "JobTriggerError",
    "TriggerPayload",
    "HttpJobTrigger",
    "RecordingJobTrigger",
]
