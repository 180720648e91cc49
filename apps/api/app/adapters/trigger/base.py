"""Job runner trigger interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class JobTriggerError(Exception):
    """Raised when the runner did not confirm receipt of a job."""


@dataclass(slots=True)
class TriggerPayload:
    user_id: str
    correlation_id: str
    script: str
    submitted_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Runner wire format; metadata keys never override the tracking fields."""
        body: dict[str, Any] = dict(self.metadata)
        body.update(
            {
                "script": self.script,
                "correlationId": self.correlation_id,
                "userId": self.user_id,
                "timestamp": self.submitted_at.isoformat(),
            }
        )
        return body


class JobTrigger(ABC):
    """Fire-and-forget hand-off to the external generation runner."""

    @abstractmethod
    async def dispatch(self, payload: TriggerPayload) -> None:
        """Send the job; raise ``JobTriggerError`` if receipt is not confirmed."""


__all__ = ["JobTrigger", "JobTriggerError", "TriggerPayload"]
