"""In-process trigger for local development and tests."""

from app.adapters.trigger.base import JobTrigger, JobTriggerError, TriggerPayload


class RecordingJobTrigger(JobTrigger):
    """Records every payload; ``failure_message`` makes the next dispatch fail once.

    The payload is recorded even when the dispatch fails, mirroring a runner
    that may have received a job whose acknowledgment was lost.
    """

    def __init__(self) -> None:
        self.payloads: list[TriggerPayload] = []
        self.failure_message: str | None = None

    async def dispatch(self, payload: TriggerPayload) -> None:
        self.payloads.append(payload)
        if self.failure_message is not None:
            message = self.failure_message
            self.failure_message = None
            raise JobTriggerError(message)


__all__ = ["RecordingJobTrigger"]
