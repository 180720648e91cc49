"""HTTP webhook trigger for the external generation runner."""

from __future__ import annotations

import asyncio

import requests

from app.adapters.trigger.base import JobTrigger, JobTriggerError, TriggerPayload


class HttpJobTrigger(JobTrigger):
    """POSTs the job as JSON to the runner webhook."""

    def __init__(self, url: str | None, timeout_seconds: float = 30.0, session: requests.Session | None = None) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    async def dispatch(self, payload: TriggerPayload) -> None:
        if not self._url:
            raise JobTriggerError("Job runner URL is not configured")
        await asyncio.to_thread(self._post, payload.to_wire())

    def _post(self, body: dict) -> None:
        try:
            response = self._session.post(self._url, json=body, timeout=self._timeout_seconds)
            response.raise_for_status()
        except requests.exceptions.Timeout as exc:
            raise JobTriggerError("Job runner did not answer in time") from exc
        except requests.exceptions.HTTPError as exc:
            raise JobTriggerError(f"Job runner rejected the job: {exc.response.status_code}") from exc
        except requests.exceptions.RequestException as exc:
            raise JobTriggerError("Job runner is unreachable") from exc


__all__ = ["HttpJobTrigger"]
