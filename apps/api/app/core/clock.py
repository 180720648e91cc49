"""Wall-clock and sleep source shared by the tracker services."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime


class Clock:
    """Real time. Tests substitute a virtual clock with the same two methods."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
