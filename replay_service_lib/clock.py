from __future__ import annotations

import asyncio
import time


class Clock:
    """Wall-clock time and cooperative sleeps, in milliseconds."""

    def now_ms(self) -> float:
        return time.time() * 1000.0

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(max(0.0, ms) / 1000.0)
