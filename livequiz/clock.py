"""
Server clock. Every timestamp that decides fairness (question start,
answer elapsed time, deadlines) comes from here, never from clients.

Times are epoch milliseconds so they survive a process restart and mean
the same thing on every instance.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import AsyncIterator


def seconds_left(start_ms: int, duration_sec: float, now_ms: int) -> float:
    elapsed = (now_ms - start_ms) / 1000
    return max(0.0, duration_sec - elapsed)


class Clock:
    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.now_ms() / 1000, tz=timezone.utc)

    async def sleep(self, seconds: float):
        await asyncio.sleep(max(0.0, seconds))

    async def sleep_until_ms(self, target_ms: int):
        delay = (target_ms - self.now_ms()) / 1000
        if delay > 0:
            await self.sleep(delay)

    async def ticks(self, interval: float) -> AsyncIterator[int]:
        """Yield the current time every `interval` seconds without drift"""
        next_ms = self.now_ms()
        step = int(interval * 1000)
        while True:
            next_ms += step
            await self.sleep_until_ms(next_ms)
            yield self.now_ms()


system_clock = Clock()
