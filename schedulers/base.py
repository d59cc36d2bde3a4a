"""
Periodic Service — background loop shared by the schedulers.

Subclasses implement run_cycle(). The loop sleeps until the next tick,
runs one cycle and logs any error without stopping. A tick that arrives
while the previous cycle is still running is skipped, not queued.
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeriodicService(ABC):
    """Runs run_cycle() every interval_seconds as an asyncio task."""

    name = "periodic"

    def __init__(self, interval_seconds: float, now_fn: Callable[[], datetime] = _utcnow):
        self.interval_seconds = interval_seconds
        self._now = now_fn
        self._running = False
        self._processing = False
        self._task: Optional[asyncio.Task] = None
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[dict[str, Any]] = None

    @abstractmethod
    async def run_cycle(self) -> dict[str, Any]:
        ...

    def seconds_until_next_tick(self) -> float:
        return self.interval_seconds

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"{self.name}_started", interval_s=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(f"{self.name}_stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "processing": self._processing,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result,
        }

    async def trigger_manually(self) -> dict[str, Any]:
        """Run one cycle now, in the caller's task."""
        logger.info(f"{self.name}_manual_trigger")
        return await self.tick()

    async def tick(self) -> dict[str, Any]:
        if self._processing:
            logger.warning(f"{self.name}_tick_skipped", reason="previous cycle still running")
            return {"skipped": True, "reason": "already_running"}
        self._processing = True
        try:
            result = await self.run_cycle()
        finally:
            self._processing = False
        self.last_run_at = self._now()
        self.last_result = result
        return result

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.seconds_until_next_tick())
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{self.name}_cycle_error", error=str(e))
