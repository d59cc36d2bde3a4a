"""
Scheduled Send Executor — delivers scheduled messages once they are due.

Every minute:
  1. `sending` records older than stale_sending_seconds → failed
     (the process died mid-send; outcome unknown, never resent)
  2. claim due `scheduled` records whose action is not under evaluation
  3. send each through the provider; delivered records are deleted and the
     action's ref swapped for the provider message id, failures are kept
     as `failed` for inspection
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Callable

from backend.messaging import MessagingProvider
from database.store_base import BaseActionStore
from models.schemas import ScheduledMessage
from schedulers.base import PeriodicService, _utcnow

logger = structlog.get_logger()

STALE_SENDING_REASON = "delivery outcome unknown"


class ScheduledSendExecutor(PeriodicService):

    name = "scheduled_send_executor"

    def __init__(
        self,
        store: BaseActionStore,
        provider: MessagingProvider,
        interval_seconds: float = 60,
        batch_size: int = 50,
        stale_sending_seconds: float = 600,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(interval_seconds=interval_seconds, now_fn=now_fn)
        self.store = store
        self.provider = provider
        self.batch_size = batch_size
        self.stale_sending_seconds = stale_sending_seconds

    async def run_cycle(self) -> dict[str, Any]:
        now = self._now()
        stats = {"stale_failed": 0, "claimed": 0, "sent": 0, "failed": 0}

        stats["stale_failed"] = await self.store.fail_stale_sending(
            updated_before=now - timedelta(seconds=self.stale_sending_seconds),
            reason=STALE_SENDING_REASON,
        )
        if stats["stale_failed"]:
            logger.warning("scheduled_sends_stale", count=stats["stale_failed"])

        due = await self.store.claim_due_messages(now, self.batch_size)
        stats["claimed"] = len(due)
        for message in due:
            if await self._deliver(message):
                stats["sent"] += 1
            else:
                stats["failed"] += 1

        if due or stats["stale_failed"]:
            logger.info("scheduled_send_cycle_complete", **stats)
        return stats

    async def _deliver(self, message: ScheduledMessage) -> bool:
        try:
            result = await self.provider.send(message.payload)
        except Exception as e:
            await self.store.fail_scheduled_send(message.id, str(e))
            logger.error("scheduled_send_failed",
                         message_id=message.id,
                         action_id=message.action_id,
                         error=str(e))
            return False

        if not result.success:
            reason = result.error or "provider rejected message"
            await self.store.fail_scheduled_send(message.id, reason)
            logger.error("scheduled_send_rejected",
                         message_id=message.id,
                         action_id=message.action_id,
                         error=reason)
            return False

        await self.store.complete_scheduled_send(message.id, result.provider_message_id)
        logger.info("scheduled_send_delivered",
                    message_id=message.id,
                    action_id=message.action_id,
                    provider_message_id=result.provider_message_id)
        return True
