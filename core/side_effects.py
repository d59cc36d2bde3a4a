"""
Side-effect resolution for proposed actions.

Actions point at what they produced through weak `{activity_id,
activity_model}` refs. Each activity kind gets a handler that answers two
questions: is this side effect still pending (cancellable), and what must
happen outside our database once the local record is gone.
"""
from __future__ import annotations

import structlog
from typing import Callable, Iterable, Optional

from backend.messaging import MessagingProvider
from database.store_base import BaseActionStore
from models.schemas import (
    ActivityModel, ActivityRef, ProposedAction, ScheduledMessage,
    ScheduledMessageStatus,
)

logger = structlog.get_logger()

_Handler = Callable[[ActivityRef, dict[str, ScheduledMessage]], Optional[ScheduledMessage]]


class SideEffectResolver:
    """
    Per-kind dispatch table over ActivityRef.

      EmailActivity     → local scheduled message (pending while status=scheduled)
      CalendarActivity  → local scheduled invitation (same rule)
      Activity          → already-happened record owned elsewhere; never pending
    """

    def __init__(self, store: BaseActionStore, provider: MessagingProvider = None):
        self.store = store
        self.provider = provider
        self._handlers: dict[ActivityModel, _Handler] = {
            ActivityModel.EMAIL: self._local_scheduled,
            ActivityModel.CALENDAR: self._local_scheduled,
            ActivityModel.ACTIVITY: self._external,
        }

    @staticmethod
    def _local_scheduled(ref: ActivityRef, records: dict[str, ScheduledMessage]) -> Optional[ScheduledMessage]:
        record = records.get(ref.activity_id)
        if record and record.activity_model == ref.activity_model:
            return record
        return None

    @staticmethod
    def _external(ref: ActivityRef, records: dict[str, ScheduledMessage]) -> Optional[ScheduledMessage]:
        return None

    async def pending_for(self, actions: Iterable[ProposedAction]) -> dict[str, list[ScheduledMessage]]:
        """Map action id → side effects that can still be cancelled."""
        actions = list(actions)
        if not actions:
            return {}
        scheduled = await self.store.list_scheduled_messages(
            action_ids=[a.id for a in actions],
            statuses=[ScheduledMessageStatus.SCHEDULED],
        )
        records = {m.id: m for m in scheduled}

        pending: dict[str, list[ScheduledMessage]] = {}
        for action in actions:
            refs = list(action.resulting_activities)
            # Records linked only by action_id (ref lost) are still ours
            referenced = {r.activity_id for r in refs}
            refs += [m.ref() for m in scheduled if m.action_id == action.id and m.id not in referenced]
            for ref in refs:
                record = self._handlers[ref.activity_model](ref, records)
                if record is not None and record.action_id == action.id:
                    pending.setdefault(action.id, []).append(record)
        return pending

    async def release_remote(self, deleted: Iterable[ScheduledMessage]) -> list[str]:
        """
        Tell the provider to drop anything it staged for deleted records.
        Runs after the local delete has committed; failures are logged only.
        """
        released = []
        if self.provider is None:
            return released
        for message in deleted:
            try:
                await self.provider.delete_scheduled_artifact(message.id)
                released.append(message.id)
            except Exception as e:
                logger.warning("provider_artifact_delete_failed",
                               message_id=message.id,
                               action_id=message.action_id,
                               error=str(e))
        return released
