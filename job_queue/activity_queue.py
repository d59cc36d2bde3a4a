"""
Activity Queue — durable, deduplicated work items that trigger reconciliation.

Two producers feed it:
  - inbound activity (emails, meetings, notes) → `activity` items, ordered
    by when the activity happened
  - the reconciler itself, when a draft asks to be looked at again later
    → `opportunity_reprocessing` items, debounced through scheduled_for

Storage and exclusivity live in the action store; this module owns the
item-building rules and the maintenance sweep.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from database.store_base import BaseActionStore
from models.schemas import (
    ActivityRef, Opportunity, QueueItem, QueueItemStatus, QueueItemType,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def activity_priority(activity_at: datetime) -> int:
    """Earlier activity sorts first."""
    return int(activity_at.timestamp())


class ActivityQueue:
    """
    Producer/maintenance facade over the queue tables.

    Usage:
        queue = ActivityQueue(store)
        item, created = await queue.enqueue_activity(opp, ref, activity_at)
        await queue.schedule_reprocessing(opp, run_at, reason="wait_until")
        await queue.run_maintenance()
    """

    def __init__(
        self,
        store: BaseActionStore,
        debounce_seconds: int = 300,
        stuck_timeout_seconds: int = 300,
        completed_retention_days: int = 7,
    ):
        self.store = store
        self.debounce_seconds = debounce_seconds
        self.stuck_timeout_seconds = stuck_timeout_seconds
        self.completed_retention_days = completed_retention_days

    async def enqueue(self, item: QueueItem) -> tuple[QueueItem, bool]:
        """Idempotent by (opportunity, type) and (prospect, type)."""
        stored, created = await self.store.enqueue(item)
        if created:
            logger.info("queue_item_enqueued",
                        item_id=stored.id,
                        type=stored.queue_item_type.value,
                        opportunity_id=stored.opportunity_id,
                        prospect_id=stored.prospect_id)
        else:
            logger.info("queue_item_already_active",
                        existing_item_id=stored.id,
                        type=item.queue_item_type.value,
                        opportunity_id=item.opportunity_id,
                        status=stored.status.value)
        return stored, created

    async def enqueue_activity(
        self,
        opportunity: Opportunity,
        activity_ref: ActivityRef,
        activity_at: datetime,
        contact_id: Optional[str] = None,
    ) -> tuple[QueueItem, bool]:
        item = QueueItem(
            queue_item_type=QueueItemType.ACTIVITY,
            opportunity_id=opportunity.id,
            prospect_id=opportunity.prospect_id,
            organization_id=opportunity.organization_id,
            contact_id=contact_id,
            activity_ref=activity_ref,
            priority=activity_priority(activity_at),
            reason=f"new {activity_ref.activity_model.value}",
        )
        return await self.enqueue(item)

    async def schedule_reprocessing(
        self,
        opportunity: Opportunity,
        run_at: Optional[datetime] = None,
        reason: str = "",
    ) -> QueueItem:
        """
        Ask for a fresh pass no earlier than run_at (default: now + debounce).
        A pending item for the same key is pushed back rather than duplicated;
        a processing one is left alone.
        """
        run_at = run_at or _utcnow() + timedelta(seconds=self.debounce_seconds)
        item = QueueItem(
            queue_item_type=QueueItemType.OPPORTUNITY_REPROCESSING,
            opportunity_id=opportunity.id,
            prospect_id=opportunity.prospect_id,
            organization_id=opportunity.organization_id,
            scheduled_for=run_at,
            priority=activity_priority(run_at),
            reason=reason,
        )
        stored, created = await self.enqueue(item)
        if created or stored.status != QueueItemStatus.PENDING:
            return stored
        if stored.opportunity_id != opportunity.id:
            # Pending item belongs to a sibling opportunity of the same prospect
            return stored

        rescheduled = await self.store.reschedule_pending(stored.id, run_at, priority=item.priority)
        if rescheduled:
            logger.info("queue_item_debounced", item_id=stored.id, scheduled_for=run_at.isoformat())
            return rescheduled
        return stored

    async def stats(self) -> dict[str, dict[str, int]]:
        return await self.store.queue_stats()

    async def run_maintenance(self, now: datetime = None) -> dict[str, int]:
        """
        Fail items stuck in processing (crashed worker) and purge old
        completed items. Stuck items are never put back to pending.
        """
        now = now or _utcnow()
        stuck = await self.store.fail_stuck_items(
            started_before=now - timedelta(seconds=self.stuck_timeout_seconds), now=now,
        )
        purged = await self.store.delete_completed_items(
            processed_before=now - timedelta(days=self.completed_retention_days),
        )
        if stuck or purged:
            logger.info("queue_maintenance", stuck_failed=stuck, completed_deleted=purged)
        return {"stuck_failed": stuck, "completed_deleted": purged}
