"""
Intelligence Update Scheduler — hourly sweep for opportunities nobody touched.

The queue covers opportunities with new activity. This sweep covers the
rest:
  - date-triggered: EXECUTED NO_ACTION / TASK actions whose review or due
    date is today
  - active-stale: open opportunities with contacts and no intelligence
    pass for more than `active_stale_days`
  - closed-lost-stale: closed-lost opportunities untouched for more than
    `closed_lost_stale_days`, unless the prospect has an open deal

Survivors of the exclusion filters run through the reconciler one at a
time. A failure on one opportunity never aborts the batch.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from core.errors import ReconcileInProgressError
from core.reconciler import ActionReconciler
from database.store_base import BaseActionStore
from models.schemas import ActionStatus, Opportunity
from schedulers.base import PeriodicService, _utcnow

logger = structlog.get_logger()

SCHEDULER_LEASE_KEY = "intelligence_scheduler"

DATE_TRIGGERED = "date_triggered"
ACTIVE_STALE = "active_stale"
CLOSED_LOST_STALE = "closed_lost_stale"


class IntelligenceUpdateScheduler(PeriodicService):
    """
    Usage:
        scheduler = IntelligenceUpdateScheduler(store, reconciler, timezone="Asia/Kolkata")
        await scheduler.start()               # ticks at the top of every hour
        await scheduler.trigger_manually()    # one sweep now
    """

    name = "intelligence_scheduler"

    def __init__(
        self,
        store: BaseActionStore,
        reconciler: ActionReconciler,
        active_stale_days: int = 7,
        closed_lost_stale_days: int = 90,
        inter_item_delay_seconds: float = 2.0,
        lease_ttl_seconds: float = 3300,
        timezone: str = "UTC",
        node_id: str = "local",
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(interval_seconds=3600, now_fn=now_fn)
        self.store = store
        self.reconciler = reconciler
        self.active_stale_days = active_stale_days
        self.closed_lost_stale_days = closed_lost_stale_days
        self.inter_item_delay_seconds = inter_item_delay_seconds
        self.lease_ttl_seconds = lease_ttl_seconds
        self.tz = ZoneInfo(timezone)
        self.node_id = node_id

    def seconds_until_next_tick(self) -> float:
        now = self._now()
        next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        return max((next_hour - now).total_seconds(), 1.0)

    async def run_cycle(self) -> dict[str, Any]:
        holder = f"{self.node_id}:{uuid.uuid4().hex[:8]}"
        now = self._now()
        if not await self.store.acquire_lease(SCHEDULER_LEASE_KEY, holder, self.lease_ttl_seconds, now):
            logger.info("intelligence_sweep_skipped", reason="another node is sweeping")
            return {"skipped": True, "reason": "lease_held"}
        try:
            return await self._sweep(now)
        finally:
            await self.store.release_lease(SCHEDULER_LEASE_KEY, holder)

    # ── Candidates ────────────────────────────────────────────

    async def collect_candidates(
        self, now: datetime,
    ) -> tuple[list[tuple[Opportunity, str]], dict[str, list[str]], dict[str, int]]:
        """
        Returns (ordered unique candidates with their reason,
                 opportunity id → due action ids,
                 candidate counts per set).
        """
        today = now.astimezone(self.tz).date()

        due_actions = await self.store.find_executed_actions_due(today)
        due_by_opp: dict[str, list[str]] = {}
        for action in due_actions:
            due_by_opp.setdefault(action.opportunity_id, []).append(action.id)
        date_triggered = await self.store.get_opportunities(due_by_opp.keys())

        active = await self.store.find_stale_active_opportunities(
            now - timedelta(days=self.active_stale_days),
        )

        closed_lost = await self.store.find_stale_closed_lost_opportunities(
            now - timedelta(days=self.closed_lost_stale_days),
        )
        if closed_lost:
            still_open = await self.store.prospects_with_open_opportunities(
                {o.prospect_id for o in closed_lost},
            )
            closed_lost = [o for o in closed_lost if o.prospect_id not in still_open]

        counts = {
            DATE_TRIGGERED: len(date_triggered),
            ACTIVE_STALE: len(active),
            CLOSED_LOST_STALE: len(closed_lost),
        }

        ordered: list[tuple[Opportunity, str]] = []
        seen: set[str] = set()
        for reason, opportunities in (
            (DATE_TRIGGERED, date_triggered),
            (ACTIVE_STALE, active),
            (CLOSED_LOST_STALE, closed_lost),
        ):
            for opp in opportunities:
                if opp.id not in seen:
                    seen.add(opp.id)
                    ordered.append((opp, reason))
        return ordered, due_by_opp, counts

    async def apply_filters(
        self, candidates: list[tuple[Opportunity, str]],
    ) -> tuple[list[tuple[Opportunity, str]], dict[str, int]]:
        """Drop opportunities awaiting a human decision, then those the queue already covers."""
        filtered = {"has_proposed": 0, "queued": 0}
        if not candidates:
            return [], filtered

        with_proposed = await self.store.opportunities_with_status(
            [o.id for o, _ in candidates], ActionStatus.PROPOSED,
        )
        survivors = [(o, r) for o, r in candidates if o.id not in with_proposed]
        filtered["has_proposed"] = len(candidates) - len(survivors)
        if not survivors:
            return [], filtered

        reprocessing_opps, active_prospects = await self.store.active_queue_keys(
            [o.id for o, _ in survivors], {o.prospect_id for o, _ in survivors},
        )
        remaining = [
            (o, r) for o, r in survivors
            if o.id not in reprocessing_opps and o.prospect_id not in active_prospects
        ]
        filtered["queued"] = len(survivors) - len(remaining)
        return remaining, filtered

    # ── Dispatch ──────────────────────────────────────────────

    async def _sweep(self, now: datetime) -> dict[str, Any]:
        candidates, due_by_opp, counts = await self.collect_candidates(now)
        survivors, filtered = await self.apply_filters(candidates)

        stats: dict[str, Any] = {
            "candidates": counts,
            "filtered": filtered,
            "processed": 0,
            "skipped": 0,
            "errors": 0,
            "actions_created": 0,
            "actions_marked_processed": 0,
        }
        logger.info("intelligence_sweep_started",
                    candidates=counts, filtered=filtered, to_process=len(survivors))

        for index, (opp, reason) in enumerate(survivors):
            if index and self.inter_item_delay_seconds > 0:
                await asyncio.sleep(self.inter_item_delay_seconds)
            try:
                result = await self.reconciler.reconcile(
                    opp.id, trigger=reason, source="scheduler",
                )
            except ReconcileInProgressError:
                stats["skipped"] += 1
                logger.info("intelligence_update_skipped", opportunity_id=opp.id,
                            reason="reconcile in progress")
                continue
            except Exception as e:
                stats["errors"] += 1
                logger.error("intelligence_update_failed",
                             opportunity_id=opp.id,
                             trigger=reason,
                             error=str(e),
                             error_type=type(e).__name__)
                continue

            stats["processed"] += 1
            stats["actions_created"] += len(result.created)
            consumed = due_by_opp.get(opp.id)
            if consumed:
                stats["actions_marked_processed"] += await self.store.mark_processed_by_ai(consumed)

        logger.info("intelligence_sweep_complete",
                    processed=stats["processed"],
                    skipped=stats["skipped"],
                    errors=stats["errors"],
                    actions_created=stats["actions_created"])
        return stats
