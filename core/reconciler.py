"""
Action Reconciler — keeps an opportunity's proposed actions current.

One pass:
  1. take the per-opportunity lease (one pass per opportunity at a time,
     whichever trigger path started it)
  2. lock candidate actions into PROCESSING UPDATES so humans cannot
     approve something that is about to change
  3. ask the generator for drafts with the full context
  4. plan create / overwrite / revert / cancel / keep
  5. apply the plan and advance the intelligence timestamp in one
     transaction; on any failure restore the locked statuses
  6. after commit: release provider artifacts of deleted side effects and
     schedule the follow-up pass a draft asked for

Both the queue workers and the intelligence scheduler call reconcile().
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from backend.generator import IntelligenceGenerator
from core.errors import GeneratorError, OpportunityNotFoundError, ReconcileInProgressError
from core.intent import IntentPolicy, plan_reconciliation
from core.side_effects import SideEffectResolver
from database.store_base import BaseActionStore
from job_queue.activity_queue import ActivityQueue
from models.schemas import (
    ActionStatus, ActivityRef, Opportunity, PipelineContext, ProposedAction,
    ProposedActionDraft, ReconcileDecision, ReconcileResult,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def lease_key(opportunity_id: str) -> str:
    return f"reconcile:{opportunity_id}"


class ActionReconciler:
    """
    Usage:
        reconciler = ActionReconciler(store, generator, side_effects, queue)
        result = await reconciler.reconcile(opp_id, trigger="new EmailActivity")
    """

    def __init__(
        self,
        store: BaseActionStore,
        generator: IntelligenceGenerator,
        side_effects: SideEffectResolver = None,
        queue: ActivityQueue = None,
        policy: IntentPolicy = None,
        node_id: str = "local",
        lease_ttl_seconds: float = 600,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.generator = generator
        self.side_effects = side_effects or SideEffectResolver(store)
        self.queue = queue
        self.policy = policy or IntentPolicy()
        self.node_id = node_id
        self.lease_ttl_seconds = lease_ttl_seconds
        self._now = now_fn

    async def reconcile(
        self,
        opportunity_id: str,
        trigger: str = "",
        source: str = "queue",
        source_activities: list[ActivityRef] = None,
        lease_wait_seconds: float = 0,
    ) -> ReconcileResult:
        """Run one pass. Raises ReconcileInProgressError if the opportunity is busy."""
        key = lease_key(opportunity_id)
        holder = f"{self.node_id}:{uuid.uuid4().hex[:8]}"
        if not await self._acquire(key, holder, lease_wait_seconds):
            raise ReconcileInProgressError(opportunity_id)
        try:
            return await self._run(opportunity_id, trigger, source, source_activities or [])
        finally:
            await self.store.release_lease(key, holder)

    async def _acquire(self, key: str, holder: str, wait_seconds: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            if await self.store.acquire_lease(key, holder, self.lease_ttl_seconds, self._now()):
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0, remaining))

    async def _run(
        self,
        opportunity_id: str,
        trigger: str,
        source: str,
        source_activities: list[ActivityRef],
    ) -> ReconcileResult:
        opportunity = await self.store.get_opportunity(opportunity_id)
        if opportunity is None:
            raise OpportunityNotFoundError(opportunity_id)
        stage = await self.store.get_stage(opportunity.stage_id)

        locked = await self.store.begin_evaluation(opportunity_id)
        logger.info("reconcile_started",
                    opportunity_id=opportunity_id,
                    source=source,
                    trigger=trigger,
                    locked_actions=len(locked))

        try:
            executed = [a for a in locked if a.effective_status == ActionStatus.EXECUTED]
            pending = await self.side_effects.pending_for(executed)
            context = PipelineContext(
                opportunity=opportunity,
                stage=stage,
                existing_actions=[_as_seen(a) for a in locked],
                pending_side_effects=[m for messages in pending.values() for m in messages],
                trigger=trigger,
                source=source,
                source_activities=source_activities,
                generated_at=self._now(),
            )
            drafts = await self._generate(opportunity_id, context)

            now = self._now()
            plan = plan_reconciliation(
                opportunity_id, locked, drafts, pending,
                policy=self.policy,
                organization_id=opportunity.organization_id,
                now=now,
            )
            deleted = await self.store.apply_reconciliation(plan, now)
        except Exception as e:
            restored = await self.store.abort_evaluation(opportunity_id)
            logger.warning("reconcile_aborted",
                           opportunity_id=opportunity_id,
                           restored_actions=restored,
                           error=str(e))
            raise

        await self.side_effects.release_remote(deleted)
        reprocess_at = await self._schedule_follow_up(opportunity, drafts)

        result = ReconcileResult(
            opportunity_id=opportunity_id,
            created=[c.action.id for c in plan.by_decision(ReconcileDecision.CREATE)],
            overwritten=[c.action.id for c in plan.by_decision(ReconcileDecision.OVERWRITE)],
            reverted=[c.action.id for c in plan.by_decision(ReconcileDecision.REVERT)],
            cancelled=[c.action.id for c in plan.by_decision(ReconcileDecision.CANCEL)],
            kept=[c.action.id for c in plan.by_decision(ReconcileDecision.KEEP)],
            deleted_side_effects=[m.id for m in deleted],
            reprocessing_scheduled_for=reprocess_at,
        )
        logger.info("reconcile_completed",
                    opportunity_id=opportunity_id,
                    drafts=len(drafts),
                    dropped_drafts=plan.dropped_drafts,
                    created=len(result.created),
                    overwritten=len(result.overwritten),
                    reverted=len(result.reverted),
                    cancelled=len(result.cancelled),
                    kept=len(result.kept),
                    deleted_side_effects=len(result.deleted_side_effects))
        return result

    async def _generate(self, opportunity_id: str, context: PipelineContext) -> list[ProposedActionDraft]:
        try:
            return await self.generator.generate(opportunity_id, context)
        except GeneratorError:
            raise
        except Exception as e:
            raise GeneratorError(f"Generator failed for {opportunity_id}: {e}") from e

    async def _schedule_follow_up(
        self, opportunity: Opportunity, drafts: list[ProposedActionDraft],
    ) -> Optional[datetime]:
        wait_untils = [d.wait_until for d in drafts if d.wait_until is not None]
        if not wait_untils or self.queue is None:
            return None
        run_at = min(wait_untils)
        item = await self.queue.schedule_reprocessing(opportunity, run_at=run_at, reason="wait_until")
        return item.scheduled_for


def _as_seen(action: ProposedAction) -> ProposedAction:
    """The action as it looked before the evaluation lock."""
    return action.model_copy(update={"status": action.effective_status, "previous_status": None})
