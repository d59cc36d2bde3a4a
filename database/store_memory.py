"""
InMemoryActionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlActionStore
  - Atomic by construction: no method awaits while mutating, so every
    call is one uninterrupted step on the event loop
  - All data lost on process restart

Records are copied on the way in and out so callers never hold live
references into the store.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from core.errors import ConcurrentModificationError
from database.store_base import BaseActionStore, action_review_date
from models.schemas import (
    ACTIVE_QUEUE_STATUSES, AWAITING_DECISION_STATUSES,
    ActionStatus, ActivityRef, Opportunity, PipelineStage, ProcessingStatus,
    ProposedAction, QueueItem, QueueItemStatus, QueueItemType,
    ReconcileDecision, ReconciliationPlan, ScheduledMessage,
    ScheduledMessageStatus,
)

logger = structlog.get_logger()

STUCK_ERROR = "stuck processing timeout"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryActionStore(BaseActionStore):
    """Full-featured in-memory store with the same interface as SqlActionStore."""

    def __init__(self):
        self._stages: dict[str, PipelineStage] = {}
        self._opportunities: dict[str, Opportunity] = {}
        self._actions: dict[str, ProposedAction] = {}
        self._queue: dict[str, QueueItem] = {}
        self._scheduled: dict[str, ScheduledMessage] = {}
        self._leases: dict[str, tuple[str, datetime]] = {}    # key → (holder, expires_at)
        logger.info("inmemory_store_initialized")

    # ── Pipeline stages & opportunities ───────────────────

    async def upsert_stage(self, stage: PipelineStage) -> PipelineStage:
        self._stages[stage.id] = _copy(stage)
        return stage

    async def get_stage(self, stage_id: str) -> Optional[PipelineStage]:
        return _copy(self._stages.get(stage_id))

    async def upsert_opportunity(self, opportunity: Opportunity) -> Opportunity:
        self._opportunities[opportunity.id] = _copy(opportunity)
        return opportunity

    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        return _copy(self._opportunities.get(opportunity_id))

    async def get_opportunities(self, opportunity_ids: Iterable[str]) -> list[Opportunity]:
        return [_copy(self._opportunities[oid]) for oid in opportunity_ids if oid in self._opportunities]

    def _stale(self, opp: Opportunity, cutoff: datetime) -> bool:
        return opp.last_intelligence_update is None or opp.last_intelligence_update < cutoff

    async def find_stale_active_opportunities(self, cutoff: datetime) -> list[Opportunity]:
        result = []
        for opp in self._opportunities.values():
            stage = self._stages.get(opp.stage_id)
            if stage is None or stage.is_closed or not opp.contact_ids:
                continue
            if self._stale(opp, cutoff):
                result.append(_copy(opp))
        return result

    async def find_stale_closed_lost_opportunities(self, cutoff: datetime) -> list[Opportunity]:
        result = []
        for opp in self._opportunities.values():
            stage = self._stages.get(opp.stage_id)
            if stage is None or not stage.is_closed_lost:
                continue
            if self._stale(opp, cutoff):
                result.append(_copy(opp))
        return result

    async def prospects_with_open_opportunities(self, prospect_ids: Iterable[str]) -> set[str]:
        wanted = set(prospect_ids)
        open_prospects = set()
        for opp in self._opportunities.values():
            stage = self._stages.get(opp.stage_id)
            if opp.prospect_id in wanted and stage is not None and not stage.is_closed:
                open_prospects.add(opp.prospect_id)
        return open_prospects

    async def set_processing_status(self, opportunity_id: str, status: ProcessingStatus) -> None:
        opp = self._opportunities.get(opportunity_id)
        if opp:
            opp.processing_status = status

    async def record_intelligence_update(self, opportunity_id: str, at: datetime) -> bool:
        opp = self._opportunities.get(opportunity_id)
        if opp is None:
            return False
        if opp.last_intelligence_update is not None and opp.last_intelligence_update >= at:
            return False
        opp.last_intelligence_update = at
        return True

    # ── Queue items ───────────────────────────────────────

    def _active_conflict(self, item_type: QueueItemType, opportunity_id: str,
                         prospect_id: str) -> Optional[QueueItem]:
        for existing in self._queue.values():
            if existing.status not in ACTIVE_QUEUE_STATUSES or existing.queue_item_type != item_type:
                continue
            if existing.opportunity_id == opportunity_id or existing.prospect_id == prospect_id:
                return existing
        return None

    async def enqueue(self, item: QueueItem) -> tuple[QueueItem, bool]:
        existing = self._active_conflict(item.queue_item_type, item.opportunity_id, item.prospect_id)
        if existing:
            return _copy(existing), False
        stored = _copy(item)
        stored.status = QueueItemStatus.PENDING
        self._queue[stored.id] = stored
        return _copy(stored), True

    async def reschedule_pending(self, item_id: str, scheduled_for: datetime,
                                 priority: Optional[int] = None) -> Optional[QueueItem]:
        item = self._queue.get(item_id)
        if item is None or item.status != QueueItemStatus.PENDING:
            return None
        item.scheduled_for = scheduled_for
        if priority is not None:
            item.priority = priority
        return _copy(item)

    async def claim_next(self, node_id: str, now: datetime) -> Optional[QueueItem]:
        busy_opportunities = set()
        busy_prospects = set()
        for item in self._queue.values():
            if item.status == QueueItemStatus.PROCESSING:
                busy_opportunities.add(item.opportunity_id)
                busy_prospects.add(item.prospect_id)

        candidates = [
            item for item in self._queue.values()
            if item.status == QueueItemStatus.PENDING
            and (item.scheduled_for is None or item.scheduled_for <= now)
            and item.opportunity_id not in busy_opportunities
            and item.prospect_id not in busy_prospects
        ]
        if not candidates:
            return None

        item = min(candidates, key=lambda i: (i.priority, i.created_at))
        item.status = QueueItemStatus.PROCESSING
        item.attempts += 1
        item.processing_started_at = now
        item.processing_node = node_id
        return _copy(item)

    async def complete_item(self, item_id: str, now: datetime) -> bool:
        item = self._queue.get(item_id)
        if item is None or item.status != QueueItemStatus.PROCESSING:
            return False
        item.status = QueueItemStatus.COMPLETED
        item.processed_at = now
        return True

    async def fail_item(self, item_id: str, error: str, now: datetime) -> bool:
        item = self._queue.get(item_id)
        if item is None or item.status not in ACTIVE_QUEUE_STATUSES:
            return False
        item.status = QueueItemStatus.FAILED
        item.last_error = error
        item.processed_at = now
        return True

    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        return _copy(self._queue.get(item_id))

    async def find_active_item(self, queue_item_type: QueueItemType, opportunity_id: str,
                               prospect_id: str) -> Optional[QueueItem]:
        return _copy(self._active_conflict(queue_item_type, opportunity_id, prospect_id))

    async def active_queue_keys(self, opportunity_ids: Iterable[str],
                                prospect_ids: Iterable[str]) -> tuple[set[str], set[str]]:
        opportunity_ids, prospect_ids = set(opportunity_ids), set(prospect_ids)
        busy_opportunities, busy_prospects = set(), set()
        for item in self._queue.values():
            if item.status not in ACTIVE_QUEUE_STATUSES:
                continue
            if (item.queue_item_type == QueueItemType.OPPORTUNITY_REPROCESSING
                    and item.opportunity_id in opportunity_ids):
                busy_opportunities.add(item.opportunity_id)
            if item.queue_item_type == QueueItemType.ACTIVITY and item.prospect_id in prospect_ids:
                busy_prospects.add(item.prospect_id)
        return busy_opportunities, busy_prospects

    async def queue_stats(self) -> dict[str, dict[str, int]]:
        stats = {t.value: {s.value: 0 for s in QueueItemStatus} for t in QueueItemType}
        for item in self._queue.values():
            stats[item.queue_item_type.value][item.status.value] += 1
        return stats

    async def fail_stuck_items(self, started_before: datetime, now: datetime) -> int:
        count = 0
        for item in self._queue.values():
            if (item.status == QueueItemStatus.PROCESSING
                    and item.processing_started_at is not None
                    and item.processing_started_at < started_before):
                item.status = QueueItemStatus.FAILED
                item.last_error = STUCK_ERROR
                item.processed_at = now
                count += 1
        return count

    async def delete_completed_items(self, processed_before: datetime) -> int:
        doomed = [
            item_id for item_id, item in self._queue.items()
            if item.status == QueueItemStatus.COMPLETED
            and item.processed_at is not None and item.processed_at < processed_before
        ]
        for item_id in doomed:
            del self._queue[item_id]
        return len(doomed)

    # ── Proposed actions ──────────────────────────────────

    async def create_action(self, action: ProposedAction) -> ProposedAction:
        self._actions[action.id] = _copy(action)
        return action

    async def get_action(self, action_id: str) -> Optional[ProposedAction]:
        return _copy(self._actions.get(action_id))

    async def list_actions(self, opportunity_id: str,
                           statuses: Iterable[ActionStatus] = None) -> list[ProposedAction]:
        wanted = set(statuses) if statuses is not None else None
        actions = [
            a for a in self._actions.values()
            if a.opportunity_id == opportunity_id and (wanted is None or a.status in wanted)
        ]
        return [_copy(a) for a in sorted(actions, key=lambda a: a.created_at)]

    async def transition_action(self, action_id: str, from_statuses: Iterable[ActionStatus],
                                to_status: ActionStatus, *, expected_updated_at: Optional[datetime] = None,
                                **changes: Any) -> Optional[ProposedAction]:
        action = self._actions.get(action_id)
        if action is None or action.status not in set(from_statuses):
            return None
        if expected_updated_at is not None and action.updated_at != expected_updated_at:
            return None
        updated = action.model_copy(update={
            **changes, "status": to_status, "updated_at": _utcnow(),
        })
        self._actions[action_id] = updated
        return _copy(updated)

    async def opportunities_with_status(self, opportunity_ids: Iterable[str],
                                        status: ActionStatus) -> set[str]:
        wanted = set(opportunity_ids)
        return {a.opportunity_id for a in self._actions.values()
                if a.status == status and a.opportunity_id in wanted}

    async def find_executed_actions_due(self, today: date) -> list[ProposedAction]:
        return [
            _copy(a) for a in self._actions.values()
            if a.status == ActionStatus.EXECUTED and action_review_date(a) == today
        ]

    async def mark_processed_by_ai(self, action_ids: Iterable[str]) -> int:
        count = 0
        for action_id in action_ids:
            action = self._actions.get(action_id)
            if action and action.status == ActionStatus.EXECUTED:
                action.status = ActionStatus.PROCESSED_BY_AI
                count += 1
        return count

    def _pending_side_effect_action_ids(self, opportunity_id: str) -> set[str]:
        return {
            m.action_id for m in self._scheduled.values()
            if m.opportunity_id == opportunity_id and m.status == ScheduledMessageStatus.SCHEDULED
        }

    async def begin_evaluation(self, opportunity_id: str) -> list[ProposedAction]:
        pending = self._pending_side_effect_action_ids(opportunity_id)
        locked = []
        for action in self._actions.values():
            if action.opportunity_id != opportunity_id:
                continue
            lockable = (action.status in AWAITING_DECISION_STATUSES
                        or (action.status == ActionStatus.EXECUTED and action.id in pending))
            if lockable:
                action.previous_status = action.status
                action.status = ActionStatus.PROCESSING_UPDATES
                locked.append(_copy(action))
            elif action.status == ActionStatus.PROCESSING_UPDATES:
                # left behind by an interrupted pass
                locked.append(_copy(action))
        return locked

    async def abort_evaluation(self, opportunity_id: str) -> int:
        count = 0
        for action in self._actions.values():
            if action.opportunity_id == opportunity_id and action.status == ActionStatus.PROCESSING_UPDATES:
                action.status = action.previous_status or ActionStatus.PROPOSED
                action.previous_status = None
                count += 1
        return count

    async def apply_reconciliation(self, plan: ReconciliationPlan, now: datetime) -> list[ScheduledMessage]:
        # Validate everything first; nothing is written if any check fails
        for change in plan.changes:
            current = self._actions.get(change.action.id)
            if change.decision == ReconcileDecision.CREATE:
                if current is not None:
                    raise ConcurrentModificationError(f"Action {change.action.id} already exists")
            elif current is None or current.status != ActionStatus.PROCESSING_UPDATES:
                raise ConcurrentModificationError(
                    f"Action {change.action.id} is no longer under evaluation")

        for change in plan.changes:
            stored = change.action.model_copy(deep=True, update={"previous_status": None, "updated_at": now})
            self._actions[stored.id] = stored

        deleted = []
        for message_id in plan.side_effects_to_delete:
            message = self._scheduled.get(message_id)
            if message and message.status == ScheduledMessageStatus.SCHEDULED:
                deleted.append(self._scheduled.pop(message_id))

        await self.record_intelligence_update(plan.opportunity_id, now)
        return deleted

    async def execute_action(self, action_id: str, side_effect: Optional[ScheduledMessage],
                             executed_at: datetime, **changes: Any) -> Optional[ProposedAction]:
        action = self._actions.get(action_id)
        if action is None or action.status != ActionStatus.APPROVED:
            return None
        resulting = list(action.resulting_activities)
        if side_effect is not None:
            self._scheduled[side_effect.id] = _copy(side_effect)
            resulting.append(side_effect.ref())
        updated = action.model_copy(update={
            **changes,
            "status": ActionStatus.EXECUTED,
            "executed_at": executed_at,
            "resulting_activities": resulting,
            "updated_at": executed_at,
        })
        self._actions[action_id] = updated
        return _copy(updated)

    # ── Scheduled messages ────────────────────────────────

    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        return _copy(self._scheduled.get(message_id))

    async def list_scheduled_messages(self, action_ids: Iterable[str] = None,
                                      statuses: Iterable[str] = None) -> list[ScheduledMessage]:
        ids = set(action_ids) if action_ids is not None else None
        wanted = {ScheduledMessageStatus(s) for s in statuses} if statuses is not None else None
        return [
            _copy(m) for m in sorted(self._scheduled.values(), key=lambda m: m.scheduled_for)
            if (ids is None or m.action_id in ids) and (wanted is None or m.status in wanted)
        ]

    async def claim_due_messages(self, now: datetime, limit: int) -> list[ScheduledMessage]:
        locked = {a.id for a in self._actions.values() if a.status == ActionStatus.PROCESSING_UPDATES}
        due = sorted(
            (m for m in self._scheduled.values()
             if m.status == ScheduledMessageStatus.SCHEDULED
             and m.scheduled_for <= now and m.action_id not in locked),
            key=lambda m: m.scheduled_for,
        )[:limit]
        for message in due:
            message.status = ScheduledMessageStatus.SENDING
            message.updated_at = now
        return [_copy(m) for m in due]

    async def complete_scheduled_send(self, message_id: str, provider_message_id: Optional[str]) -> bool:
        message = self._scheduled.get(message_id)
        if message is None or message.status != ScheduledMessageStatus.SENDING:
            return False
        del self._scheduled[message_id]

        action = self._actions.get(message.action_id)
        if action is not None:
            refs = [r for r in action.resulting_activities if r.activity_id != message_id]
            if provider_message_id:
                refs.append(ActivityRef(activity_id=provider_message_id,
                                        activity_model=message.activity_model))
            action.resulting_activities = refs
        return True

    async def fail_scheduled_send(self, message_id: str, reason: str) -> bool:
        message = self._scheduled.get(message_id)
        if message is None or message.status == ScheduledMessageStatus.FAILED:
            return False
        message.status = ScheduledMessageStatus.FAILED
        message.failure_reason = reason
        return True

    async def fail_stale_sending(self, updated_before: datetime, reason: str) -> int:
        count = 0
        for message in self._scheduled.values():
            if message.status == ScheduledMessageStatus.SENDING and message.updated_at < updated_before:
                message.status = ScheduledMessageStatus.FAILED
                message.failure_reason = reason
                count += 1
        return count

    # ── Leases ────────────────────────────────────────────

    async def acquire_lease(self, key: str, holder: str, ttl_seconds: float, now: datetime) -> bool:
        current = self._leases.get(key)
        if current is not None and current[0] != holder and current[1] > now:
            return False
        self._leases[key] = (holder, now + timedelta(seconds=ttl_seconds))
        return True

    async def release_lease(self, key: str, holder: str) -> None:
        current = self._leases.get(key)
        if current is not None and current[0] == holder:
            del self._leases[key]

    # ── Stats ─────────────────────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "opportunities": len(self._opportunities),
            "actions": len(self._actions),
            "queue_items": len(self._queue),
            "scheduled_messages": len(self._scheduled),
        }
