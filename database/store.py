"""
SqlActionStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Mutual exclusion lives in the database, never in the process:
  - status transitions are conditional UPDATEs (compare-and-set on status)
  - queue keys are protected by partial unique indexes; an IntegrityError
    means another node won the race and is treated as "nothing to do"
  - JSON detail lookups (review/due dates) are filtered Python-side since
    JSON path queries are not portable
"""
from __future__ import annotations

import json
import structlog
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from core.errors import ConcurrentModificationError
from database.models import (
    LeaseRow, OpportunityRow, PipelineStageRow, ProposedActionRow,
    QueueItemRow, ScheduledMessageRow,
)
from database.session import get_session
from database.store_base import BaseActionStore, action_review_date, details_review_date
from models.action_details import ActionType
from models.schemas import (
    ACTIVE_QUEUE_STATUSES, AWAITING_DECISION_STATUSES,
    ActionStatus, Opportunity, PipelineStage, ProcessingStatus,
    ProposedAction, QueueItem, QueueItemStatus, QueueItemType,
    ReconcileDecision, ReconciliationPlan, ScheduledMessage,
    ScheduledMessageStatus,
)

logger = structlog.get_logger()

STUCK_ERROR = "stuck processing timeout"
_CLAIM_CANDIDATES = 10

_ACTIVE = [s.value for s in ACTIVE_QUEUE_STATUSES]
_AWAITING = [s.value for s in AWAITING_DECISION_STATUSES]
_LOCKED = ActionStatus.PROCESSING_UPDATES.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json(value: Any, default):
    # SQLite may return JSON columns as text
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _to_column(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_to_column(v) for v in value]
    return value


class SqlActionStore(BaseActionStore):
    """
    Persistent action store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Pipeline stages & opportunities ────────────────────

    async def upsert_stage(self, stage: PipelineStage) -> PipelineStage:
        async with get_session() as db:
            row = await db.get(PipelineStageRow, stage.id)
            if row is None:
                row = PipelineStageRow(id=stage.id)
                db.add(row)
            row.organization_id = stage.organization_id
            row.name = stage.name
            row.is_closed_won = stage.is_closed_won
            row.is_closed_lost = stage.is_closed_lost
        return stage

    async def get_stage(self, stage_id: str) -> Optional[PipelineStage]:
        async with get_session() as db:
            row = await db.get(PipelineStageRow, stage_id)
            return self._row_to_stage(row) if row else None

    async def upsert_opportunity(self, opportunity: Opportunity) -> Opportunity:
        async with get_session() as db:
            row = await db.get(OpportunityRow, opportunity.id)
            if row is None:
                row = OpportunityRow(id=opportunity.id, created_at=opportunity.created_at)
                db.add(row)
            row.organization_id = opportunity.organization_id
            row.prospect_id = opportunity.prospect_id
            row.name = opportunity.name
            row.stage_id = opportunity.stage_id
            row.contact_ids = list(opportunity.contact_ids)
            row.contact_count = len(opportunity.contact_ids)
            row.processing_status = opportunity.processing_status.value
            row.last_intelligence_update = opportunity.last_intelligence_update
        return opportunity

    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        async with get_session() as db:
            row = await db.get(OpportunityRow, opportunity_id)
            return self._row_to_opportunity(row) if row else None

    async def get_opportunities(self, opportunity_ids: Iterable[str]) -> list[Opportunity]:
        ids = list(opportunity_ids)
        if not ids:
            return []
        async with get_session() as db:
            result = await db.execute(select(OpportunityRow).where(OpportunityRow.id.in_(ids)))
            by_id = {row.id: self._row_to_opportunity(row) for row in result.scalars()}
        return [by_id[oid] for oid in ids if oid in by_id]

    @staticmethod
    def _stale_clause(cutoff: datetime):
        return or_(
            OpportunityRow.last_intelligence_update.is_(None),
            OpportunityRow.last_intelligence_update < cutoff,
        )

    async def find_stale_active_opportunities(self, cutoff: datetime) -> list[Opportunity]:
        async with get_session() as db:
            stmt = (
                select(OpportunityRow)
                .join(PipelineStageRow, PipelineStageRow.id == OpportunityRow.stage_id)
                .where(and_(
                    PipelineStageRow.is_closed_won.is_(False),
                    PipelineStageRow.is_closed_lost.is_(False),
                    OpportunityRow.contact_count > 0,
                    self._stale_clause(cutoff),
                ))
            )
            result = await db.execute(stmt)
            return [self._row_to_opportunity(row) for row in result.scalars()]

    async def find_stale_closed_lost_opportunities(self, cutoff: datetime) -> list[Opportunity]:
        async with get_session() as db:
            stmt = (
                select(OpportunityRow)
                .join(PipelineStageRow, PipelineStageRow.id == OpportunityRow.stage_id)
                .where(and_(
                    PipelineStageRow.is_closed_lost.is_(True),
                    self._stale_clause(cutoff),
                ))
            )
            result = await db.execute(stmt)
            return [self._row_to_opportunity(row) for row in result.scalars()]

    async def prospects_with_open_opportunities(self, prospect_ids: Iterable[str]) -> set[str]:
        ids = list(set(prospect_ids))
        if not ids:
            return set()
        async with get_session() as db:
            stmt = (
                select(OpportunityRow.prospect_id).distinct()
                .join(PipelineStageRow, PipelineStageRow.id == OpportunityRow.stage_id)
                .where(and_(
                    OpportunityRow.prospect_id.in_(ids),
                    PipelineStageRow.is_closed_won.is_(False),
                    PipelineStageRow.is_closed_lost.is_(False),
                ))
            )
            result = await db.execute(stmt)
            return set(result.scalars())

    async def set_processing_status(self, opportunity_id: str, status: ProcessingStatus) -> None:
        async with get_session() as db:
            await db.execute(
                update(OpportunityRow)
                .where(OpportunityRow.id == opportunity_id)
                .values(processing_status=status.value)
            )

    async def record_intelligence_update(self, opportunity_id: str, at: datetime) -> bool:
        async with get_session() as db:
            return await self._advance_timestamp(db, opportunity_id, at)

    @staticmethod
    async def _advance_timestamp(db, opportunity_id: str, at: datetime) -> bool:
        result = await db.execute(
            update(OpportunityRow)
            .where(and_(
                OpportunityRow.id == opportunity_id,
                or_(OpportunityRow.last_intelligence_update.is_(None),
                    OpportunityRow.last_intelligence_update < at),
            ))
            .values(last_intelligence_update=at)
        )
        return result.rowcount == 1

    # ── Queue items ────────────────────────────────────────

    async def enqueue(self, item: QueueItem) -> tuple[QueueItem, bool]:
        existing = await self.find_active_item(item.queue_item_type, item.opportunity_id, item.prospect_id)
        if existing:
            return existing, False

        stored = item.model_copy(update={"status": QueueItemStatus.PENDING})
        try:
            async with get_session() as db:
                db.add(QueueItemRow(**self._queue_values(stored)))
        except IntegrityError:
            existing = await self.find_active_item(item.queue_item_type, item.opportunity_id, item.prospect_id)
            if existing is None:
                raise
            logger.info("queue_enqueue_race_lost",
                        opportunity_id=item.opportunity_id,
                        existing_item_id=existing.id)
            return existing, False
        return stored, True

    async def reschedule_pending(self, item_id: str, scheduled_for: datetime,
                                 priority: Optional[int] = None) -> Optional[QueueItem]:
        values: dict[str, Any] = {"scheduled_for": scheduled_for}
        if priority is not None:
            values["priority"] = priority
        async with get_session() as db:
            result = await db.execute(
                update(QueueItemRow)
                .where(and_(QueueItemRow.id == item_id, QueueItemRow.status == QueueItemStatus.PENDING.value))
                .values(**values)
            )
            if result.rowcount != 1:
                return None
            row = await db.get(QueueItemRow, item_id)
            return self._row_to_queue_item(row)

    async def claim_next(self, node_id: str, now: datetime) -> Optional[QueueItem]:
        processing = QueueItemStatus.PROCESSING.value
        async with get_session() as db:
            busy_opportunities = select(QueueItemRow.opportunity_id).where(QueueItemRow.status == processing)
            busy_prospects = select(QueueItemRow.prospect_id).where(QueueItemRow.status == processing)
            stmt = (
                select(QueueItemRow.id)
                .where(and_(
                    QueueItemRow.status == QueueItemStatus.PENDING.value,
                    or_(QueueItemRow.scheduled_for.is_(None), QueueItemRow.scheduled_for <= now),
                    QueueItemRow.opportunity_id.not_in(busy_opportunities),
                    QueueItemRow.prospect_id.not_in(busy_prospects),
                ))
                .order_by(QueueItemRow.priority, QueueItemRow.created_at)
                .limit(_CLAIM_CANDIDATES)
            )
            candidate_ids = list((await db.execute(stmt)).scalars())

        for candidate_id in candidate_ids:
            try:
                async with get_session() as db:
                    result = await db.execute(
                        update(QueueItemRow)
                        .where(and_(QueueItemRow.id == candidate_id,
                                    QueueItemRow.status == QueueItemStatus.PENDING.value))
                        .values(status=processing,
                                attempts=QueueItemRow.attempts + 1,
                                processing_started_at=now,
                                processing_node=node_id)
                    )
                    if result.rowcount != 1:
                        continue
                    row = await db.get(QueueItemRow, candidate_id)
                    return self._row_to_queue_item(row)
            except IntegrityError:
                # Another node is processing this opportunity/prospect
                logger.debug("queue_claim_race_lost", item_id=candidate_id, node=node_id)
                continue
        return None

    async def complete_item(self, item_id: str, now: datetime) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(QueueItemRow)
                .where(and_(QueueItemRow.id == item_id,
                            QueueItemRow.status == QueueItemStatus.PROCESSING.value))
                .values(status=QueueItemStatus.COMPLETED.value, processed_at=now)
            )
            return result.rowcount == 1

    async def fail_item(self, item_id: str, error: str, now: datetime) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(QueueItemRow)
                .where(and_(QueueItemRow.id == item_id, QueueItemRow.status.in_(_ACTIVE)))
                .values(status=QueueItemStatus.FAILED.value, last_error=error, processed_at=now)
            )
            return result.rowcount == 1

    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        async with get_session() as db:
            row = await db.get(QueueItemRow, item_id)
            return self._row_to_queue_item(row) if row else None

    async def find_active_item(self, queue_item_type: QueueItemType, opportunity_id: str,
                               prospect_id: str) -> Optional[QueueItem]:
        async with get_session() as db:
            stmt = (
                select(QueueItemRow)
                .where(and_(
                    QueueItemRow.queue_item_type == queue_item_type.value,
                    QueueItemRow.status.in_(_ACTIVE),
                    or_(QueueItemRow.opportunity_id == opportunity_id,
                        QueueItemRow.prospect_id == prospect_id),
                ))
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_queue_item(row) if row else None

    async def active_queue_keys(self, opportunity_ids: Iterable[str],
                                prospect_ids: Iterable[str]) -> tuple[set[str], set[str]]:
        opportunity_ids, prospect_ids = list(set(opportunity_ids)), list(set(prospect_ids))
        busy_opportunities: set[str] = set()
        busy_prospects: set[str] = set()
        async with get_session() as db:
            if opportunity_ids:
                result = await db.execute(
                    select(QueueItemRow.opportunity_id).where(and_(
                        QueueItemRow.queue_item_type == QueueItemType.OPPORTUNITY_REPROCESSING.value,
                        QueueItemRow.status.in_(_ACTIVE),
                        QueueItemRow.opportunity_id.in_(opportunity_ids),
                    ))
                )
                busy_opportunities = set(result.scalars())
            if prospect_ids:
                result = await db.execute(
                    select(QueueItemRow.prospect_id).where(and_(
                        QueueItemRow.queue_item_type == QueueItemType.ACTIVITY.value,
                        QueueItemRow.status.in_(_ACTIVE),
                        QueueItemRow.prospect_id.in_(prospect_ids),
                    ))
                )
                busy_prospects = set(result.scalars())
        return busy_opportunities, busy_prospects

    async def queue_stats(self) -> dict[str, dict[str, int]]:
        stats = {t.value: {s.value: 0 for s in QueueItemStatus} for t in QueueItemType}
        async with get_session() as db:
            result = await db.execute(
                select(QueueItemRow.queue_item_type, QueueItemRow.status, func.count())
                .group_by(QueueItemRow.queue_item_type, QueueItemRow.status)
            )
            for item_type, status, count in result.all():
                stats.setdefault(item_type, {})[status] = count
        return stats

    async def fail_stuck_items(self, started_before: datetime, now: datetime) -> int:
        async with get_session() as db:
            result = await db.execute(
                update(QueueItemRow)
                .where(and_(QueueItemRow.status == QueueItemStatus.PROCESSING.value,
                            QueueItemRow.processing_started_at < started_before))
                .values(status=QueueItemStatus.FAILED.value, last_error=STUCK_ERROR, processed_at=now)
            )
            return result.rowcount

    async def delete_completed_items(self, processed_before: datetime) -> int:
        async with get_session() as db:
            result = await db.execute(
                delete(QueueItemRow)
                .where(and_(QueueItemRow.status == QueueItemStatus.COMPLETED.value,
                            QueueItemRow.processed_at < processed_before))
            )
            return result.rowcount

    # ── Proposed actions ───────────────────────────────────

    async def create_action(self, action: ProposedAction) -> ProposedAction:
        async with get_session() as db:
            db.add(ProposedActionRow(**self._action_values(action)))
        return action

    async def get_action(self, action_id: str) -> Optional[ProposedAction]:
        async with get_session() as db:
            row = await db.get(ProposedActionRow, action_id)
            return self._row_to_action(row) if row else None

    async def list_actions(self, opportunity_id: str,
                           statuses: Iterable[ActionStatus] = None) -> list[ProposedAction]:
        async with get_session() as db:
            stmt = select(ProposedActionRow).where(ProposedActionRow.opportunity_id == opportunity_id)
            if statuses is not None:
                stmt = stmt.where(ProposedActionRow.status.in_([s.value for s in statuses]))
            result = await db.execute(stmt.order_by(ProposedActionRow.created_at))
            return [self._row_to_action(row) for row in result.scalars()]

    async def transition_action(self, action_id: str, from_statuses: Iterable[ActionStatus],
                                to_status: ActionStatus, *, expected_updated_at: Optional[datetime] = None,
                                **changes: Any) -> Optional[ProposedAction]:
        values = {key: _to_column(value) for key, value in changes.items()}
        values.update(status=to_status.value, updated_at=_utcnow())
        conditions = [ProposedActionRow.id == action_id,
                      ProposedActionRow.status.in_([s.value for s in from_statuses])]
        if expected_updated_at is not None:
            conditions.append(ProposedActionRow.updated_at == expected_updated_at)
        async with get_session() as db:
            if "details" in changes:
                action_type = await db.scalar(
                    select(ProposedActionRow.type).where(ProposedActionRow.id == action_id))
                if action_type is None:
                    return None
                values["review_date"] = details_review_date(ActionType(action_type), changes["details"])
            result = await db.execute(
                update(ProposedActionRow).where(and_(*conditions)).values(**values)
            )
            if result.rowcount != 1:
                return None
            row = await db.get(ProposedActionRow, action_id)
            return self._row_to_action(row)

    async def opportunities_with_status(self, opportunity_ids: Iterable[str],
                                        status: ActionStatus) -> set[str]:
        ids = list(set(opportunity_ids))
        if not ids:
            return set()
        async with get_session() as db:
            result = await db.execute(
                select(ProposedActionRow.opportunity_id).distinct()
                .where(and_(ProposedActionRow.status == status.value,
                            ProposedActionRow.opportunity_id.in_(ids)))
            )
            return set(result.scalars())

    async def find_executed_actions_due(self, today: date) -> list[ProposedAction]:
        async with get_session() as db:
            result = await db.execute(
                select(ProposedActionRow).where(and_(
                    ProposedActionRow.status == ActionStatus.EXECUTED.value,
                    ProposedActionRow.review_date == today,
                    ProposedActionRow.type.in_([ActionType.NO_ACTION.value, ActionType.TASK.value]),
                ))
            )
            return [self._row_to_action(row) for row in result.scalars()]

    async def mark_processed_by_ai(self, action_ids: Iterable[str]) -> int:
        ids = list(action_ids)
        if not ids:
            return 0
        async with get_session() as db:
            result = await db.execute(
                update(ProposedActionRow)
                .where(and_(ProposedActionRow.id.in_(ids),
                            ProposedActionRow.status == ActionStatus.EXECUTED.value))
                .values(status=ActionStatus.PROCESSED_BY_AI.value, updated_at=_utcnow())
            )
            return result.rowcount

    async def begin_evaluation(self, opportunity_id: str) -> list[ProposedAction]:
        async with get_session() as db:
            pending_action_ids = select(ScheduledMessageRow.action_id).where(and_(
                ScheduledMessageRow.opportunity_id == opportunity_id,
                ScheduledMessageRow.status == ScheduledMessageStatus.SCHEDULED.value,
            ))
            stmt = (
                select(ProposedActionRow)
                .where(and_(
                    ProposedActionRow.opportunity_id == opportunity_id,
                    or_(
                        ProposedActionRow.status.in_(_AWAITING),
                        and_(ProposedActionRow.status == ActionStatus.EXECUTED.value,
                             ProposedActionRow.id.in_(pending_action_ids)),
                        # left behind by an interrupted pass
                        ProposedActionRow.status == _LOCKED,
                    ),
                ))
                .order_by(ProposedActionRow.created_at)
                .with_for_update()
            )
            rows = list((await db.execute(stmt)).scalars())
            for row in rows:
                if row.status != _LOCKED:
                    row.previous_status = row.status
                    row.status = _LOCKED
            await db.flush()
            return [self._row_to_action(row) for row in rows]

    async def abort_evaluation(self, opportunity_id: str) -> int:
        async with get_session() as db:
            result = await db.execute(
                update(ProposedActionRow)
                .where(and_(ProposedActionRow.opportunity_id == opportunity_id,
                            ProposedActionRow.status == _LOCKED))
                .values(status=func.coalesce(ProposedActionRow.previous_status,
                                             ActionStatus.PROPOSED.value),
                        previous_status=None)
            )
            return result.rowcount

    async def apply_reconciliation(self, plan: ReconciliationPlan, now: datetime) -> list[ScheduledMessage]:
        deleted: list[ScheduledMessage] = []
        async with get_session() as db:
            for change in plan.changes:
                values = self._action_values(change.action)
                values.update(previous_status=None, updated_at=now)
                if change.decision == ReconcileDecision.CREATE:
                    db.add(ProposedActionRow(**values))
                    continue
                values.pop("id")
                values.pop("created_at")
                result = await db.execute(
                    update(ProposedActionRow)
                    .where(and_(ProposedActionRow.id == change.action.id,
                                ProposedActionRow.status == _LOCKED))
                    .values(**values)
                )
                if result.rowcount != 1:
                    raise ConcurrentModificationError(
                        f"Action {change.action.id} is no longer under evaluation")

            doomed_ids = plan.side_effects_to_delete
            if doomed_ids:
                result = await db.execute(
                    select(ScheduledMessageRow).where(and_(
                        ScheduledMessageRow.id.in_(doomed_ids),
                        ScheduledMessageRow.status == ScheduledMessageStatus.SCHEDULED.value,
                    ))
                )
                for row in result.scalars():
                    deleted.append(self._row_to_scheduled(row))
                    await db.delete(row)

            await self._advance_timestamp(db, plan.opportunity_id, now)
        return deleted

    async def execute_action(self, action_id: str, side_effect: Optional[ScheduledMessage],
                             executed_at: datetime, **changes: Any) -> Optional[ProposedAction]:
        async with get_session() as db:
            row = await db.get(ProposedActionRow, action_id)
            if row is None or row.status != ActionStatus.APPROVED.value:
                return None
            resulting = list(_json(row.resulting_activities, []))
            if side_effect is not None:
                resulting.append(side_effect.ref().model_dump(mode="json"))

            values = {key: _to_column(value) for key, value in changes.items()}
            values.update(status=ActionStatus.EXECUTED.value, executed_at=executed_at,
                          resulting_activities=resulting, updated_at=executed_at)
            result = await db.execute(
                update(ProposedActionRow)
                .where(and_(ProposedActionRow.id == action_id,
                            ProposedActionRow.status == ActionStatus.APPROVED.value))
                .values(**values)
            )
            if result.rowcount != 1:
                return None
            if side_effect is not None:
                db.add(ScheduledMessageRow(**self._scheduled_values(side_effect)))
            await db.refresh(row)
            return self._row_to_action(row)

    # ── Scheduled messages ─────────────────────────────────

    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        async with get_session() as db:
            row = await db.get(ScheduledMessageRow, message_id)
            return self._row_to_scheduled(row) if row else None

    async def list_scheduled_messages(self, action_ids: Iterable[str] = None,
                                      statuses: Iterable[str] = None) -> list[ScheduledMessage]:
        async with get_session() as db:
            stmt = select(ScheduledMessageRow)
            if action_ids is not None:
                stmt = stmt.where(ScheduledMessageRow.action_id.in_(list(action_ids)))
            if statuses is not None:
                stmt = stmt.where(ScheduledMessageRow.status.in_(
                    [ScheduledMessageStatus(s).value for s in statuses]))
            result = await db.execute(stmt.order_by(ScheduledMessageRow.scheduled_for))
            return [self._row_to_scheduled(row) for row in result.scalars()]

    async def claim_due_messages(self, now: datetime, limit: int) -> list[ScheduledMessage]:
        under_evaluation = select(ProposedActionRow.id).where(ProposedActionRow.status == _LOCKED)
        async with get_session() as db:
            result = await db.execute(
                select(ScheduledMessageRow.id)
                .where(and_(
                    ScheduledMessageRow.status == ScheduledMessageStatus.SCHEDULED.value,
                    ScheduledMessageRow.scheduled_for <= now,
                    ScheduledMessageRow.action_id.not_in(under_evaluation),
                ))
                .order_by(ScheduledMessageRow.scheduled_for)
                .limit(limit)
            )
            due_ids = list(result.scalars())

        claimed = []
        for message_id in due_ids:
            async with get_session() as db:
                result = await db.execute(
                    update(ScheduledMessageRow)
                    .where(and_(
                        ScheduledMessageRow.id == message_id,
                        ScheduledMessageRow.status == ScheduledMessageStatus.SCHEDULED.value,
                        ScheduledMessageRow.action_id.not_in(under_evaluation),
                    ))
                    .values(status=ScheduledMessageStatus.SENDING.value, updated_at=now)
                )
                if result.rowcount == 1:
                    row = await db.get(ScheduledMessageRow, message_id)
                    claimed.append(self._row_to_scheduled(row))
        return claimed

    async def complete_scheduled_send(self, message_id: str, provider_message_id: Optional[str]) -> bool:
        async with get_session() as db:
            row = await db.get(ScheduledMessageRow, message_id)
            if row is None or row.status != ScheduledMessageStatus.SENDING.value:
                return False
            action_id, activity_model = row.action_id, row.activity_model
            await db.delete(row)

            action = await db.get(ProposedActionRow, action_id)
            if action is not None:
                refs = [r for r in _json(action.resulting_activities, [])
                        if r.get("activity_id") != message_id]
                if provider_message_id:
                    refs.append({"activity_id": provider_message_id, "activity_model": activity_model})
                action.resulting_activities = refs
        return True

    async def fail_scheduled_send(self, message_id: str, reason: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(ScheduledMessageRow)
                .where(and_(ScheduledMessageRow.id == message_id,
                            ScheduledMessageRow.status != ScheduledMessageStatus.FAILED.value))
                .values(status=ScheduledMessageStatus.FAILED.value, failure_reason=reason,
                        updated_at=_utcnow())
            )
            return result.rowcount == 1

    async def fail_stale_sending(self, updated_before: datetime, reason: str) -> int:
        async with get_session() as db:
            result = await db.execute(
                update(ScheduledMessageRow)
                .where(and_(ScheduledMessageRow.status == ScheduledMessageStatus.SENDING.value,
                            ScheduledMessageRow.updated_at < updated_before))
                .values(status=ScheduledMessageStatus.FAILED.value, failure_reason=reason)
            )
            return result.rowcount

    # ── Leases ─────────────────────────────────────────────

    async def acquire_lease(self, key: str, holder: str, ttl_seconds: float, now: datetime) -> bool:
        expires_at = now + timedelta(seconds=ttl_seconds)
        async with get_session() as db:
            result = await db.execute(
                update(LeaseRow)
                .where(and_(LeaseRow.key == key,
                            or_(LeaseRow.holder == holder, LeaseRow.expires_at <= now)))
                .values(holder=holder, expires_at=expires_at)
            )
            if result.rowcount == 1:
                return True
            if await db.get(LeaseRow, key) is not None:
                return False
        try:
            async with get_session() as db:
                db.add(LeaseRow(key=key, holder=holder, expires_at=expires_at))
        except IntegrityError:
            return False
        return True

    async def release_lease(self, key: str, holder: str) -> None:
        async with get_session() as db:
            await db.execute(delete(LeaseRow).where(and_(LeaseRow.key == key, LeaseRow.holder == holder)))

    # ── Row converters ─────────────────────────────────────

    @staticmethod
    def _row_to_stage(row: PipelineStageRow) -> PipelineStage:
        return PipelineStage(
            id=row.id, organization_id=row.organization_id or "", name=row.name,
            is_closed_won=bool(row.is_closed_won), is_closed_lost=bool(row.is_closed_lost),
        )

    @staticmethod
    def _row_to_opportunity(row: OpportunityRow) -> Opportunity:
        return Opportunity(
            id=row.id,
            organization_id=row.organization_id or "",
            prospect_id=row.prospect_id,
            name=row.name or "",
            stage_id=row.stage_id,
            contact_ids=_json(row.contact_ids, []),
            processing_status=ProcessingStatus(row.processing_status or "pending"),
            last_intelligence_update=_as_utc(row.last_intelligence_update),
            created_at=_as_utc(row.created_at),
        )

    @staticmethod
    def _row_to_queue_item(row: QueueItemRow) -> QueueItem:
        return QueueItem(
            id=row.id,
            queue_item_type=QueueItemType(row.queue_item_type),
            opportunity_id=row.opportunity_id,
            prospect_id=row.prospect_id,
            organization_id=row.organization_id or "",
            contact_id=row.contact_id,
            activity_ref=_json(row.activity_ref, None),
            status=QueueItemStatus(row.status),
            attempts=row.attempts or 0,
            priority=row.priority or 0,
            scheduled_for=_as_utc(row.scheduled_for),
            reason=row.reason or "",
            processing_node=row.processing_node,
            last_error=row.last_error,
            created_at=_as_utc(row.created_at),
            processing_started_at=_as_utc(row.processing_started_at),
            processed_at=_as_utc(row.processed_at),
        )

    @staticmethod
    def _queue_values(item: QueueItem) -> dict[str, Any]:
        return {
            "id": item.id,
            "queue_item_type": item.queue_item_type.value,
            "opportunity_id": item.opportunity_id,
            "prospect_id": item.prospect_id,
            "organization_id": item.organization_id,
            "contact_id": item.contact_id,
            "activity_ref": _to_column(item.activity_ref),
            "status": item.status.value,
            "attempts": item.attempts,
            "priority": item.priority,
            "scheduled_for": item.scheduled_for,
            "reason": item.reason,
            "created_at": item.created_at,
        }

    @staticmethod
    def _row_to_action(row: ProposedActionRow) -> ProposedAction:
        return ProposedAction.model_validate({
            "id": row.id,
            "organization_id": row.organization_id or "",
            "opportunity_id": row.opportunity_id,
            "type": row.type,
            "status": row.status,
            "previous_status": row.previous_status,
            "details": _json(row.details, {}),
            "reasoning": row.reasoning or "",
            "source_activities": _json(row.source_activities, []),
            "resulting_activities": _json(row.resulting_activities, []),
            "sub_actions": _json(row.sub_actions, []),
            "created_by": _json(row.created_by, {}) or {},
            "last_edited_by": _json(row.last_edited_by, None),
            "approved_by": row.approved_by,
            "executed_at": _as_utc(row.executed_at),
            "created_at": _as_utc(row.created_at),
            "updated_at": _as_utc(row.updated_at),
        })

    @staticmethod
    def _action_values(action: ProposedAction) -> dict[str, Any]:
        return {
            "id": action.id,
            "organization_id": action.organization_id,
            "opportunity_id": action.opportunity_id,
            "type": action.type.value,
            "status": action.status.value,
            "previous_status": _to_column(action.previous_status),
            "details": _to_column(action.details),
            "reasoning": action.reasoning,
            "source_activities": _to_column(action.source_activities),
            "resulting_activities": _to_column(action.resulting_activities),
            "sub_actions": list(action.sub_actions),
            "created_by": _to_column(action.created_by),
            "last_edited_by": _to_column(action.last_edited_by),
            "approved_by": action.approved_by,
            "executed_at": action.executed_at,
            "review_date": action_review_date(action),
            "created_at": action.created_at,
            "updated_at": action.updated_at,
        }

    @staticmethod
    def _row_to_scheduled(row: ScheduledMessageRow) -> ScheduledMessage:
        return ScheduledMessage(
            id=row.id,
            action_id=row.action_id,
            opportunity_id=row.opportunity_id,
            organization_id=row.organization_id or "",
            activity_model=row.activity_model,
            payload=_json(row.payload, {}),
            scheduled_for=_as_utc(row.scheduled_for),
            status=ScheduledMessageStatus(row.status),
            failure_reason=row.failure_reason,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _scheduled_values(message: ScheduledMessage) -> dict[str, Any]:
        return {
            "id": message.id,
            "action_id": message.action_id,
            "opportunity_id": message.opportunity_id,
            "organization_id": message.organization_id,
            "activity_model": message.activity_model.value,
            "payload": message.payload,
            "scheduled_for": message.scheduled_for,
            "status": message.status.value,
            "failure_reason": message.failure_reason,
            "created_at": message.created_at,
            "updated_at": message.updated_at,
        }
