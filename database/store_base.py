"""
Abstract Action Store — Interface for all storage backends.

Implementations:
  - SqlActionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryActionStore (dict-based, single-process, no persistence)

Every method that moves a record between states is a compare-and-set on
the persisted status, so independent workers and schedulers never need a
shared in-process lock. Multi-record changes (reconciliation, delivered
sends, execution) are single transactions.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Iterable, Optional

from models.action_details import ActionType
from models.schemas import (
    ActionStatus, Opportunity, PipelineStage, ProcessingStatus,
    ProposedAction, QueueItem, QueueItemType, ReconciliationPlan,
    ScheduledMessage,
)


def details_review_date(action_type: ActionType, details: Any) -> Optional[date]:
    """Review date carried by a details payload (NO_ACTION next review, TASK due date)."""
    if action_type == ActionType.NO_ACTION:
        return details.next_review_date
    if action_type == ActionType.TASK:
        return details.due_date
    return None


def action_review_date(action: ProposedAction) -> Optional[date]:
    """Date an executed action asks to be looked at again, if it carries one."""
    return details_review_date(action.type, action.details)



class BaseActionStore(ABC):
    """Interface that all action store backends must implement."""

    # ── Pipeline stages & opportunities ───────────────────────

    @abstractmethod
    async def upsert_stage(self, stage: PipelineStage) -> PipelineStage:
        ...

    @abstractmethod
    async def get_stage(self, stage_id: str) -> Optional[PipelineStage]:
        ...

    @abstractmethod
    async def upsert_opportunity(self, opportunity: Opportunity) -> Opportunity:
        ...

    @abstractmethod
    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        ...

    @abstractmethod
    async def get_opportunities(self, opportunity_ids: Iterable[str]) -> list[Opportunity]:
        ...

    @abstractmethod
    async def find_stale_active_opportunities(self, cutoff: datetime) -> list[Opportunity]:
        """Non-closed stage, at least one contact, timestamp strictly before cutoff or absent."""
        ...

    @abstractmethod
    async def find_stale_closed_lost_opportunities(self, cutoff: datetime) -> list[Opportunity]:
        """Closed-lost stage, timestamp strictly before cutoff or absent."""
        ...

    @abstractmethod
    async def prospects_with_open_opportunities(self, prospect_ids: Iterable[str]) -> set[str]:
        """Subset of prospect_ids that still have an opportunity in a non-closed stage."""
        ...

    @abstractmethod
    async def set_processing_status(self, opportunity_id: str, status: ProcessingStatus) -> None:
        ...

    @abstractmethod
    async def record_intelligence_update(self, opportunity_id: str, at: datetime) -> bool:
        """Advance last_intelligence_update; never moves it backwards. Returns True if written."""
        ...

    # ── Queue items ───────────────────────────────────────────

    @abstractmethod
    async def enqueue(self, item: QueueItem) -> tuple[QueueItem, bool]:
        """
        Insert a pending item unless an equivalent pending/processing item
        exists for the same (opportunity, type) or (prospect, type).
        Returns (item, created).
        """
        ...

    @abstractmethod
    async def reschedule_pending(self, item_id: str, scheduled_for: datetime,
                                 priority: Optional[int] = None) -> Optional[QueueItem]:
        """Move scheduled_for (and optionally priority) of a still-pending item (debounce)."""
        ...

    @abstractmethod
    async def claim_next(self, node_id: str, now: datetime) -> Optional[QueueItem]:
        """Atomically move one claimable pending item for a free key to processing."""
        ...

    @abstractmethod
    async def complete_item(self, item_id: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def fail_item(self, item_id: str, error: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def find_active_item(
        self, queue_item_type: QueueItemType, opportunity_id: str, prospect_id: str,
    ) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def active_queue_keys(
        self, opportunity_ids: Iterable[str], prospect_ids: Iterable[str],
    ) -> tuple[set[str], set[str]]:
        """
        (opportunity ids with a pending/processing reprocessing item,
         prospect ids with a pending/processing activity item)
        """
        ...

    @abstractmethod
    async def queue_stats(self) -> dict[str, dict[str, int]]:
        """Counts keyed by queue_item_type then status."""
        ...

    @abstractmethod
    async def fail_stuck_items(self, started_before: datetime, now: datetime) -> int:
        ...

    @abstractmethod
    async def delete_completed_items(self, processed_before: datetime) -> int:
        ...

    # ── Proposed actions ──────────────────────────────────────

    @abstractmethod
    async def create_action(self, action: ProposedAction) -> ProposedAction:
        ...

    @abstractmethod
    async def get_action(self, action_id: str) -> Optional[ProposedAction]:
        ...

    @abstractmethod
    async def list_actions(
        self, opportunity_id: str, statuses: Iterable[ActionStatus] = None,
    ) -> list[ProposedAction]:
        ...

    @abstractmethod
    async def transition_action(
        self, action_id: str, from_statuses: Iterable[ActionStatus],
        to_status: ActionStatus, *, expected_updated_at: Optional[datetime] = None,
        **changes: Any,
    ) -> Optional[ProposedAction]:
        """
        Compare-and-set; returns None when the action was not in from_statuses,
        or, with expected_updated_at, when it was written since that read.
        """
        ...

    @abstractmethod
    async def opportunities_with_status(
        self, opportunity_ids: Iterable[str], status: ActionStatus,
    ) -> set[str]:
        ...

    @abstractmethod
    async def find_executed_actions_due(self, today: date) -> list[ProposedAction]:
        """EXECUTED NO_ACTION/TASK actions whose review/due date is today."""
        ...

    @abstractmethod
    async def mark_processed_by_ai(self, action_ids: Iterable[str]) -> int:
        ...

    @abstractmethod
    async def begin_evaluation(self, opportunity_id: str) -> list[ProposedAction]:
        """
        Lock the opportunity's awaiting actions and its executed actions with
        a pending side effect into PROCESSING UPDATES, remembering the
        previous status. Returns the locked actions.
        """
        ...

    @abstractmethod
    async def abort_evaluation(self, opportunity_id: str) -> int:
        """Restore every PROCESSING UPDATES action of the opportunity."""
        ...

    @abstractmethod
    async def apply_reconciliation(
        self, plan: ReconciliationPlan, now: datetime,
    ) -> list[ScheduledMessage]:
        """
        Persist every planned change, delete the listed pending side effects
        and advance the opportunity's intelligence timestamp in one
        transaction. Returns the side effects that were deleted.
        """
        ...

    @abstractmethod
    async def execute_action(
        self, action_id: str, side_effect: Optional[ScheduledMessage],
        executed_at: datetime, **changes: Any,
    ) -> Optional[ProposedAction]:
        """APPROVED → EXECUTED, creating and linking the side effect atomically."""
        ...

    # ── Scheduled messages ────────────────────────────────────

    @abstractmethod
    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def list_scheduled_messages(
        self, action_ids: Iterable[str] = None, statuses: Iterable[str] = None,
    ) -> list[ScheduledMessage]:
        ...

    @abstractmethod
    async def claim_due_messages(self, now: datetime, limit: int) -> list[ScheduledMessage]:
        """scheduled → sending for due messages whose action is not under evaluation."""
        ...

    @abstractmethod
    async def complete_scheduled_send(
        self, message_id: str, provider_message_id: Optional[str],
    ) -> bool:
        """Delete the delivered record and swap the action's ref in one transaction."""
        ...

    @abstractmethod
    async def fail_scheduled_send(self, message_id: str, reason: str) -> bool:
        ...

    @abstractmethod
    async def fail_stale_sending(self, updated_before: datetime, reason: str) -> int:
        ...

    # ── Leases ────────────────────────────────────────────────

    @abstractmethod
    async def acquire_lease(self, key: str, holder: str, ttl_seconds: float, now: datetime) -> bool:
        ...

    @abstractmethod
    async def release_lease(self, key: str, holder: str) -> None:
        ...
