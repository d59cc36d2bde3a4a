"""
Core data models for the action intelligence service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from models.action_details import (
    ActionDetails, ActionType, DETAILS_SCHEMAS, parse_action_details,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueueItemType(str, Enum):
    ACTIVITY = "activity"
    OPPORTUNITY_REPROCESSING = "opportunity_reprocessing"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ActionStatus(str, Enum):
    PROPOSED = "PROPOSED"
    PROCESSING_UPDATES = "PROCESSING UPDATES"
    APPROVED = "APPROVED"
    UPDATED = "UPDATED"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    PROCESSED_BY_AI = "PROCESSED_BY_AI"


class ActivityModel(str, Enum):
    EMAIL = "EmailActivity"
    CALENDAR = "CalendarActivity"
    ACTIVITY = "Activity"


class CreatedByType(str, Enum):
    AI_AGENT = "AI_AGENT"
    USER = "USER"


class ScheduledMessageStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENDING = "sending"
    FAILED = "failed"


ACTIVE_QUEUE_STATUSES = frozenset({QueueItemStatus.PENDING, QueueItemStatus.PROCESSING})

# Awaiting a human decision
AWAITING_DECISION_STATUSES = frozenset({
    ActionStatus.PROPOSED, ActionStatus.UPDATED, ActionStatus.APPROVED,
})

NON_TERMINAL_STATUSES = AWAITING_DECISION_STATUSES | {ActionStatus.PROCESSING_UPDATES}


# ──────────────────────────────────────────────────────────────
#  Pipeline (externally owned, read-mostly)
# ──────────────────────────────────────────────────────────────

class PipelineStage(BaseModel):
    id: str = Field(default_factory=_new_id)
    organization_id: str = ""
    name: str
    is_closed_won: bool = False
    is_closed_lost: bool = False

    @property
    def is_closed(self) -> bool:
        return self.is_closed_won or self.is_closed_lost


class Opportunity(BaseModel):
    id: str = Field(default_factory=_new_id)
    organization_id: str = ""
    prospect_id: str
    name: str = ""
    stage_id: str
    contact_ids: list[str] = []
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    last_intelligence_update: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Weak references to activities
# ──────────────────────────────────────────────────────────────

class ActivityRef(BaseModel):
    """Non-owning `{id, kind}` pointer to an activity record."""
    activity_id: str
    activity_model: ActivityModel

    def key(self) -> tuple[str, str]:
        return (self.activity_model.value, self.activity_id)


# ──────────────────────────────────────────────────────────────
#  Queue
# ──────────────────────────────────────────────────────────────

class QueueItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    queue_item_type: QueueItemType
    opportunity_id: str
    prospect_id: str
    organization_id: str = ""
    contact_id: Optional[str] = None
    activity_ref: Optional[ActivityRef] = None
    status: QueueItemStatus = QueueItemStatus.PENDING
    attempts: int = 0
    priority: int = 0                         # lower runs first
    scheduled_for: Optional[datetime] = None  # not claimable before this instant
    reason: str = ""
    processing_node: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    processing_started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Proposed actions
# ──────────────────────────────────────────────────────────────

class CreatedBy(BaseModel):
    type: CreatedByType = CreatedByType.AI_AGENT
    id: Optional[str] = None


def _coerce_details(data: Any) -> Any:
    if isinstance(data, dict) and "type" in data and "details" in data:
        data = dict(data)
        data["details"] = parse_action_details(data["type"], data["details"])
    return data


def _check_details_type(action_type: ActionType, details: BaseModel) -> None:
    expected = DETAILS_SCHEMAS[action_type]
    if not isinstance(details, expected):
        raise ValueError(
            f"{action_type.value} action requires {expected.__name__}, got {type(details).__name__}"
        )


class ProposedAction(BaseModel):
    """A candidate next step for an opportunity, awaiting or past approval."""
    id: str = Field(default_factory=_new_id)
    organization_id: str = ""
    opportunity_id: str
    type: ActionType
    status: ActionStatus = ActionStatus.PROPOSED
    previous_status: Optional[ActionStatus] = None   # set while PROCESSING UPDATES
    details: ActionDetails
    reasoning: str = ""
    source_activities: list[ActivityRef] = []
    resulting_activities: list[ActivityRef] = []
    sub_actions: list[dict[str, Any]] = []
    created_by: CreatedBy = Field(default_factory=CreatedBy)
    last_edited_by: Optional[CreatedBy] = None
    approved_by: Optional[str] = None
    executed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="before")
    @classmethod
    def _resolve_details(cls, data: Any) -> Any:
        return _coerce_details(data)

    @model_validator(mode="after")
    def _details_match_type(self) -> "ProposedAction":
        _check_details_type(self.type, self.details)
        return self

    @property
    def effective_status(self) -> ActionStatus:
        """Status the action had before being locked for evaluation."""
        if self.status == ActionStatus.PROCESSING_UPDATES:
            return self.previous_status or ActionStatus.PROPOSED
        return self.status


class ProposedActionDraft(BaseModel):
    """One generator suggestion, before reconciliation against stored actions."""
    type: ActionType
    details: ActionDetails
    reasoning: str = ""
    source_activities: list[ActivityRef] = []
    wait_until: Optional[datetime] = None    # ask for another pass at this time

    @model_validator(mode="before")
    @classmethod
    def _resolve_details(cls, data: Any) -> Any:
        return _coerce_details(data)

    @model_validator(mode="after")
    def _details_match_type(self) -> "ProposedActionDraft":
        _check_details_type(self.type, self.details)
        return self


# ──────────────────────────────────────────────────────────────
#  Scheduled side effects
# ──────────────────────────────────────────────────────────────

class ScheduledMessage(BaseModel):
    """A locally persisted outbound message awaiting its send time."""
    id: str = Field(default_factory=_new_id)
    action_id: str
    opportunity_id: str
    organization_id: str = ""
    activity_model: ActivityModel = ActivityModel.EMAIL
    payload: dict[str, Any] = {}
    scheduled_for: datetime
    status: ScheduledMessageStatus = ScheduledMessageStatus.SCHEDULED
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def ref(self) -> ActivityRef:
        return ActivityRef(activity_id=self.id, activity_model=self.activity_model)


class SendResult(BaseModel):
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Reconciliation
# ──────────────────────────────────────────────────────────────

class PipelineContext(BaseModel):
    """Everything the generator sees for one reconciliation pass."""
    opportunity: Opportunity
    stage: Optional[PipelineStage] = None
    existing_actions: list[ProposedAction] = []
    pending_side_effects: list[ScheduledMessage] = []
    trigger: str = ""
    source: str = "queue"                     # "queue" | "scheduler" | "manual"
    source_activities: list[ActivityRef] = []
    generated_at: datetime = Field(default_factory=_utcnow)


class ReconcileDecision(str, Enum):
    CREATE = "create"
    OVERWRITE = "overwrite"     # awaiting action replaced in place
    REVERT = "revert"           # executed action pulled back to PROPOSED
    CANCEL = "cancel"
    KEEP = "keep"


class PlannedChange(BaseModel):
    decision: ReconcileDecision
    action: ProposedAction                    # final state to persist
    delete_side_effects: list[str] = []       # scheduled message ids


class ReconciliationPlan(BaseModel):
    opportunity_id: str
    changes: list[PlannedChange] = []
    dropped_drafts: int = 0

    def by_decision(self, decision: ReconcileDecision) -> list[PlannedChange]:
        return [c for c in self.changes if c.decision == decision]

    @property
    def side_effects_to_delete(self) -> list[str]:
        return [sid for c in self.changes for sid in c.delete_side_effects]


class ReconcileResult(BaseModel):
    opportunity_id: str
    created: list[str] = []
    overwritten: list[str] = []
    reverted: list[str] = []
    cancelled: list[str] = []
    kept: list[str] = []
    deleted_side_effects: list[str] = []
    reprocessing_scheduled_for: Optional[datetime] = None

    @property
    def changed(self) -> int:
        return len(self.created) + len(self.overwritten) + len(self.reverted) + len(self.cancelled)
