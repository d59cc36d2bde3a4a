"""
Action detail schemas — one validated payload per action type.

`ProposedAction.details` is a tagged union keyed by the action's `type`;
`parse_action_details()` is the single entry point that resolves a raw
payload to the right schema.
"""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from core.errors import ActionDetailsError


class ActionType(str, Enum):
    EMAIL = "EMAIL"
    CALL = "CALL"
    MEETING = "MEETING"
    TASK = "TASK"
    LINKEDIN_MESSAGE = "LINKEDIN_MESSAGE"
    LOOKUP = "LOOKUP"
    NO_ACTION = "NO_ACTION"
    UPDATE_PIPELINE_STAGE = "UPDATE_PIPELINE_STAGE"


class EmailPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class MeetingMode(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    CANCEL = "cancel"


# ──────────────────────────────────────────────────────────────
#  Per-type payloads
# ──────────────────────────────────────────────────────────────

class EmailDetails(BaseModel):
    to: list[str] = Field(min_length=1)
    cc: list[str] = []
    bcc: list[str] = []
    subject: Optional[str] = None
    body: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    reply_to_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    priority: Optional[EmailPriority] = None


class CallDetails(BaseModel):
    contact_email: str
    purpose: Optional[str] = None
    talking_points: list[str] = []
    scheduled_for: Optional[datetime] = None


class MeetingDetails(BaseModel):
    mode: MeetingMode = MeetingMode.CREATE
    existing_calendar_activity_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=200)
    attendees: list[str] = []
    duration: Optional[int] = Field(default=None, ge=15, le=480)   # minutes
    scheduled_for: Optional[datetime] = None
    location: Optional[str] = None
    agenda: Optional[str] = None

    @model_validator(mode="after")
    def _existing_event_required(self) -> "MeetingDetails":
        if self.mode != MeetingMode.CREATE and not self.existing_calendar_activity_id:
            raise ValueError(f"meeting mode '{self.mode.value}' requires existing_calendar_activity_id")
        return self


class TaskDetails(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    due_date: date
    description: Optional[str] = None


class LinkedInMessageDetails(BaseModel):
    contact_email: str
    message: Optional[str] = None


class LookupDetails(BaseModel):
    query: str = Field(min_length=5, max_length=300)
    answer: Optional[str] = None
    sources: list[str] = []
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class NoActionDetails(BaseModel):
    reason: Optional[str] = None
    next_review_date: date


class UpdatePipelineStageDetails(BaseModel):
    target_stage_id: str
    reason: Optional[str] = None


ActionDetails = Union[
    EmailDetails, CallDetails, MeetingDetails, TaskDetails,
    LinkedInMessageDetails, LookupDetails, NoActionDetails,
    UpdatePipelineStageDetails,
]

DETAILS_SCHEMAS: dict[ActionType, type[BaseModel]] = {
    ActionType.EMAIL: EmailDetails,
    ActionType.CALL: CallDetails,
    ActionType.MEETING: MeetingDetails,
    ActionType.TASK: TaskDetails,
    ActionType.LINKEDIN_MESSAGE: LinkedInMessageDetails,
    ActionType.LOOKUP: LookupDetails,
    ActionType.NO_ACTION: NoActionDetails,
    ActionType.UPDATE_PIPELINE_STAGE: UpdatePipelineStageDetails,
}


def parse_action_details(action_type: ActionType | str, raw: Any) -> ActionDetails:
    """Validate `raw` against the schema registered for `action_type`."""
    try:
        action_type = ActionType(action_type)
    except ValueError:
        raise ActionDetailsError(f"Unknown action type: {action_type!r}") from None

    schema = DETAILS_SCHEMAS[action_type]
    if isinstance(raw, schema):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    try:
        return schema.model_validate(raw or {})
    except ValidationError as e:
        raise ActionDetailsError(
            f"Invalid {action_type.value} details: {e.errors(include_url=False)}"
        ) from e


def details_fingerprint(details: BaseModel) -> dict[str, Any]:
    """Comparable, JSON-safe view of a details payload (unset optionals dropped)."""
    return details.model_dump(mode="json", exclude_none=True)


def merge_details(action_type: ActionType, current: BaseModel, patch: dict[str, Any]) -> ActionDetails:
    """Apply a partial update to an existing payload and re-validate it."""
    merged = {**current.model_dump(mode="json"), **(patch or {})}
    return parse_action_details(action_type, merged)
