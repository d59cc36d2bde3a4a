"""
Action Executor — turns an APPROVED action into its side effect.

Handlers are keyed by action type. A handler returns the local record the
action produces (a scheduled email, a calendar invitation) or None when
the action has nothing to schedule locally. The status change and the
record are written in one transaction by the store.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from core.errors import ActionLockedError, ActionNotFoundError, InvalidTransitionError
from database.store_base import BaseActionStore
from models.action_details import ActionType, EmailDetails, MeetingDetails, MeetingMode
from models.schemas import (
    ActionStatus, ActivityModel, CreatedBy, CreatedByType, ProposedAction,
    ScheduledMessage,
)

logger = structlog.get_logger()

_Handler = Callable[[ProposedAction, datetime], Optional[ScheduledMessage]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _email_message(action: ProposedAction, now: datetime) -> ScheduledMessage:
    details: EmailDetails = action.details
    return ScheduledMessage(
        action_id=action.id,
        opportunity_id=action.opportunity_id,
        organization_id=action.organization_id,
        activity_model=ActivityModel.EMAIL,
        payload={"kind": "email", **details.model_dump(mode="json", exclude_none=True)},
        scheduled_for=details.scheduled_for or now,
    )


def _meeting_invitation(action: ProposedAction, now: datetime) -> Optional[ScheduledMessage]:
    details: MeetingDetails = action.details
    if details.mode == MeetingMode.CANCEL:
        return None
    return ScheduledMessage(
        action_id=action.id,
        opportunity_id=action.opportunity_id,
        organization_id=action.organization_id,
        activity_model=ActivityModel.CALENDAR,
        payload={"kind": "calendar", **details.model_dump(mode="json", exclude_none=True)},
        scheduled_for=now,
    )


class ActionExecutor:
    """
    Usage:
        executor = ActionExecutor(store)
        action = await executor.execute(action_id, user_id="u_42")
    """

    def __init__(self, store: BaseActionStore, now_fn: Callable[[], datetime] = _utcnow):
        self.store = store
        self._now = now_fn
        self._handlers: dict[ActionType, _Handler] = {
            ActionType.EMAIL: _email_message,
            ActionType.MEETING: _meeting_invitation,
        }

    async def execute(self, action_id: str, user_id: Optional[str] = None) -> ProposedAction:
        action = await self.store.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        if action.status == ActionStatus.PROCESSING_UPDATES:
            raise ActionLockedError(action_id)
        if action.status != ActionStatus.APPROVED:
            raise InvalidTransitionError(action_id, action.status.value, ActionStatus.EXECUTED.value)

        now = self._now()
        handler = self._handlers.get(action.type)
        side_effect = handler(action, now) if handler else None

        changes = {}
        if user_id:
            changes["last_edited_by"] = CreatedBy(type=CreatedByType.USER, id=user_id)
        executed = await self.store.execute_action(action_id, side_effect, now, **changes)
        if executed is None:
            # Lost a race with a reconciliation pass or another executor
            current = await self.store.get_action(action_id)
            if current is None:
                raise ActionNotFoundError(action_id)
            if current.status == ActionStatus.PROCESSING_UPDATES:
                raise ActionLockedError(action_id)
            raise InvalidTransitionError(action_id, current.status.value, ActionStatus.EXECUTED.value)

        logger.info("action_executed",
                    action_id=action_id,
                    type=action.type.value,
                    side_effect_id=side_effect.id if side_effect else None,
                    scheduled_for=side_effect.scheduled_for.isoformat() if side_effect else None)
        return executed
