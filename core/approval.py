"""
Approval Service — human decisions on proposed actions.

Every transition is a compare-and-set on the persisted status, so a
decision made while a reconciliation pass holds the action (PROCESSING
UPDATES) is refused instead of being silently overwritten.
"""
from __future__ import annotations

import structlog
from typing import Any, Iterable

from core.errors import (
    ActionLockedError, ActionNotFoundError, ConcurrentModificationError, InvalidTransitionError,
)
from database.store_base import BaseActionStore
from models.action_details import merge_details
from models.schemas import ActionStatus, CreatedBy, CreatedByType, ProposedAction

logger = structlog.get_logger()

DECIDABLE_STATUSES = (ActionStatus.PROPOSED, ActionStatus.UPDATED)


class ApprovalService:

    def __init__(self, store: BaseActionStore):
        self.store = store

    async def approve(self, action_id: str, user_id: str) -> ProposedAction:
        action = await self._transition(
            action_id, DECIDABLE_STATUSES, ActionStatus.APPROVED,
            approved_by=user_id,
        )
        logger.info("action_approved", action_id=action_id, user_id=user_id)
        return action

    async def reject(self, action_id: str, user_id: str) -> ProposedAction:
        action = await self._transition(
            action_id, DECIDABLE_STATUSES, ActionStatus.REJECTED,
            last_edited_by=CreatedBy(type=CreatedByType.USER, id=user_id),
        )
        logger.info("action_rejected", action_id=action_id, user_id=user_id)
        return action

    async def update_details(self, action_id: str, patch: dict[str, Any], user_id: str) -> ProposedAction:
        """Merge a partial details update, validate it against the type schema and mark UPDATED."""
        current = await self.store.get_action(action_id)
        if current is None:
            raise ActionNotFoundError(action_id)
        details = merge_details(current.type, current.details, patch)

        action = await self._transition(
            action_id, DECIDABLE_STATUSES, ActionStatus.UPDATED,
            details=details,
            last_edited_by=CreatedBy(type=CreatedByType.USER, id=user_id),
            expected_updated_at=current.updated_at,
        )
        logger.info("action_updated", action_id=action_id, user_id=user_id, fields=sorted(patch or {}))
        return action

    async def _transition(
        self,
        action_id: str,
        from_statuses: Iterable[ActionStatus],
        to_status: ActionStatus,
        **changes: Any,
    ) -> ProposedAction:
        from_statuses = tuple(from_statuses)
        updated = await self.store.transition_action(action_id, from_statuses, to_status, **changes)
        if updated is not None:
            return updated

        current = await self.store.get_action(action_id)
        if current is None:
            raise ActionNotFoundError(action_id)
        if current.status == ActionStatus.PROCESSING_UPDATES:
            logger.info("action_locked", action_id=action_id, target=to_status.value)
            raise ActionLockedError(action_id)
        if current.status in set(from_statuses):
            logger.info("action_changed_concurrently", action_id=action_id, target=to_status.value)
            raise ConcurrentModificationError(f"Action {action_id} changed while being edited")
        raise InvalidTransitionError(action_id, current.status.value, to_status.value)
