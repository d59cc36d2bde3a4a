"""
Intent matching and reconciliation planning.

"Same intent" decides whether a fresh draft replaces an existing action or
sits beside it. It is a policy object so deployments can tighten it (for
example, one EMAIL per recipient instead of one EMAIL per opportunity).

plan_reconciliation() is a pure function: given the actions locked for
evaluation, the generator's drafts and the pending side effects, it returns
the complete set of changes to persist. No I/O happens here.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Hashable, Optional

from models.action_details import ActionType, details_fingerprint
from models.schemas import (
    AWAITING_DECISION_STATUSES, ActionStatus, ActivityRef, PlannedChange,
    ProposedAction, ProposedActionDraft, ReconcileDecision, ReconciliationPlan,
    ScheduledMessage,
)

logger = structlog.get_logger()


class IntentPolicy:
    """Default policy: one live action per action type per opportunity."""

    name = "type"

    def key(self, action_type: ActionType, details) -> Hashable:
        return action_type


class TargetIntentPolicy(IntentPolicy):
    """One live action per (type, primary target); e.g. separate EMAILs per recipient."""

    name = "type_and_target"

    def key(self, action_type: ActionType, details) -> Hashable:
        return (action_type, self._target(action_type, details))

    @staticmethod
    def _target(action_type: ActionType, details) -> Optional[str]:
        if action_type == ActionType.EMAIL:
            return ",".join(sorted(addr.lower() for addr in details.to))
        if action_type in (ActionType.CALL, ActionType.LINKEDIN_MESSAGE):
            return details.contact_email.lower()
        if action_type == ActionType.MEETING:
            return details.existing_calendar_activity_id
        if action_type == ActionType.TASK:
            return details.title.strip().lower()
        if action_type == ActionType.UPDATE_PIPELINE_STAGE:
            return details.target_stage_id
        return None


INTENT_POLICIES: dict[str, type[IntentPolicy]] = {
    IntentPolicy.name: IntentPolicy,
    TargetIntentPolicy.name: TargetIntentPolicy,
}


def _same_content(action: ProposedAction, draft: ProposedActionDraft) -> bool:
    return details_fingerprint(action.details) == details_fingerprint(draft.details)


def _merge_sources(current: list[ActivityRef], extra: list[ActivityRef]) -> list[ActivityRef]:
    seen = {ref.key() for ref in current}
    merged = list(current)
    for ref in extra:
        if ref.key() not in seen:
            merged.append(ref)
            seen.add(ref.key())
    return merged


def plan_reconciliation(
    opportunity_id: str,
    locked_actions: list[ProposedAction],
    drafts: list[ProposedActionDraft],
    pending_side_effects: dict[str, list[ScheduledMessage]],
    policy: IntentPolicy = None,
    organization_id: str = "",
    now: datetime = None,
) -> ReconciliationPlan:
    """
    Decide create / overwrite / revert / cancel / keep for every draft and
    every locked action.

    locked_actions carry previous_status (the status before the lock);
    pending_side_effects maps action id → its still-scheduled messages.
    """
    policy = policy or IntentPolicy()
    now = now or datetime.now(timezone.utc)
    plan = ReconciliationPlan(opportunity_id=opportunity_id)

    # Newest first, so duplicates left by older passes are the ones cancelled
    by_key: dict[Hashable, list[ProposedAction]] = {}
    for action in sorted(locked_actions, key=lambda a: a.created_at, reverse=True):
        by_key.setdefault(policy.key(action.type, action.details), []).append(action)

    matched: set[str] = set()
    seen_keys: set[Hashable] = set()

    for draft in drafts:
        key = policy.key(draft.type, draft.details)
        if key in seen_keys:
            plan.dropped_drafts += 1
            logger.warning("duplicate_draft_dropped", opportunity_id=opportunity_id,
                           type=draft.type.value, policy=policy.name)
            continue
        seen_keys.add(key)

        candidates = by_key.get(key, [])
        existing = candidates[0] if candidates else None
        if existing is None:
            plan.changes.append(PlannedChange(
                decision=ReconcileDecision.CREATE,
                action=ProposedAction(
                    organization_id=organization_id,
                    opportunity_id=opportunity_id,
                    type=draft.type,
                    status=ActionStatus.PROPOSED,
                    details=draft.details,
                    reasoning=draft.reasoning,
                    source_activities=list(draft.source_activities),
                    created_at=now,
                    updated_at=now,
                ),
            ))
            continue

        matched.add(existing.id)
        plan.changes.append(_change_for_match(existing, draft, pending_side_effects))

    for action in locked_actions:
        if action.id in matched:
            continue
        if not drafts:
            # Empty response means "no opinion": leave everything as it was
            plan.changes.append(_keep(action))
            continue
        doomed = [m.id for m in pending_side_effects.get(action.id, [])]
        plan.changes.append(PlannedChange(
            decision=ReconcileDecision.CANCEL,
            action=action.model_copy(update={
                "status": ActionStatus.CANCELLED,
                "resulting_activities": [r for r in action.resulting_activities
                                         if r.activity_id not in doomed],
            }),
            delete_side_effects=doomed,
        ))

    return plan


def _keep(action: ProposedAction) -> PlannedChange:
    return PlannedChange(
        decision=ReconcileDecision.KEEP,
        action=action.model_copy(update={"status": action.effective_status}),
    )


def _change_for_match(
    existing: ProposedAction,
    draft: ProposedActionDraft,
    pending_side_effects: dict[str, list[ScheduledMessage]],
) -> PlannedChange:
    if _same_content(existing, draft):
        return _keep(existing)

    update = {
        "status": ActionStatus.PROPOSED,
        "details": draft.details,
        "reasoning": draft.reasoning or existing.reasoning,
        "source_activities": _merge_sources(existing.source_activities, draft.source_activities),
        "last_edited_by": None,
        "approved_by": None,
    }

    if existing.effective_status in AWAITING_DECISION_STATUSES:
        return PlannedChange(
            decision=ReconcileDecision.OVERWRITE,
            action=existing.model_copy(update=update),
        )

    # Executed with a side effect still pending: pull it back for review
    update.update(executed_at=None, resulting_activities=[])
    return PlannedChange(
        decision=ReconcileDecision.REVERT,
        action=existing.model_copy(update=update),
        delete_side_effects=[m.id for m in pending_side_effects.get(existing.id, [])],
    )
