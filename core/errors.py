"""
Exception hierarchy for the action intelligence service.

Transient external failures, data-integrity failures and state conflicts
are kept apart so callers can log, skip or map them to HTTP codes.
"""
from __future__ import annotations


class ActionIntelError(Exception):
    """Base class for all service errors."""


# ── Transient external failures ───────────────────────────────

class GeneratorError(ActionIntelError):
    """The intelligence generator failed or returned an unusable response."""


class ProviderError(ActionIntelError):
    """The messaging provider failed."""


# ── Data integrity ────────────────────────────────────────────

class OpportunityNotFoundError(ActionIntelError, LookupError):
    def __init__(self, opportunity_id: str):
        super().__init__(f"Opportunity not found: {opportunity_id}")
        self.opportunity_id = opportunity_id


class ActionNotFoundError(ActionIntelError, LookupError):
    def __init__(self, action_id: str):
        super().__init__(f"Proposed action not found: {action_id}")
        self.action_id = action_id


class ActionDetailsError(ActionIntelError, ValueError):
    """Details payload does not match the schema for its action type."""


# ── Conflicts on persisted state ──────────────────────────────

class ActionLockedError(ActionIntelError):
    """The action is being re-evaluated and cannot be changed right now."""

    def __init__(self, action_id: str):
        super().__init__(f"Action {action_id} is being re-evaluated; try again shortly")
        self.action_id = action_id


class InvalidTransitionError(ActionIntelError):
    def __init__(self, action_id: str, current: str, target: str):
        super().__init__(f"Action {action_id}: cannot move from {current} to {target}")
        self.action_id = action_id
        self.current = current
        self.target = target


class ReconcileInProgressError(ActionIntelError):
    """Another reconciliation pass holds the opportunity."""

    def __init__(self, opportunity_id: str):
        super().__init__(f"Reconciliation already running for opportunity {opportunity_id}")
        self.opportunity_id = opportunity_id


class ConcurrentModificationError(ActionIntelError):
    """A conditional write found the record in an unexpected state."""
