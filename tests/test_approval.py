"""
Tests for human decisions on proposed actions.

Covers:
  - approve / reject / update_details transitions
  - Locked while a reconciliation pass holds the action
  - Details validation against the type schema
  - Edits based on a stale read are refused
"""
import pytest
from datetime import timedelta

from core.approval import ApprovalService
from core.errors import (
    ActionDetailsError, ActionLockedError, ActionNotFoundError, ConcurrentModificationError,
    InvalidTransitionError,
)
from models.action_details import ActionType
from models.schemas import ActionStatus, CreatedByType

from tests.factories import NOW, FakeGenerator, email_draft, make_action


@pytest.fixture
def approvals(store):
    return ApprovalService(store)


class TestTransitions:
    @pytest.mark.asyncio
    async def test_approve_proposed(self, store, opportunity, approvals):
        action = await store.create_action(make_action(opportunity))

        approved = await approvals.approve(action.id, "u_priya")

        assert approved.status == ActionStatus.APPROVED
        assert approved.approved_by == "u_priya"

    @pytest.mark.asyncio
    async def test_reject_updated(self, store, opportunity, approvals):
        action = await store.create_action(make_action(opportunity, status=ActionStatus.UPDATED))

        rejected = await approvals.reject(action.id, "u_priya")

        assert rejected.status == ActionStatus.REJECTED
        assert rejected.last_edited_by.type == CreatedByType.USER

    @pytest.mark.asyncio
    async def test_update_details_merges_and_marks_updated(self, store, opportunity, approvals):
        action = await store.create_action(make_action(opportunity))

        updated = await approvals.update_details(action.id, {"subject": "Revised pricing"}, "u_priya")

        assert updated.status == ActionStatus.UPDATED
        assert updated.details.subject == "Revised pricing"
        assert updated.details.to == ["ravi@acme.test"]
        assert updated.last_edited_by.id == "u_priya"

    @pytest.mark.asyncio
    async def test_invalid_details_rejected(self, store, opportunity, approvals):
        action = await store.create_action(make_action(
            opportunity, ActionType.TASK, details={"title": "Send NDA", "due_date": "2026-03-12"},
        ))

        with pytest.raises(ActionDetailsError):
            await approvals.update_details(action.id, {"title": ""}, "u_priya")
        assert (await store.get_action(action.id)).status == ActionStatus.PROPOSED

    @pytest.mark.asyncio
    async def test_cannot_approve_executed(self, store, opportunity, approvals):
        action = await store.create_action(make_action(opportunity, status=ActionStatus.EXECUTED))

        with pytest.raises(InvalidTransitionError) as exc:
            await approvals.approve(action.id, "u_priya")
        assert exc.value.current == ActionStatus.EXECUTED.value

    @pytest.mark.asyncio
    async def test_unknown_action(self, approvals):
        with pytest.raises(ActionNotFoundError):
            await approvals.approve("act_missing", "u_priya")


class TestLockedDuringEvaluation:
    @pytest.mark.asyncio
    async def test_approve_refused_while_processing_updates(self, store, opportunity, approvals):
        action = await store.create_action(make_action(opportunity))
        await store.begin_evaluation(opportunity.id)

        with pytest.raises(ActionLockedError):
            await approvals.approve(action.id, "u_priya")
        with pytest.raises(ActionLockedError):
            await approvals.update_details(action.id, {"subject": "x"}, "u_priya")

    @pytest.mark.asyncio
    async def test_approval_during_pass_does_not_survive_overwrite(self, store, opportunity, approvals, reconciler):
        action = await store.create_action(make_action(opportunity))
        attempts = []

        async def approve_mid_pass(opportunity_id, context):
            try:
                await approvals.approve(action.id, "u_priya")
            except ActionLockedError as e:
                attempts.append(e)
            return [email_draft(body="New body")]

        reconciler.generator = FakeGenerator()
        reconciler.generator.generate = approve_mid_pass

        await reconciler.reconcile(opportunity.id)

        assert len(attempts) == 1
        final = await store.get_action(action.id)
        assert final.status == ActionStatus.PROPOSED
        assert final.details.body == "New body"

    @pytest.mark.asyncio
    async def test_approve_works_after_pass(self, store, opportunity, approvals, generator, reconciler):
        action = await store.create_action(make_action(opportunity))
        generator.responses = [[email_draft()]]

        await reconciler.reconcile(opportunity.id)
        approved = await approvals.approve(action.id, "u_priya")

        assert approved.status == ActionStatus.APPROVED


class TestConcurrentEdit:
    @pytest.mark.asyncio
    async def test_edit_from_stale_read_does_not_overwrite_pass(self, store, opportunity, approvals,
                                                               generator, reconciler, monkeypatch):
        action = await store.create_action(make_action(opportunity, updated_at=NOW - timedelta(hours=1)))
        generator.responses = [[email_draft(body="New AI body")]]
        read_action = store.get_action

        async def read_then_reconcile(action_id):
            current = await read_action(action_id)
            monkeypatch.setattr(store, "get_action", read_action)
            await reconciler.reconcile(opportunity.id)
            return current

        monkeypatch.setattr(store, "get_action", read_then_reconcile)

        with pytest.raises(ConcurrentModificationError):
            await approvals.update_details(action.id, {"subject": "Revised pricing"}, "u_priya")

        final = await store.get_action(action.id)
        assert final.status == ActionStatus.PROPOSED
        assert final.details.body == "New AI body"
        assert final.last_edited_by is None or final.last_edited_by.type != CreatedByType.USER

    @pytest.mark.asyncio
    async def test_edit_after_fresh_read_succeeds(self, store, opportunity, approvals):
        action = await store.create_action(make_action(opportunity, updated_at=NOW - timedelta(hours=1)))

        first = await approvals.update_details(action.id, {"subject": "One"}, "u_priya")
        second = await approvals.update_details(action.id, {"subject": "Two"}, "u_priya")

        assert first.status == second.status == ActionStatus.UPDATED
        assert second.details.subject == "Two"
