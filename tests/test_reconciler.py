"""
Tests for the reconciliation pass.

Covers:
  - End-to-end inbound-message scenarios (create, keep, cancel, revert)
  - Generator failure restores locked statuses
  - Empty responses, duplicate drafts, duplicate stored actions
  - Per-opportunity lease and follow-up scheduling
"""
import pytest
from datetime import timedelta

from core.errors import GeneratorError, OpportunityNotFoundError, ReconcileInProgressError
from core.reconciler import lease_key
from models.action_details import ActionType
from models.schemas import ActionStatus, QueueItemStatus, QueueItemType

from tests.factories import (
    NOW, add_executed_with_scheduled_message, email_draft, inbound_email,
    make_action, no_action_draft,
)


def _live(actions):
    return [a for a in actions if a.status not in (ActionStatus.CANCELLED, ActionStatus.REJECTED)]


# ──────────────────────────────────────────────────────────────
#  Inbound message scenarios
# ──────────────────────────────────────────────────────────────

class TestInboundScenarios:
    @pytest.mark.asyncio
    async def test_new_message_creates_one_proposed_email(self, store, opportunity, generator, reconciler):
        ref = inbound_email()
        generator.responses = [[email_draft(source_activities=[ref])]]

        result = await reconciler.reconcile(opportunity.id, trigger="new EmailActivity",
                                            source_activities=[ref])

        actions = await store.list_actions(opportunity.id)
        assert len(actions) == 1
        assert actions[0].type == ActionType.EMAIL
        assert actions[0].status == ActionStatus.PROPOSED
        assert ref in actions[0].source_activities
        assert result.created == [actions[0].id]

    @pytest.mark.asyncio
    async def test_confirming_message_keeps_existing_action(self, store, opportunity, generator, reconciler):
        existing = await store.create_action(make_action(opportunity))
        generator.responses = [[email_draft()]]

        result = await reconciler.reconcile(opportunity.id, source_activities=[inbound_email()])

        actions = await store.list_actions(opportunity.id)
        assert [a.id for a in actions] == [existing.id]
        assert actions[0].status == ActionStatus.PROPOSED
        assert actions[0].previous_status is None
        assert result.kept == [existing.id]
        assert result.changed == 0

    @pytest.mark.asyncio
    async def test_deal_lost_cancels_executed_action_and_deletes_message(
        self, store, opportunity, generator, provider, reconciler,
    ):
        executed, message = await add_executed_with_scheduled_message(store, opportunity)
        generator.responses = [[no_action_draft("Prospect chose a competitor")]]

        result = await reconciler.reconcile(opportunity.id)

        cancelled = await store.get_action(executed.id)
        assert cancelled.status == ActionStatus.CANCELLED
        assert await store.get_scheduled_message(message.id) is None
        assert result.deleted_side_effects == [message.id]
        assert provider.deleted == [message.id]

    @pytest.mark.asyncio
    async def test_different_content_reverts_executed_action(self, store, opportunity, generator, reconciler):
        executed, message = await add_executed_with_scheduled_message(store, opportunity)
        generator.responses = [[email_draft(subject="Re: Pricing follow-up", body="Moving the call to Thursday.")]]

        result = await reconciler.reconcile(opportunity.id)

        reverted = await store.get_action(executed.id)
        assert reverted.status == ActionStatus.PROPOSED
        assert reverted.details.subject == "Re: Pricing follow-up"
        assert reverted.resulting_activities == []
        assert reverted.executed_at is None
        assert await store.get_scheduled_message(message.id) is None
        assert result.reverted == [executed.id]

    @pytest.mark.asyncio
    async def test_awaiting_action_overwritten_in_place(self, store, opportunity, generator, reconciler):
        approved = await store.create_action(make_action(opportunity, status=ActionStatus.APPROVED))
        generator.responses = [[email_draft(body="Updated quote attached.")]]

        result = await reconciler.reconcile(opportunity.id)

        action = await store.get_action(approved.id)
        assert action.status == ActionStatus.PROPOSED
        assert action.details.body == "Updated quote attached."
        assert result.overwritten == [approved.id]
        assert len(await store.list_actions(opportunity.id)) == 1


# ──────────────────────────────────────────────────────────────
#  Failure handling
# ──────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_generator_failure_restores_statuses(self, store, opportunity, generator, reconciler):
        proposed = await store.create_action(make_action(opportunity))
        approved = await store.create_action(make_action(
            opportunity, ActionType.TASK, ActionStatus.APPROVED,
            details={"title": "Send NDA", "due_date": NOW.date()},
        ))
        generator.responses = [RuntimeError("model timeout")]

        with pytest.raises(GeneratorError):
            await reconciler.reconcile(opportunity.id)

        assert (await store.get_action(proposed.id)).status == ActionStatus.PROPOSED
        assert (await store.get_action(approved.id)).status == ActionStatus.APPROVED
        assert (await store.get_opportunity(opportunity.id)).last_intelligence_update is None

    @pytest.mark.asyncio
    async def test_generator_failure_keeps_scheduled_message(self, store, opportunity, generator, reconciler):
        executed, message = await add_executed_with_scheduled_message(store, opportunity)
        generator.responses = [GeneratorError("bad response")]

        with pytest.raises(GeneratorError):
            await reconciler.reconcile(opportunity.id)

        assert (await store.get_action(executed.id)).status == ActionStatus.EXECUTED
        assert await store.get_scheduled_message(message.id) is not None

    @pytest.mark.asyncio
    async def test_unknown_opportunity(self, reconciler):
        with pytest.raises(OpportunityNotFoundError):
            await reconciler.reconcile("opp_missing")

    @pytest.mark.asyncio
    async def test_busy_opportunity_raises_without_calling_generator(
        self, store, opportunity, generator, reconciler,
    ):
        await store.acquire_lease(lease_key(opportunity.id), "other-node", 600, NOW)

        with pytest.raises(ReconcileInProgressError):
            await reconciler.reconcile(opportunity.id)
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_lease_released_after_failure(self, store, opportunity, generator, reconciler):
        generator.responses = [RuntimeError("boom"), [email_draft()]]
        with pytest.raises(GeneratorError):
            await reconciler.reconcile(opportunity.id)

        result = await reconciler.reconcile(opportunity.id)
        assert len(result.created) == 1

    @pytest.mark.asyncio
    async def test_provider_delete_failure_does_not_fail_pass(self, store, opportunity, generator, provider, reconciler):
        provider.fail_deletes = True
        _, message = await add_executed_with_scheduled_message(store, opportunity)
        generator.responses = [[no_action_draft()]]

        result = await reconciler.reconcile(opportunity.id)

        assert result.deleted_side_effects == [message.id]
        assert await store.get_scheduled_message(message.id) is None


# ──────────────────────────────────────────────────────────────
#  Planning rules
# ──────────────────────────────────────────────────────────────

class TestPlanningRules:
    @pytest.mark.asyncio
    async def test_empty_response_keeps_everything(self, store, opportunity, generator, reconciler):
        proposed = await store.create_action(make_action(opportunity))
        updated = await store.create_action(make_action(
            opportunity, ActionType.CALL, ActionStatus.UPDATED,
            details={"contact_email": "ravi@acme.test", "purpose": "Walk through pricing"},
        ))
        generator.responses = [[]]

        result = await reconciler.reconcile(opportunity.id)

        assert (await store.get_action(proposed.id)).status == ActionStatus.PROPOSED
        assert (await store.get_action(updated.id)).status == ActionStatus.UPDATED
        assert sorted(result.kept) == sorted([proposed.id, updated.id])
        assert (await store.get_opportunity(opportunity.id)).last_intelligence_update == NOW

    @pytest.mark.asyncio
    async def test_unmatched_action_cancelled_when_drafts_present(self, store, opportunity, generator, reconciler):
        call = await store.create_action(make_action(
            opportunity, ActionType.CALL,
            details={"contact_email": "ravi@acme.test"},
        ))
        generator.responses = [[email_draft()]]

        result = await reconciler.reconcile(opportunity.id)

        assert (await store.get_action(call.id)).status == ActionStatus.CANCELLED
        assert result.cancelled == [call.id]
        assert len(result.created) == 1

    @pytest.mark.asyncio
    async def test_duplicate_drafts_first_wins(self, store, opportunity, generator, reconciler):
        generator.responses = [[email_draft(subject="First"), email_draft(subject="Second")]]

        await reconciler.reconcile(opportunity.id)

        actions = await store.list_actions(opportunity.id)
        assert len(actions) == 1
        assert actions[0].details.subject == "First"

    @pytest.mark.asyncio
    async def test_duplicate_stored_actions_collapse_to_newest(self, store, opportunity, generator, reconciler):
        older = await store.create_action(make_action(opportunity, created_at=NOW - timedelta(days=3)))
        newer = await store.create_action(make_action(opportunity, created_at=NOW - timedelta(days=1)))
        generator.responses = [[email_draft(body="One consolidated email.")]]

        await reconciler.reconcile(opportunity.id)

        assert (await store.get_action(newer.id)).status == ActionStatus.PROPOSED
        assert (await store.get_action(older.id)).status == ActionStatus.CANCELLED
        live = _live(await store.list_actions(opportunity.id))
        assert [a.id for a in live] == [newer.id]

    @pytest.mark.asyncio
    async def test_executed_action_without_pending_effect_untouched(self, store, opportunity, generator, reconciler):
        done = await store.create_action(make_action(
            opportunity, ActionType.TASK, ActionStatus.EXECUTED,
            details={"title": "Send NDA", "due_date": NOW.date()},
        ))
        generator.responses = [[email_draft()]]

        await reconciler.reconcile(opportunity.id)

        assert (await store.get_action(done.id)).status == ActionStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_generator_sees_statuses_before_lock(self, store, opportunity, generator, reconciler):
        await store.create_action(make_action(opportunity, status=ActionStatus.APPROVED))
        generator.responses = [[]]

        await reconciler.reconcile(opportunity.id, trigger="new EmailActivity")

        _, context = generator.calls[0]
        assert [a.status for a in context.existing_actions] == [ActionStatus.APPROVED]
        assert context.trigger == "new EmailActivity"
        assert context.opportunity.id == opportunity.id

    @pytest.mark.asyncio
    async def test_timestamp_never_moves_backwards(self, store, opportunity, generator, reconciler):
        later = NOW + timedelta(days=1)
        await store.upsert_opportunity(opportunity.model_copy(update={"last_intelligence_update": later}))
        generator.responses = [[email_draft()]]

        await reconciler.reconcile(opportunity.id)

        assert (await store.get_opportunity(opportunity.id)).last_intelligence_update == later


# ──────────────────────────────────────────────────────────────
#  Follow-up scheduling
# ──────────────────────────────────────────────────────────────

class TestWaitUntil:
    @pytest.mark.asyncio
    async def test_wait_until_schedules_reprocessing(self, store, opportunity, generator, reconciler):
        run_at = NOW + timedelta(days=2)
        generator.responses = [[email_draft(wait_until=run_at)]]

        result = await reconciler.reconcile(opportunity.id)

        item = await store.find_active_item(
            QueueItemType.OPPORTUNITY_REPROCESSING, opportunity.id, opportunity.prospect_id,
        )
        assert item is not None
        assert item.status == QueueItemStatus.PENDING
        assert item.scheduled_for == run_at
        assert result.reprocessing_scheduled_for == run_at

    @pytest.mark.asyncio
    async def test_no_wait_until_schedules_nothing(self, store, opportunity, generator, reconciler):
        generator.responses = [[email_draft()]]

        result = await reconciler.reconcile(opportunity.id)

        assert result.reprocessing_scheduled_for is None
        stats = await store.queue_stats()
        assert stats["opportunity_reprocessing"]["pending"] == 0
