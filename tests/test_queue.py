"""
Tests for the activity queue, on both store backends.

Covers:
  - Idempotent enqueue per (opportunity, type) and (prospect, type)
  - One processing item per opportunity / prospect key
  - Ordering, scheduled_for, reprocessing debounce
  - Maintenance: stuck items fail, old completed items are purged
"""
import pytest
from datetime import timedelta

from job_queue.activity_queue import ActivityQueue, activity_priority
from models.schemas import Opportunity, QueueItemStatus, QueueItemType

from tests.factories import NOW, inbound_email


def _opp(opp_id: str, prospect_id: str) -> Opportunity:
    return Opportunity(id=opp_id, organization_id="org_1", prospect_id=prospect_id,
                       stage_id="stage_discovery", contact_ids=["c1"])


@pytest.fixture
def acme():
    return _opp("opp_acme", "prospect_acme")


@pytest.fixture
def acme_expansion():
    return _opp("opp_acme_expansion", "prospect_acme")


@pytest.fixture
def globex():
    return _opp("opp_globex", "prospect_globex")


@pytest.fixture
def activity_queue(any_store):
    return ActivityQueue(any_store, debounce_seconds=300, stuck_timeout_seconds=300,
                         completed_retention_days=7)


# ──────────────────────────────────────────────────────────────
#  Enqueue
# ──────────────────────────────────────────────────────────────

class TestEnqueue:
    @pytest.mark.asyncio
    async def test_second_activity_for_same_opportunity_is_noop(self, activity_queue, acme):
        first, created = await activity_queue.enqueue_activity(acme, inbound_email("em_1"), NOW)
        second, created_again = await activity_queue.enqueue_activity(acme, inbound_email("em_2"), NOW)

        assert created is True
        assert created_again is False
        assert second.id == first.id
        stats = await activity_queue.stats()
        assert stats["activity"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_same_prospect_other_opportunity_is_noop(self, activity_queue, acme, acme_expansion):
        await activity_queue.enqueue_activity(acme, inbound_email("em_1"), NOW)
        item, created = await activity_queue.enqueue_activity(acme_expansion, inbound_email("em_2"), NOW)

        assert created is False
        assert item.opportunity_id == acme.id

    @pytest.mark.asyncio
    async def test_types_are_independent(self, activity_queue, acme):
        _, created_activity = await activity_queue.enqueue_activity(acme, inbound_email(), NOW)
        reprocessing = await activity_queue.schedule_reprocessing(acme, run_at=NOW, reason="wait_until")

        assert created_activity is True
        assert reprocessing.queue_item_type == QueueItemType.OPPORTUNITY_REPROCESSING
        stats = await activity_queue.stats()
        assert stats["activity"]["pending"] == 1
        assert stats["opportunity_reprocessing"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_enqueue_allowed_again_after_completion(self, any_store, activity_queue, acme):
        first, _ = await activity_queue.enqueue_activity(acme, inbound_email("em_1"), NOW)
        claimed = await any_store.claim_next("node-a", NOW)
        assert claimed.id == first.id
        await any_store.complete_item(first.id, NOW)

        second, created = await activity_queue.enqueue_activity(acme, inbound_email("em_2"), NOW)

        assert created is True
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_activity_item_carries_ref_and_priority(self, activity_queue, acme):
        ref = inbound_email("em_42")
        item, _ = await activity_queue.enqueue_activity(acme, ref, NOW, contact_id="contact_ravi")

        assert item.activity_ref == ref
        assert item.priority == activity_priority(NOW)
        assert item.contact_id == "contact_ravi"
        assert item.reason == "new EmailActivity"


# ──────────────────────────────────────────────────────────────
#  Claiming
# ──────────────────────────────────────────────────────────────

class TestClaim:
    @pytest.mark.asyncio
    async def test_one_processing_item_per_opportunity(self, any_store, activity_queue, acme):
        await activity_queue.enqueue_activity(acme, inbound_email(), NOW)
        await activity_queue.schedule_reprocessing(acme, run_at=NOW - timedelta(minutes=1))

        first = await any_store.claim_next("node-a", NOW)
        blocked = await any_store.claim_next("node-b", NOW)

        assert first is not None
        assert first.status == QueueItemStatus.PROCESSING
        assert first.processing_node == "node-a"
        assert first.attempts == 1
        assert blocked is None

        await any_store.complete_item(first.id, NOW)
        second = await any_store.claim_next("node-b", NOW)
        assert second is not None
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_other_opportunities_claimable_in_parallel(self, any_store, activity_queue, acme, globex):
        await activity_queue.enqueue_activity(acme, inbound_email("em_1"), NOW)
        await activity_queue.enqueue_activity(globex, inbound_email("em_2"), NOW)

        first = await any_store.claim_next("node-a", NOW)
        second = await any_store.claim_next("node-b", NOW)

        assert {first.opportunity_id, second.opportunity_id} == {acme.id, globex.id}

    @pytest.mark.asyncio
    async def test_earlier_activity_claimed_first(self, any_store, activity_queue, acme, globex):
        await activity_queue.enqueue_activity(acme, inbound_email("em_late"), NOW)
        await activity_queue.enqueue_activity(globex, inbound_email("em_early"), NOW - timedelta(hours=3))

        first = await any_store.claim_next("node-a", NOW)

        assert first.opportunity_id == globex.id

    @pytest.mark.asyncio
    async def test_future_item_not_claimable(self, any_store, activity_queue, acme):
        await activity_queue.schedule_reprocessing(acme, run_at=NOW + timedelta(hours=1))

        assert await any_store.claim_next("node-a", NOW) is None
        assert await any_store.claim_next("node-a", NOW + timedelta(hours=2)) is not None

    @pytest.mark.asyncio
    async def test_failed_item_is_terminal(self, any_store, activity_queue, acme):
        item, _ = await activity_queue.enqueue_activity(acme, inbound_email(), NOW)
        await any_store.claim_next("node-a", NOW)

        assert await any_store.fail_item(item.id, "GeneratorError: timeout", NOW) is True
        assert await any_store.claim_next("node-a", NOW) is None
        failed = await any_store.get_queue_item(item.id)
        assert failed.status == QueueItemStatus.FAILED
        assert failed.last_error == "GeneratorError: timeout"


# ──────────────────────────────────────────────────────────────
#  Reprocessing debounce
# ──────────────────────────────────────────────────────────────

class TestReprocessing:
    @pytest.mark.asyncio
    async def test_pending_item_pushed_back(self, activity_queue, acme):
        first = await activity_queue.schedule_reprocessing(acme, run_at=NOW + timedelta(minutes=5))
        second = await activity_queue.schedule_reprocessing(acme, run_at=NOW + timedelta(minutes=20))

        assert second.id == first.id
        assert second.scheduled_for == NOW + timedelta(minutes=20)
        assert second.priority == activity_priority(NOW + timedelta(minutes=20))
        stats = await activity_queue.stats()
        assert stats["opportunity_reprocessing"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_reprocessing_queues_behind_older_activity(self, any_store, activity_queue, acme, globex):
        await activity_queue.schedule_reprocessing(acme, run_at=NOW - timedelta(minutes=1))
        await activity_queue.enqueue_activity(globex, inbound_email("em_waiting"), NOW - timedelta(minutes=10))

        first = await any_store.claim_next("node-a", NOW)
        second = await any_store.claim_next("node-a", NOW)

        assert first.opportunity_id == globex.id
        assert first.queue_item_type == QueueItemType.ACTIVITY
        assert second.opportunity_id == acme.id
        assert second.queue_item_type == QueueItemType.OPPORTUNITY_REPROCESSING

    @pytest.mark.asyncio
    async def test_processing_item_left_alone(self, any_store, activity_queue, acme):
        first = await activity_queue.schedule_reprocessing(acme, run_at=NOW)
        await any_store.claim_next("node-a", NOW)

        again = await activity_queue.schedule_reprocessing(acme, run_at=NOW + timedelta(hours=1))

        assert again.id == first.id
        assert again.status == QueueItemStatus.PROCESSING
        stats = await activity_queue.stats()
        assert stats["opportunity_reprocessing"]["pending"] == 0


# ──────────────────────────────────────────────────────────────
#  Maintenance
# ──────────────────────────────────────────────────────────────

class TestMaintenance:
    @pytest.mark.asyncio
    async def test_stuck_item_failed_not_reset(self, any_store, activity_queue, acme):
        item, _ = await activity_queue.enqueue_activity(acme, inbound_email(), NOW)
        await any_store.claim_next("node-crashed", NOW)

        result = await activity_queue.run_maintenance(NOW + timedelta(minutes=10))

        assert result["stuck_failed"] == 1
        stuck = await any_store.get_queue_item(item.id)
        assert stuck.status == QueueItemStatus.FAILED
        assert stuck.last_error == "stuck processing timeout"
        # key is free again
        _, created = await activity_queue.enqueue_activity(acme, inbound_email("em_2"), NOW)
        assert created is True

    @pytest.mark.asyncio
    async def test_recent_processing_item_untouched(self, any_store, activity_queue, acme):
        item, _ = await activity_queue.enqueue_activity(acme, inbound_email(), NOW)
        await any_store.claim_next("node-a", NOW)

        result = await activity_queue.run_maintenance(NOW + timedelta(minutes=2))

        assert result["stuck_failed"] == 0
        assert (await any_store.get_queue_item(item.id)).status == QueueItemStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_old_completed_items_purged(self, any_store, activity_queue, acme):
        item, _ = await activity_queue.enqueue_activity(acme, inbound_email(), NOW)
        await any_store.claim_next("node-a", NOW)
        await any_store.complete_item(item.id, NOW)

        kept = await activity_queue.run_maintenance(NOW + timedelta(days=6))
        purged = await activity_queue.run_maintenance(NOW + timedelta(days=8))

        assert kept["completed_deleted"] == 0
        assert purged["completed_deleted"] == 1
        assert await any_store.get_queue_item(item.id) is None
