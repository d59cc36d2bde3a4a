"""Shared test fixtures for ActionIntel."""
import pytest
import pytest_asyncio
from contextlib import asynccontextmanager

from core.reconciler import ActionReconciler
from core.side_effects import SideEffectResolver
from database.store_memory import InMemoryActionStore
from job_queue.activity_queue import ActivityQueue
from models.schemas import Opportunity, PipelineStage

from tests.factories import NOW, FakeGenerator, FakeProvider

# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryActionStore:
    return InMemoryActionStore()


@pytest.fixture
def open_stage() -> PipelineStage:
    return PipelineStage(id="stage_discovery", organization_id="org_1", name="Discovery")


@pytest.fixture
def closed_lost_stage() -> PipelineStage:
    return PipelineStage(id="stage_lost", organization_id="org_1", name="Closed Lost",
                         is_closed_lost=True)


@pytest.fixture
def closed_won_stage() -> PipelineStage:
    return PipelineStage(id="stage_won", organization_id="org_1", name="Closed Won",
                         is_closed_won=True)


@pytest_asyncio.fixture
async def stages(store, open_stage, closed_lost_stage, closed_won_stage):
    for stage in (open_stage, closed_lost_stage, closed_won_stage):
        await store.upsert_stage(stage)
    return {"open": open_stage, "lost": closed_lost_stage, "won": closed_won_stage}


@pytest_asyncio.fixture
async def opportunity(store, stages) -> Opportunity:
    opp = Opportunity(
        id="opp_acme",
        organization_id="org_1",
        prospect_id="prospect_acme",
        name="Acme renewal",
        stage_id=stages["open"].id,
        contact_ids=["contact_ravi"],
    )
    await store.upsert_opportunity(opp)
    return opp


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def queue(store) -> ActivityQueue:
    return ActivityQueue(store, debounce_seconds=300, stuck_timeout_seconds=300)


@pytest.fixture
def reconciler(store, generator, provider, queue) -> ActionReconciler:
    return ActionReconciler(
        store, generator,
        side_effects=SideEffectResolver(store, provider),
        queue=queue,
        node_id="test-node",
        now_fn=lambda: NOW,
    )


@asynccontextmanager
async def _sqlite_store(tmp_path):
    from config.settings import DatabaseConfig, Settings, reset_settings
    from database.session import close_db, init_db
    from database.store import SqlActionStore

    reset_settings(Settings(database=DatabaseConfig(
        url=f"sqlite:///{tmp_path / 'actions.db'}", store_backend="sql",
    )))
    await close_db()
    await init_db()
    try:
        yield SqlActionStore()
    finally:
        await close_db()
        reset_settings(None)


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """SqlActionStore on a throwaway SQLite file."""
    async with _sqlite_store(tmp_path) as store:
        yield store


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request, tmp_path):
    """Each backend in turn; tests using it must pass on both."""
    if request.param == "memory":
        yield InMemoryActionStore()
        return
    async with _sqlite_store(tmp_path) as store:
        yield store
