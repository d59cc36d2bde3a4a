"""
FastAPI Application — operational surface of the action intelligence service.

Provides:
- Health and status of the queue workers and schedulers
- Manual triggers for the schedulers and the queue
- Activity ingestion (enqueue for reconciliation)
- Approve / reject / edit / execute proposed actions

All background loops are started in the lifespan and share one store.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from backend.generator import HttpIntelligenceGenerator, IntelligenceGenerator
from backend.messaging import HttpMessagingProvider, MessagingProvider
from config.settings import Settings, get_settings
from core.approval import ApprovalService
from core.errors import (
    ActionDetailsError, ActionIntelError, ActionLockedError, ActionNotFoundError,
    ConcurrentModificationError, InvalidTransitionError, OpportunityNotFoundError,
    ReconcileInProgressError,
)
from core.execution import ActionExecutor
from core.intent import INTENT_POLICIES
from core.reconciler import ActionReconciler
from core.side_effects import SideEffectResolver
from database.session import close_db, init_db
from database.store_base import BaseActionStore
from database.store_factory import create_store
from job_queue.activity_queue import ActivityQueue
from job_queue.worker_pool import QueueWorkerPool, default_node_id
from models.schemas import ActivityModel, ActivityRef, ProposedAction
from schedulers.intelligence import IntelligenceUpdateScheduler
from schedulers.scheduled_send import ScheduledSendExecutor

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────


@dataclass
class Services:
    settings: Settings
    store: BaseActionStore
    queue: ActivityQueue
    reconciler: ActionReconciler
    workers: QueueWorkerPool
    intelligence_scheduler: IntelligenceUpdateScheduler
    send_executor: ScheduledSendExecutor
    approvals: ApprovalService
    executor: ActionExecutor
    generator: IntelligenceGenerator
    provider: MessagingProvider


services: Optional[Services] = None


def build_services(
    settings: Settings,
    store: BaseActionStore = None,
    generator: IntelligenceGenerator = None,
    provider: MessagingProvider = None,
    intent_policy: str = "type",
) -> Services:
    """Wire every component once; nothing is started here."""
    node_id = settings.node_id or default_node_id()
    store = store or create_store(settings.database)
    generator = generator or HttpIntelligenceGenerator(settings.generator)
    provider = provider or HttpMessagingProvider(settings.messaging)

    qc = settings.queue
    queue = ActivityQueue(
        store,
        debounce_seconds=qc.reprocessing_debounce_seconds,
        stuck_timeout_seconds=qc.stuck_timeout_seconds,
        completed_retention_days=qc.completed_retention_days,
    )
    reconciler = ActionReconciler(
        store, generator,
        side_effects=SideEffectResolver(store, provider),
        queue=queue,
        policy=INTENT_POLICIES[intent_policy](),
        node_id=node_id,
        lease_ttl_seconds=qc.reconcile_lease_ttl_seconds,
    )
    workers = QueueWorkerPool(
        store, reconciler, queue,
        worker_count=qc.worker_count,
        poll_interval_seconds=qc.poll_interval_seconds,
        lease_wait_seconds=qc.lease_wait_seconds,
        maintenance_interval_seconds=qc.maintenance_interval_seconds,
        node_id=node_id,
    )
    sc = settings.intelligence_scheduler
    scheduler = IntelligenceUpdateScheduler(
        store, reconciler,
        active_stale_days=sc.active_stale_days,
        closed_lost_stale_days=sc.closed_lost_stale_days,
        inter_item_delay_seconds=sc.inter_item_delay_seconds,
        lease_ttl_seconds=sc.lease_ttl_seconds,
        timezone=settings.timezone,
        node_id=node_id,
    )
    se = settings.send_executor
    send_executor = ScheduledSendExecutor(
        store, provider,
        interval_seconds=se.interval_seconds,
        batch_size=se.batch_size,
        stale_sending_seconds=se.stale_sending_seconds,
    )
    return Services(
        settings=settings,
        store=store,
        queue=queue,
        reconciler=reconciler,
        workers=workers,
        intelligence_scheduler=scheduler,
        send_executor=send_executor,
        approvals=ApprovalService(store),
        executor=ActionExecutor(store),
        generator=generator,
        provider=provider,
    )


def _services() -> Services:
    if services is None:
        raise HTTPException(503, "Service not started")
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    global services
    settings = get_settings()
    if settings.database.store_backend == "sql":
        await init_db()

    services = build_services(settings)
    await services.workers.start()
    if settings.intelligence_scheduler.enabled:
        await services.intelligence_scheduler.start()
    if settings.send_executor.enabled:
        await services.send_executor.start()

    logger.info("action_intel_started",
                store=type(services.store).__name__,
                node_id=services.workers.node_id,
                workers=settings.queue.worker_count)
    yield

    await services.send_executor.stop()
    await services.intelligence_scheduler.stop()
    await services.workers.stop()
    await services.generator.close()
    await services.provider.close()
    if settings.database.store_backend == "sql":
        await close_db()
    services = None
    logger.info("action_intel_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="ActionIntel API",
    description="Keeps proposed next actions for sales opportunities current",
    version="0.1.0",
    lifespan=lifespan,
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class ActivityIngestRequest(BaseModel):
    opportunity_id: str
    activity_id: str
    activity_model: ActivityModel = ActivityModel.EMAIL
    activity_at: Optional[datetime] = None
    contact_id: Optional[str] = None


class DecisionRequest(BaseModel):
    user_id: str


class UpdateDetailsRequest(BaseModel):
    user_id: str
    details: dict[str, Any]


def _http_error(e: ActionIntelError) -> HTTPException:
    if isinstance(e, (ActionNotFoundError, OpportunityNotFoundError)):
        return HTTPException(404, str(e))
    if isinstance(e, (ActionLockedError, ConcurrentModificationError,
                      InvalidTransitionError, ReconcileInProgressError)):
        return HTTPException(409, str(e))
    if isinstance(e, ActionDetailsError):
        return HTTPException(422, str(e))
    return HTTPException(500, str(e))


def _action_out(action: ProposedAction) -> dict[str, Any]:
    return action.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  HEALTH & STATUS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "started": services is not None,
    }


@app.get("/api/v1/status")
async def status():
    s = _services()
    return {
        "queue_workers": s.workers.get_status(),
        "intelligence_scheduler": s.intelligence_scheduler.get_status(),
        "scheduled_send_executor": s.send_executor.get_status(),
    }


@app.post("/api/v1/schedulers/{name}/trigger")
async def trigger_scheduler(name: str):
    s = _services()
    runners = {
        "intelligence": s.intelligence_scheduler.trigger_manually,
        "scheduled_send": s.send_executor.trigger_manually,
        "queue": s.workers.trigger_manually,
    }
    if name not in runners:
        raise HTTPException(404, f"Unknown scheduler: {name}")
    return {"scheduler": name, "result": await runners[name]()}


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/queue/stats")
async def queue_stats():
    return await _services().queue.stats()


@app.post("/api/v1/activities")
async def ingest_activity(req: ActivityIngestRequest):
    s = _services()
    opportunity = await s.store.get_opportunity(req.opportunity_id)
    if opportunity is None:
        raise HTTPException(404, "Opportunity not found")
    item, created = await s.queue.enqueue_activity(
        opportunity,
        ActivityRef(activity_id=req.activity_id, activity_model=req.activity_model),
        activity_at=req.activity_at or datetime.now(timezone.utc),
        contact_id=req.contact_id,
    )
    return {"queue_item_id": item.id, "created": created, "status": item.status.value}


# ══════════════════════════════════════════════════════════════
#  PROPOSED ACTIONS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/actions/{action_id}/approve")
async def approve_action(action_id: str, req: DecisionRequest):
    try:
        return _action_out(await _services().approvals.approve(action_id, req.user_id))
    except ActionIntelError as e:
        raise _http_error(e) from e


@app.post("/api/v1/actions/{action_id}/reject")
async def reject_action(action_id: str, req: DecisionRequest):
    try:
        return _action_out(await _services().approvals.reject(action_id, req.user_id))
    except ActionIntelError as e:
        raise _http_error(e) from e


@app.patch("/api/v1/actions/{action_id}")
async def update_action(action_id: str, req: UpdateDetailsRequest):
    try:
        action = await _services().approvals.update_details(action_id, req.details, req.user_id)
        return _action_out(action)
    except ActionIntelError as e:
        raise _http_error(e) from e


@app.post("/api/v1/actions/{action_id}/execute")
async def execute_action(action_id: str, req: DecisionRequest):
    try:
        return _action_out(await _services().executor.execute(action_id, req.user_id))
    except ActionIntelError as e:
        raise _http_error(e) from e


def main():
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
