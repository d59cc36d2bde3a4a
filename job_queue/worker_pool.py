"""
Queue Worker Pool — claims queue items and drives reconciliation passes.

Runs as N asyncio tasks inside the application process. Any number of
processes may run a pool against the same database: the claim is a
conditional update, so each item is processed by exactly one worker and
at most one item per opportunity/prospect is in flight.

Per item:
    claim → opportunity.processing_status = processing
          → reconcile
          → item completed + status completed
            (or item failed + status failed; never retried automatically)
"""
from __future__ import annotations

import asyncio
import socket
import os
import structlog
from datetime import datetime, timezone
from typing import Any, Callable

from core.errors import ReconcileInProgressError
from core.reconciler import ActionReconciler
from database.store_base import BaseActionStore
from job_queue.activity_queue import ActivityQueue
from models.schemas import ProcessingStatus, QueueItem

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_node_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class QueueWorkerPool:
    """
    Usage:
        pool = QueueWorkerPool(store, reconciler, queue, worker_count=5)
        await pool.start()              # returns immediately, workers run as tasks
        await pool.trigger_manually()   # drain claimable items in the caller's task
        await pool.stop()
    """

    def __init__(
        self,
        store: BaseActionStore,
        reconciler: ActionReconciler,
        queue: ActivityQueue = None,
        worker_count: int = 5,
        poll_interval_seconds: float = 5.0,
        lease_wait_seconds: float = 30.0,
        maintenance_interval_seconds: float = 300.0,
        node_id: str = "",
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.reconciler = reconciler
        self.queue = queue
        self.worker_count = worker_count
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_wait_seconds = lease_wait_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.node_id = node_id or default_node_id()
        self._now = now_fn
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._processed = 0
        self._failed = 0
        self._in_flight: dict[str, str] = {}   # worker name → item id

    async def start(self) -> None:
        """Fail leftovers from a crashed run, then start the worker tasks."""
        if self._running:
            return
        self._running = True
        if self.queue:
            await self.queue.run_maintenance(self._now())
        for i in range(self.worker_count):
            name = f"queue_worker_{i}"
            self._tasks.append(asyncio.create_task(self._worker_loop(name), name=name))
        if self.queue and self.maintenance_interval_seconds > 0:
            self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="queue_maintenance"))
        logger.info("queue_workers_started", workers=self.worker_count, node=self.node_id)

    async def stop(self) -> None:
        """Cancel all worker tasks. An in-flight item is left processing and failed as stuck later."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("queue_workers_stopped", processed=self._processed, failed=self._failed)

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "workers": self.worker_count,
            "node_id": self.node_id,
            "processing": bool(self._in_flight),
            "in_flight": dict(self._in_flight),
            "processed": self._processed,
            "failed": self._failed,
        }

    async def trigger_manually(self, max_items: int = 100) -> dict[str, int]:
        """Process claimable items now, in the caller's task."""
        stats = {"processed": 0, "failed": 0}
        for _ in range(max_items):
            item = await self.store.claim_next(self.node_id, self._now())
            if item is None:
                break
            ok = await self.process_item(item, worker="manual")
            stats["processed" if ok else "failed"] += 1
        logger.info("queue_manual_trigger", **stats)
        return stats

    async def _worker_loop(self, name: str) -> None:
        while self._running:
            try:
                item = await self.store.claim_next(self.node_id, self._now())
                if item is None:
                    await asyncio.sleep(self.poll_interval_seconds)
                    continue
                await self.process_item(item, worker=name)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_worker_error", worker=name, error=str(e), exc_info=True)
                await asyncio.sleep(self.poll_interval_seconds)

    async def _maintenance_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.maintenance_interval_seconds)
            try:
                await self.queue.run_maintenance(self._now())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_maintenance_error", error=str(e))

    async def process_item(self, item: QueueItem, worker: str = "") -> bool:
        """Run one claimed item to a terminal state. Returns True on success."""
        self._in_flight[worker] = item.id
        logger.info("queue_item_processing",
                    item_id=item.id,
                    type=item.queue_item_type.value,
                    opportunity_id=item.opportunity_id,
                    attempt=item.attempts,
                    worker=worker)
        await self.store.set_processing_status(item.opportunity_id, ProcessingStatus.PROCESSING)
        try:
            trigger = item.reason or item.queue_item_type.value
            await self.reconciler.reconcile(
                item.opportunity_id,
                trigger=trigger,
                source="queue",
                source_activities=[item.activity_ref] if item.activity_ref else [],
                lease_wait_seconds=self.lease_wait_seconds,
            )
        except Exception as e:
            if isinstance(e, ReconcileInProgressError):
                logger.warning("queue_item_opportunity_busy", item_id=item.id,
                               opportunity_id=item.opportunity_id)
            else:
                logger.error("queue_item_failed",
                             item_id=item.id,
                             opportunity_id=item.opportunity_id,
                             error=str(e),
                             error_type=type(e).__name__)
            await self.store.fail_item(item.id, f"{type(e).__name__}: {e}", self._now())
            await self.store.set_processing_status(item.opportunity_id, ProcessingStatus.FAILED)
            self._failed += 1
            return False
        finally:
            self._in_flight.pop(worker, None)

        await self.store.complete_item(item.id, self._now())
        await self.store.set_processing_status(item.opportunity_id, ProcessingStatus.COMPLETED)
        self._processed += 1
        logger.info("queue_item_completed", item_id=item.id, opportunity_id=item.opportunity_id)
        return True
