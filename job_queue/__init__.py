"""
Activity Queue — Durable, per-opportunity work items for reconciliation.

- Ingestion ENQUEUES one item per opportunity (and per prospect)
- QueueWorkerPool CLAIMS items atomically and runs the reconciler
- Backed by whichever action store is configured (SQL or in-memory)
"""
