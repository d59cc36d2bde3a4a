"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store()              # backend from settings.database
  action = await store.get_action("a1")
"""
from database.models import (
    Base, LeaseRow, OpportunityRow, PipelineStageRow, ProposedActionRow,
    QueueItemRow, ScheduledMessageRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseActionStore
from database.store import SqlActionStore
from database.store_memory import InMemoryActionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "LeaseRow", "OpportunityRow", "PipelineStageRow",
    "ProposedActionRow", "QueueItemRow", "ScheduledMessageRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseActionStore",
    # Store backends
    "SqlActionStore", "InMemoryActionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
