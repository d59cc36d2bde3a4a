"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Queue exclusivity is enforced by partial unique indexes
    (postgresql_where / sqlite_where). MySQL has no partial indexes, so they
    are skipped there and only the conditional claim update protects keys.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, Date, DateTime, Text, Index, JSON, text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


_ACTIVE = text("status IN ('pending', 'processing')")
_PROCESSING = text("status = 'processing'")


def _partial_unique(name: str, *columns: str, where) -> Index:
    index = Index(name, *columns, unique=True, postgresql_where=where, sqlite_where=where)
    return index.ddl_if(dialect=("postgresql", "sqlite"))


# ──────────────────────────────────────────────────────────────
#  Pipeline stages & opportunities
# ──────────────────────────────────────────────────────────────

class PipelineStageRow(Base):
    __tablename__ = "pipeline_stages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_closed_won: Mapped[bool] = mapped_column(Boolean, default=False)
    is_closed_lost: Mapped[bool] = mapped_column(Boolean, default=False)


class OpportunityRow(Base):
    __tablename__ = "opportunities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    prospect_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    stage_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_ids: Mapped[Any] = mapped_column(JSON, default=list)
    contact_count: Mapped[int] = mapped_column(Integer, default=0)
    processing_status: Mapped[str] = mapped_column(String(16), default="pending")
    last_intelligence_update: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_opportunities_stage_update", "stage_id", "last_intelligence_update"),
        Index("ix_opportunities_prospect", "prospect_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Proposed actions
# ──────────────────────────────────────────────────────────────

class ProposedActionRow(Base):
    __tablename__ = "proposed_actions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    opportunity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PROPOSED")
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    details: Mapped[Any] = mapped_column(JSON, default=dict)
    reasoning: Mapped[str] = mapped_column(Text, default="")
    source_activities: Mapped[Any] = mapped_column(JSON, default=list)
    resulting_activities: Mapped[Any] = mapped_column(JSON, default=list)
    sub_actions: Mapped[Any] = mapped_column(JSON, default=list)

    created_by: Mapped[Any] = mapped_column(JSON, default=dict)
    last_edited_by: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # next_review_date / due_date copied out of details for the daily review scan
    review_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_actions_opportunity_status", "opportunity_id", "status"),
        Index("ix_actions_status_type", "status", "type"),
        Index("ix_actions_review_date", "status", "review_date"),
    )


# ──────────────────────────────────────────────────────────────
#  Queue items
# ──────────────────────────────────────────────────────────────

class QueueItemRow(Base):
    __tablename__ = "queue_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    queue_item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    opportunity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    prospect_id: Mapped[str] = mapped_column(String(64), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    activity_ref: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    processing_node: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_queue_claim", "status", "priority", "created_at"),
        _partial_unique("uq_queue_active_opportunity", "opportunity_id", "queue_item_type", where=_ACTIVE),
        _partial_unique("uq_queue_active_prospect", "prospect_id", "queue_item_type", where=_ACTIVE),
        _partial_unique("uq_queue_processing_opportunity", "opportunity_id", where=_PROCESSING),
        _partial_unique("uq_queue_processing_prospect", "prospect_id", where=_PROCESSING),
    )


# ──────────────────────────────────────────────────────────────
#  Scheduled messages (pending side effects)
# ──────────────────────────────────────────────────────────────

class ScheduledMessageRow(Base):
    __tablename__ = "scheduled_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    action_id: Mapped[str] = mapped_column(String(64), nullable=False)
    opportunity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    activity_model: Mapped[str] = mapped_column(String(32), default="EmailActivity")
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_scheduled_due", "status", "scheduled_for"),
        Index("ix_scheduled_action", "action_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Leases
# ──────────────────────────────────────────────────────────────

class LeaseRow(Base):
    __tablename__ = "leases"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    holder: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
