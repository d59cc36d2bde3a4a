#!/usr/bin/env python3
"""
Database Migration — create the action store tables and indexes.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only, no changes

Partial unique indexes on queue_items are created on PostgreSQL and
SQLite only. On MySQL duplicate active items are prevented only by the
lookup the store performs before inserting.
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text

_TABLE_QUERIES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def _existing_tables(engine) -> list[str]:
    query = _TABLE_QUERIES.get(engine.dialect.name, _TABLE_QUERIES["sqlite"])
    async with engine.connect() as conn:
        result = await conn.execute(text(query))
        return [row[0] for row in result.fetchall()]


async def _add_review_date_column(engine) -> bool:
    """Add proposed_actions.review_date to a table created before the column existed."""
    from sqlalchemy import inspect

    def _missing(sync_conn) -> bool:
        inspector = inspect(sync_conn)
        if not inspector.has_table("proposed_actions"):
            return False
        return "review_date" not in {c["name"] for c in inspector.get_columns("proposed_actions")}

    async with engine.begin() as conn:
        if not await conn.run_sync(_missing):
            return False
        await conn.execute(text("ALTER TABLE proposed_actions ADD COLUMN review_date DATE"))
    return True


async def _backfill_review_dates() -> int:
    from sqlalchemy import and_, select, update
    from database.models import ProposedActionRow
    from database.session import get_session
    from database.store import SqlActionStore
    from database.store_base import action_review_date

    count = 0
    async with get_session() as db:
        result = await db.execute(select(ProposedActionRow).where(and_(
            ProposedActionRow.type.in_(["NO_ACTION", "TASK"]),
            ProposedActionRow.review_date.is_(None),
        )))
        for row in result.scalars().all():
            await db.execute(
                update(ProposedActionRow)
                .where(ProposedActionRow.id == row.id)
                .values(review_date=action_review_date(SqlActionStore._row_to_action(row)),
                        updated_at=row.updated_at)
            )
            count += 1
    return count


async def run_migration(check_only: bool = False):
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import PARTIAL_INDEX_DIALECTS, _safe_url, close_db, get_engine

    engine = get_engine()
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {_safe_url(engine)}")
    if engine.dialect.name not in PARTIAL_INDEX_DIALECTS:
        print("Note: partial unique indexes are not supported on this dialect; skipped.")

    if check_only:
        existing = await _existing_tables(engine)
        print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")
        print(f"Tables existing: {', '.join(existing) or '(none)'}")
        missing = set(Base.metadata.tables.keys()) - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist.")
        await close_db()
        return

    print("Running database migration...")
    if await _add_review_date_column(engine):
        print("Added column: proposed_actions.review_date")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    backfilled = await _backfill_review_dates()
    if backfilled:
        print(f"Review dates backfilled: {backfilled}")

    tables = await _existing_tables(engine)
    print(f"Tables created/verified: {', '.join(tables)}")
    await close_db()
    print("Migration complete.")


def main():
    parser = argparse.ArgumentParser(description="Action store migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
