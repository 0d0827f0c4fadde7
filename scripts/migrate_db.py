#!/usr/bin/env python3
"""
Database Migration — Create/update tables from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Create tables and publish a flow document as the active flow:
    python scripts/migrate_db.py --flow flows/support.json
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _existing_tables(sync_conn) -> list[str]:
    from sqlalchemy import inspect
    return inspect(sync_conn).get_table_names()


async def run_migration(check_only: bool = False, flow_path: str = ""):
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, get_engine, init_db

    engine = get_engine()
    url = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1] if '@' in url else url}")

    defined = set(Base.metadata.tables.keys())
    async with engine.connect() as conn:
        existing = await conn.run_sync(_existing_tables)
    print(f"Tables defined: {', '.join(sorted(defined))}")
    print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

    if check_only:
        missing = defined - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    await init_db(engine)

    if flow_path:
        from core.flow import parse_flow
        from database.store import SqlStore

        with open(flow_path) as f:
            data = json.load(f)
        parse_flow(data)
        flow_id = await SqlStore().save_flow(data, active=True)
        print(f"Flow published: {flow_id}")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--flow", default="", help="Flow JSON file to publish as the active flow")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, flow_path=args.flow))


if __name__ == "__main__":
    main()
