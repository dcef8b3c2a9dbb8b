#!/usr/bin/env python3
"""
Schema and housekeeping commands for the PageCast database.

    python scripts/migrate_db.py              # create missing tables
    python scripts/migrate_db.py --check      # report missing tables, exit 1 if any
    python scripts/migrate_db.py --purge 6    # run the retention cleanup now (months)

The target database comes from DATABASE_URL / settings.yaml.
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect

from config.settings import load_settings
from core.scheduler import cleanup_old_data
from database.models import Base
from database.session import _safe_url, close_db, get_engine, init_db


async def table_report() -> tuple[set[str], set[str]]:
    """(tables the models define, tables the database has)."""
    async with get_engine().connect() as conn:
        present = await conn.run_sync(lambda c: inspect(c).get_table_names())
    return set(Base.metadata.tables), set(present)


async def check() -> int:
    engine = get_engine()
    defined, present = await table_report()
    missing = sorted(defined - present)
    print(f"{engine.dialect.name} @ {_safe_url(engine)}")
    print(f"  {len(defined & present)}/{len(defined)} tables present")
    if missing:
        print(f"  missing: {', '.join(missing)}")
        return 1
    return 0


async def create() -> int:
    await init_db()
    defined, present = await table_report()
    print(f"schema ready: {len(defined & present)} tables")
    return 0


async def purge(months: int) -> int:
    await init_db()
    removed = await cleanup_old_data(months=months)
    print(f"removed {removed['broadcasts']} broadcasts and {removed['comments']} comments "
          f"older than {months} months")
    return 0


async def run(args: argparse.Namespace) -> int:
    load_settings()
    try:
        if args.check:
            return await check()
        if args.purge is not None:
            return await purge(args.purge)
        return await create()
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="PageCast database commands")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--check", action="store_true", help="only report missing tables")
    mode.add_argument("--purge", type=int, metavar="MONTHS",
                      help="delete finished broadcasts and comments older than MONTHS")
    sys.exit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()
