"""Migrate legacy projects: composition stack ids, phase history backfill, approval gates.

Requires the schema to be current (``alembic upgrade head``).

Usage:
    python scripts/migrate_legacy_projects.py [--dry-run] [--project-id ID ...]
"""

import argparse
import asyncio
import sys

import structlog

from phasegate.core.config import get_settings
from phasegate.core.logging import configure_structlog
from phasegate.core.metrics import LoggingMetrics
from phasegate.db.base import close_db, init_db
from phasegate.db.sql_store import SqlAlchemyProjectStore
from phasegate.services.orchestrator import build_orchestrator

logger = structlog.get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing them")
    parser.add_argument(
        "--project-id",
        action="append",
        dest="project_ids",
        metavar="ID",
        help="Only migrate this project (repeatable)",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_structlog(settings.log_level, settings.json_logs)

    session_factory = await init_db()
    try:
        store = SqlAlchemyProjectStore(session_factory)
        orchestrator = build_orchestrator(store, settings=settings, metrics=LoggingMetrics())
        result = await orchestrator.migration.run(dry_run=args.dry_run, project_ids=args.project_ids)
    finally:
        await close_db()

    label = "DRY RUN" if args.dry_run else "Migration"
    print(f"\n{label} complete")
    print(f"  Projects processed:  {result.projects_processed}")
    print(f"  Projects migrated:   {result.projects_migrated}")
    print(f"  Projects skipped:    {result.projects_skipped}")
    print(f"  Stacks converted:    {result.stacks_converted}")
    print(f"  History backfilled:  {result.history_backfilled}")
    print(f"  Gates initialized:   {result.gates_initialized}")
    print(f"  Gates approved:      {result.gates_approved}")
    if result.errors:
        print(f"  Errors: {len(result.errors)}")
        for error in result.errors:
            print(f"    - {error}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
