#!/usr/bin/env python3
"""
Run Database Migrations

Applies one named migration, or every pending migration in version order.
Each migration is recorded in the migrations collection exactly once; a
recorded migration is never re-run.

Usage:
    python -m metadb.scripts.run_migration [MONGO_URI] add-format-to-standings [--dry-run]
    python -m metadb.scripts.run_migration [MONGO_URI] --all
    python -m metadb.scripts.run_migration [MONGO_URI] --status

Exit codes:
    0  applied (or dry run / nothing pending)
    1  failed - prerequisites missing or transformation error
    3  already applied - nothing done
"""

import argparse
import logging
import sys
import traceback
from typing import List, Optional, Tuple

from metadb import config
from metadb.db.migration_history import MigrationHistoryStore
from metadb.db.mongo import get_database, ping
from metadb.db.store import DocumentStore
from metadb.migrations.base import MigrationOutcome, MigrationResult, MigrationRunner
from metadb.migrations.registry import get_migration, migration_status, pending_migrations


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Apply versioned data migrations")
    parser.add_argument(
        "targets",
        nargs="*",
        metavar="[URI] [NAME]",
        help="MongoDB connection string (default: MONGO_URI) and/or migration name",
    )
    parser.add_argument("--database", default=None, help="Database name (default: from URI or DATABASE_NAME)")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--all", action="store_true", help="Apply every pending migration in version order")
    group.add_argument("--status", action="store_true", help="List applied and pending migrations")
    parser.add_argument("--dry-run", action="store_true", help="Count what would change without writing")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=config.MIGRATION_BATCH_SIZE,
        help=f"Driving keys per batch (default: {config.MIGRATION_BATCH_SIZE})",
    )
    return parser


def print_result(result: MigrationResult) -> None:
    print()
    print("=" * 80)
    if result.outcome is MigrationOutcome.APPLIED:
        print("Migration Complete!")
    elif result.outcome is MigrationOutcome.DRY_RUN:
        print("Dry Run Complete")
    elif result.outcome is MigrationOutcome.ALREADY_APPLIED:
        print(f"⚠️  Migration '{result.name}' has already been applied. Exiting...")
    else:
        print("❌ Migration Failed")
    print("=" * 80)
    print(f"Name: {result.name}")
    print(f"Version: {result.version}")
    print(f"State: {' → '.join(state.value for state, _ in result.transitions)}")
    if result.backup_command:
        print(f"Recommended backup: {result.backup_command}")

    if result.statistics:
        print("\nStatistics:")
        for key, value in result.statistics.items():
            print(f"  {key}: {value}")

    for warning in result.warnings:
        print(f"\n⚠️  Warning: {warning}")

    if result.error:
        print(f"\n✗ {result.error_kind}: {result.error}")
        print("No history record was written. Review the error and fix before retrying.")

    if result.record is not None:
        print(f"\nApplied at: {result.record.appliedAt.isoformat()}")

    if result.rollback_instructions and result.outcome in (MigrationOutcome.APPLIED, MigrationOutcome.FAILED):
        print("\nRollback Instructions:")
        print("To rollback this migration, run (mongosh):\n")
        for step in result.rollback_instructions:
            print(f"  {step}")
    print("=" * 80)


def print_status(history: MigrationHistoryStore) -> None:
    print("=" * 80)
    print("MIGRATION STATUS")
    print("=" * 80)
    for migration, record in migration_status(history):
        if record is None:
            print(f"⏳ {migration.name:40} v{migration.version:8} pending")
        else:
            print(f"✅ {migration.name:40} v{migration.version:8} applied {record.appliedAt.isoformat()}")
    print("=" * 80)


def split_targets(targets: List[str]) -> Tuple[Optional[str], Optional[str]]:
    """Separate the connection string from the migration name (either may be omitted)."""
    uri = next((t for t in targets if "://" in t), None)
    names = [t for t in targets if t != uri]
    if len(names) > 1:
        raise ValueError(f"expected at most one migration name, got: {' '.join(names)}")
    return uri, (names[0] if names else None)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        uri, name = split_targets(args.targets)
    except ValueError as e:
        parser.error(str(e))
    if not (name or args.all or args.status):
        parser.error("give a migration name, --all or --status")
    if name and (args.all or args.status):
        parser.error("a migration name cannot be combined with --all or --status")

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    db = get_database(uri, args.database)
    ping(db)
    store = DocumentStore(db)
    history = MigrationHistoryStore(store)

    if args.status:
        print_status(history)
        return config.EXIT_OK

    runner = MigrationRunner(store, history, batch_size=args.batch_size)

    if name:
        result = runner.run(get_migration(name), dry_run=args.dry_run)
        print_result(result)
        return result.exit_code

    pending = pending_migrations(history)
    if not pending:
        print("✅ No pending migrations")
        return config.EXIT_OK

    print(f"📋 {len(pending)} pending migration(s): {', '.join(m.name for m in pending)}")
    for migration in pending:
        result = runner.run(migration, dry_run=args.dry_run)
        print_result(result)
        if result.outcome is MigrationOutcome.FAILED:
            print("⛔ Stopping: later migrations may depend on this one")
            return result.exit_code
    return config.EXIT_OK


def run() -> None:
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ ERROR: {e}")
        traceback.print_exc()
        sys.exit(config.EXIT_FAILURE)


if __name__ == "__main__":
    run()
