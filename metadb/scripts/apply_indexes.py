#!/usr/bin/env python3
"""
Apply Database Indexes

Creates every index declared in metadb/db/indexes.py that does not exist yet.
Safe to run multiple times (idempotent). Conflicting indexes are reported,
never dropped.

Usage:
    python -m metadb.scripts.apply_indexes [MONGO_URI] [--dry-run] [--list] [--include-future]

Environment:
    MONGO_URI / DATABASE_NAME in .env or environment variables
"""

import argparse
import logging
import sys
import traceback
from typing import Dict, List, Optional

from metadb import config
from metadb.db.indexes import get_catalog
from metadb.db.mongo import get_database, ping
from metadb.db.reconciler import ReconcileReport, reconcile_all
from metadb.db.store import DocumentStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create missing indexes from the index catalog")
    parser.add_argument("uri", nargs="?", default=None, help="MongoDB connection string (default: MONGO_URI)")
    parser.add_argument("--database", default=None, help="Database name (default: from URI or DATABASE_NAME)")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be created without creating")
    parser.add_argument("--list", action="store_true", help="List existing indexes and exit")
    parser.add_argument(
        "--include-future",
        action="store_true",
        help="Also apply indexes for collections that are not live yet (users, saved_decklists)",
    )
    return parser


def print_listing(store: DocumentStore, collections: List[str]) -> None:
    print("=" * 80)
    print("CURRENT DATABASE INDEXES")
    print("=" * 80)
    for collection in collections:
        print(f"\n📦 Collection: {collection}")
        indexes = store.list_indexes(collection)
        if not indexes:
            print("  (no indexes / collection missing)")
        for index in indexes.values():
            flags = [flag for flag, on in (("UNIQUE", index.unique), ("SPARSE", index.sparse)) if on]
            suffix = f"  ({', '.join(flags)})" if flags else ""
            print(f"  - {index.name}: {dict(index.keys)}{suffix}")


def print_reports(reports: Dict[str, ReconcileReport], dry_run: bool) -> bool:
    print()
    print("RESULTS:")
    print("-" * 80)
    ok = True
    for collection, report in reports.items():
        icon = "✅" if report.ok else "❌"
        action = f"{len(report.planned)} to create" if dry_run else f"{len(report.created)} created"
        print(f"{icon} {collection:25} {action:15} {len(report.present):3} present   {len(report.conflicts)} conflicts")
        if report.collection_missing:
            print("   ⚠️  collection does not exist yet; nothing to do")
        for alias, live_name in report.aliases.items():
            print(f"   ⚠️  {alias} covered by existing index '{live_name}'")
        for conflict in report.conflicts:
            print(f"   ❌ {conflict}")
        for name, message in report.failed.items():
            print(f"   ❌ {name}: {message}")
        ok = ok and report.ok
    return ok


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    db = get_database(args.uri, args.database)
    ping(db)
    store = DocumentStore(db)
    catalog = get_catalog(include_optional=args.include_future)

    if args.list:
        print_listing(store, list(catalog.keys()))
        return config.EXIT_OK

    print("=" * 80)
    print(f"INDEX RECONCILIATION: {store.name}{' (DRY RUN)' if args.dry_run else ''}")
    print("=" * 80)

    reports = reconcile_all(store, catalog, dry_run=args.dry_run)
    ok = print_reports(reports, args.dry_run)

    total_created = sum(len(r.created) for r in reports.values())
    total_declared = sum(len(specs) for specs in catalog.values())
    print()
    print("=" * 80)
    print(f"SUMMARY: {total_declared} indexes declared, {total_created} created")
    if ok:
        print("✅ All declared indexes are in place" if not args.dry_run else "✅ Dry run complete")
    else:
        print("❌ Some indexes conflict or failed; resolve them explicitly (nothing was dropped)")
    print("=" * 80)

    return config.EXIT_OK if ok else config.EXIT_FAILURE


def run() -> None:
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ ERROR: {e}")
        traceback.print_exc()
        sys.exit(config.EXIT_FAILURE)


if __name__ == "__main__":
    run()
