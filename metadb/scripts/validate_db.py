#!/usr/bin/env python3
"""
Database Validation Report

Validates collections, indexes and referential integrity of the meta
database, and reports storage and index-usage warnings. Read-only.

Usage:
    python -m metadb.scripts.validate_db [MONGO_URI] [--json]

Exit codes:
    0  no failed tests (warnings allowed)
    1  at least one failed test
"""

import argparse
import logging
import sys
import traceback
from typing import List, Optional

from metadb import config
from metadb.db.mongo import get_database, ping
from metadb.db.store import DocumentStore
from metadb.db.validator import IntegrityValidator, ValidatorSettings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate schema, indexes and data integrity")
    parser.add_argument("uri", nargs="?", default=None, help="MongoDB connection string (default: MONGO_URI)")
    parser.add_argument("--database", default=None, help="Database name (default: from URI or DATABASE_NAME)")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON instead of text")
    parser.add_argument(
        "--large-doc-kb",
        type=float,
        default=None,
        help=(
            "Average document size warning threshold in KB of 1024 bytes "
            f"(default: {config.LARGE_DOCUMENT_WARN_BYTES / config.BYTES_PER_KB:.2f})"
        ),
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING if args.json else config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db = get_database(args.uri, args.database)
    ping(db)
    store = DocumentStore(db)

    settings = ValidatorSettings.from_config()
    if args.large_doc_kb is not None:
        settings.large_document_warn_bytes = int(args.large_doc_kb * config.BYTES_PER_KB)

    if not args.json:
        print("\n" + "=" * 80)
        print(f"Database Validation Report: {store.name}")
        print("=" * 80)

    report = IntegrityValidator(store, settings=settings).validate()

    if args.json:
        print(report.to_json())
    else:
        report.print_summary()
    return report.exit_code


def run() -> None:
    try:
        sys.exit(main())
    except Exception as e:
        print(f"\n❌ ERROR: {e}")
        traceback.print_exc()
        sys.exit(config.EXIT_FAILURE)


if __name__ == "__main__":
    run()
