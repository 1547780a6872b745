"""
Migration: Add format field to standings
Date: 2024-02-15

Denormalizes ``events.format`` onto ``standings`` so standings can be
filtered by format without joining events, and indexes the new field.

Completion predicate: ``format: {$exists: false}``. The backfill runs once;
standings whose event later changes format are not revisited.

Usage:
    python -m metadb.scripts.run_migration add-format-to-standings [--dry-run]
"""

import logging
from typing import Dict, List

from pymongo import ASCENDING

from metadb.db.indexes import IndexSpec
from metadb.db.models import EventFormat
from metadb.migrations.base import Migration, MigrationContext, TransformStats, ValidationStats
from metadb.utils.batching import chunked

logger = logging.getLogger(__name__)

MISSING_FORMAT = {"format": {"$exists": False}}


class AddFormatToStandings(Migration):
    name = "add-format-to-standings"
    version = "1.0.0"
    description = "Add format field to standings collection for denormalized queries"
    reversible = True
    estimated_duration = "< 5 minutes for 100k documents"
    required_collections = ("standings", "events")
    target_collection = "standings"
    indexes = (
        IndexSpec(collection="standings", keys=(("format", ASCENDING),)),
        IndexSpec(collection="standings", keys=(("championSlug", ASCENDING), ("format", ASCENDING))),
    )

    def _event_formats(self, context: MigrationContext, event_ids: List[str]) -> Dict[str, str]:
        events = context.store.find_models(
            "events",
            EventFormat,
            {"eventId": {"$in": event_ids}},
            {"_id": 0, "eventId": 1, "format": 1},
        )
        return {event.eventId: event.format for event in events if event.format}

    def transform(self, context: MigrationContext) -> TransformStats:
        # Drive by distinct event ids so each batch only holds a small eventId -> format map
        event_ids = sorted(context.store.distinct("standings", "eventId", MISSING_FORMAT), key=str)
        stats = TransformStats(total=len(event_ids))
        logger.info(f"Found {len(event_ids)} unique events with standings missing format")

        batches = list(chunked(event_ids, context.batch_size))
        for batch_no, batch in enumerate(batches, 1):
            formats = self._event_formats(context, batch)

            # One update per format value in this batch
            by_format: Dict[str, List[str]] = {}
            for event_id in batch:
                if event_id in formats:
                    by_format.setdefault(formats[event_id], []).append(event_id)

            for event_format, ids in by_format.items():
                stats.updated += context.update_many(
                    "standings",
                    {"eventId": {"$in": ids}, **MISSING_FORMAT},
                    {"$set": {"format": event_format}},
                )

            stats.processed += len(batch)
            context.report_batch(stats, batch_no, len(batches), "events", "standings")

        return stats

    def validate(self, context: MigrationContext) -> ValidationStats:
        with_format = context.store.count("standings", {"format": {"$exists": True}})
        without_format = context.store.count("standings", MISSING_FORMAT)
        total = context.store.count("standings")

        logger.info(f"Documents with format: {with_format}")
        logger.info(f"Documents without format: {without_format}")
        logger.info(f"Total documents: {total}")

        warnings = []
        if without_format > 0:
            warnings.append(
                f"{without_format} standings still missing format field "
                "(orphaned standings with no matching event)"
            )

        return ValidationStats(
            satisfied=with_format,
            unsatisfied=without_format,
            total=total,
            statistics={
                "totalStandings": total,
                "standingsUpdated": with_format,
                "standingsSkipped": without_format,
            },
            warnings=warnings,
        )

    def rollback_steps(self) -> List[str]:
        return ["db.standings.updateMany({}, { $unset: { format: '' } })"]


MIGRATION = AddFormatToStandings()
