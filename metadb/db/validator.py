"""
Database Integrity Validator
============================

Read-only audit of the meta database. Three independent check families:

- Structural:   required collections exist, catalog indexes exist by name,
                documents carry the fields their model requires
- Referential:  no orphaned foreign keys (standings/decklists -> events,
                standings/decklists -> champions), backfilled standing format
                agrees with its event
- Operational:  document counts, average document size, index usage,
                stale card stats and crawlers

Failed structural/referential tests fail the run. Operational findings are
warnings and never affect the exit status. Every check runs even when an
earlier one failed; the report is built fresh on each validate() call.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from pydantic import ValidationError as DocumentShapeError
from pymongo.errors import PyMongoError

from metadb import config
from metadb.db.indexes import INDEX_CATALOG, IndexSpec
from metadb.db.models import (
    COLLECTION_MODELS,
    CardStatsFreshness,
    CrawlerSchedule,
    EventFormat,
    required_field_paths,
)
from metadb.db.store import DocumentStore
from metadb.utils.batching import chunked
from metadb.utils.timezone import hours_since, now_utc

logger = logging.getLogger(__name__)


class CheckFamily(str, Enum):
    STRUCTURAL = "structural"
    REFERENTIAL = "referential"
    OPERATIONAL = "operational"


class CheckSeverity(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"
    SKIPPED = "skipped"


@dataclass
class CheckResult:
    name: str
    family: CheckFamily
    severity: CheckSeverity
    message: str = ""


@dataclass
class ValidationError:
    test: str
    message: str


@dataclass
class ValidationReport:
    """Accumulates check results for one validate() run."""
    passed: int = 0
    failed: int = 0
    warnings: int = 0
    errors: List[ValidationError] = field(default_factory=list)
    warning_messages: List[str] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)
    collection_counts: Dict[str, int] = field(default_factory=dict)
    average_sizes: Dict[str, float] = field(default_factory=dict)
    index_usage: Dict[str, Dict[str, int]] = field(default_factory=dict)
    database_stats: Dict[str, Any] = field(default_factory=dict)

    def add_test(self, name: str, family: CheckFamily, passed: bool, message: str = "") -> None:
        if passed:
            logger.info(f"✓ {name}")
            self.passed += 1
            self.checks.append(CheckResult(name, family, CheckSeverity.PASSED))
        else:
            logger.error(f"✗ {name}: {message}")
            self.failed += 1
            self.errors.append(ValidationError(test=name, message=message))
            self.checks.append(CheckResult(name, family, CheckSeverity.FAILED, message))

    def add_warning(self, family: CheckFamily, message: str) -> None:
        logger.warning(f"⚠ Warning: {message}")
        self.warnings += 1
        self.warning_messages.append(message)
        self.checks.append(CheckResult(message, family, CheckSeverity.WARNING, message))

    def add_skipped(self, name: str, family: CheckFamily, reason: str) -> None:
        logger.info(f"- {name} skipped: {reason}")
        self.checks.append(CheckResult(name, family, CheckSeverity.SKIPPED, reason))

    def result_for(self, name: str) -> Optional[CheckResult]:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def exit_code(self) -> int:
        return config.EXIT_OK if self.ok else config.EXIT_FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "failed": self.failed,
            "warnings": self.warnings,
            "errors": [{"test": e.test, "message": e.message} for e in self.errors],
            "warning_messages": list(self.warning_messages),
            "collection_counts": dict(self.collection_counts),
            "average_sizes": dict(self.average_sizes),
            "index_usage": {c: dict(u) for c, u in self.index_usage.items()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def print_summary(self) -> bool:
        """Print the human-readable summary; returns True when no test failed."""
        print("\n" + "=" * 80)
        print("Validation Summary")
        print("=" * 80)
        print(f"Tests Passed: {self.passed}")
        print(f"Tests Failed: {self.failed}")
        print(f"Warnings: {self.warnings}")

        if self.failed > 0:
            print("\nFailed Tests:")
            for idx, error in enumerate(self.errors, 1):
                print(f"{idx}. {error.test}")
                if error.message:
                    print(f"   {error.message}")

        if self.warning_messages:
            print("\nWarnings:")
            for message in self.warning_messages:
                print(f"  ⚠️  {message}")

        if self.collection_counts:
            print("\nDocument counts:")
            for name, count in self.collection_counts.items():
                print(f"  {name}: {count} documents")

        print("\n" + "=" * 80)
        if self.ok:
            print("✅ All validation tests passed!")
        else:
            print("❌ Some validation tests failed. Please review errors above.")
        print("=" * 80)
        return self.ok


@dataclass(frozen=True)
class Reference:
    """A foreign key from ``source.source_field`` to ``target.target_field``."""
    source: str
    source_field: str
    target: str
    target_field: str
    test_name: str
    noun: str


REFERENCES: List[Reference] = [
    Reference("standings", "eventId", "events", "eventId",
              "No orphaned standings (standings without matching events)",
              "orphaned standings"),
    Reference("decklists", "eventId", "events", "eventId",
              "No orphaned decklists (decklists without matching events)",
              "orphaned decklists"),
    Reference("standings", "championSlug", "champions", "slug",
              "No invalid champion references in standings",
              "standings with invalid champion references"),
    Reference("decklists", "championSlug", "champions", "slug",
              "No invalid champion references in decklists",
              "decklists with invalid champion references"),
]

FORMAT_CONSISTENCY_TEST = "Standings format matches event format"


@dataclass
class ValidatorSettings:
    large_document_warn_bytes: int = 100000
    card_stats_stale_hours: float = 168.0
    crawler_stale_hours: float = 48.0
    batch_size: int = 100

    @classmethod
    def from_config(cls) -> "ValidatorSettings":
        return cls(
            large_document_warn_bytes=config.LARGE_DOCUMENT_WARN_BYTES,
            card_stats_stale_hours=config.CARD_STATS_STALE_HOURS,
            crawler_stale_hours=config.CRAWLER_STALE_HOURS,
            batch_size=config.MIGRATION_BATCH_SIZE,
        )


class IntegrityValidator:
    """Runs every check family against one store and returns a ValidationReport."""

    def __init__(
        self,
        store: DocumentStore,
        catalog: Optional[Mapping[str, Sequence[IndexSpec]]] = None,
        settings: Optional[ValidatorSettings] = None,
        references: Optional[Sequence[Reference]] = None,
        index_listings: Optional[Mapping[str, Sequence[str]]] = None,
        now: Optional[datetime] = None,
    ):
        self.store = store
        self.catalog = dict(catalog if catalog is not None else INDEX_CATALOG)
        self.settings = settings or ValidatorSettings.from_config()
        self.references = list(references if references is not None else REFERENCES)
        self.index_listings = {c: set(names) for c, names in (index_listings or {}).items()}
        self.now = now

    @property
    def required_collections(self) -> List[str]:
        return list(self.catalog.keys())

    def validate(self) -> ValidationReport:
        report = ValidationReport()
        existing = set(self.store.collection_names())
        logger.info(f"Validating database '{self.store.name}'")

        logger.info("=== COLLECTION VALIDATION ===")
        report = self.check_collections(report, existing)
        logger.info("=== INDEX VALIDATION ===")
        report = self.check_indexes(report, existing)
        report = self.check_required_fields(report, existing)
        logger.info("=== DATA INTEGRITY VALIDATION ===")
        report = self.check_references(report, existing)
        report = self.check_format_consistency(report, existing)
        logger.info("=== DATABASE STATISTICS ===")
        report = self.check_document_counts(report, existing)
        report = self.check_storage(report, existing)
        logger.info("=== INDEX USAGE STATISTICS ===")
        report = self.check_index_usage(report, existing)
        report = self.check_staleness(report, existing)
        return report

    def _isolated(
        self,
        report: ValidationReport,
        name: str,
        family: CheckFamily,
        check: Callable[[], None],
    ) -> None:
        """Run one check; a store error or malformed document becomes a failed test (or a warning for operational checks)."""
        try:
            check()
        except (PyMongoError, DocumentShapeError) as e:
            logger.error(f"Check '{name}' could not run: {e}")
            if family is CheckFamily.OPERATIONAL:
                report.add_warning(family, f"{name} could not run: {e}")
            else:
                report.add_test(name, family, False, f"Check could not run: {e}")

    # ------------------------------------------------------------------
    # Structural
    # ------------------------------------------------------------------

    def check_collections(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        for name in self.required_collections:
            report.add_test(
                f"Collection '{name}' exists",
                CheckFamily.STRUCTURAL,
                name in existing,
                f"Collection '{name}' not found",
            )
        return report

    def _live_index_names(self, collection: str) -> Set[str]:
        if collection in self.index_listings:
            return self.index_listings[collection]
        return set(self.store.list_indexes(collection).keys())

    def check_indexes(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        for collection, specs in self.catalog.items():
            def check(collection=collection, specs=specs):
                live = self._live_index_names(collection) if collection in existing else set()
                for index in specs:
                    report.add_test(
                        f"{collection}.{index.name}",
                        CheckFamily.STRUCTURAL,
                        index.name in live,
                        f"Index '{index.name}' not found on {collection} collection",
                    )
            self._isolated(report, f"{collection} indexes", CheckFamily.STRUCTURAL, check)
        return report

    def check_required_fields(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        for collection in self.required_collections:
            model = COLLECTION_MODELS.get(collection)
            test_name = f"All {collection} documents have required fields"
            if model is None:
                continue
            if collection not in existing:
                report.add_skipped(test_name, CheckFamily.STRUCTURAL, f"collection '{collection}' missing")
                continue
            paths = required_field_paths(model)

            def check(collection=collection, paths=paths, test_name=test_name):
                missing = self.store.count(collection, {"$or": [{path: {"$exists": False}} for path in paths]})
                report.add_test(
                    test_name,
                    CheckFamily.STRUCTURAL,
                    missing == 0,
                    f"Found {missing} {collection} documents missing one of: {', '.join(paths)}",
                )
            self._isolated(report, test_name, CheckFamily.STRUCTURAL, check)
        return report

    # ------------------------------------------------------------------
    # Referential
    # ------------------------------------------------------------------

    def check_references(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        for ref in self.references:
            absent = [c for c in (ref.source, ref.target) if c not in existing]
            if absent:
                report.add_skipped(ref.test_name, CheckFamily.REFERENTIAL, f"missing collection(s): {', '.join(absent)}")
                continue

            def check(ref=ref):
                orphaned = self.store.orphan_count(ref.source, ref.source_field, ref.target, ref.target_field)
                report.add_test(
                    ref.test_name,
                    CheckFamily.REFERENTIAL,
                    orphaned == 0,
                    f"Found {orphaned} {ref.noun}",
                )
            self._isolated(report, ref.test_name, CheckFamily.REFERENTIAL, check)
        return report

    def check_format_consistency(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        """Backfilled standings must carry the same format as their event."""
        absent = [c for c in ("standings", "events") if c not in existing]
        if absent:
            report.add_skipped(FORMAT_CONSISTENCY_TEST, CheckFamily.REFERENTIAL, f"missing collection(s): {', '.join(absent)}")
            return report

        def check():
            event_ids = sorted(self.store.distinct("standings", "eventId", {"format": {"$exists": True}}), key=str)
            mismatched = 0
            for batch in chunked(event_ids, self.settings.batch_size):
                events = self.store.find_models(
                    "events", EventFormat, {"eventId": {"$in": batch}}, {"_id": 0, "eventId": 1, "format": 1},
                )
                by_format: Dict[Optional[str], List[str]] = {}
                for event in events:
                    by_format.setdefault(event.format, []).append(event.eventId)
                for event_format, ids in by_format.items():
                    mismatched += self.store.count(
                        "standings",
                        {"eventId": {"$in": ids}, "format": {"$exists": True, "$ne": event_format}},
                    )
            report.add_test(
                FORMAT_CONSISTENCY_TEST,
                CheckFamily.REFERENTIAL,
                mismatched == 0,
                f"Found {mismatched} standings whose format differs from their event",
            )
        self._isolated(report, FORMAT_CONSISTENCY_TEST, CheckFamily.REFERENTIAL, check)
        return report

    # ------------------------------------------------------------------
    # Operational
    # ------------------------------------------------------------------

    def check_document_counts(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        for collection in self.required_collections:
            if collection not in existing:
                continue

            def check(collection=collection):
                report.collection_counts[collection] = self.store.count(collection)
                logger.info(f"{collection}: {report.collection_counts[collection]} documents")
            self._isolated(report, f"{collection} document count", CheckFamily.OPERATIONAL, check)
        return report

    def check_storage(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        def database_check():
            report.database_stats = dict(self.store.database_stats())
            data_mb = report.database_stats.get("dataSize", 0) / config.BYTES_PER_KB ** 2
            index_mb = report.database_stats.get("indexSize", 0) / config.BYTES_PER_KB ** 2
            logger.info(f"Data Size: {data_mb:.2f} MB, Index Size: {index_mb:.2f} MB")
        self._isolated(report, "Database statistics", CheckFamily.OPERATIONAL, database_check)

        threshold = self.settings.large_document_warn_bytes
        for collection in self.required_collections:
            if collection not in existing:
                continue

            def check(collection=collection):
                stats = self.store.collection_stats(collection)
                report.average_sizes[collection] = stats.avg_obj_size
                if stats.avg_obj_size > threshold:
                    report.add_warning(
                        CheckFamily.OPERATIONAL,
                        f"{collection} has large average document size: {stats.avg_obj_size / config.BYTES_PER_KB:.2f} KB",
                    )
            self._isolated(report, f"{collection} storage statistics", CheckFamily.OPERATIONAL, check)
        return report

    def check_index_usage(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        for collection in self.required_collections:
            if collection not in existing:
                continue

            def check(collection=collection):
                usage = self.store.index_usage(collection)
                report.index_usage[collection] = usage
                for name, ops in sorted(usage.items()):
                    logger.info(f"  {collection}.{name}: {ops} operations")
                    if ops == 0 and name != "_id_":
                        report.add_warning(
                            CheckFamily.OPERATIONAL,
                            f"Index '{name}' on {collection} has never been used",
                        )
            self._isolated(report, f"{collection} index usage", CheckFamily.OPERATIONAL, check)
        return report

    def check_staleness(self, report: ValidationReport, existing: Set[str]) -> ValidationReport:
        now = self.now or now_utc()

        if "card_performance_stats" in existing:
            def card_check():
                limit = self.settings.card_stats_stale_hours
                cards = self.store.find_models(
                    "card_performance_stats", CardStatsFreshness, {}, {"_id": 0, "cardId": 1, "lastCalculated": 1},
                )
                stale = 0
                for card in cards:
                    age = hours_since(card.lastCalculated, now)
                    if age is None or age > limit:
                        stale += 1
                if stale:
                    report.add_warning(
                        CheckFamily.OPERATIONAL,
                        f"{stale} card stats not recalculated in the last {limit:g} hours",
                    )
            self._isolated(report, "Card stats staleness", CheckFamily.OPERATIONAL, card_check)

        if "crawler_state" in existing:
            def crawler_check():
                limit = self.settings.crawler_stale_hours
                crawlers = self.store.find_models(
                    "crawler_state",
                    CrawlerSchedule,
                    {"config.enabled": True},
                    {"_id": 0, "crawlerName": 1, "lastRunAt": 1},
                )
                for crawler in crawlers:
                    age = hours_since(crawler.lastRunAt, now)
                    name = crawler.crawlerName
                    if age is None:
                        report.add_warning(CheckFamily.OPERATIONAL, f"Crawler '{name}' is enabled but has never run")
                    elif age > limit:
                        report.add_warning(
                            CheckFamily.OPERATIONAL,
                            f"Crawler '{name}' has not run in {age:.1f} hours",
                        )
            self._isolated(report, "Crawler staleness", CheckFamily.OPERATIONAL, crawler_check)

        return report
