"""
Migration Runner
================

A migration is a named, versioned, one-way data change. The runner executes
it in strict phases and writes the history record only when every phase has
succeeded:

    1. Guard            - already recorded? stop, nothing to do
    2. Pre-checks       - required collections exist
    3. Transformation   - batched, predicate-scoped writes, then new indexes
    4. Post-validation  - count documents satisfying / missing the target state
    5. Record           - exactly one MigrationRecord

Failure in phases 2-4 leaves no record (the migration can be re-run) and
returns the rollback steps for that migration. Rollback is never executed
automatically.

Writing a migration:
    - subclass Migration, fill in the class attributes
    - scope every write with a completion predicate (e.g. field $exists: false)
      so a retry after a partial run converges instead of redoing work
    - go through context.update_many() so dry runs count instead of write
    - expose a module-level MIGRATION instance in metadb/migrations/vYYYY_MM_DD_<name>.py
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pymongo.errors import PyMongoError

from metadb import config
from metadb.db.indexes import IndexSpec
from metadb.db.migration_history import MigrationHistoryStore
from metadb.db.models import MigrationRecord
from metadb.db.reconciler import ReconcileReport, reconcile
from metadb.db.store import DocumentStore
from metadb.errors import AlreadyApplied, PrerequisiteMissing, TransformationFailure
from metadb.utils.timezone import now_utc

logger = logging.getLogger(__name__)


class MigrationState(str, Enum):
    NOT_STARTED = "NotStarted"
    GUARD_CHECKED = "GuardChecked"
    PREREQUISITES_VERIFIED = "PrerequisitesVerified"
    TRANSFORMING = "Transforming"
    VALIDATED = "Validated"
    RECORDED = "Recorded"
    ABORTED = "Aborted"


class MigrationOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    DRY_RUN = "dry_run"
    FAILED = "failed"


@dataclass
class BatchProgress:
    batch: int
    batches: int
    processed: int
    total: int
    updated: int


@dataclass
class TransformStats:
    """Progress of the transformation phase, updated after every batch."""
    total: int = 0
    processed: int = 0
    updated: int = 0
    progress: List[BatchProgress] = field(default_factory=list)


@dataclass
class ValidationStats:
    """Post-validation counts. ``unsatisfied`` > 0 is a warning, not a failure."""
    satisfied: int
    unsatisfied: int
    total: int
    statistics: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class MigrationContext:
    """What a migration sees while it runs: the store, batch size and dry-run switch."""

    def __init__(
        self,
        store: DocumentStore,
        batch_size: int,
        dry_run: bool = False,
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
    ):
        self.store = store
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.on_progress = on_progress

    def update_many(self, collection: str, filter: Mapping[str, Any], update: Mapping[str, Any]) -> int:
        """Apply ``update`` to documents matching ``filter``; in a dry run, count them instead."""
        if self.dry_run:
            return self.store.count(collection, filter)
        return self.store.update_many(collection, filter, update)

    def report_batch(self, stats: TransformStats, batch: int, batches: int, key_label: str, target_label: str) -> None:
        progress = BatchProgress(
            batch=batch,
            batches=batches,
            processed=stats.processed,
            total=stats.total,
            updated=stats.updated,
        )
        stats.progress.append(progress)
        verb = "would be updated" if self.dry_run else "updated"
        logger.info(
            f"Progress: {stats.processed}/{stats.total} {key_label} processed, "
            f"{stats.updated} {target_label} {verb}"
        )
        if self.on_progress:
            self.on_progress(progress)


class Migration:
    """Base class for versioned data migrations."""

    name: str = ""
    version: str = "1.0.0"
    description: str = ""
    reversible: bool = True
    estimated_duration: Optional[str] = None
    required_collections: Sequence[str] = ()
    target_collection: str = ""
    indexes: Sequence[IndexSpec] = ()

    def transform(self, context: MigrationContext) -> TransformStats:
        raise NotImplementedError

    def validate(self, context: MigrationContext) -> ValidationStats:
        raise NotImplementedError

    def rollback_steps(self) -> List[str]:
        """Data-level undo steps (mongosh syntax). Index drops are added by the runner."""
        return []

    def rollback_instructions(self, history_collection: str) -> List[str]:
        steps = list(self.rollback_steps())
        for index in self.indexes:
            steps.append(f"db.{index.collection}.dropIndex('{index.name}')")
        steps.append(f"db.{history_collection}.deleteOne({{ name: '{self.name}' }})")
        return steps

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} v{self.version}>"


@dataclass
class MigrationResult:
    name: str
    version: str
    dry_run: bool = False
    outcome: Optional[MigrationOutcome] = None
    state: MigrationState = MigrationState.NOT_STARTED
    transitions: List[Tuple[MigrationState, Optional[str]]] = field(
        default_factory=lambda: [(MigrationState.NOT_STARTED, None)]
    )
    transform: Optional[TransformStats] = None
    validation: Optional[ValidationStats] = None
    index_reports: Dict[str, ReconcileReport] = field(default_factory=dict)
    statistics: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    rollback_instructions: List[str] = field(default_factory=list)
    backup_command: Optional[str] = None
    indexes_verified: Dict[str, bool] = field(default_factory=dict)
    record: Optional[MigrationRecord] = None

    def advance(self, state: MigrationState, reason: Optional[str] = None) -> None:
        if self.state in (MigrationState.RECORDED, MigrationState.ABORTED):
            raise RuntimeError(f"Migration '{self.name}' already finished in state {self.state.value}")
        self.state = state
        self.transitions.append((state, reason))

    def abort(self, reason: str) -> None:
        self.advance(MigrationState.ABORTED, reason)

    @property
    def aborted_reason(self) -> Optional[str]:
        if self.state is not MigrationState.ABORTED:
            return None
        return self.transitions[-1][1]

    @property
    def succeeded(self) -> bool:
        return self.outcome in (MigrationOutcome.APPLIED, MigrationOutcome.DRY_RUN)

    @property
    def exit_code(self) -> int:
        if self.outcome is MigrationOutcome.ALREADY_APPLIED:
            return config.EXIT_ALREADY_APPLIED
        if self.succeeded:
            return config.EXIT_OK
        return config.EXIT_FAILURE


class MigrationRunner:
    """Executes one migration through guard, pre-check, transform, validate and record."""

    def __init__(
        self,
        store: DocumentStore,
        history: Optional[MigrationHistoryStore] = None,
        batch_size: Optional[int] = None,
        on_progress: Optional[Callable[[BatchProgress], None]] = None,
    ):
        self.store = store
        self.history = history or MigrationHistoryStore(store)
        self.batch_size = batch_size or config.MIGRATION_BATCH_SIZE
        self.on_progress = on_progress

    def run(self, migration: Migration, dry_run: bool = False) -> MigrationResult:
        result = MigrationResult(name=migration.name, version=migration.version, dry_run=dry_run)
        logger.info("=" * 70)
        logger.info(f"MIGRATION: {migration.name} v{migration.version}{' (DRY RUN)' if dry_run else ''}")
        logger.info(f"  {migration.description}")
        logger.info("=" * 70)

        # Phase 1: guard
        try:
            applied = self.history.has_applied(migration.name)
        except PyMongoError as e:
            logger.error(f"❌ Could not read migration history: {e}")
            result.outcome = MigrationOutcome.FAILED
            result.error = str(e)
            result.error_kind = type(e).__name__
            result.abort(f"history unavailable: {e}")
            return result

        if applied:
            logger.warning(f"⚠️  {AlreadyApplied(migration.name)}. Nothing to do.")
            result.outcome = MigrationOutcome.ALREADY_APPLIED
            result.abort("already applied")
            return result
        result.advance(MigrationState.GUARD_CHECKED)

        context = MigrationContext(self.store, self.batch_size, dry_run=dry_run, on_progress=self.on_progress)

        try:
            # Phase 2: pre-checks
            self._check_prerequisites(migration)
            result.advance(MigrationState.PREREQUISITES_VERIFIED)

            if not dry_run:
                result.backup_command = self.backup_command()
                logger.warning(f"⚠️  Back up before the transformation starts: {result.backup_command}")

            # Phase 3: transformation
            result.advance(MigrationState.TRANSFORMING)
            result.transform, result.index_reports = self._transform(migration, context)

            # Phase 4: post-validation
            result.validation = migration.validate(context)
            if not dry_run:
                result.indexes_verified = self._verify_indexes(migration, result.index_reports)
            result.advance(MigrationState.VALIDATED)
        except (Exception, KeyboardInterrupt) as e:
            return self._fail(result, migration, e)

        result.statistics = self._statistics(result)
        result.warnings = list(result.validation.warnings)
        result.warnings += [
            f"Index '{name}' not found after creation" for name, ok in result.indexes_verified.items() if not ok
        ]
        for warning in result.warnings:
            logger.warning(f"⚠️  {warning}")

        if dry_run:
            logger.info("⚠️  DRY RUN: no documents, indexes or history were written")
            result.outcome = MigrationOutcome.DRY_RUN
            return result

        # Phase 5: record
        record = MigrationRecord(
            name=migration.name,
            version=migration.version,
            description=migration.description,
            reversible=migration.reversible,
            appliedAt=now_utc(),
            estimatedDuration=migration.estimated_duration,
            statistics=dict(result.statistics),
        )
        try:
            self.history.record(record)
        except AlreadyApplied:
            result.outcome = MigrationOutcome.ALREADY_APPLIED
            result.abort("recorded concurrently by another run")
            return result
        except PyMongoError as e:
            return self._fail(result, migration, e)

        result.record = record
        result.outcome = MigrationOutcome.APPLIED
        result.advance(MigrationState.RECORDED)
        result.rollback_instructions = migration.rollback_instructions(self.history.collection_name)
        logger.info(f"✅ Migration '{migration.name}' complete")
        return result

    def _check_prerequisites(self, migration: Migration) -> None:
        missing = self.store.missing_collections(migration.required_collections)
        for name in migration.required_collections:
            if name in missing:
                logger.error(f"✗ Required collection '{name}' does not exist")
            else:
                logger.info(f"✓ Collection '{name}' exists")
        if missing:
            raise PrerequisiteMissing(missing)

    def _transform(
        self, migration: Migration, context: MigrationContext
    ) -> Tuple[TransformStats, Dict[str, ReconcileReport]]:
        try:
            stats = migration.transform(context)
            reports = self._create_indexes(migration, context.dry_run)
        except TransformationFailure:
            raise
        except (Exception, KeyboardInterrupt) as e:
            raise TransformationFailure(migration.name, e) from e
        return stats, reports

    def _create_indexes(self, migration: Migration, dry_run: bool) -> Dict[str, ReconcileReport]:
        by_collection: Dict[str, List[IndexSpec]] = {}
        for index in migration.indexes:
            by_collection.setdefault(index.collection, []).append(index)

        reports: Dict[str, ReconcileReport] = {}
        for collection, specs in by_collection.items():
            report = reconcile(self.store, collection, specs, dry_run=dry_run)
            reports[collection] = report
            if report.conflicts:
                raise TransformationFailure(migration.name, report.conflicts[0])
            if report.failed:
                name, message = next(iter(report.failed.items()))
                raise TransformationFailure(migration.name, RuntimeError(f"index {name}: {message}"))
        return reports

    def backup_command(self) -> str:
        """Suggested mongodump invocation; printed, never executed."""
        return (
            f"mongodump --uri='<connection-string>' --db={self.store.name} "
            f"--out=./backup/{now_utc():%Y-%m-%d}"
        )

    def _verify_indexes(self, migration: Migration, reports: Mapping[str, ReconcileReport]) -> Dict[str, bool]:
        """Declared index name -> present (directly or as an identically keyed alias)."""
        verified: Dict[str, bool] = {}
        live: Dict[str, Any] = {}
        for index in migration.indexes:
            if index.collection not in live:
                live[index.collection] = self.store.list_indexes(index.collection)
            report = reports.get(index.collection)
            aliased = report is not None and index.name in report.aliases
            verified[index.name] = index.name in live[index.collection] or aliased
            logger.info(f"Index {index.name} exists: {verified[index.name]}")
        return verified

    def _statistics(self, result: MigrationResult) -> Dict[str, Any]:
        statistics = dict(result.validation.statistics) if result.validation else {}
        if result.transform is not None:
            statistics["documentsModified"] = result.transform.updated
        statistics["indexesCreated"] = sum(len(r.created) for r in result.index_reports.values())
        if result.indexes_verified:
            statistics["indexesVerified"] = dict(result.indexes_verified)
        return statistics

    def _fail(self, result: MigrationResult, migration: Migration, error: BaseException) -> MigrationResult:
        result.outcome = MigrationOutcome.FAILED
        result.error = str(error)
        result.error_kind = type(error).__name__
        result.rollback_instructions = migration.rollback_instructions(self.history.collection_name)
        result.abort(f"{result.error_kind}: {error}")

        if isinstance(error, PrerequisiteMissing):
            logger.error(f"✗ Prerequisites not met: {error}")
        else:
            logger.error(f"✗ Migration failed with error: {error}", exc_info=not isinstance(error, KeyboardInterrupt))
        logger.error("No history record was written; fix the cause and re-run the migration.")
        return result
