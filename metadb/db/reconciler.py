"""
Index Reconciler
================

Compares the declared IndexSpec catalog against live index metadata and
creates whatever is missing. Safe to re-run: an unchanged catalog produces
zero creations on the second pass.

Existing indexes are never dropped. An index that exists under a declared
name with a different definition is reported as a conflict and left alone;
resolving it is an explicit operator action.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from pymongo.errors import OperationFailure, PyMongoError

from metadb.db.indexes import IndexSpec
from metadb.db.store import DocumentStore, LiveIndex
from metadb.errors import CollectionMissing, IndexConflict

logger = logging.getLogger(__name__)

NAMESPACE_NOT_FOUND = 26


@dataclass
class ReconcileReport:
    """Outcome of reconciling one collection."""
    collection: str
    created: List[str] = field(default_factory=list)
    present: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)
    conflicts: List[IndexConflict] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    # Declared name -> live name for specs already covered by an identically keyed index
    aliases: Dict[str, str] = field(default_factory=dict)
    collection_missing: bool = False
    final_indexes: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.conflicts and not self.failed

    def to_dict(self) -> Dict[str, object]:
        return {
            "collection": self.collection,
            "created": list(self.created),
            "present": list(self.present),
            "planned": list(self.planned),
            "conflicts": [str(conflict) for conflict in self.conflicts],
            "failed": dict(self.failed),
            "aliases": dict(self.aliases),
            "collection_missing": self.collection_missing,
            "final_indexes": list(self.final_indexes),
        }


def _definition_mismatch(declared: IndexSpec, live: LiveIndex) -> Optional[str]:
    if live.keys != declared.keys:
        return "key signature differs"
    if live.unique != declared.unique:
        return f"unique={live.unique} but declared unique={declared.unique}"
    if live.sparse != declared.sparse:
        return f"sparse={live.sparse} but declared sparse={declared.sparse}"
    return None


def reconcile(
    store: DocumentStore,
    collection: str,
    specs: Sequence[IndexSpec],
    dry_run: bool = False,
) -> ReconcileReport:
    """Bring one collection's indexes up to ``specs``. Only index metadata changes."""
    report = ReconcileReport(collection=collection)
    live = store.list_indexes(collection)
    live_by_keys = {index.keys: index for index in live.values()}

    for declared in specs:
        if declared.collection != collection:
            raise ValueError(f"Index {declared.name} targets {declared.collection}, not {collection}")

        existing = live.get(declared.name)
        if existing is not None:
            mismatch = _definition_mismatch(declared, existing)
            if mismatch:
                conflict = IndexConflict(collection, declared.name, existing.keys, declared.keys, mismatch)
                logger.error(f"  ❌ {conflict}")
                report.conflicts.append(conflict)
            else:
                report.present.append(declared.name)
            continue

        equivalent = live_by_keys.get(declared.keys)
        if equivalent is not None and _definition_mismatch(declared, equivalent) is None:
            logger.warning(
                f"  ⚠️  {collection}.{declared.name} already covered by '{equivalent.name}' (same keys)"
            )
            report.present.append(declared.name)
            report.aliases[declared.name] = equivalent.name
            continue

        if dry_run:
            logger.info(f"  [DRY RUN] Would create {collection}.{declared.describe()}")
            report.planned.append(declared.name)
            continue

        try:
            store.create_index(declared)
        except OperationFailure as e:
            if e.code == NAMESPACE_NOT_FOUND:
                missing = CollectionMissing(collection)
                logger.info(f"  {missing}; nothing to do until documents arrive")
                report.collection_missing = True
                break
            logger.error(f"  ❌ Failed to create {collection}.{declared.name}: {e}")
            report.failed[declared.name] = str(e)
            continue
        except PyMongoError as e:
            logger.error(f"  ❌ Failed to create {collection}.{declared.name}: {e}")
            report.failed[declared.name] = str(e)
            continue

        logger.info(f"  ✅ Created {collection}.{declared.describe()}")
        report.created.append(declared.name)

    report.final_indexes = sorted(store.list_indexes(collection).keys())
    return report


def reconcile_all(
    store: DocumentStore,
    catalog: Mapping[str, Sequence[IndexSpec]],
    dry_run: bool = False,
) -> Dict[str, ReconcileReport]:
    """Reconcile every collection in ``catalog``; one collection's problems never stop the next."""
    logger.info("=" * 70)
    logger.info(f"RECONCILING DATABASE INDEXES{' (DRY RUN)' if dry_run else ''}")
    logger.info("=" * 70)

    reports: Dict[str, ReconcileReport] = {}
    for collection, specs in catalog.items():
        logger.info(f"📦 Collection: {collection} ({len(specs)} declared)")
        try:
            reports[collection] = reconcile(store, collection, specs, dry_run=dry_run)
        except PyMongoError as e:
            logger.error(f"  ❌ Could not read indexes for {collection}: {e}")
            report = ReconcileReport(collection=collection)
            report.failed["*"] = str(e)
            reports[collection] = report

    return reports


def index_listings(reports: Mapping[str, ReconcileReport]) -> Dict[str, List[str]]:
    """Final index names per collection, in the shape the validator accepts."""
    return {collection: list(report.final_indexes) for collection, report in reports.items()}
