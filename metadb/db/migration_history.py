"""
Migration History Store

Durable audit trail of applied migrations, one document per migration name.
The unique index on ``name`` turns the runner's check-then-record sequence
into a compare-and-set: if two operators race on the same migration, only
the first record lands and the second gets AlreadyApplied.
"""

import logging
from typing import List, Optional

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from metadb import config
from metadb.db.indexes import IndexSpec
from metadb.db.models import MigrationRecord
from metadb.db.store import DocumentStore
from metadb.errors import AlreadyApplied

logger = logging.getLogger(__name__)


class MigrationHistoryStore:
    """Reads and appends MigrationRecords; never updates or deletes them."""

    def __init__(self, store: DocumentStore, collection_name: Optional[str] = None):
        self.store = store
        self.collection_name = collection_name or config.MIGRATIONS_COLLECTION
        self._ready = False

    @property
    def name_index(self) -> IndexSpec:
        return IndexSpec(collection=self.collection_name, keys=(("name", ASCENDING),), unique=True)

    def _ensure_ready(self) -> None:
        """Create the backing collection and its unique name index on first write."""
        if self._ready:
            return
        self.store.ensure_collection(self.collection_name)
        if self.name_index.name not in self.store.list_indexes(self.collection_name):
            self.store.create_index(self.name_index)
        self._ready = True

    def has_applied(self, name: str) -> bool:
        if not self.store.collection_exists(self.collection_name):
            return False
        return self.store.count(self.collection_name, {"name": name}) > 0

    def get(self, name: str) -> Optional[MigrationRecord]:
        if not self.store.collection_exists(self.collection_name):
            return None
        records = self.store.find_models(self.collection_name, MigrationRecord, {"name": name}, {"_id": 0})
        return records[0] if records else None

    def list_applied(self) -> List[MigrationRecord]:
        if not self.store.collection_exists(self.collection_name):
            return []
        records = self.store.find_models(self.collection_name, MigrationRecord, {}, {"_id": 0})
        return sorted(records, key=lambda record: record.appliedAt)

    def record(self, record: MigrationRecord) -> None:
        """Append ``record``. Raises AlreadyApplied if the name is already recorded."""
        self._ensure_ready()
        try:
            self.store.insert_one(self.collection_name, record.to_document())
        except DuplicateKeyError:
            logger.warning(f"⚠️  Migration '{record.name}' was recorded by another run first")
            raise AlreadyApplied(record.name)
        logger.info(f"✅ Migration '{record.name}' recorded in '{self.collection_name}'")
