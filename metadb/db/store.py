"""
Document Store Adapter

Thin wrapper over a pymongo Database exposing only the operations the
lifecycle tooling needs. Everything above this layer works with index specs,
counts and typed models instead of raw driver calls.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import CollectionInvalid

from metadb.db.indexes import IndexSpec, KeySignature, normalize_keys

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class LiveIndex:
    """Index metadata as reported by the server."""
    name: str
    keys: KeySignature
    unique: bool = False
    sparse: bool = False

    @property
    def is_primary(self) -> bool:
        return self.name == "_id_"


@dataclass(frozen=True)
class CollectionStats:
    count: int
    size_bytes: int
    avg_obj_size: float
    storage_size_bytes: int
    total_index_size_bytes: int


class DocumentStore:
    """MongoDB store used by the reconciler, migration runner and validator"""

    def __init__(self, db: Database):
        self.db = db

    @property
    def name(self) -> str:
        return self.db.name

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def collection_names(self) -> List[str]:
        return sorted(self.db.list_collection_names())

    def collection_exists(self, collection: str) -> bool:
        return collection in self.db.list_collection_names()

    def missing_collections(self, collections: Iterable[str]) -> List[str]:
        existing = set(self.db.list_collection_names())
        return [name for name in collections if name not in existing]

    def ensure_collection(self, collection: str) -> None:
        if self.collection_exists(collection):
            return
        try:
            self.db.create_collection(collection)
            logger.info(f"Created collection '{collection}'")
        except CollectionInvalid:
            # Created concurrently by another process
            pass

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    def list_indexes(self, collection: str) -> Dict[str, LiveIndex]:
        """Live indexes keyed by name (empty for a missing collection)."""
        info = self.db[collection].index_information()
        return {
            name: LiveIndex(
                name=name,
                keys=normalize_keys(meta.get("key", [])),
                unique=bool(meta.get("unique", False)),
                sparse=bool(meta.get("sparse", False)),
            )
            for name, meta in info.items()
        }

    def create_index(self, index: IndexSpec) -> str:
        return self.db[index.collection].create_index(list(index.keys), **index.options())

    def index_usage(self, collection: str) -> Dict[str, int]:
        """Access counters per index since the last server restart ($indexStats)."""
        usage: Dict[str, int] = {}
        for stat in self.db[collection].aggregate([{"$indexStats": {}}]):
            accesses = stat.get("accesses") or {}
            usage[stat["name"]] = int(accesses.get("ops", 0))
        return usage

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def count(self, collection: str, filter: Optional[Mapping[str, Any]] = None) -> int:
        return self.db[collection].count_documents(dict(filter or {}))

    def distinct(self, collection: str, key: str, filter: Optional[Mapping[str, Any]] = None) -> List[Any]:
        return self.db[collection].distinct(key, dict(filter or {}))

    def find(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        return list(self.db[collection].find(dict(filter or {}), projection))

    def find_models(
        self,
        collection: str,
        model: Type[ModelT],
        filter: Optional[Mapping[str, Any]] = None,
        projection: Optional[Mapping[str, Any]] = None,
    ) -> List[ModelT]:
        """Like find(), but each document is parsed into ``model``."""
        return [model.model_validate(doc) for doc in self.find(collection, filter, projection)]

    def orphan_count(
        self,
        source: str,
        source_field: str,
        target: str,
        target_field: str,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Documents in ``source`` whose ``source_field`` matches nothing in ``target``.

        One-sided outer join ($lookup) followed by a count of empty matches.
        """
        pipeline: List[Dict[str, Any]] = []
        if filter:
            pipeline.append({"$match": dict(filter)})
        pipeline += [
            {"$project": {source_field: 1}},
            {
                "$lookup": {
                    "from": target,
                    "localField": source_field,
                    "foreignField": target_field,
                    "as": "_matched",
                }
            },
            {"$match": {"_matched": {"$size": 0}}},
            {"$group": {"_id": None, "orphaned": {"$sum": 1}}},
        ]
        result = list(self.db[source].aggregate(pipeline))
        return int(result[0]["orphaned"]) if result else 0

    def collection_stats(self, collection: str) -> CollectionStats:
        stats: Dict[str, Any] = {}
        for entry in self.db[collection].aggregate([{"$collStats": {"storageStats": {}}}]):
            stats = entry.get("storageStats", {})
        count = int(stats.get("count", 0))
        return CollectionStats(
            count=count,
            size_bytes=int(stats.get("size", 0)),
            avg_obj_size=float(stats.get("avgObjSize", 0) or 0),
            storage_size_bytes=int(stats.get("storageSize", 0)),
            total_index_size_bytes=int(stats.get("totalIndexSize", 0)),
        )

    def database_stats(self) -> Dict[str, Any]:
        return self.db.command("dbStats")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_many(self, collection: str, filter: Mapping[str, Any], update: Mapping[str, Any]) -> int:
        result = self.db[collection].update_many(dict(filter), dict(update))
        return result.modified_count

    def insert_one(self, collection: str, document: Mapping[str, Any]) -> Any:
        return self.db[collection].insert_one(dict(document)).inserted_id
