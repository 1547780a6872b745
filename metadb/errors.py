"""
Error taxonomy for index, migration and validation tooling.

Validation failures and warnings are not exceptions: the validator records
them on its report and keeps going. Everything here is raised by the
reconciler, the history store or the migration runner.
"""

from typing import List, Optional, Sequence, Tuple


KeySignature = Tuple[Tuple[str, int], ...]


class MetaDBError(Exception):
    """Base class for database lifecycle errors."""


class AlreadyApplied(MetaDBError):
    """Guard hit: the migration is already recorded. A no-op signal, not a failure."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Migration '{name}' has already been applied")


class PrerequisiteMissing(MetaDBError):
    """One or more collections a migration depends on do not exist."""

    def __init__(self, missing: Sequence[str]):
        self.missing: List[str] = list(missing)
        joined = ", ".join(f"'{name}'" for name in self.missing)
        super().__init__(f"Required collection(s) do not exist: {joined}")


class IndexConflict(MetaDBError):
    """An index exists under the declared name but with a different definition."""

    def __init__(
        self,
        collection: str,
        name: str,
        existing: KeySignature,
        declared: KeySignature,
        detail: Optional[str] = None,
    ):
        self.collection = collection
        self.name = name
        self.existing = existing
        self.declared = declared
        self.detail = detail or "key signature differs"
        super().__init__(
            f"Index '{name}' on {collection} conflicts ({self.detail}): "
            f"existing={list(existing)} declared={list(declared)}"
        )


class CollectionMissing(MetaDBError):
    """The store refused to create an index because the collection does not exist."""

    def __init__(self, collection: str):
        self.collection = collection
        super().__init__(f"Collection '{collection}' does not exist")


class TransformationFailure(MetaDBError):
    """Unexpected error while a migration was changing data or creating indexes."""

    def __init__(self, migration: str, cause: BaseException):
        self.migration = migration
        self.cause = cause
        super().__init__(f"Migration '{migration}' failed during transformation: {cause!r}")
