"""
Database Index Definitions
===========================

Declarative catalog of every index the meta database needs, per collection.

Add new indexes by appending an IndexSpec to the matching get_*_indexes()
function; the reconciler and the validator pick it up from INDEX_CATALOG.
Names are generated from the keys unless a spec pins the name an existing
deployment already uses.
Apply with:
    python -m metadb.scripts.apply_indexes
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pymongo import ASCENDING, DESCENDING, IndexModel


KeySignature = Tuple[Tuple[str, int], ...]

# Shorter prefixes used in index names for long collection names
NAME_PREFIXES: Dict[str, str] = {
    "card_performance_stats": "card_stats",
}


def normalize_keys(keys: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]) -> KeySignature:
    """Ordered ((field, direction), ...) tuple from a SON/dict/list of pairs."""
    pairs = keys.items() if isinstance(keys, Mapping) else keys
    signature = []
    for key_field, direction in pairs:
        # Live index metadata reports directions as 1.0 / -1.0 on some servers
        if isinstance(direction, (int, float)) and not isinstance(direction, bool):
            direction = int(direction)
        signature.append((str(key_field), direction))
    return tuple(signature)


def index_name(collection: str, keys: KeySignature, unique: bool = False) -> str:
    """Deterministic index name: idx_<prefix>_<field>_<field>[_unique]."""
    prefix = NAME_PREFIXES.get(collection, collection)
    fields = "_".join(key_field.replace(".", "_") for key_field, _ in keys)
    name = f"idx_{prefix}_{fields}"
    return f"{name}_unique" if unique else name


@dataclass(frozen=True)
class IndexSpec:
    """One desired index. Single-field, compound, unique, sparse and multi-key
    (array field paths such as ``mainDeck.cardId``) are all expressed the same way."""

    collection: str
    keys: KeySignature
    unique: bool = False
    sparse: bool = False
    name: str = field(default="")

    def __post_init__(self):
        object.__setattr__(self, "keys", normalize_keys(self.keys))
        if not self.keys:
            raise ValueError(f"IndexSpec on {self.collection} needs at least one key")
        if not self.name:
            object.__setattr__(self, "name", index_name(self.collection, self.keys, self.unique))

    @property
    def fields(self) -> List[str]:
        return [key_field for key_field, _ in self.keys]

    def options(self) -> Dict[str, Any]:
        """Options passed to create_index; background builds keep traffic flowing."""
        opts: Dict[str, Any] = {"name": self.name, "background": True}
        if self.unique:
            opts["unique"] = True
        if self.sparse:
            opts["sparse"] = True
        return opts

    def to_index_model(self) -> IndexModel:
        return IndexModel(list(self.keys), **self.options())

    def describe(self) -> str:
        flags = [flag for flag, on in (("unique", self.unique), ("sparse", self.sparse)) if on]
        keys = ", ".join(f"{key_field}: {direction}" for key_field, direction in self.keys)
        suffix = f" ({', '.join(flags)})" if flags else ""
        return f"{self.name} {{{keys}}}{suffix}"


def spec(
    collection: str,
    keys: Sequence[Tuple[str, int]],
    unique: bool = False,
    sparse: bool = False,
    name: str = "",
) -> IndexSpec:
    return IndexSpec(collection=collection, keys=tuple(keys), unique=unique, sparse=sparse, name=name)


# ============================================================================
# INDEX DEFINITIONS
# ============================================================================

def get_champions_indexes() -> List[IndexSpec]:
    """Champions collection indexes"""
    return [
        # Unique slug for URL routing
        spec("champions", [("slug", ASCENDING)], unique=True),
        # Name searches
        spec("champions", [("name", ASCENDING)]),
        # External UUID for integrations
        spec("champions", [("uuid", ASCENDING)], unique=True),
        # Element filter
        spec("champions", [("element", ASCENDING)]),
    ]


def get_events_indexes() -> List[IndexSpec]:
    """Events collection indexes"""
    return [
        spec("events", [("eventId", ASCENDING)], unique=True),
        # Format filtering with chronological sort
        spec("events", [("format", ASCENDING), ("startAt", DESCENDING)]),
        spec("events", [("category", ASCENDING), ("status", ASCENDING)]),
        # Ongoing / upcoming ranked tournaments
        spec("events", [("status", ASCENDING), ("ranked", ASCENDING)]),
        spec("events", [("startAt", DESCENDING)]),
        spec("events", [("location.country", ASCENDING), ("startAt", DESCENDING)]),
    ]


def get_standings_indexes() -> List[IndexSpec]:
    """Standings collection indexes"""
    return [
        # One standing per player per event
        spec("standings", [("eventId", ASCENDING), ("playerId", ASCENDING)], unique=True),
        spec("standings", [("eventId", ASCENDING), ("placement", ASCENDING)]),
        # Champion performance across events
        spec("standings", [("championSlug", ASCENDING), ("placement", ASCENDING)]),
        # Player tournament history
        spec("standings", [("playerId", ASCENDING), ("createdAt", DESCENDING)]),
        spec("standings", [("eventId", ASCENDING), ("madeCut", ASCENDING)]),
        spec("standings", [("decklistId", ASCENDING)]),
        # Added by the add-format-to-standings migration
        spec("standings", [("format", ASCENDING)]),
        spec("standings", [("championSlug", ASCENDING), ("format", ASCENDING)]),
    ]


def get_decklists_indexes() -> List[IndexSpec]:
    """Decklists collection indexes"""
    return [
        # Not unique: a player may submit more than one list
        spec("decklists", [("eventId", ASCENDING), ("playerId", ASCENDING)]),
        spec("decklists", [("championSlug", ASCENDING), ("eventId", ASCENDING)]),
        # Duplicate deck detection
        spec("decklists", [("deckHash", ASCENDING)]),
        # Multi-key: every card in the main deck
        spec("decklists", [("mainDeck.cardId", ASCENDING)]),
        spec("decklists", [("eventId", ASCENDING), ("placement", ASCENDING)]),
        # Archetype evolution over time
        spec("decklists", [("archetype", ASCENDING), ("createdAt", DESCENDING)]),
        spec("decklists", [("createdAt", DESCENDING)]),
        spec("decklists", [("championSlug", ASCENDING), ("verified", ASCENDING), ("createdAt", DESCENDING)]),
    ]


def get_card_performance_stats_indexes() -> List[IndexSpec]:
    """Card performance stats collection indexes"""
    return [
        spec("card_performance_stats", [("cardId", ASCENDING)], unique=True),
        spec("card_performance_stats", [("cardName", ASCENDING)]),
        # Rankings (names predate the generated scheme and are live in production)
        spec("card_performance_stats", [("overallStats.totalInclusions", DESCENDING)], name="idx_card_stats_totalInclusions"),
        spec("card_performance_stats", [("overallStats.winRate", DESCENDING)], name="idx_card_stats_winRate"),
        # Multi-key: per-champion breakdown
        spec("card_performance_stats", [("byChampion.championSlug", ASCENDING)], name="idx_card_stats_byChampion_slug"),
        spec("card_performance_stats", [("element", ASCENDING), ("cardType", ASCENDING)]),
        # Stale stats finder
        spec("card_performance_stats", [("lastCalculated", ASCENDING)]),
        spec("card_performance_stats", [("overallStats.topCutWinRate", DESCENDING)], name="idx_card_stats_topCutWinRate"),
    ]


def get_crawler_state_indexes() -> List[IndexSpec]:
    """Crawler state collection indexes"""
    return [
        spec("crawler_state", [("crawlerName", ASCENDING)], unique=True),
        spec("crawler_state", [("sourceType", ASCENDING), ("status", ASCENDING)]),
        # Scheduling: crawlers due to run
        spec("crawler_state", [("lastRunAt", ASCENDING)]),
        # Deployed name drops the "config" path segment
        spec("crawler_state", [("status", ASCENDING), ("config.enabled", ASCENDING)], name="idx_crawler_state_status_enabled"),
    ]


def get_users_indexes() -> List[IndexSpec]:
    """Users collection indexes (accounts are not live yet)"""
    return [
        spec("users", [("userId", ASCENDING)], unique=True),
        spec("users", [("email", ASCENDING)], unique=True),
        spec("users", [("username", ASCENDING)], unique=True),
        # Tokens only exist while a verification / reset is pending
        spec("users", [("emailVerificationToken", ASCENDING)], sparse=True),
        spec("users", [("passwordResetToken", ASCENDING)], sparse=True),
        spec("users", [("accountStatus", ASCENDING)]),
        spec("users", [("createdAt", DESCENDING)]),
    ]


def get_saved_decklists_indexes() -> List[IndexSpec]:
    """Saved (user-built) decklists collection indexes (accounts are not live yet)"""
    return [
        spec("saved_decklists", [("userId", ASCENDING), ("createdAt", DESCENDING)]),
        spec("saved_decklists", [("championSlug", ASCENDING), ("visibility", ASCENDING)]),
        spec("saved_decklists", [("visibility", ASCENDING), ("likes", DESCENDING)]),
        spec("saved_decklists", [("tags", ASCENDING)]),
        spec("saved_decklists", [("deckHash", ASCENDING)]),
        spec("saved_decklists", [("forkedFrom", ASCENDING)], sparse=True),
        spec("saved_decklists", [("mainDeck.cardId", ASCENDING), ("visibility", ASCENDING)]),
        spec("saved_decklists", [("visibility", ASCENDING), ("createdAt", DESCENDING)]),
    ]


# ============================================================================
# CATALOG
# ============================================================================

INDEX_CATALOG: Dict[str, List[IndexSpec]] = {
    "champions": get_champions_indexes(),
    "events": get_events_indexes(),
    "standings": get_standings_indexes(),
    "decklists": get_decklists_indexes(),
    "card_performance_stats": get_card_performance_stats_indexes(),
    "crawler_state": get_crawler_state_indexes(),
}

# Applied only on request; never required by the validator
OPTIONAL_INDEX_CATALOG: Dict[str, List[IndexSpec]] = {
    "users": get_users_indexes(),
    "saved_decklists": get_saved_decklists_indexes(),
}

REQUIRED_COLLECTIONS: List[str] = list(INDEX_CATALOG.keys())


def get_catalog(include_optional: bool = False) -> Dict[str, List[IndexSpec]]:
    catalog = dict(INDEX_CATALOG)
    if include_optional:
        catalog.update(OPTIONAL_INDEX_CATALOG)
    return catalog


def find_spec(collection: str, name: str, catalog: Optional[Mapping[str, List[IndexSpec]]] = None) -> IndexSpec:
    for candidate in (catalog or get_catalog(include_optional=True)).get(collection, []):
        if candidate.name == name:
            return candidate
    raise KeyError(f"No index named '{name}' declared for {collection}")


def _check_unique_names(catalog: Mapping[str, List[IndexSpec]]) -> None:
    for collection, specs in catalog.items():
        names = [s.name for s in specs]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate index names on {collection}: {sorted(duplicates)}")
        stray = [s.name for s in specs if s.collection != collection]
        if stray:
            raise ValueError(f"Indexes filed under {collection} target another collection: {stray}")


_check_unique_names(get_catalog(include_optional=True))
