"""
Collection document shapes.

The store is schema-flexible; these models describe the conventional shape
of each collection's documents. The validator uses them to know which fields
are required, and the migration history is written through MigrationRecord.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field


class StoredDocument(BaseModel):
    model_config = ConfigDict(extra="allow")


class Champion(StoredDocument):
    slug: str = Field(..., description="URL-safe unique identifier")
    name: str
    uuid: str
    element: str


class EventLocation(StoredDocument):
    country: str
    city: Optional[str] = None


class Event(StoredDocument):
    eventId: str
    format: str
    startAt: datetime
    status: str
    ranked: bool
    location: EventLocation
    category: Optional[str] = None


class Standing(StoredDocument):
    eventId: str
    playerId: str
    placement: int
    championSlug: str
    decklistId: Optional[str] = None
    madeCut: Optional[bool] = None
    # Denormalized from Event by the add-format-to-standings migration
    format: Optional[str] = None


class DeckCard(StoredDocument):
    cardId: str
    quantity: int


class Decklist(StoredDocument):
    eventId: str
    playerId: str
    championSlug: str
    deckHash: str
    mainDeck: List[DeckCard]
    archetype: Optional[str] = None
    verified: Optional[bool] = None
    placement: Optional[int] = None


class OverallCardStats(StoredDocument):
    totalInclusions: int
    winRate: float
    topCutWinRate: Optional[float] = None


class ChampionCardStats(StoredDocument):
    championSlug: str


class CardPerformanceStat(StoredDocument):
    cardId: str
    cardName: str
    overallStats: OverallCardStats
    byChampion: List[ChampionCardStats] = []
    lastCalculated: datetime


class CrawlerConfig(StoredDocument):
    enabled: bool


class CrawlerState(StoredDocument):
    crawlerName: str
    sourceType: str
    status: str
    lastRunAt: Optional[datetime] = None
    config: CrawlerConfig


# ----------------------------------------------------------------------------
# Projections read by the migration and the validator
# ----------------------------------------------------------------------------

class EventFormat(StoredDocument):
    eventId: str
    format: Optional[str] = None


class CardStatsFreshness(StoredDocument):
    cardId: Optional[str] = None
    # ISO strings from older ingestion runs are kept as-is
    lastCalculated: Optional[Union[datetime, str]] = None


class CrawlerSchedule(StoredDocument):
    crawlerName: str = "?"
    lastRunAt: Optional[Union[datetime, str]] = None


class MigrationRecord(BaseModel):
    """One applied migration. Written once by the runner, never updated."""

    name: str
    version: str
    description: str
    reversible: bool
    appliedAt: datetime
    estimatedDuration: Optional[str] = None
    statistics: Dict[str, Any] = {}

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump()


COLLECTION_MODELS: Dict[str, Type[StoredDocument]] = {
    "champions": Champion,
    "events": Event,
    "standings": Standing,
    "decklists": Decklist,
    "card_performance_stats": CardPerformanceStat,
    "crawler_state": CrawlerState,
}


def _nested_model(annotation: Any) -> Optional[Type[BaseModel]]:
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    if get_origin(annotation) is None:
        return None
    # Optional[Model] -> Model; List[Model] stays a leaf
    if get_origin(annotation) in (list, List):
        return None
    for arg in get_args(annotation):
        nested = _nested_model(arg)
        if nested is not None:
            return nested
    return None


def required_field_paths(model: Type[BaseModel], prefix: str = "") -> List[str]:
    """Dotted paths of every required field, descending into required sub-documents."""
    paths: List[str] = []
    for name, info in model.model_fields.items():
        if not info.is_required():
            continue
        path = f"{prefix}{name}"
        nested = _nested_model(info.annotation)
        if nested is not None:
            paths.extend(required_field_paths(nested, prefix=f"{path}."))
        else:
            paths.append(path)
    return paths
