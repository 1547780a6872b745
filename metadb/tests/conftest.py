"""
Shared fixtures: an in-memory MongoDB (mongomock) wrapped in a DocumentStore.

mongomock has no $indexStats, $collStats or dbStats, so those three store
calls are replaced with MagicMocks for the duration of each test. Tests that
care about them set ``return_value`` / ``side_effect`` on the mock.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import mongomock
import pytest

from metadb.db.store import CollectionStats, DocumentStore


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    return client["grand-archive-meta-test"]


@pytest.fixture
def server_stats():
    """Patch the server-statistics calls mongomock does not implement."""
    index_usage = MagicMock(return_value={})
    collection_stats = MagicMock(return_value=CollectionStats(
        count=0, size_bytes=0, avg_obj_size=512.0, storage_size_bytes=0, total_index_size_bytes=0,
    ))
    database_stats = MagicMock(return_value={"dataSize": 4096, "indexSize": 2048, "collections": 6})
    with patch.object(DocumentStore, "index_usage", index_usage), \
            patch.object(DocumentStore, "collection_stats", collection_stats), \
            patch.object(DocumentStore, "database_stats", database_stats):
        yield {
            "index_usage": index_usage,
            "collection_stats": collection_stats,
            "database_stats": database_stats,
        }


@pytest.fixture
def store(db, server_stats):
    return DocumentStore(db)


def seed_tournament(db):
    """Three events (two Standard, one Draft) with five standings, none carrying a format."""
    db.events.insert_many([
        {"eventId": "E1", "format": "Standard", "startAt": NOW - timedelta(days=30),
         "status": "completed", "ranked": True, "location": {"country": "US"}},
        {"eventId": "E2", "format": "Standard", "startAt": NOW - timedelta(days=20),
         "status": "completed", "ranked": True, "location": {"country": "GB"}},
        {"eventId": "E3", "format": "Draft", "startAt": NOW - timedelta(days=10),
         "status": "completed", "ranked": False, "location": {"country": "JP"}},
    ])
    db.standings.insert_many([
        {"eventId": "E1", "playerId": "P1", "placement": 1, "championSlug": "lorraine"},
        {"eventId": "E1", "playerId": "P2", "placement": 2, "championSlug": "silvie"},
        {"eventId": "E2", "playerId": "P1", "placement": 3, "championSlug": "lorraine"},
        {"eventId": "E3", "playerId": "P3", "placement": 1, "championSlug": "zander"},
        {"eventId": "E3", "playerId": "P4", "placement": 2, "championSlug": "silvie"},
    ])


def seed_full_database(db):
    """Every required collection populated with well-formed, consistent documents."""
    seed_tournament(db)
    db.standings.update_many({"eventId": {"$in": ["E1", "E2"]}}, {"$set": {"format": "Standard"}})
    db.standings.update_many({"eventId": "E3"}, {"$set": {"format": "Draft"}})
    db.champions.insert_many([
        {"slug": "lorraine", "name": "Lorraine, Wandering Warrior", "uuid": "c-001", "element": "norm"},
        {"slug": "silvie", "name": "Silvie, Slime Sovereign", "uuid": "c-002", "element": "wind"},
        {"slug": "zander", "name": "Zander, Blinding Steel", "uuid": "c-003", "element": "norm"},
    ])
    db.decklists.insert_many([
        {"eventId": "E1", "playerId": "P1", "championSlug": "lorraine", "deckHash": "h1",
         "mainDeck": [{"cardId": "card-a", "quantity": 4}], "placement": 1},
        {"eventId": "E3", "playerId": "P3", "championSlug": "zander", "deckHash": "h2",
         "mainDeck": [{"cardId": "card-b", "quantity": 2}], "placement": 1},
    ])
    db.card_performance_stats.insert_many([
        {"cardId": "card-a", "cardName": "Allied Warriors",
         "overallStats": {"totalInclusions": 12, "winRate": 0.54},
         "byChampion": [{"championSlug": "lorraine"}], "lastCalculated": NOW - timedelta(hours=6)},
        {"cardId": "card-b", "cardName": "Blinding Orb",
         "overallStats": {"totalInclusions": 3, "winRate": 0.41},
         "byChampion": [], "lastCalculated": NOW - timedelta(hours=30)},
    ])
    db.crawler_state.insert_many([
        {"crawlerName": "omnidex-events", "sourceType": "omnidex", "status": "idle",
         "lastRunAt": NOW - timedelta(hours=2), "config": {"enabled": True}},
        {"crawlerName": "legacy-import", "sourceType": "manual", "status": "disabled",
         "config": {"enabled": False}},
    ])


@pytest.fixture
def tournament_store(db, store):
    seed_tournament(db)
    return store


@pytest.fixture
def full_store(db, store):
    seed_full_database(db)
    return store
