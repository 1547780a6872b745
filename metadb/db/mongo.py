from typing import Optional

from pymongo import MongoClient
from pymongo.database import Database

from metadb import config


def get_client(uri: Optional[str] = None) -> MongoClient:
    """Build a client for ``uri`` (defaults to MONGO_URI). Connection is lazy."""
    return MongoClient(uri or config.MONGO_URI, tz_aware=True)


def get_database(uri: Optional[str] = None, database_name: Optional[str] = None) -> Database:
    """Resolve the target database.

    Precedence: explicit ``database_name``, then the database named in the
    URI path (``mongodb://host/grand-archive-meta``), then DATABASE_NAME.
    """
    client = get_client(uri)
    if database_name:
        return client[database_name]
    return client.get_default_database(default=config.DATABASE_NAME)


def ping(db: Database) -> None:
    """Round-trip to the server so scripts fail fast on a bad URI."""
    result = db.command("ping")
    if result.get("ok") != 1:
        raise ConnectionError("Database ping failed")
