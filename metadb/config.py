"""
Grand Archive Meta - Database Lifecycle Configuration
Connection settings and thresholds for index, migration and validation tooling
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value else default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    return float(value) if value else default


# ============================================================================
# CONNECTION
# ============================================================================

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "grand-archive-meta")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


# ============================================================================
# MIGRATIONS
# ============================================================================

# Applied-migration history lives here (one document per migration name)
MIGRATIONS_COLLECTION = os.getenv("MIGRATIONS_COLLECTION", "migrations")

# Number of driving keys (e.g. distinct event ids) handled per batch
MIGRATION_BATCH_SIZE = _env_int("MIGRATION_BATCH_SIZE", 100)


# ============================================================================
# VALIDATION THRESHOLDS
# ============================================================================

BYTES_PER_KB = 1024

# Average document size above which a collection is flagged for normalization
LARGE_DOCUMENT_WARN_BYTES = _env_int("LARGE_DOCUMENT_WARN_BYTES", 100000)

# Card stats older than this are stale and due for recalculation
CARD_STATS_STALE_HOURS = _env_float("CARD_STATS_STALE_HOURS", 168.0)  # 1 week

# Enabled crawlers that have not run for this long are reported
CRAWLER_STALE_HOURS = _env_float("CRAWLER_STALE_HOURS", 48.0)


# ============================================================================
# EXIT CODES
# ============================================================================

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_ALREADY_APPLIED = 3
