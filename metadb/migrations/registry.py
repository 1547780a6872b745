"""
Migration registry: discovers migration modules (``vYYYY_MM_DD_<name>.py``)
in this package and orders them by file name, which is also version order.
"""

import importlib
import pkgutil
import re
from pathlib import Path
from typing import List, Optional, Tuple

from metadb.db.migration_history import MigrationHistoryStore
from metadb.db.models import MigrationRecord
from metadb.migrations.base import Migration

MODULE_PATTERN = re.compile(r"^v\d{4}_\d{2}_\d{2}_\w+$")


def discover_migrations() -> List[Migration]:
    """All migrations in file-name order. Each module must expose MIGRATION."""
    package_dir = Path(__file__).parent
    module_names = sorted(
        info.name for info in pkgutil.iter_modules([str(package_dir)]) if MODULE_PATTERN.match(info.name)
    )

    migrations: List[Migration] = []
    seen = set()
    for module_name in module_names:
        module = importlib.import_module(f"metadb.migrations.{module_name}")
        migration = getattr(module, "MIGRATION", None)
        if not isinstance(migration, Migration):
            raise TypeError(f"metadb.migrations.{module_name} does not define a MIGRATION instance")
        if migration.name in seen:
            raise ValueError(f"Duplicate migration name '{migration.name}' in {module_name}")
        seen.add(migration.name)
        migrations.append(migration)
    return migrations


def get_migration(name: str) -> Migration:
    for migration in discover_migrations():
        if migration.name == name:
            return migration
    known = ", ".join(m.name for m in discover_migrations()) or "none"
    raise KeyError(f"Unknown migration '{name}' (known: {known})")


def migration_status(history: MigrationHistoryStore) -> List[Tuple[Migration, Optional[MigrationRecord]]]:
    """Every known migration paired with its history record (None = pending)."""
    return [(migration, history.get(migration.name)) for migration in discover_migrations()]


def pending_migrations(history: MigrationHistoryStore) -> List[Migration]:
    return [migration for migration, record in migration_status(history) if record is None]
