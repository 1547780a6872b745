"""
Command-line entry point tests

Tests verify:
1. metadb-indexes creates, lists and dry-runs against the configured database
2. metadb-migrate applies once, then exits 3; --status and --all work
3. metadb-validate exits 1 on failed tests, prints JSON on request and reads --large-doc-kb in 1024-byte KB
"""

import json
from unittest.mock import patch

import pytest

from metadb import config
from metadb.db.store import CollectionStats
from metadb.scripts import apply_indexes, run_migration, validate_db


@pytest.fixture
def patched_db(db, server_stats):
    with patch("metadb.scripts.apply_indexes.get_database", return_value=db) as indexes_db, \
            patch("metadb.scripts.run_migration.get_database", return_value=db) as migrate_db, \
            patch("metadb.scripts.validate_db.get_database", return_value=db) as validate_db_:
        yield {"indexes": indexes_db, "migrate": migrate_db, "validate": validate_db_}


class TestApplyIndexes:

    def test_creates_catalog(self, db, patched_db, capsys):
        assert apply_indexes.main([]) == config.EXIT_OK

        assert "idx_champions_slug_unique" in db.champions.index_information()
        assert "users" not in db.list_collection_names()
        assert "SUMMARY: 38 indexes declared, 38 created" in capsys.readouterr().out

        assert apply_indexes.main([]) == config.EXIT_OK
        assert "38 indexes declared, 0 created" in capsys.readouterr().out

    def test_include_future(self, db, patched_db):
        assert apply_indexes.main(["--include-future"]) == config.EXIT_OK
        assert "idx_users_email_unique" in db.users.index_information()

    def test_dry_run(self, db, patched_db, capsys):
        assert apply_indexes.main(["--dry-run"]) == config.EXIT_OK
        assert db.list_collection_names() == []
        assert "Dry run complete" in capsys.readouterr().out

    def test_conflict_exits_1(self, db, patched_db):
        db.crawler_state.create_index([("crawlerName", 1)], name="idx_crawler_state_crawlerName_unique")
        assert apply_indexes.main([]) == config.EXIT_FAILURE

    def test_uri_and_database_are_passed_through(self, patched_db):
        apply_indexes.main(["mongodb://db.internal:27017/grand-archive-meta", "--database", "staging", "--list"])
        patched_db["indexes"].assert_called_once_with("mongodb://db.internal:27017/grand-archive-meta", "staging")


class TestRunMigration:

    def test_split_targets(self):
        assert run_migration.split_targets([]) == (None, None)
        assert run_migration.split_targets(["add-format-to-standings"]) == (None, "add-format-to-standings")
        assert run_migration.split_targets(["mongodb://localhost:27017", "add-format-to-standings"]) == (
            "mongodb://localhost:27017", "add-format-to-standings",
        )
        with pytest.raises(ValueError):
            run_migration.split_targets(["one", "two"])

    def test_apply_then_already_applied(self, tournament_store, patched_db, capsys):
        assert run_migration.main(["add-format-to-standings"]) == config.EXIT_OK
        out = capsys.readouterr().out
        assert "Migration Complete!" in out
        assert "standingsUpdated: 5" in out
        assert "Rollback Instructions:" in out
        assert "Recommended backup: mongodump" in out
        assert "indexesVerified" in out

        assert run_migration.main(["add-format-to-standings"]) == config.EXIT_ALREADY_APPLIED
        assert "has already been applied" in capsys.readouterr().out

    def test_prerequisite_failure_exits_1(self, db, patched_db, capsys):
        db.standings.insert_one({"eventId": "E1", "playerId": "P1", "placement": 1, "championSlug": "silvie"})

        assert run_migration.main(["add-format-to-standings"]) == config.EXIT_FAILURE
        assert "PrerequisiteMissing" in capsys.readouterr().out

    def test_status_and_all(self, tournament_store, patched_db, capsys):
        assert run_migration.main(["--status"]) == config.EXIT_OK
        assert "pending" in capsys.readouterr().out

        assert run_migration.main(["--all"]) == config.EXIT_OK
        assert run_migration.main(["--all"]) == config.EXIT_OK
        assert "No pending migrations" in capsys.readouterr().out

    def test_name_is_required(self, patched_db):
        with pytest.raises(SystemExit) as exc_info:
            run_migration.main([])
        assert exc_info.value.code == 2


class TestValidateDb:

    def test_empty_database_fails(self, patched_db, capsys):
        assert validate_db.main([]) == config.EXIT_FAILURE
        out = capsys.readouterr().out
        assert "Collection 'champions' exists" in out
        assert "❌ Some validation tests failed" in out

    def test_json_report(self, full_store, patched_db, capsys):
        apply_indexes.main([])
        capsys.readouterr()

        code = validate_db.main(["--json"])

        report = json.loads(capsys.readouterr().out)
        assert report["failed"] == 0
        assert report["collection_counts"]["events"] == 3
        assert code == config.EXIT_OK

    @pytest.mark.parametrize("avg_obj_size, warned", [(210_000.0, True), (204_000.0, False)])
    def test_large_doc_threshold_uses_1024_byte_kb(self, full_store, patched_db, server_stats, capsys,
                                                   avg_obj_size, warned):
        apply_indexes.main([])
        capsys.readouterr()
        server_stats["collection_stats"].return_value = CollectionStats(
            count=10, size_bytes=int(avg_obj_size * 10), avg_obj_size=avg_obj_size,
            storage_size_bytes=1_000_000, total_index_size_bytes=40_000,
        )

        validate_db.main(["--json", "--large-doc-kb", "200"])

        messages = json.loads(capsys.readouterr().out)["warning_messages"]
        assert ("standings has large average document size: 205.08 KB" in messages) is warned
