"""
Integrity Validator Tests

Tests verify:
1. A healthy database passes with zero failures and zero warnings
2. A missing collection fails its test and every other check still runs
3. Orphan checks count exactly the dangling references
4. Operational findings are warnings and never change the exit code
5. A check that errors is isolated from the rest of the run
"""

from datetime import timedelta

import pytest
from pymongo.errors import OperationFailure

from metadb import config
from metadb.db.indexes import INDEX_CATALOG, get_catalog
from metadb.db.reconciler import index_listings, reconcile_all
from metadb.db.store import CollectionStats
from metadb.db.validator import (
    FORMAT_CONSISTENCY_TEST,
    CheckFamily,
    CheckSeverity,
    IntegrityValidator,
    ValidationReport,
    ValidatorSettings,
)

ORPHANED_STANDINGS = "No orphaned standings (standings without matching events)"
ORPHANED_DECKLISTS = "No orphaned decklists (decklists without matching events)"
STANDING_CHAMPIONS = "No invalid champion references in standings"


@pytest.fixture
def indexed_store(full_store):
    reconcile_all(full_store, get_catalog())
    return full_store


@pytest.fixture
def validator(indexed_store, now):
    return IntegrityValidator(indexed_store, settings=ValidatorSettings(), now=now)


def severity(report, name):
    result = report.result_for(name)
    assert result is not None, name
    return result.severity


class TestHealthyDatabase:

    def test_everything_passes(self, validator):
        report = validator.validate()

        assert report.failed == 0, report.errors
        assert report.warnings == 0, report.warning_messages
        assert report.exit_code == config.EXIT_OK
        catalog_size = sum(len(specs) for specs in INDEX_CATALOG.values())
        # collections + indexes + required fields + references + format consistency
        assert report.passed == 6 + catalog_size + 6 + 4 + 1

    def test_indexes_built_by_the_legacy_script_are_accepted(self, db, full_store, now):
        deployed = [
            ("card_performance_stats", [("overallStats.totalInclusions", -1)], "idx_card_stats_totalInclusions"),
            ("card_performance_stats", [("overallStats.winRate", -1)], "idx_card_stats_winRate"),
            ("card_performance_stats", [("byChampion.championSlug", 1)], "idx_card_stats_byChampion_slug"),
            ("card_performance_stats", [("overallStats.topCutWinRate", -1)], "idx_card_stats_topCutWinRate"),
            ("crawler_state", [("status", 1), ("config.enabled", 1)], "idx_crawler_state_status_enabled"),
        ]
        for collection, keys, name in deployed:
            db[collection].create_index(keys, name=name)

        reports = reconcile_all(full_store, get_catalog())

        for collection, _, name in deployed:
            assert name in reports[collection].present
            assert name not in reports[collection].created
            assert reports[collection].aliases == {}
        assert len(db.card_performance_stats.index_information()) == 1 + len(INDEX_CATALOG["card_performance_stats"])

        report = IntegrityValidator(full_store, now=now).validate()

        assert report.failed == 0, report.errors

    def test_counts_are_collected(self, validator):
        report = validator.validate()

        assert report.collection_counts["standings"] == 5
        assert report.collection_counts["champions"] == 3
        assert report.collection_counts["crawler_state"] == 2
        assert report.average_sizes["events"] == 512.0
        assert report.database_stats["dataSize"] == 4096

    def test_validate_builds_a_fresh_report(self, validator):
        first = validator.validate()
        second = validator.validate()

        assert first is not second
        assert first.passed == second.passed

    def test_reconciler_listings_are_used(self, indexed_store, now):
        reports = reconcile_all(indexed_store, get_catalog())
        listings = index_listings(reports)
        listings["events"] = [name for name in listings["events"] if name != "idx_events_startAt"]

        report = IntegrityValidator(indexed_store, index_listings=listings, now=now).validate()

        assert severity(report, "events.idx_events_startAt") is CheckSeverity.FAILED
        assert severity(report, "events.idx_events_eventId_unique") is CheckSeverity.PASSED


class TestStructural:

    def test_missing_collection_fails_but_run_continues(self, db, indexed_store, now):
        db.drop_collection("champions")

        report = IntegrityValidator(indexed_store, now=now).validate()

        assert report.exit_code == config.EXIT_FAILURE
        failed_tests = [error.test for error in report.errors]
        assert "Collection 'champions' exists" in failed_tests
        assert "champions.idx_champions_slug_unique" in failed_tests
        assert severity(report, STANDING_CHAMPIONS) is CheckSeverity.SKIPPED
        assert severity(report, ORPHANED_STANDINGS) is CheckSeverity.PASSED
        assert severity(report, "Collection 'events' exists") is CheckSeverity.PASSED
        assert "champions" not in report.collection_counts

    def test_missing_index_fails(self, db, indexed_store, now):
        db.decklists.drop_index("idx_decklists_deckHash")

        report = IntegrityValidator(indexed_store, now=now).validate()

        assert [e.test for e in report.errors] == ["decklists.idx_decklists_deckHash"]
        assert report.errors[0].message == "Index 'idx_decklists_deckHash' not found on decklists collection"

    def test_missing_required_field(self, db, indexed_store, now):
        db.events.update_one({"eventId": "E2"}, {"$unset": {"location.country": ""}})

        report = IntegrityValidator(indexed_store, now=now).validate()

        assert severity(report, "All events documents have required fields") is CheckSeverity.FAILED
        assert "location.country" in report.errors[0].message


class TestReferential:

    def test_single_orphan_is_counted_exactly(self, db, indexed_store, now):
        db.standings.insert_one({
            "eventId": "E9", "playerId": "P9", "placement": 4, "championSlug": "lorraine", "format": "Standard",
        })

        report = IntegrityValidator(indexed_store, now=now).validate()

        assert severity(report, ORPHANED_STANDINGS) is CheckSeverity.FAILED
        assert report.result_for(ORPHANED_STANDINGS).message == "Found 1 orphaned standings"
        assert severity(report, ORPHANED_DECKLISTS) is CheckSeverity.PASSED
        assert report.failed == 1

        db.standings.delete_one({"eventId": "E9"})
        assert IntegrityValidator(indexed_store, now=now).validate().failed == 0

    def test_unknown_champion(self, db, indexed_store, now):
        db.decklists.insert_one({
            "eventId": "E2", "playerId": "P1", "championSlug": "nobody", "deckHash": "h3", "mainDeck": [],
        })

        report = IntegrityValidator(indexed_store, now=now).validate()

        message = report.result_for("No invalid champion references in decklists").message
        assert message == "Found 1 decklists with invalid champion references"

    def test_format_drift_is_detected(self, db, indexed_store, now):
        db.events.update_one({"eventId": "E3"}, {"$set": {"format": "Sealed"}})

        report = IntegrityValidator(indexed_store, now=now).validate()

        assert severity(report, FORMAT_CONSISTENCY_TEST) is CheckSeverity.FAILED
        assert report.result_for(FORMAT_CONSISTENCY_TEST).message == (
            "Found 2 standings whose format differs from their event"
        )

    def test_unbackfilled_standings_are_not_drift(self, db, indexed_store, now):
        db.standings.update_many({}, {"$unset": {"format": ""}})

        report = IntegrityValidator(indexed_store, now=now).validate()

        assert severity(report, FORMAT_CONSISTENCY_TEST) is CheckSeverity.PASSED


class TestOperational:

    def test_warnings_do_not_fail(self, validator, server_stats):
        server_stats["index_usage"].return_value = {"_id_": 0, "idx_events_startAt": 0, "idx_events_eventId_unique": 9}
        server_stats["collection_stats"].return_value = CollectionStats(
            count=10, size_bytes=2_500_000, avg_obj_size=250_000.0,
            storage_size_bytes=1_000_000, total_index_size_bytes=40_000,
        )

        report = validator.validate()

        assert report.failed == 0
        assert report.exit_code == config.EXIT_OK
        assert report.warnings > 0
        assert "Index 'idx_events_startAt' on events has never been used" in report.warning_messages
        assert not any("'_id_'" in message for message in report.warning_messages)
        assert "standings has large average document size: 244.14 KB" in report.warning_messages

    def test_stale_card_stats(self, indexed_store, now):
        later = now + timedelta(days=8)

        report = IntegrityValidator(indexed_store, now=later).validate()

        assert "2 card stats not recalculated in the last 168 hours" in report.warning_messages
        assert report.exit_code == config.EXIT_OK

    def test_enabled_crawlers_only(self, db, indexed_store, now):
        db.crawler_state.insert_one({
            "crawlerName": "fresh-source", "sourceType": "omnidex", "status": "idle", "config": {"enabled": True},
        })

        report = IntegrityValidator(indexed_store, now=now + timedelta(hours=50)).validate()

        assert "Crawler 'fresh-source' is enabled but has never run" in report.warning_messages
        assert "Crawler 'omnidex-events' has not run in 52.0 hours" in report.warning_messages
        assert not any("legacy-import" in message for message in report.warning_messages)

    def test_crawler_run_recorded_as_iso_string(self, db, indexed_store, now):
        db.crawler_state.update_one(
            {"crawlerName": "omnidex-events"}, {"$set": {"lastRunAt": "2024-02-27T00:00:00Z"}},
        )

        report = IntegrityValidator(indexed_store, now=now).validate()

        assert "Crawler 'omnidex-events' has not run in 84.0 hours" in report.warning_messages

    def test_malformed_timestamp_becomes_warning(self, db, indexed_store, now):
        db.card_performance_stats.update_one({"cardId": "card-a"}, {"$set": {"lastCalculated": {"ts": 1}}})

        report = IntegrityValidator(indexed_store, now=now).validate()

        assert report.failed == 0
        assert any(message.startswith("Card stats staleness could not run") for message in report.warning_messages)

    def test_operational_error_becomes_warning(self, validator, server_stats):
        server_stats["database_stats"].side_effect = OperationFailure("not authorized on admin")

        report = validator.validate()

        assert report.failed == 0
        assert any(message.startswith("Database statistics could not run") for message in report.warning_messages)


def test_store_error_is_isolated(indexed_store, now):
    original = indexed_store.orphan_count

    def flaky(source, source_field, target, target_field, filter=None):
        if source == "decklists":
            raise OperationFailure("$lookup exceeded memory limit")
        return original(source, source_field, target, target_field, filter)

    indexed_store.orphan_count = flaky
    report = IntegrityValidator(indexed_store, now=now).validate()

    assert severity(report, ORPHANED_DECKLISTS) is CheckSeverity.FAILED
    assert report.result_for(ORPHANED_DECKLISTS).message.startswith("Check could not run")
    assert severity(report, ORPHANED_STANDINGS) is CheckSeverity.PASSED
    assert severity(report, FORMAT_CONSISTENCY_TEST) is CheckSeverity.PASSED
    assert report.collection_counts


class TestReport:

    def test_summary_output(self, capsys):
        report = ValidationReport()
        report.add_test("Collection 'events' exists", CheckFamily.STRUCTURAL, True)
        report.add_test("Collection 'champions' exists", CheckFamily.STRUCTURAL, False, "Collection 'champions' not found")
        report.add_warning(CheckFamily.OPERATIONAL, "Index 'idx_events_startAt' on events has never been used")

        assert report.print_summary() is False
        out = capsys.readouterr().out
        assert "Tests Passed: 1" in out
        assert "Tests Failed: 1" in out
        assert "1. Collection 'champions' exists" in out
        assert "❌ Some validation tests failed" in out

    def test_json_shape(self):
        report = ValidationReport()
        report.add_test("Collection 'events' exists", CheckFamily.STRUCTURAL, True)
        report.collection_counts["events"] = 3

        data = report.to_dict()
        assert data["passed"] == 1
        assert data["failed"] == 0
        assert data["collection_counts"] == {"events": 3}
        assert '"passed": 1' in report.to_json()
