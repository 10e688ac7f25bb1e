"""Tests for cli/cli/app.py -- the TravelPoint operator CLI.

Uses typer.testing.CliRunner against a real SQLite file so that each
command exercises the same repositories and reconcile code the API uses.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from cli.app import app

runner = CliRunner()


def _invoke(url: str, *args: str, json_mode: bool = False):
    argv = ["--database-url", url]
    if json_mode:
        argv.append("--json")
    return runner.invoke(app, [*argv, *args])


# ---------------------------------------------------------------------------
# init-db / create-agency
# ---------------------------------------------------------------------------


class TestInitDb:
    def test_creates_tables(self, database_url: str) -> None:
        result = _invoke(database_url, "init-db")
        assert result.exit_code == 0, result.output
        assert "Database tables created/verified." in result.output

        verify = _invoke(database_url, "verify-schema")
        assert verify.exit_code == 0, verify.output

    def test_is_repeatable(self, database_url: str) -> None:
        assert _invoke(database_url, "init-db").exit_code == 0
        assert _invoke(database_url, "init-db").exit_code == 0


class TestCreateAgency:
    def test_json_output(self, database_url: str) -> None:
        _invoke(database_url, "init-db")
        result = _invoke(
            database_url,
            "create-agency",
            "Blue Water Travel",
            "--id",
            "agency-bw",
            "--contact-email",
            "ops@bluewater.test",
            json_mode=True,
        )
        assert result.exit_code == 0, result.output

        agency = json.loads(result.stdout)
        assert agency["id"] == "agency-bw"
        assert agency["name"] == "Blue Water Travel"
        assert agency["billing_status"] == "none"
        assert agency["plan_override"] is None
        assert agency["effective_plan"] == "trial"

    def test_duplicate_id_fails(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "create-agency", "Copycat", "--id", "agency-new")
        assert result.exit_code == 1
        assert "Failed to create agency" in result.output

    def test_human_output(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "create-agency", "Sunset Tours", "--id", "agency-sun")
        assert result.exit_code == 0, result.output
        assert "Sunset Tours (agency-sun)" in result.output
        assert "trial" in result.output


# ---------------------------------------------------------------------------
# set-plan
# ---------------------------------------------------------------------------


class TestSetPlan:
    def test_sets_override(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "set-plan", "agency-new", "pro", json_mode=True)
        assert result.exit_code == 0, result.output

        agency = json.loads(result.stdout)
        assert agency["plan_override"] == "pro"
        assert agency["effective_plan"] == "pro"

    def test_plan_is_case_insensitive(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "set-plan", "agency-new", "SOLO_GROUPS", json_mode=True)
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["plan_override"] == "solo_groups"

    def test_none_clears_override(self, seeded_url: str) -> None:
        _invoke(seeded_url, "set-plan", "agency-new", "enterprise")
        result = _invoke(seeded_url, "set-plan", "agency-new", "none", json_mode=True)
        assert result.exit_code == 0, result.output

        agency = json.loads(result.stdout)
        assert agency["plan_override"] is None
        assert agency["effective_plan"] == "trial"

    def test_unknown_plan(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "set-plan", "agency-new", "gold")
        assert result.exit_code == 1
        assert "Unknown plan 'gold'" in result.output

    def test_missing_agency(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "set-plan", "agency-ghost", "pro")
        assert result.exit_code == 1
        assert "Agency 'agency-ghost' not found" in result.output


# ---------------------------------------------------------------------------
# reconcile-schema
# ---------------------------------------------------------------------------


class TestReconcileSchema:
    def test_dry_run_counts_without_writing(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups", "--dry-run", json_mode=True)
        assert result.exit_code == 0, result.output

        report = json.loads(result.stdout)
        assert report["collection"] == "groups"
        assert report["field"] == "agency_id"
        assert report["scanned_missing"] == 3
        assert report["updated"] == 0
        assert report["dry_run"] is True

        # Nothing was written, so verification still fails.
        assert _invoke(seeded_url, "verify-schema").exit_code == 1

    def test_fills_oldest_agency_in_batches(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups", "--batch-size", "2", json_mode=True)
        assert result.exit_code == 0, result.output

        report = json.loads(result.stdout)
        assert report["value"] == "agency-legacy"
        assert report["scanned_missing"] == 3
        assert report["updated"] == 3
        assert report["batches_committed"] == 2
        assert report["error"] is None

    def test_second_run_is_a_no_op(self, seeded_url: str) -> None:
        assert _invoke(seeded_url, "reconcile-schema", "-c", "groups").exit_code == 0

        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups", json_mode=True)
        assert result.exit_code == 0, result.output

        report = json.loads(result.stdout)
        assert report["scanned_missing"] == 0
        assert report["updated"] == 0
        assert report["batches_committed"] == 0

    def test_explicit_value(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups", "--value", "agency-new", json_mode=True)
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["value"] == "agency-new"

    def test_legacy_collection_alias(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "families", json_mode=True)
        assert result.exit_code == 0, result.output

        report = json.loads(result.stdout)
        assert report["collection"] == "bookings"
        assert report["scanned_missing"] == 0

    def test_human_output(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups")
        assert result.exit_code == 0, result.output
        assert "Reconcile Schema" in result.output
        assert "REPAIRED" in result.output

    def test_blank_value_rejected(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups", "--value", "", "--batch-size", "2")
        assert result.exit_code == 1
        assert "Refusing to write a blank value" in result.output

    def test_unknown_agency_value_rejected(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups", "--value", "agency-typo")
        assert result.exit_code == 1
        assert "Agency 'agency-typo' does not exist" in result.output

        # Nothing was assigned to the unknown tenant.
        assert _invoke(seeded_url, "verify-schema").exit_code == 1

    def test_unknown_collection(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "widgets")
        assert result.exit_code == 1
        assert "Cannot reconcile" in result.output
        assert "Unknown collection 'widgets'" in result.output

    def test_non_nullable_field_rejected(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups", "-f", "name", "--value", "x")
        assert result.exit_code == 1
        assert "can never be missing" in result.output

    @pytest.mark.parametrize("batch_size", ["0", "501"])
    def test_batch_size_out_of_range(self, seeded_url: str, batch_size: str) -> None:
        result = _invoke(seeded_url, "reconcile-schema", "-c", "groups", "--batch-size", batch_size)
        assert result.exit_code == 2


# ---------------------------------------------------------------------------
# verify-schema
# ---------------------------------------------------------------------------


class TestVerifySchema:
    def test_reports_missing_rows(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "verify-schema")
        assert result.exit_code == 1
        assert "3 row(s) need reconciling." in result.output

    def test_json_lists_every_collection(self, seeded_url: str) -> None:
        result = _invoke(seeded_url, "verify-schema", json_mode=True)
        assert result.exit_code == 1

        reports = {r["collection"]: r for r in json.loads(result.stdout)}
        assert set(reports) == {"groups", "bookings", "payments", "payment_requests", "users"}
        assert reports["groups"]["scanned_missing"] == 3
        assert all(r["dry_run"] for r in reports.values())

    def test_passes_after_reconcile(self, seeded_url: str) -> None:
        _invoke(seeded_url, "reconcile-schema", "-c", "groups")

        result = _invoke(seeded_url, "verify-schema")
        assert result.exit_code == 0, result.output
        assert "All collections are consistent." in result.output
