"""Tests for the attendance-etl command line."""

import dataclasses
import json

import pytest
from click.testing import CliRunner

from attendance_etl.cli import App, cli
from attendance_etl.core.state import ItemOutcome, ProgressState, StateStore


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def app(settings) -> App:
    return App(settings)


class TestCli:
    def test_help_lists_commands(self, runner, app):
        result = runner.invoke(cli, ["--help"], obj=app)

        assert result.exit_code == 0
        for name in ("discover", "resync", "merge", "disentangle", "fix-names", "rebuild-members",
                     "sweep", "recalc-event", "restore-backup", "check-in", "auto-check-in"):
            assert name in result.output

    def test_status_without_state(self, runner, app):
        result = runner.invoke(cli, ["resync", "--status"], obj=app)

        assert result.exit_code == 0
        assert "No saved progress for resync" in result.output

    def test_status_and_reset(self, runner, app, settings):
        st = ProgressState(job="disentangle", total_items=2)
        st.record("ev1", ItemOutcome.SUCCEEDED)
        StateStore(settings.state_dir, "disentangle").save(st)

        shown = runner.invoke(cli, ["disentangle", "--status"], obj=app)
        cleared = runner.invoke(cli, ["disentangle", "--reset", "--status"], obj=app)

        assert shown.exit_code == 0
        assert json.loads(shown.output)["processed"] == {"ev1": "succeeded"}
        assert "Cleared saved progress for disentangle" in cleared.output
        assert not StateStore(settings.state_dir, "disentangle").path.exists()

    def test_missing_configuration_exits_1(self, runner, settings):
        app = App(dataclasses.replace(settings, woocommerce_url=""))

        result = runner.invoke(cli, ["resync"], obj=app)

        assert result.exit_code == 1
        assert "WOOCOMMERCE_URL" in result.output
        assert "run the same command again to resume" in result.output

    def test_unknown_attendee(self, runner, app):
        result = runner.invoke(cli, ["check-in", "nobody"], obj=app)

        assert result.exit_code == 1
        assert "attendee nobody does not exist" in result.output

    def test_sync_stats_on_empty_database(self, runner, app):
        result = runner.invoke(cli, ["sync-stats"], obj=app)

        assert result.exit_code == 0
        assert json.loads(result.output)["total"] == 0

    def test_rebuild_members_on_empty_database(self, runner, app):
        result = runner.invoke(cli, ["rebuild-members"], obj=app)

        assert result.exit_code == 0
        assert json.loads(result.output) == {"members": 0, "active": 0, "manual_kept": 0}
