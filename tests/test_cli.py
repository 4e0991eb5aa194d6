"""Tests for the CLI module."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from scribedesk.cli import main_cli
from scribedesk.config import Settings
from scribedesk.marketplace import Marketplace
from scribedesk.store import SQLiteStore


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "cli.db"
    # --db-path exports the variable for server workers; keep it scoped to the test
    monkeypatch.setenv("SCRIBEDESK_DB_PATH", str(path))
    return path


def _invoke(db_path, *args):
    runner = CliRunner()
    return runner.invoke(main_cli, ["--db-path", str(db_path), *args], obj={})


class TestCLI:
    def test_cli_help(self):
        runner = CliRunner()
        result = runner.invoke(main_cli, ["--help"])
        assert result.exit_code == 0
        for command in ("serve", "init-db", "payouts", "mark-paid", "reconcile-leases"):
            assert command in result.output

    def test_cli_short_help(self):
        result = CliRunner().invoke(main_cli, ["-h"])
        assert result.exit_code == 0
        assert "--db-path" in result.output

    def test_init_db_creates_file(self, db_path):
        result = _invoke(db_path, "init-db")
        assert result.exit_code == 0, result.output
        assert "Schema ready" in result.output
        assert db_path.exists()

    def test_payouts_when_empty(self, db_path):
        result = _invoke(db_path, "payouts")
        assert result.exit_code == 0
        assert "No upcoming payouts." in result.output

    def test_payouts_lists_pending_entries(self, db_path):
        market = Marketplace(SQLiteStore(str(db_path)), Settings(db_path=str(db_path)))
        client = market.register_participant("client", "Cleo", "cleo@example.com")
        tid = market.register_participant("transcriber", "Tom", "tom@example.com", vetting_status="active")
        market.set_online(tid.participant_id, True)
        job = market.submit_direct_upload(client.participant_id, "Podcast", price="50.00", deadline_hours=24)
        market.settle_payment(job.job_id, client.participant_id, "50.00")
        market.claim(job.job_id, tid.participant_id)
        market.complete_job(job.job_id, tid.participant_id)

        result = _invoke(db_path, "payouts", "--transcriber", str(tid.participant_id))
        assert result.exit_code == 0, result.output
        assert "Total upcoming: 40.00" in result.output

    def test_mark_paid_unknown_entry(self, db_path):
        result = _invoke(db_path, "mark-paid", "999")
        assert result.exit_code != 0
        assert "Error" in result.output

    def test_reconcile_leases_on_clean_store(self, db_path):
        result = _invoke(db_path, "reconcile-leases")
        assert result.exit_code == 0, result.output
        assert "Released 0 stale lease(s); advanced 0 ledger entries" in result.output

    @patch("scribedesk.cli.uvicorn.run")
    def test_serve_uses_app_factory(self, mock_run, db_path):
        result = _invoke(db_path, "serve", "--port", "9123")
        assert result.exit_code == 0, result.output
        args, kwargs = mock_run.call_args
        assert args == ("scribedesk.server:app_factory",)
        assert kwargs["factory"] is True
        assert kwargs["port"] == 9123
