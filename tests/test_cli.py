"""
Tests for the CLI interface.
"""
import os
import tempfile

import pytest
import yaml
from typer.testing import CliRunner

from tale_forge_credits.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL

runner = CliRunner()


@pytest.fixture
def db():
    """Path to an initialized CLI database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "cli.db")
        result = runner.invoke(app, ["--db", path, "init"])
        assert result.exit_code == EXIT_CODE_PASS
        yield path


def _run(db, *args):
    return runner.invoke(app, ["--db", db, *args])


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init(self, db):
        result = _run(db, "init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output

    def test_open_account_and_balance(self, db):
        result = _run(db, "open-account", "user-1", "--tier", "starter")
        assert result.exit_code == EXIT_CODE_PASS
        assert "balance: 100" in result.output

        result = _run(db, "balance", "user-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Tier: starter" in result.output
        assert "Balance: 100 credits" in result.output

    def test_open_account_invalid_tier(self, db):
        result = _run(db, "open-account", "user-1", "--tier", "gold")
        assert result.exit_code != EXIT_CODE_PASS

    def test_balance_unknown_user(self, db):
        result = _run(db, "balance", "ghost")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Account not found: ghost" in result.output

    def test_uninitialized_database_hint(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            result = runner.invoke(app, ["--db", os.path.join(temp_dir, "new.db"), "balance", "user-1"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "init" in result.output

    def test_grant_is_idempotent(self, db):
        _run(db, "open-account", "user-1")
        first = _run(db, "grant", "user-1", "50", "--reference", "evt-1")
        second = _run(db, "grant", "user-1", "50", "--reference", "evt-1")

        assert first.exit_code == EXIT_CODE_PASS
        assert "Balance: 150" in first.output
        assert "Balance: 150 (already applied)" in second.output

    def test_refund_and_adjust(self, db):
        _run(db, "open-account", "user-1")
        assert "Balance: 103" in _run(db, "refund", "user-1", "3", "--reference", "seg-1").output
        result = _run(db, "adjust", "user-1", "--amount", "-13", "--reference", "ticket-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Balance: 90" in result.output

    def test_adjust_below_zero_fails(self, db):
        _run(db, "open-account", "user-1")
        result = _run(db, "adjust", "user-1", "--amount", "-500", "--reference", "ticket-1")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_transactions_table(self, db):
        _run(db, "open-account", "user-1")
        _run(db, "grant", "user-1", "50", "--reference", "evt-1")
        result = _run(db, "transactions", "user-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "purchase" in result.output
        assert "+50" in result.output

    def test_transactions_rejects_zero_limit(self, db):
        _run(db, "open-account", "user-1")
        result = _run(db, "transactions", "user-1", "--limit", "0")
        assert result.exit_code not in (EXIT_CODE_PASS, EXIT_CODE_FAIL)
        assert isinstance(result.exception, SystemExit)
        assert "Traceback" not in result.output

    def test_transactions_empty(self, db):
        _run(db, "open-account", "user-1")
        result = _run(db, "transactions", "user-1")
        assert "No transactions" in result.output

    def test_quote(self, db):
        result = _run(db, "quote", "video", "--duration", "4")
        assert result.exit_code == EXIT_CODE_PASS
        assert "video: 8 credits" in result.output

        result = _run(db, "quote", "audio", "--text", "one two three")
        assert "audio: 1 credits" in result.output

    def test_quote_missing_inputs(self, db):
        result = _run(db, "quote", "audio")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Text required" in result.output

    def test_check_allowed_and_denied(self, db):
        _run(db, "open-account", "user-1")
        allowed = _run(db, "check", "user-1", "image")
        assert allowed.exit_code == EXIT_CODE_PASS
        assert "ALLOWED" in allowed.output

        denied = _run(db, "check", "user-1", "audio", "--text", "once upon a time")
        assert denied.exit_code == EXIT_CODE_FAIL
        assert "subscription_required" in denied.output

    def test_set_tier(self, db):
        _run(db, "open-account", "user-1")
        result = _run(db, "set-tier", "user-1", "premium")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Tier: premium" in _run(db, "balance", "user-1").output

    def test_reconcile(self, db):
        _run(db, "open-account", "user-1")
        _run(db, "grant", "user-1", "50", "--reference", "evt-1")
        result = _run(db, "reconcile")
        assert result.exit_code == EXIT_CODE_PASS
        assert "All accounts balanced" in result.output

    def test_config_file_applies(self, db):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = os.path.join(temp_dir, "credits.yaml")
            with open(config_path, 'w', encoding='utf-8') as f:
                yaml.dump({"welcome_bonus": 7, "pricing": {"fixed": {"image": 2}}}, f)

            opened = runner.invoke(app, ["--db", db, "--config", config_path, "open-account", "user-1"])
            quoted = runner.invoke(app, ["--db", db, "--config", config_path, "quote", "image"])

        assert "balance: 7" in opened.output
        assert "image: 2 credits" in quoted.output
