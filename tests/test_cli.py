"""Tests for CLI commands and helper functions."""

import json
import os

import pytest
from click.testing import CliRunner

from mail_wizard.cli import get_persistence, main, run_async
from mail_wizard.models import ScheduledEmail
from mail_wizard.persistence import Persistence


class DummyMailer:
    def __init__(self):
        self.calls = []

    async def send_best_effort(self, recipients, subject, body, attachments=()):
        self.calls.append(list(recipients))
        return {rcpt: None for rcpt in recipients}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("MW_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "bot.db")

    async def _seed():
        p = Persistence(path)
        await p.init_db()
        await p.insert_scheduled(ScheduledEmail(chat_id=1, recipients="a@x.com", subject="Due", send_at="2020-01-01 10:00"))
        await p.insert_scheduled(ScheduledEmail(chat_id=2, recipients="b@x.com", subject="Later", send_at="2099-01-01 10:00"))

    run_async(_seed())
    return path


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_get_persistence(self, tmp_path):
        """Test get_persistence creates a Persistence instance."""
        persistence = get_persistence(str(tmp_path / "test.db"))
        assert isinstance(persistence, Persistence)

    def test_run_async(self):
        """Test run_async executes coroutine synchronously."""
        async def async_func():
            return 42

        assert run_async(async_func()) == 42


class TestScheduledCommands:
    """Tests for the ``scheduled`` command group."""

    def test_group_shows_help(self):
        result = CliRunner().invoke(main, ["scheduled"])
        assert result.exit_code == 0
        assert "list" in result.output
        assert "tick" in result.output

    def test_list_json(self, db_path):
        result = CliRunner().invoke(main, ["scheduled", "--db", db_path, "list", "--json"])
        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert [row["subject"] for row in rows] == ["Later", "Due"]
        assert rows[0]["status"] == "pending"

    def test_list_filters_by_chat(self, db_path):
        result = CliRunner().invoke(main, ["scheduled", "--db", db_path, "list", "--chat-id", "2", "--json"])
        rows = json.loads(result.output)
        assert [row["chat_id"] for row in rows] == [2]

    def test_list_table_and_empty(self, db_path, tmp_path):
        result = CliRunner().invoke(main, ["scheduled", "--db", db_path, "list"])
        assert result.exit_code == 0
        assert "a@x.com" in result.output

        empty = CliRunner().invoke(main, ["scheduled", "--db", str(tmp_path / "empty.db"), "list"])
        assert "No scheduled emails found" in empty.output

    def test_pending_json(self, db_path):
        result = CliRunner().invoke(main, ["scheduled", "--db", db_path, "pending", "--json"])
        data = json.loads(result.output)
        assert data["pending"] == 2

    def test_tick_requires_configuration(self, db_path, tmp_path, monkeypatch):
        monkeypatch.setattr("mail_wizard.cli.configure_logging", lambda level=None: None)
        result = CliRunner().invoke(
            main, ["--config", str(tmp_path / "none.ini"), "scheduled", "--db", db_path, "tick"]
        )
        assert result.exit_code == 1

    def test_tick_delivers_due_rows(self, db_path, tmp_path, monkeypatch):
        mailer = DummyMailer()
        monkeypatch.setattr("mail_wizard.cli.build_mailer", lambda settings: mailer)
        monkeypatch.setattr("mail_wizard.cli.configure_logging", lambda level=None: None)
        monkeypatch.setenv("MW_TELEGRAM_TOKEN", "123:abc")
        monkeypatch.setenv("MW_SMTP_USER", "me@example.com")
        monkeypatch.setenv("MW_SMTP_PASSWORD", "secret")
        monkeypatch.setenv("MW_TIMEZONE", "UTC")

        result = CliRunner().invoke(
            main, ["--config", str(tmp_path / "none.ini"), "scheduled", "--db", db_path, "tick"]
        )
        assert result.exit_code == 0
        assert "Marked 1 email(s) as sent: 1" in result.output
        assert mailer.calls == [["a@x.com"]]

        pending = CliRunner().invoke(main, ["scheduled", "--db", db_path, "pending", "--json"])
        assert json.loads(pending.output)["pending"] == 1


class TestServeCommand:
    """Tests for the ``serve`` command."""

    def test_serve_reports_rejected_token(self, tmp_path, monkeypatch):
        from mail_wizard.errors import ConfigurationError

        class RejectingService:
            def __init__(self, settings):
                self.settings = settings

            async def run(self):
                raise ConfigurationError("Chat transport rejected the bot token: Unauthorized")

        monkeypatch.setattr("mail_wizard.cli.MailWizard", RejectingService)
        monkeypatch.setattr("mail_wizard.cli.configure_logging", lambda level=None: None)
        monkeypatch.setenv("MW_TELEGRAM_TOKEN", "123:abc")
        monkeypatch.setenv("MW_SMTP_USER", "me@example.com")
        monkeypatch.setenv("MW_SMTP_PASSWORD", "secret")

        result = CliRunner().invoke(main, ["--config", str(tmp_path / "none.ini"), "serve"])
        assert result.exit_code == 1
        assert "rejected the bot token" in result.output
