import asyncio

import pytest

from mail_wizard.app import MailWizard, build_mailer
from mail_wizard.config import Settings
from mail_wizard.errors import ChatTransportError, ConfigurationError
from mail_wizard.telegram import ChatTransport


class DummyTransport(ChatTransport):
    def __init__(self, reject_token: bool = False):
        self.polls = 0
        self.reject_token = reject_token

    async def get_me(self):
        if self.reject_token:
            raise ChatTransportError("getMe failed: Unauthorized")
        return {"id": 1, "username": "mail_wizard_bot"}

    async def get_events(self, timeout):
        self.polls += 1
        await asyncio.sleep(0.01)
        return []

    async def send_message(self, chat_id, text, parse_mode=None):
        return None


def _settings(tmp_path, **overrides):
    values = dict(
        telegram_token="123:abc",
        smtp_user="me@example.com",
        smtp_password="secret",
        db_path=str(tmp_path / "bot.db"),
        attachments_dir=str(tmp_path / "files"),
        poll_interval=3600,
    )
    values.update(overrides)
    return Settings(**values)


def test_build_mailer_uses_settings(tmp_path):
    mailer = build_mailer(_settings(tmp_path, smtp_port=465, sender="bot@example.com"))
    assert mailer.use_tls is True
    assert mailer.sender == "bot@example.com"
    assert mailer.user == "me@example.com"


@pytest.mark.asyncio
async def test_start_and_stop(tmp_path):
    transport = DummyTransport()
    service = MailWizard(_settings(tmp_path), transport=transport)

    await service.start()
    for _ in range(50):
        if transport.polls:
            break
        await asyncio.sleep(0.01)
    await service.stop()

    assert transport.polls >= 1
    assert (tmp_path / "files").is_dir()
    assert (tmp_path / "bot.db").exists()
    assert await service.persistence.count_pending() == 0
    assert service.dispatcher.worker is service.worker


@pytest.mark.asyncio
async def test_rejected_token_stops_startup(tmp_path):
    transport = DummyTransport(reject_token=True)
    service = MailWizard(_settings(tmp_path), transport=transport)

    with pytest.raises(ConfigurationError, match="Unauthorized"):
        await service.start()

    assert transport.polls == 0
    assert not (tmp_path / "bot.db").exists()
