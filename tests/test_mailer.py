from email import message_from_bytes, policy
from typing import Any, List

import aiosmtplib
import pytest

from mail_wizard.errors import DeliveryError
from mail_wizard.mailer import Mailer, parse_recipients
from mail_wizard.models import AttachmentRef


class DummySMTP:
    def __init__(self):
        self.sent: List[Any] = []
        self.refuse: set = set()

    async def sendmail(self, sender, recipients, raw):
        if recipients[0] in self.refuse:
            raise aiosmtplib.SMTPRecipientRefused(550, "no such user", recipients[0])
        self.sent.append((sender, list(recipients), raw))


class DummyPool:
    def __init__(self):
        self.smtp = DummySMTP()
        self.requests: List[Any] = []
        self.released = 0

    async def get_connection(self, host, port, user, password, *, use_tls):
        self.requests.append((host, port, user, password, use_tls))
        return self.smtp

    async def release(self):
        self.released += 1


def _mailer(pool, **kwargs):
    params = dict(sender="me@example.com", host="smtp.example.com", port=587, user="me", password="pw", pool=pool)
    params.update(kwargs)
    return Mailer(**params)


def test_parse_recipients_trims_and_drops_empty():
    assert parse_recipients(" a@x.com, b@x.com ,,") == ["a@x.com", "b@x.com"]
    assert parse_recipients("") == []
    assert parse_recipients(None) == []


def test_use_tls_defaults_to_implicit_port():
    assert _mailer(DummyPool(), port=465).use_tls is True
    assert _mailer(DummyPool(), port=587).use_tls is False
    assert _mailer(DummyPool(), port=587, use_tls=True).use_tls is True


@pytest.mark.asyncio
async def test_deliver_sends_one_envelope_per_recipient():
    pool = DummyPool()
    await _mailer(pool).deliver("you@example.com", "Hi", "Hello")

    sender, rcpts, raw = pool.smtp.sent[0]
    assert sender == "me@example.com"
    assert rcpts == ["you@example.com"]
    msg = message_from_bytes(raw, policy=policy.default)
    assert msg["To"] == "you@example.com"
    assert msg["Subject"] == "Hi"
    assert pool.requests == [("smtp.example.com", 587, "me", "pw", False)]


@pytest.mark.asyncio
async def test_abort_on_failure_stops_at_first_failing_recipient():
    pool = DummyPool()
    pool.smtp.refuse = {"a@x.com"}

    with pytest.raises(DeliveryError) as excinfo:
        await _mailer(pool).send_abort_on_failure(["a@x.com", "b@x.com"], "S", "B")

    assert excinfo.value.recipient == "a@x.com"
    assert "a@x.com" in str(excinfo.value)
    assert pool.smtp.sent == []
    assert len(pool.requests) == 1
    assert pool.released >= 1


@pytest.mark.asyncio
async def test_abort_on_failure_keeps_earlier_deliveries():
    pool = DummyPool()
    pool.smtp.refuse = {"b@x.com"}

    with pytest.raises(DeliveryError):
        await _mailer(pool).send_abort_on_failure(["a@x.com", "b@x.com", "c@x.com"], "S", "B")

    assert [rcpts for _, rcpts, _ in pool.smtp.sent] == [["a@x.com"]]


@pytest.mark.asyncio
async def test_abort_on_failure_returns_delivered_recipients():
    pool = DummyPool()
    delivered = await _mailer(pool).send_abort_on_failure(["a@x.com", "b@x.com"], "S", "B")
    assert delivered == ["a@x.com", "b@x.com"]
    assert pool.released == 1


@pytest.mark.asyncio
async def test_abort_on_failure_reports_what_was_delivered():
    pool = DummyPool()
    pool.smtp.refuse = {"b@x.com"}

    with pytest.raises(DeliveryError) as excinfo:
        await _mailer(pool).send_abort_on_failure(["a@x.com", "a@x.com", "b@x.com", "c@x.com"], "S", "B")

    assert excinfo.value.recipient == "b@x.com"
    assert excinfo.value.delivered == ["a@x.com", "a@x.com"]


@pytest.mark.asyncio
async def test_best_effort_attempts_everyone():
    pool = DummyPool()
    pool.smtp.refuse = {"a@x.com"}

    outcome = await _mailer(pool).send_best_effort(["a@x.com", "b@x.com"], "S", "B")

    assert isinstance(outcome["a@x.com"], DeliveryError)
    assert outcome["b@x.com"] is None
    assert [rcpts for _, rcpts, _ in pool.smtp.sent] == [["b@x.com"]]


@pytest.mark.asyncio
async def test_unreadable_attachment_is_a_delivery_error(tmp_path):
    pool = DummyPool()
    missing = AttachmentRef(name="cv.pdf", path=str(tmp_path / "missing.pdf"))

    with pytest.raises(DeliveryError) as excinfo:
        await _mailer(pool).deliver("a@x.com", "S", "B", [missing])

    assert isinstance(excinfo.value.cause, OSError)
    assert pool.requests == []


@pytest.mark.asyncio
async def test_connection_errors_are_wrapped(monkeypatch):
    pool = DummyPool()

    async def broken(*_args, **_kwargs):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(pool, "get_connection", broken)
    outcome = await _mailer(pool).send_best_effort(["a@x.com"], "S", "B")
    assert isinstance(outcome["a@x.com"].cause, ConnectionRefusedError)
