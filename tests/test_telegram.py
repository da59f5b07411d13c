from typing import Any, Dict, List

import aiohttp
import pytest

from mail_wizard.errors import AttachmentDownloadError, ChatTransportError
from mail_wizard.models import FileRef
from mail_wizard.telegram import TelegramTransport, event_from_update, parse_command


def _update(update_id=1, chat_id=99, **message):
    return {"update_id": update_id, "message": {"message_id": 1, "chat": {"id": chat_id}, **message}}


class DummyContent:
    def __init__(self, chunks):
        self.chunks = chunks

    async def iter_chunked(self, _size):
        for chunk in self.chunks:
            yield chunk


class DummyResponse:
    def __init__(self, payload=None, chunks=(), status_error=None):
        self.payload = payload
        self.content = DummyContent(list(chunks))
        self.status_error = status_error

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type=None):
        return self.payload

    def raise_for_status(self):
        if self.status_error is not None:
            raise self.status_error


class DummySession:
    def __init__(self, responses: Dict[str, DummyResponse]):
        self.responses = responses
        self.posted: List[Any] = []
        self.fetched: List[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def post(self, url, json=None):
        self.posted.append((url, json))
        return self.responses[url.rsplit("/", 1)[-1]]

    def get(self, url):
        self.fetched.append(url)
        return self.responses["file"]


@pytest.fixture
def fake_http(monkeypatch):
    session = DummySession({})
    monkeypatch.setattr("mail_wizard.telegram.aiohttp.ClientSession", lambda **_kwargs: session)
    return session


@pytest.mark.parametrize(
    "text, expected",
    [
        ("/sendmail", ("sendmail", "")),
        ("/SendMail@MailWizardBot", ("sendmail", "")),
        ("/send a@x.com Hi there friend", ("send", "a@x.com Hi there friend")),
        ("hello", (None, "")),
        ("/", (None, "")),
    ],
)
def test_parse_command(text, expected):
    assert parse_command(text) == expected


def test_event_from_text_update():
    event = event_from_update(_update(chat_id=7, text="/scheduled"))
    assert event.chat_id == 7
    assert event.command == "scheduled"
    assert event.is_command
    assert event.file is None


def test_event_from_document_uses_basename():
    event = event_from_update(
        _update(document={"file_id": "F1", "file_unique_id": "U1", "file_name": "../../etc/cv.pdf", "file_size": 10})
    )
    assert event.file == FileRef(file_id="F1", file_name="cv.pdf", file_size=10)
    assert not event.is_command


def test_event_from_unnamed_document_gets_generated_name():
    event = event_from_update(_update(document={"file_id": "F1", "file_unique_id": "U1"}))
    assert event.file.file_name == "document_U1.bin"


def test_event_from_photo_picks_largest_size():
    event = event_from_update(
        _update(
            caption="look",
            photo=[
                {"file_id": "small", "file_unique_id": "s", "width": 90, "height": 90},
                {"file_id": "big", "file_unique_id": "b", "width": 1280, "height": 960},
            ],
        )
    )
    assert event.text == "look"
    assert event.file.file_id == "big"
    assert event.file.file_name == "photo_b.jpg"


def test_non_message_update_is_ignored():
    assert event_from_update({"update_id": 3, "edited_message": {}}) is None


@pytest.mark.asyncio
async def test_get_events_advances_offset_and_skips_bad_updates(fake_http):
    fake_http.responses["getUpdates"] = DummyResponse(
        {
            "ok": True,
            "result": [
                _update(update_id=10, text="hi"),
                {"update_id": 11, "message": {"chat": "broken"}},
                {"update_id": 12, "callback_query": {}},
            ],
        }
    )
    transport = TelegramTransport("TOKEN")

    events = await transport.get_events(0)
    assert [e.update_id for e in events] == [10]
    assert fake_http.posted[0][0] == "https://api.telegram.org/botTOKEN/getUpdates"
    assert fake_http.posted[0][1]["offset"] == 0

    await transport.get_events(0)
    assert fake_http.posted[1][1]["offset"] == 13


@pytest.mark.asyncio
async def test_api_error_raises_chat_transport_error(fake_http):
    fake_http.responses["sendMessage"] = DummyResponse({"ok": False, "description": "Bad Request: can't parse entities"})
    transport = TelegramTransport("TOKEN")

    with pytest.raises(ChatTransportError, match="can't parse entities"):
        await transport.send_message(1, "*broken", parse_mode="Markdown")
    assert fake_http.posted[0][1] == {"chat_id": 1, "text": "*broken", "parse_mode": "Markdown"}


@pytest.mark.asyncio
async def test_download_file_streams_to_destination(fake_http, tmp_path):
    fake_http.responses["getFile"] = DummyResponse({"ok": True, "result": {"file_path": "documents/file_1.pdf"}})
    fake_http.responses["file"] = DummyResponse(chunks=[b"abc", b"def"])
    transport = TelegramTransport("TOKEN")
    dest = tmp_path / "cv.pdf"

    await transport.download_file(FileRef(file_id="F1", file_name="cv.pdf"), dest)

    assert dest.read_bytes() == b"abcdef"
    assert fake_http.fetched == ["https://api.telegram.org/file/botTOKEN/documents/file_1.pdf"]


@pytest.mark.asyncio
async def test_download_file_reports_missing_info(fake_http, tmp_path):
    fake_http.responses["getFile"] = DummyResponse({"ok": False, "description": "file is too big"})
    transport = TelegramTransport("TOKEN")

    with pytest.raises(AttachmentDownloadError, match="Failed to get file info"):
        await transport.download_file(FileRef(file_id="F1", file_name="cv.pdf"), tmp_path / "cv.pdf")


@pytest.mark.asyncio
async def test_download_failure_removes_partial_file(fake_http, tmp_path):
    fake_http.responses["getFile"] = DummyResponse({"ok": True, "result": {"file_path": "documents/file_1.pdf"}})
    fake_http.responses["file"] = DummyResponse(status_error=aiohttp.ClientError("404"))
    transport = TelegramTransport("TOKEN")
    dest = tmp_path / "cv.pdf"

    with pytest.raises(AttachmentDownloadError, match="Failed to download file"):
        await transport.download_file(FileRef(file_id="F1", file_name="cv.pdf"), dest)
    assert not dest.exists()
