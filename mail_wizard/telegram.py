"""Chat transport: the Telegram Bot API over aiohttp.

The dispatcher only depends on :class:`ChatTransport`; tests plug in an
in-memory double, production uses :class:`TelegramTransport`.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from pydantic import BaseModel, Field, ValidationError

from .errors import AttachmentDownloadError, ChatTransportError
from .logger import get_logger
from .models import ChatEvent, FileRef

API_BASE_URL = "https://api.telegram.org"


class ChatTransport:
    """Interface implemented by concrete chat transports."""

    async def get_me(self) -> Dict[str, Any]:
        """Return the bot account; raises :class:`ChatTransportError` on bad credentials."""
        raise NotImplementedError

    async def get_events(self, timeout: int) -> List[ChatEvent]:
        """Return the next batch of inbound events, in arrival order.

        Returned events are acknowledged: they are not delivered again.
        """
        raise NotImplementedError

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> None:
        """Deliver a text message to ``chat_id``."""
        raise NotImplementedError

    async def download_file(self, file: FileRef, dest: Path) -> None:
        """Store the bytes of ``file`` at ``dest``."""
        raise NotImplementedError


# Bot API payloads ---------------------------------------------------------
class TgChat(BaseModel):
    id: int


class TgDocument(BaseModel):
    file_id: str
    file_unique_id: str = ""
    file_name: Optional[str] = None
    file_size: Optional[int] = None


class TgPhotoSize(BaseModel):
    file_id: str
    file_unique_id: str = ""
    width: int = 0
    height: int = 0
    file_size: Optional[int] = None


class TgMessage(BaseModel):
    message_id: int
    chat: TgChat
    text: Optional[str] = None
    caption: Optional[str] = None
    document: Optional[TgDocument] = None
    photo: List[TgPhotoSize] = Field(default_factory=list)


class TgUpdate(BaseModel):
    update_id: int
    message: Optional[TgMessage] = None


def parse_command(text: str) -> Tuple[Optional[str], str]:
    """Split ``/name[@bot] args`` into ``(name, args)``; ``(None, "")`` otherwise."""
    if not text.startswith("/"):
        return None, ""
    parts = text.split(maxsplit=1)
    name = parts[0][1:].split("@", 1)[0].lower()
    if not name:
        return None, ""
    return name, parts[1].strip() if len(parts) > 1 else ""


def _file_ref(message: TgMessage) -> Optional[FileRef]:
    doc = message.document
    if doc is not None:
        name = Path(doc.file_name).name if doc.file_name else ""
        return FileRef(
            file_id=doc.file_id,
            file_name=name or f"document_{doc.file_unique_id or doc.file_id[-8:]}.bin",
            file_size=doc.file_size,
        )
    if message.photo:
        largest = max(message.photo, key=lambda p: (p.width * p.height, p.file_size or 0))
        return FileRef(
            file_id=largest.file_id,
            file_name=f"photo_{largest.file_unique_id or largest.file_id[-8:]}.jpg",
            file_size=largest.file_size,
        )
    return None


def event_from_update(raw: Dict[str, Any]) -> Optional[ChatEvent]:
    """Translate a raw Bot API update; non-message updates yield ``None``."""
    update = TgUpdate.model_validate(raw)
    message = update.message
    if message is None:
        return None
    text = message.text or message.caption or ""
    command, args = parse_command(text)
    return ChatEvent(
        update_id=update.update_id,
        chat_id=message.chat.id,
        text=text,
        command=command,
        args=args,
        file=_file_ref(message),
    )


class TelegramTransport(ChatTransport):
    """Long-polling Bot API client."""

    def __init__(self, token: str, *, base_url: str = API_BASE_URL, request_timeout: float = 30.0, logger=None):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.logger = logger or get_logger()
        self._offset = 0

    def _endpoint(self, method: str) -> str:
        return f"{self.base_url}/bot{self.token}/{method}"

    def _file_url(self, file_path: str) -> str:
        return f"{self.base_url}/file/bot{self.token}/{file_path.lstrip('/')}"

    async def _call(self, method: str, payload: Dict[str, Any], *, timeout: Optional[float] = None) -> Any:
        """POST ``payload`` to a Bot API method and return its ``result``."""
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.post(self._endpoint(method), json=payload) as resp:
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise ChatTransportError(f"{method} failed: {exc}") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else data
            raise ChatTransportError(f"{method} failed: {description}")
        return data.get("result")

    async def get_me(self) -> Dict[str, Any]:
        return await self._call("getMe", {})

    async def get_events(self, timeout: int) -> List[ChatEvent]:
        result = await self._call(
            "getUpdates",
            {"offset": self._offset, "timeout": timeout, "allowed_updates": ["message"]},
            timeout=timeout + self.request_timeout,
        )
        events: List[ChatEvent] = []
        for raw in result or []:
            update_id = raw.get("update_id")
            if isinstance(update_id, int):
                self._offset = max(self._offset, update_id + 1)
            try:
                event = event_from_update(raw)
            except ValidationError as exc:
                self.logger.warning("Skipping malformed update %s: %s", update_id, exc)
                continue
            if event is not None:
                events.append(event)
        return events

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        await self._call("sendMessage", payload)

    async def download_file(self, file: FileRef, dest: Path) -> None:
        try:
            info = await self._call("getFile", {"file_id": file.file_id})
        except ChatTransportError as exc:
            raise AttachmentDownloadError(f"Failed to get file info: {exc}") from exc
        file_path = (info or {}).get("file_path")
        if not file_path:
            raise AttachmentDownloadError("Failed to get file info: no file path returned")

        client_timeout = aiohttp.ClientTimeout(total=self.request_timeout * 4)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(self._file_url(file_path)) as resp:
                    resp.raise_for_status()
                    with open(dest, "wb") as out:
                        async for chunk in resp.content.iter_chunked(64 * 1024):
                            out.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            Path(dest).unlink(missing_ok=True)
            raise AttachmentDownloadError(f"Failed to download file: {exc}") from exc
