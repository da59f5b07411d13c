"""Route inbound chat events to the composer or to command handlers."""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

import aiosqlite

from . import composer
from .composer import Action, Reply, Transition
from .errors import AttachmentDownloadError, ChatTransportError, DeliveryError
from .logger import get_logger
from .mailer import Mailer, parse_recipients
from .models import AttachmentRef, ChatEvent, EmailSession, FileRef, Step
from .prometheus import IMMEDIATE, MailMetrics
from .scheduler import ScheduledWorker
from .sessions import SessionStore
from .telegram import ChatTransport

LIST_LIMIT = 20

START_TEXT = (
    "👋 *Telegram Mail Wizard*\n\n"
    "Type `/sendmail` to start sending an email step-by-step.\n"
    "You can attach one file and optionally schedule delivery.\n\n"
    "Use `/scheduled` to list your scheduled emails."
)
HELP_TEXT = (
    "ℹ️ *Commands*\n\n"
    "/sendmail - start interactive email composer\n"
    "/send <to> <subject> <body> - send a one-line email right away\n"
    "/scheduled - list your scheduled emails\n"
    "/cancel - cancel current compose session\n\n"
    "The composer asks for recipient(s), subject, body, an optional attachment "
    "and finally `now` or a time `YYYY-MM-DD HH:MM` to schedule."
)
FALLBACK_TEXT = "Hello! Use /sendmail to start composing an email."
UNKNOWN_COMMAND_TEXT = "Unknown command. Use /help"
NOT_AUTHORIZED_TEXT = "Not authorized"
SEND_USAGE_TEXT = "Usage: /send <to> <subject> <body>"


def _safe_file_name(name: str) -> str:
    cleaned = Path(name.replace("\\", "/")).name.strip()
    if cleaned in {"", ".", ".."}:
        return "attachment.bin"
    return cleaned


class Dispatcher:
    """Own the inbound event loop and every per-chat interaction."""

    def __init__(
        self,
        transport: ChatTransport,
        sessions: SessionStore,
        worker: ScheduledWorker,
        mailer: Mailer,
        *,
        attachments_dir: str | Path = "attachments",
        allowed_chat_ids: Iterable[int] = (),
        poll_timeout: int = 60,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        self.transport = transport
        self.sessions = sessions
        self.worker = worker
        self.mailer = mailer
        self.attachments_dir = Path(attachments_dir)
        self.allowed_chat_ids: Set[int] = set(allowed_chat_ids)
        self.poll_timeout = poll_timeout
        self.metrics = metrics or worker.metrics
        self.logger = logger or get_logger()

        self._stop = asyncio.Event()
        self._inflight: Set[asyncio.Task] = set()
        self._commands: Dict[str, Callable[[ChatEvent], Awaitable[None]]] = {
            "start": self.cmd_start,
            "help": self.cmd_help,
            "sendmail": self.cmd_sendmail,
            "send": self.cmd_send,
            "scheduled": self.cmd_list_scheduled,
            "cancel": self.cmd_cancel,
        }

    # ------------------------------------------------------------------ output
    async def reply(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> None:
        """Send a message, never letting a transport failure escape."""
        try:
            await self.transport.send_message(chat_id, text, parse_mode=parse_mode)
        except ChatTransportError as exc:
            if parse_mode:
                # User supplied text may break Markdown entities; retry as plain text.
                self.logger.debug("Formatted reply to %s rejected (%s); resending as plain text", chat_id, exc)
                await self.reply(chat_id, text)
                return
            self.logger.warning("Failed to reply to chat %s: %s", chat_id, exc)

    async def _emit(self, chat_id: int, replies: List[Reply]) -> None:
        for item in replies:
            await self.reply(chat_id, item.text, item.parse_mode)

    def _is_allowed(self, chat_id: int) -> bool:
        return not self.allowed_chat_ids or chat_id in self.allowed_chat_ids

    # ----------------------------------------------------------------- routing
    async def handle_event(self, event: ChatEvent) -> None:
        """Process one inbound event; events of one chat are handled in order."""
        async with self.sessions.locked(event.chat_id):
            await self._route(event)

    async def _route(self, event: ChatEvent) -> None:
        chat_id = event.chat_id
        session = self.sessions.get(chat_id)

        if session is not None and event.file is not None and not event.is_command:
            await self._handle_file(session, event.file)
            return
        if session is not None and not event.is_command:
            await self._apply(chat_id, composer.handle_text(session, event.text))
            return
        if event.is_command:
            handler = self._commands.get(event.command)
            if handler is None:
                await self.reply(chat_id, UNKNOWN_COMMAND_TEXT)
                return
            await handler(event)
            return
        await self.reply(chat_id, FALLBACK_TEXT)

    async def _apply(self, chat_id: int, transition: Transition) -> None:
        """Store the transition's session, emit its replies, run its action."""
        if transition.session is None:
            self.sessions.delete(chat_id)
        else:
            self.sessions.set(chat_id, transition.session)
        await self._emit(chat_id, transition.replies)

        if transition.action is Action.SEND_NOW:
            await self._send_now(transition.finished)
        elif transition.action is Action.SCHEDULE:
            await self._schedule(transition.finished)

    # --------------------------------------------------------------- commands
    async def cmd_start(self, event: ChatEvent) -> None:
        await self.reply(event.chat_id, START_TEXT, parse_mode="Markdown")

    async def cmd_help(self, event: ChatEvent) -> None:
        await self.reply(event.chat_id, HELP_TEXT, parse_mode="Markdown")

    async def cmd_sendmail(self, event: ChatEvent) -> None:
        if not self._is_allowed(event.chat_id):
            await self.reply(event.chat_id, NOT_AUTHORIZED_TEXT)
            return
        await self._apply(event.chat_id, composer.begin(event.chat_id))

    async def cmd_cancel(self, event: ChatEvent) -> None:
        await self._apply(event.chat_id, composer.cancel(self.sessions.get(event.chat_id)))

    async def cmd_list_scheduled(self, event: ChatEvent) -> None:
        chat_id = event.chat_id
        if not self._is_allowed(chat_id):
            await self.reply(chat_id, NOT_AUTHORIZED_TEXT)
            return
        try:
            records = await self.worker.list_for_chat(chat_id, LIST_LIMIT)
        except (aiosqlite.Error, OSError) as exc:
            self.logger.exception("Failed to query scheduled emails for chat %s", chat_id)
            await self.reply(chat_id, f"Failed to query scheduled emails: {exc}")
            return
        if not records:
            await self.reply(chat_id, "No scheduled emails found.")
            return
        lines = [
            f"ID:{rec.id} | to:{rec.recipients} | at:{rec.send_at} | {rec.status.value}"
            for rec in records
        ]
        await self.reply(chat_id, "\n".join(lines))

    async def cmd_send(self, event: ChatEvent) -> None:
        """One-shot ``/send <to> <subject> <body>`` without a session."""
        chat_id = event.chat_id
        if not self._is_allowed(chat_id):
            await self.reply(chat_id, NOT_AUTHORIZED_TEXT)
            return
        args = event.args.split(maxsplit=2)
        if len(args) < 3:
            await self.reply(chat_id, SEND_USAGE_TEXT)
            return
        to, subject, body = args
        await self._send_now(EmailSession(chat_id=chat_id, to=to, subject=subject, body=body))

    # ------------------------------------------------------------ attachments
    async def _handle_file(self, session: EmailSession, file: FileRef) -> None:
        chat_id = session.chat_id
        if session.step != Step.AWAITING_ATTACHMENT_UPLOAD:
            await self._emit(chat_id, [Reply(composer.FILE_NOT_EXPECTED)])
            return
        name = _safe_file_name(file.file_name)
        # One directory per upload: a stored file is never replaced by a later one.
        upload_dir = self.attachments_dir / str(chat_id) / uuid.uuid4().hex
        upload_dir.mkdir(parents=True, exist_ok=True)
        dest = upload_dir / name
        try:
            await self.transport.download_file(file, dest)
        except AttachmentDownloadError as exc:
            if not any(upload_dir.iterdir()):
                upload_dir.rmdir()
            self.logger.warning("Attachment download failed for chat %s: %s", chat_id, exc)
            await self.reply(chat_id, f"{exc}. Send the file again or type `skip`.")
            return
        self.logger.info("Stored attachment %s for chat %s", dest, chat_id)
        await self._apply(chat_id, composer.handle_file(session, AttachmentRef(name=name, path=str(dest))))

    # ---------------------------------------------------------- terminal steps
    async def _send_now(self, session: EmailSession) -> None:
        chat_id = session.chat_id
        recipients = parse_recipients(session.to)
        if not recipients:
            await self.reply(chat_id, "Failed to send: no recipients given.")
            return
        try:
            delivered = await self.mailer.send_abort_on_failure(
                recipients, session.subject, session.body, session.attachments
            )
        except DeliveryError as exc:
            self.logger.warning("Immediate send for chat %s aborted: %s", chat_id, exc)
            self.metrics.inc_sent(IMMEDIATE, len(exc.delivered))
            self.metrics.inc_error(IMMEDIATE)
            await self.reply(chat_id, f"Failed to send: {exc}")
            return
        self.metrics.inc_sent(IMMEDIATE, len(delivered))
        await self.reply(chat_id, "✅ Email sent!")

    async def _schedule(self, session: EmailSession) -> None:
        chat_id = session.chat_id
        try:
            record = await self.worker.schedule(session)
        except (aiosqlite.Error, OSError) as exc:
            self.logger.exception("Failed to schedule email for chat %s", chat_id)
            await self.reply(chat_id, f"Failed to schedule: {exc}")
            return
        if self.worker.is_valid_time(record.send_at):
            await self.reply(chat_id, f"⏰ Email scheduled successfully! (ID:{record.id})")
            return
        await self.reply(
            chat_id,
            f"⏰ Email saved as ID:{record.id}, but {record.send_at!r} is not a time I understand "
            "(use `YYYY-MM-DD HH:MM`). It will stay pending; schedule it again with a valid time.",
        )

    # -------------------------------------------------------------- event loop
    async def run(self) -> None:
        """Poll the transport until :meth:`stop` is called."""
        self._stop.clear()
        self.logger.info("Dispatcher polling for updates")
        while not self._stop.is_set():
            try:
                events = await self.transport.get_events(self.poll_timeout)
            except ChatTransportError as exc:
                self.logger.warning("Polling failed: %s", exc)
                await self._pause(5.0)
                continue
            for event in events:
                task = asyncio.create_task(self._handle_safely(event), name=f"chat-{event.chat_id}")
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)

    async def _handle_safely(self, event: ChatEvent) -> None:
        try:
            await self.handle_event(event)
        except Exception:  # pragma: no cover
            self.logger.exception("Unhandled error while handling update %s", event.update_id)

    async def _pause(self, seconds: float) -> None:
        try:
            async with asyncio.timeout(seconds):
                await self._stop.wait()
        except asyncio.TimeoutError:
            return

    async def stop(self) -> None:
        """Stop polling and wait for updates already being handled."""
        self._stop.set()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
