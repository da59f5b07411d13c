"""Service object wiring the store, the worker and the chat dispatcher."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from .config import Settings
from .dispatcher import Dispatcher
from .errors import ChatTransportError, ConfigurationError
from .logger import get_logger
from .mailer import Mailer
from .persistence import Persistence
from .prometheus import MailMetrics
from .scheduler import ScheduledWorker
from .sessions import SessionStore
from .smtp_pool import SMTPPool
from .telegram import ChatTransport, TelegramTransport


def build_mailer(settings: Settings, logger=None) -> Mailer:
    """Create the SMTP mailer described by ``settings``."""
    return Mailer(
        sender=settings.from_address,
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        pool=SMTPPool(),
        logger=logger,
        log_delivery_activity=settings.log_delivery_activity,
    )


class MailWizard:
    """Run the dispatcher and the scheduled worker side by side."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[ChatTransport] = None,
        mailer: Optional[Mailer] = None,
        *,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        self.settings = settings
        self.logger = logger or get_logger()
        self.metrics = metrics or MailMetrics()
        self.persistence = Persistence(settings.db_path)
        self.sessions = SessionStore()
        self.mailer = mailer or build_mailer(settings, self.logger)
        self.transport = transport or TelegramTransport(settings.telegram_token, logger=self.logger)
        self.worker = ScheduledWorker(
            self.persistence,
            self.mailer,
            interval=settings.poll_interval,
            timezone=settings.tzinfo,
            metrics=self.metrics,
            logger=self.logger,
        )
        self.dispatcher = Dispatcher(
            self.transport,
            self.sessions,
            self.worker,
            self.mailer,
            attachments_dir=settings.attachments_dir,
            allowed_chat_ids=settings.allowed_chat_ids,
            poll_timeout=settings.poll_timeout,
            metrics=self.metrics,
            logger=self.logger,
        )
        self._task_dispatch: Optional[asyncio.Task] = None

    async def init(self) -> None:
        """Prepare the database schema and the attachments directory."""
        await self.persistence.init_db()
        Path(self.settings.attachments_dir).mkdir(parents=True, exist_ok=True)
        self.metrics.set_pending(await self.persistence.count_pending())

    async def check_transport(self) -> None:
        """Validate the bot token before any loop starts.

        Raises:
            ConfigurationError: when the chat transport rejects the credentials.
        """
        try:
            me = await self.transport.get_me()
        except ChatTransportError as exc:
            raise ConfigurationError(f"Chat transport rejected the bot token: {exc}") from exc
        self.logger.info("Authorized as @%s", (me or {}).get("username", "?"))

    async def start(self) -> None:
        """Start the scheduled worker and the dispatcher in background tasks."""
        self.logger.debug("Starting MailWizard...")
        await self.check_transport()
        await self.init()
        await self.worker.start()
        self._task_dispatch = asyncio.create_task(self.dispatcher.run(), name="chat-dispatcher")
        self.logger.info("MailWizard started (db=%s)", self.settings.db_path)

    async def stop(self) -> None:
        """Stop both loops gracefully."""
        await self.dispatcher.stop()
        if self._task_dispatch is not None:
            self._task_dispatch.cancel()
            await asyncio.gather(self._task_dispatch, return_exceptions=True)
            self._task_dispatch = None
        await self.worker.stop()
        await self.mailer.pool.cleanup()
        self.logger.info("MailWizard stopped")

    async def run(self) -> None:
        """Run until the surrounding task is cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
