"""Mail submission and the two multi-recipient delivery policies.

Immediate sends and scheduled sends treat a failing recipient differently:

* :meth:`Mailer.send_abort_on_failure` (immediate path) stops at the first
  failing recipient and raises, so later recipients are never attempted.
* :meth:`Mailer.send_best_effort` (scheduled path) attempts every recipient
  and only logs failures.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional, Sequence

import aiosmtplib

from .errors import DeliveryError
from .logger import get_logger
from .message_builder import build_message
from .models import AttachmentRef
from .smtp_pool import SMTPPool


def parse_recipients(value: str) -> List[str]:
    """Split a comma separated recipient string into trimmed addresses."""
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class Mailer:
    """Build messages and submit them to one address at a time."""

    def __init__(
        self,
        *,
        sender: str,
        host: str,
        port: int,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        pool: Optional[SMTPPool] = None,
        send_timeout: float = 30.0,
        logger=None,
        log_delivery_activity: bool = False,
    ):
        self.sender = sender
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.pool = pool or SMTPPool()
        self.logger = logger or get_logger()
        self._send_timeout = send_timeout
        self._log_delivery_activity = log_delivery_activity

    async def deliver(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachments: Iterable[AttachmentRef] = (),
    ) -> None:
        """Build the message for ``recipient`` and submit it.

        Raises:
            DeliveryError: when the attachment cannot be read or the SMTP
                server refuses the message.
        """
        if self._log_delivery_activity:
            self.logger.info("Attempting delivery to %s (subject=%r)", recipient, subject)
        try:
            raw = build_message(self.sender, recipient, subject, body, attachments)
        except (OSError, ValueError) as exc:
            raise DeliveryError(recipient, exc) from exc
        try:
            smtp = await self.pool.get_connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            )
            async with asyncio.timeout(self._send_timeout):
                await smtp.sendmail(self.sender, [recipient], raw)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            await self.pool.release()
            raise DeliveryError(recipient, exc) from exc
        if self._log_delivery_activity:
            self.logger.info("Delivery succeeded for %s", recipient)

    async def send_abort_on_failure(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        attachments: Sequence[AttachmentRef] = (),
    ) -> List[str]:
        """Deliver to each recipient in order, stopping at the first failure.

        Returns the recipients that were delivered. The first
        :class:`DeliveryError` is re-raised with ``delivered`` set to the
        recipients accepted before it.
        """
        delivered: List[str] = []
        try:
            for recipient in recipients:
                try:
                    await self.deliver(recipient, subject, body, attachments)
                except DeliveryError as exc:
                    exc.delivered = list(delivered)
                    raise
                delivered.append(recipient)
        finally:
            await self.pool.release()
        return delivered

    async def send_best_effort(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        attachments: Sequence[AttachmentRef] = (),
    ) -> Dict[str, Optional[DeliveryError]]:
        """Deliver to every recipient independently.

        Returns a mapping of recipient to ``None`` (delivered) or the error
        that was logged for it.
        """
        outcome: Dict[str, Optional[DeliveryError]] = {}
        try:
            for recipient in recipients:
                try:
                    await self.deliver(recipient, subject, body, attachments)
                except DeliveryError as exc:
                    self.logger.error("Scheduled delivery error: %s", exc)
                    outcome[recipient] = exc
                else:
                    outcome[recipient] = None
        finally:
            await self.pool.release()
        return outcome
