"""Background worker that dispatches scheduled emails when they fall due."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone, tzinfo
from typing import List, Optional, Set

from .logger import get_logger
from .mailer import Mailer, parse_recipients
from .models import EmailSession, ScheduledEmail
from .persistence import Persistence
from .prometheus import SCHEDULED, MailMetrics

LOCAL_FORMAT = "%Y-%m-%d %H:%M"
DEFAULT_INTERVAL = 60.0


def parse_send_at(value: str, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Interpret a user supplied due time.

    Two forms are accepted, first match wins:

    * ``YYYY-MM-DD HH:MM`` in ``tz`` (system local time when ``tz`` is None);
    * an ISO-8601 / RFC 3339 timestamp carrying an explicit offset, e.g.
      ``2030-05-01T09:30:00+02:00`` or ``2030-05-01T07:30:00Z``.

    Returns an aware datetime, or ``None`` when the text matches neither.
    """
    text = (value or "").strip()
    if not text:
        return None
    try:
        naive = datetime.strptime(text, LOCAL_FORMAT)
    except ValueError:
        pass
    else:
        return naive.replace(tzinfo=tz) if tz is not None else naive.astimezone()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


class ScheduledWorker:
    """Periodic scan-deliver-mark loop over the scheduled-send store.

    Every access to the store goes through this class and holds
    ``self._lock``, so a listing never observes a tick half way through.
    """

    def __init__(
        self,
        persistence: Persistence,
        mailer: Mailer,
        *,
        interval: float = DEFAULT_INTERVAL,
        timezone: Optional[tzinfo] = None,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.mailer = mailer
        self.interval = max(0.05, float(interval))
        self.timezone = timezone
        self.metrics = metrics or MailMetrics()
        self.logger = logger or get_logger()

        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._unparseable_seen: Set[int] = set()

    # ------------------------------------------------------------ store access
    async def schedule(self, session: EmailSession) -> ScheduledEmail:
        """Freeze ``session`` into a pending row and return it with its id."""
        record = ScheduledEmail.from_session(session)
        async with self._lock:
            record.id = await self.persistence.insert_scheduled(record)
            await self._refresh_pending_gauge()
        self.logger.info(
            "Scheduled email %s for chat %s at %r", record.id, record.chat_id, record.send_at
        )
        return record

    async def list_for_chat(self, chat_id: int, limit: int = 20) -> List[ScheduledEmail]:
        async with self._lock:
            return await self.persistence.list_by_chat(chat_id, limit)

    def is_valid_time(self, value: str) -> bool:
        return parse_send_at(value, self.timezone) is not None

    # -------------------------------------------------------------------- tick
    async def tick(self, now: Optional[datetime] = None) -> List[int]:
        """Run one scan-and-mark cycle; return the ids marked as sent.

        Due rows are attempted for every recipient and marked ``sent``
        afterwards whatever the per-recipient outcome. Rows whose time cannot
        be parsed stay pending.
        """
        now = now or datetime.now(timezone.utc)
        attempted: List[int] = []
        async with self._lock:
            try:
                for record in await self.persistence.list_pending():
                    due = parse_send_at(record.send_at, self.timezone)
                    if due is None:
                        if record.id not in self._unparseable_seen:
                            self._unparseable_seen.add(record.id)
                            self.logger.warning(
                                "Scheduled email %s has unparseable send_at %r; it stays pending",
                                record.id,
                                record.send_at,
                            )
                        continue
                    if due > now:
                        continue
                    await self._deliver(record)
                    attempted.append(record.id)
            finally:
                # Rows already handed to the mailer are marked even when a later one raises.
                if attempted:
                    await self.persistence.mark_sent(attempted)
                await self._refresh_pending_gauge()
        return attempted

    async def _deliver(self, record: ScheduledEmail) -> None:
        recipients = parse_recipients(record.recipients)
        outcome = await self.mailer.send_best_effort(
            recipients, record.subject, record.body, record.attachments
        )
        failures = sum(1 for error in outcome.values() if error is not None)
        self.metrics.inc_sent(SCHEDULED, len(outcome) - failures)
        self.metrics.inc_error(SCHEDULED, failures)
        if failures:
            self.logger.warning(
                "Scheduled email %s: %d of %d recipient(s) failed",
                record.id,
                failures,
                len(outcome),
            )
        else:
            self.logger.info("Scheduled email %s delivered to %d recipient(s)", record.id, len(outcome))

    async def _refresh_pending_gauge(self) -> None:
        self.metrics.set_pending(await self.persistence.count_pending())

    # --------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the periodic loop in a background task."""
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="scheduled-worker")

    async def stop(self) -> None:
        """Signal the loop to exit and wait for the current tick to finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def run_now(self) -> None:
        """Wake the loop before its interval elapses."""
        self._wake_event.set()

    async def _loop(self) -> None:
        self.logger.debug("Scheduled worker started (interval=%ss)", self.interval)
        while not self._stop.is_set():
            await self._wait_for_wakeup(self.interval)
            if self._stop.is_set():
                break
            try:
                sent = await self.tick()
                if sent:
                    self.logger.debug("Worker tick marked %d email(s) as sent", len(sent))
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in scheduled worker: %s", exc)
        self.logger.debug("Scheduled worker stopped")

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via :meth:`run_now`."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            async with asyncio.timeout(max(0.0, float(timeout))):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
