"""SQLite backed store of scheduled deliveries."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Sequence, Tuple

import aiosqlite

from .models import ScheduledEmail, ScheduleStatus

_COLUMNS = "id, chat_id, recipients, subject, body, attachments_json, send_at, status, created_at"


class Persistence:
    """Read and write the ``scheduled_emails`` table.

    The methods do not lock; callers serialize access (see
    :class:`mail_wizard.scheduler.ScheduledWorker`).
    """

    def __init__(self, db_path: str = "botdata.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or "botdata.db"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_emails (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id INTEGER NOT NULL,
                    recipients TEXT NOT NULL,
                    subject TEXT,
                    body TEXT,
                    attachments_json TEXT NOT NULL DEFAULT '[]',
                    send_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_chat ON scheduled_emails(chat_id, created_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_status ON scheduled_emails(status)"
            )
            await db.commit()

    @staticmethod
    def _decode_row(row: Tuple[Any, ...], columns: Sequence[str]) -> ScheduledEmail:
        data = dict(zip(columns, row))
        data["attachments"] = data.pop("attachments_json", None)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return ScheduledEmail.model_validate(data)

    async def _select(self, where: str, params: Tuple[Any, ...], order: str, limit: int | None = None) -> List[ScheduledEmail]:
        query = f"SELECT {_COLUMNS} FROM scheduled_emails WHERE {where} ORDER BY {order}"
        if limit is not None:
            query += " LIMIT ?"
            params = (*params, int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def insert_scheduled(self, record: ScheduledEmail) -> int:
        """Store ``record`` as pending and return its new id.

        ``send_at`` is stored as typed; it is only interpreted by the worker.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO scheduled_emails
                (chat_id, recipients, subject, body, attachments_json, send_at, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.chat_id,
                    record.recipients,
                    record.subject,
                    record.body,
                    record.attachments_json(),
                    record.send_at,
                    ScheduleStatus.PENDING.value,
                    record.created_at.isoformat(),
                ),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def list_pending(self) -> List[ScheduledEmail]:
        """Return every row still waiting for delivery, oldest first."""
        return await self._select("status = ?", (ScheduleStatus.PENDING.value,), "id ASC")

    async def list_by_chat(self, chat_id: int, limit: int = 20) -> List[ScheduledEmail]:
        """Return the most recent rows of one chat, newest first."""
        return await self._select("chat_id = ?", (chat_id,), "created_at DESC, id DESC", limit)

    async def list_all(self, limit: int | None = None) -> List[ScheduledEmail]:
        """Return rows of every chat, newest first (inspection only)."""
        return await self._select("1 = 1", (), "created_at DESC, id DESC", limit)

    async def mark_sent(self, ids: Iterable[int]) -> int:
        """Flip the given pending rows to ``sent``; return how many changed."""
        id_list = [int(i) for i in ids]
        if not id_list:
            return 0
        placeholders = ",".join("?" for _ in id_list)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE scheduled_emails SET status = ? WHERE status = ? AND id IN ({placeholders})",
                (ScheduleStatus.SENT.value, ScheduleStatus.PENDING.value, *id_list),
            )
            await db.commit()
            return cursor.rowcount

    async def count_pending(self) -> int:
        """Return the number of rows still awaiting delivery."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM scheduled_emails WHERE status = ?",
                (ScheduleStatus.PENDING.value,),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)
