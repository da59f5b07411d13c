"""Per-chat store of in-progress compositions."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .models import EmailSession


class SessionStore:
    """Identity-keyed mapping of chat id to :class:`EmailSession`.

    Map operations never await, so they are atomic on the event loop. The
    handling of one chat's events is serialized through :meth:`locked`,
    which hands out a separate lock per chat so that one user's compose flow
    never waits on another's.
    """

    def __init__(self):
        self._sessions: Dict[int, EmailSession] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._holders: Dict[int, int] = {}

    def set(self, chat_id: int, session: EmailSession) -> None:
        """Store ``session``, silently replacing any previous one."""
        self._sessions[chat_id] = session

    def get(self, chat_id: int) -> Optional[EmailSession]:
        return self._sessions.get(chat_id)

    def delete(self, chat_id: int) -> bool:
        """Drop the session of ``chat_id``; return whether one existed."""
        return self._sessions.pop(chat_id, None) is not None

    def exists(self, chat_id: int) -> bool:
        return chat_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    @asynccontextmanager
    async def locked(self, chat_id: int) -> AsyncIterator[None]:
        """Hold the lock reserved to ``chat_id`` for the duration of the block.

        The lock is dropped once nobody holds or waits for it and the chat
        has no session, so idle chats leave nothing behind.
        """
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        self._holders[chat_id] = self._holders.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[chat_id] - 1
            if remaining:
                self._holders[chat_id] = remaining
            else:
                del self._holders[chat_id]
                if chat_id not in self._sessions:
                    del self._locks[chat_id]
