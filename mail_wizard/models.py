"""Pydantic models shared by the composer, the store and the transports.

Models:
    - Step: composition steps of an :class:`EmailSession`
    - EmailSession: in-progress composition, one per chat
    - AttachmentRef: display name plus local storage path of a file
    - ScheduledEmail: durable row waiting for the scheduled worker
    - FileRef / ChatEvent: transport-neutral view of an inbound update
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Step(IntEnum):
    """Steps of the guided composition, in the order they are visited."""

    AWAITING_RECIPIENTS = 1
    AWAITING_SUBJECT = 2
    AWAITING_BODY = 3
    AWAITING_ATTACHMENT_CHOICE = 4
    AWAITING_ATTACHMENT_UPLOAD = 5
    AWAITING_SEND_DECISION = 6


class ScheduleStatus(str, Enum):
    """Lifecycle of a scheduled row. Only ``pending -> sent`` is allowed."""

    PENDING = "pending"
    SENT = "sent"


class AttachmentRef(BaseModel):
    """A file stored locally and the name it is presented with."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str


class EmailSession(BaseModel):
    """Ephemeral composition state owned by the session store.

    Attributes:
        step: Current step; together with the session's existence it decides
            how the next inbound event is interpreted.
        chat_id: Identity of the originating chat.
        to: Raw, comma separated recipients as typed by the user.
        subject: Subject line.
        body: Body text.
        attachment_path: Local path of the uploaded file, if any.
        attachment_name: Original file name of the upload, if any.
        schedule: Raw time text, ``None`` while undecided or for "now".
        created_at: Creation timestamp, for diagnostics only.
    """

    chat_id: int
    step: Step = Step.AWAITING_RECIPIENTS
    to: str = ""
    subject: str = ""
    body: str = ""
    attachment_path: Optional[str] = None
    attachment_name: Optional[str] = None
    schedule: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def attachments(self) -> List[AttachmentRef]:
        if not self.attachment_path:
            return []
        return [AttachmentRef(name=self.attachment_name or "file.bin", path=self.attachment_path)]


class ScheduledEmail(BaseModel):
    """One pending (or already attempted) scheduled delivery."""

    id: Optional[int] = None
    chat_id: int
    recipients: str
    subject: str = ""
    body: str = ""
    attachments: List[AttachmentRef] = Field(default_factory=list)
    send_at: str
    status: ScheduleStatus = ScheduleStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("attachments", mode="before")
    @classmethod
    def decode_attachments(cls, value: Any) -> Any:
        """Accept the JSON column as stored in SQLite."""
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return json.loads(value)
        return value

    @classmethod
    def from_session(cls, session: EmailSession) -> "ScheduledEmail":
        """Freeze a finished session into a schedule record."""
        return cls(
            chat_id=session.chat_id,
            recipients=session.to,
            subject=session.subject,
            body=session.body,
            attachments=session.attachments,
            send_at=session.schedule or "",
        )

    def attachments_json(self) -> str:
        return json.dumps([att.model_dump() for att in self.attachments])


class FileRef(BaseModel):
    """Reference to a file kept by the chat transport."""

    file_id: str
    file_name: Annotated[str, Field(min_length=1)]
    file_size: Optional[int] = None


class ChatEvent(BaseModel):
    """Inbound update reduced to what the dispatcher needs.

    Attributes:
        update_id: Transport sequence number, used as polling offset.
        chat_id: Identity of the chat the update came from.
        text: Free text (or caption) of the message.
        command: Command name without the leading slash, lowercase.
        args: Text following the command.
        file: Attached document or photo, if any.
    """

    update_id: int = 0
    chat_id: int
    text: str = ""
    command: Optional[str] = None
    args: str = ""
    file: Optional[FileRef] = None

    @property
    def is_command(self) -> bool:
        return self.command is not None
