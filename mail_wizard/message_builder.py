"""Build transport-ready RFC 5322 messages from composed fields."""

from __future__ import annotations

import mimetypes
from email import policy
from email.message import EmailMessage
from pathlib import Path
from typing import Iterable, List, Tuple

from .models import AttachmentRef

BOUNDARY = "mail-wizard-boundary-5f1d0c2e"


def guess_mime(filename: str) -> Tuple[str, str]:
    """Guess the MIME type for the given filename."""
    mt, _ = mimetypes.guess_type(filename)
    if not mt:
        return ("application", "octet-stream")
    return tuple(mt.split("/", 1))  # type: ignore[return-value]


def build_message(
    sender: str,
    recipient: str,
    subject: str,
    body: str,
    attachments: Iterable[AttachmentRef] = (),
) -> bytes:
    """Return the encoded message for a single recipient.

    Without attachments the body is the only (text/plain) part. With
    attachments the message becomes multipart/mixed with a fixed boundary,
    the body first and one base64 part per file.

    Raises:
        OSError: when an attachment cannot be read from its path.
    """
    payloads: List[Tuple[AttachmentRef, bytes]] = [
        (att, Path(att.path).read_bytes()) for att in attachments
    ]

    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = recipient
    msg["Subject"] = subject
    msg.set_content(body, charset="utf-8")

    for att, content in payloads:
        maintype, subtype = guess_mime(att.name)
        msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=att.name)
    if payloads:
        msg.set_boundary(BOUNDARY)

    return msg.as_bytes(policy=policy.SMTP)
