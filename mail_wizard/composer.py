"""Composition state machine.

Every function here is pure: it receives the current :class:`EmailSession`
(or ``None``) plus the inbound input and returns a :class:`Transition`
describing the session to keep (``None`` means delete it), the replies to
emit and an optional terminal action for the caller to carry out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .models import AttachmentRef, EmailSession, Step

SEND_NOW_KEYWORDS = frozenset({"now", "send", "send now"})

PROMPTS = {
    Step.AWAITING_RECIPIENTS: "📬 Who do you want to send the email to? (comma separated addresses are allowed)",
    Step.AWAITING_SUBJECT: "✏️ Subject?",
    Step.AWAITING_BODY: "📝 Body text?",
    Step.AWAITING_ATTACHMENT_CHOICE: "📎 Do you want to attach a file? Reply `yes` to attach or `no` to skip.",
    Step.AWAITING_ATTACHMENT_UPLOAD: "📂 Please upload the file now (send it as a document), or type `skip`.",
}
CHOICE_REPROMPT = "Please reply with `yes` or `no`."
UPLOAD_REPROMPT = "Waiting for file upload. Send a document or type `skip`."
SEND_DECISION_REPROMPT = "Type `now` to send immediately, or a time to schedule (`YYYY-MM-DD HH:MM`)."
FILE_NOT_EXPECTED = "I'm not expecting a file right now. Use /cancel to start over."
CANCELLED = "✅ Session cancelled."
NOTHING_TO_CANCEL = "No active session to cancel."


class Action(str, Enum):
    """Terminal side effects requested by a transition."""

    SEND_NOW = "send_now"
    SCHEDULE = "schedule"


@dataclass
class Reply:
    text: str
    parse_mode: Optional[str] = None


@dataclass
class Transition:
    """Outcome of feeding one input to the state machine.

    Attributes:
        session: Session to keep for the chat, ``None`` to delete it.
        replies: Outbound messages, in order.
        action: Terminal action for the caller; it applies to
            ``finished``, the frozen session that was just removed.
        finished: The completed session when ``action`` is set.
    """

    session: Optional[EmailSession]
    replies: List[Reply] = field(default_factory=list)
    action: Optional[Action] = None
    finished: Optional[EmailSession] = None


def _single_line(text: str) -> str:
    return " ".join(text.split())


def render_preview(session: EmailSession) -> str:
    """Return the summary shown before asking to send or schedule."""
    return (
        "📬 *Preview*\n"
        f"To: {session.to}\n"
        f"Subject: {session.subject}\n"
        f"Body: {session.body}\n"
        f"Attachment: {session.attachment_name or 'none'}\n\n"
        "Type `now` to send immediately, or a time to schedule "
        "(`YYYY-MM-DD HH:MM`)."
    )


def _to_send_decision(session: EmailSession) -> Transition:
    session.step = Step.AWAITING_SEND_DECISION
    return Transition(session, [Reply(render_preview(session), parse_mode="Markdown")])


def _reprompt(session: EmailSession) -> Transition:
    if session.step == Step.AWAITING_SEND_DECISION:
        return Transition(session, [Reply(SEND_DECISION_REPROMPT, parse_mode="Markdown")])
    prompt = PROMPTS.get(session.step)
    if prompt is None:
        return Transition(session, [])
    parse_mode = "Markdown" if "`" in prompt else None
    return Transition(session, [Reply(prompt, parse_mode=parse_mode)])


def begin(chat_id: int) -> Transition:
    """Start a new composition; any previous session is discarded by the caller."""
    session = EmailSession(chat_id=chat_id)
    return Transition(session, [Reply(PROMPTS[Step.AWAITING_RECIPIENTS])])


def handle_text(session: EmailSession, text: str) -> Transition:
    """Apply a free-text message to the session's current step."""
    text = (text or "").strip()
    keyword = text.lower()
    step = session.step

    if not text:
        # Stickers, voice notes and the like carry no text: ask again.
        return _reprompt(session)

    if step == Step.AWAITING_RECIPIENTS:
        session.to = text
        session.step = Step.AWAITING_SUBJECT
        return Transition(session, [Reply(PROMPTS[Step.AWAITING_SUBJECT])])

    if step == Step.AWAITING_SUBJECT:
        # Header values may not span lines.
        session.subject = _single_line(text)
        session.step = Step.AWAITING_BODY
        return Transition(session, [Reply(PROMPTS[Step.AWAITING_BODY])])

    if step == Step.AWAITING_BODY:
        session.body = text
        session.step = Step.AWAITING_ATTACHMENT_CHOICE
        return Transition(session, [Reply(PROMPTS[Step.AWAITING_ATTACHMENT_CHOICE], parse_mode="Markdown")])

    if step == Step.AWAITING_ATTACHMENT_CHOICE:
        if keyword == "yes":
            session.step = Step.AWAITING_ATTACHMENT_UPLOAD
            return Transition(session, [Reply(PROMPTS[Step.AWAITING_ATTACHMENT_UPLOAD], parse_mode="Markdown")])
        if keyword == "no":
            return _to_send_decision(session)
        return Transition(session, [Reply(CHOICE_REPROMPT, parse_mode="Markdown")])

    if step == Step.AWAITING_ATTACHMENT_UPLOAD:
        if keyword == "skip":
            return _to_send_decision(session)
        return Transition(session, [Reply(UPLOAD_REPROMPT, parse_mode="Markdown")])

    if step == Step.AWAITING_SEND_DECISION:
        if keyword in SEND_NOW_KEYWORDS:
            session.schedule = None
            return Transition(None, [Reply("📤 Sending now...")], Action.SEND_NOW, session)
        session.schedule = text
        return Transition(None, [], Action.SCHEDULE, session)

    return Transition(None, [Reply("Unknown session state. Use /sendmail to start again.")])


def handle_file(session: EmailSession, attachment: AttachmentRef) -> Transition:
    """Attach a downloaded file; only accepted while waiting for an upload."""
    if session.step != Step.AWAITING_ATTACHMENT_UPLOAD:
        return Transition(session, [Reply(FILE_NOT_EXPECTED)])
    session.attachment_path = attachment.path
    session.attachment_name = attachment.name
    return _to_send_decision(session)


def cancel(session: Optional[EmailSession]) -> Transition:
    """Destroy the session regardless of its step."""
    if session is None:
        return Transition(None, [Reply(NOTHING_TO_CANCEL)])
    return Transition(None, [Reply(CANCELLED)])
