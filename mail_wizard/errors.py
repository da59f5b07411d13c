"""Exception hierarchy shared by the bot components."""

from __future__ import annotations

from typing import List, Optional


class MailWizardError(Exception):
    """Base class for every error raised by the package."""

    code = "mail_wizard_error"


class ConfigurationError(MailWizardError):
    """Raised at startup when required settings are missing or invalid."""

    code = "configuration_error"


class DeliveryError(MailWizardError):
    """Raised when the mail transport rejects a message for one recipient.

    ``delivered`` lists the recipients of the same send that were accepted
    before this failure, in order.
    """

    code = "delivery_error"

    def __init__(
        self,
        recipient: str,
        cause: Optional[BaseException] = None,
        delivered: Optional[List[str]] = None,
    ):
        self.recipient = recipient
        self.cause = cause
        self.delivered: List[str] = list(delivered or [])
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"delivery to {recipient} failed{detail}")


class AttachmentDownloadError(MailWizardError):
    """Raised when an uploaded file cannot be fetched from the chat transport."""

    code = "attachment_download_error"


class ChatTransportError(MailWizardError):
    """Raised when a chat transport call fails or returns an error payload."""

    code = "chat_transport_error"
