"""Chat-driven email composer with scheduled delivery.

The package exposes a Telegram bot that walks a user through composing an
email (recipients, subject, body, optional attachment) and then either sends
it right away or stores it for a background worker to dispatch later.

Example:
    Running the bot from code::

        import asyncio

        from mail_wizard.app import MailWizard
        from mail_wizard.config import load_settings

        asyncio.run(MailWizard(load_settings()).run())
"""

__version__ = "0.3.0"
