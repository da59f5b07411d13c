import asyncio

from mail_wizard.app import MailWizard
from mail_wizard.config import load_settings
from mail_wizard.logger import configure_logging

# Configure logging level from environment (MW_LOG_LEVEL)
configure_logging()


async def run_service(settings) -> None:
    service = MailWizard(settings)
    await service.run()


if __name__ == "__main__":
    settings = load_settings()
    try:
        asyncio.run(run_service(settings))
    except KeyboardInterrupt:
        pass
