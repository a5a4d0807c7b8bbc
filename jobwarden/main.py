import asyncio
import logging
import signal
import sys

from telegram import Bot

from jobwarden.config import Settings, ensure_dirs
from jobwarden.jobs.handlers import default_handler_registry
from jobwarden.jobs.service import create_service
from jobwarden.lockfile import acquire_lock, release_lock
from jobwarden.notify import LogNotifier, Notifier, TelegramNotifier
from jobwarden.version import __version__

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)


async def _serve(*, settings: Settings, notifier: Notifier) -> None:
    """Run the scheduler until SIGINT or SIGTERM."""
    service = create_service(
        settings=settings,
        handlers=default_handler_registry(notifier=notifier),
        notifier=notifier,
    )
    service.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
        logger.info("Received shutdown signal")
    finally:
        service.shutdown()


async def _run(*, settings: Settings) -> None:
    if settings.telegram_bot_token:
        async with Bot(settings.telegram_bot_token) as bot:
            await _serve(settings=settings, notifier=TelegramNotifier(bot=bot))
    else:
        logger.info("No Telegram bot token, owner notifications go to the log")
        await _serve(settings=settings, notifier=LogNotifier())


def main() -> None:
    settings = Settings()
    logger.info(f"Started jobwarden {__version__} with {settings!s}")
    ensure_dirs(settings=settings)

    if not acquire_lock(lock_file=settings.lock_file):
        logger.error("Another instance is running")
        sys.exit(1)

    try:
        asyncio.run(_run(settings=settings))
    finally:
        release_lock(lock_file=settings.lock_file)


if __name__ == "__main__":
    main()
