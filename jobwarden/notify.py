"""Owner notification sinks."""

import logging
from typing import Protocol, TypedDict

from telegram import Bot

logger = logging.getLogger(__name__)


class Notification(TypedDict):
    type: str
    title: str
    message: str


class Notifier(Protocol):
    async def notify_owner(
        self, *, owner_id: str, notification: Notification
    ) -> None: ...


class LogNotifier:
    """Writes notifications to the log. Used when no bot token is configured."""

    async def notify_owner(self, *, owner_id: str, notification: Notification) -> None:
        logger.info(
            f"Notification for {owner_id} [{notification['type']}]: "
            f"{notification['title']} - {notification['message']}"
        )


class TelegramNotifier:
    """Sends notifications as Telegram messages, using the owner id as chat id."""

    def __init__(self, *, bot: Bot) -> None:
        self._bot = bot

    async def notify_owner(self, *, owner_id: str, notification: Notification) -> None:
        text = f"{notification['title']}\n\n{notification['message']}"
        await self._bot.send_message(chat_id=owner_id, text=text)
        logger.info(f"Sent {notification['type']} notification to {owner_id}")
