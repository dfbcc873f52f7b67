"""
Notification delivery decoupled from the financial transaction.

Services build ``NotificationRequested`` events while they work and publish
them only after their transaction has committed. Delivery is best effort:
every failure is retried a bounded number of times, then logged and dropped.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, NamedTuple, Optional, Set

from aiogram import Bot

from lease.config import config
from lease.database.models import User

logger = logging.getLogger(__name__)


class NotificationRequested(NamedTuple):
    user_id: int
    chat_id: Optional[int]
    title: str
    body: str


def notification_for(user: Optional[User], title: str, body: str) -> List[NotificationRequested]:
    """Event list for ``user`` (empty when there is nobody to notify)."""
    if user is None:
        return []
    return [NotificationRequested(user_id=user.id, chat_id=user.tg_id, title=title, body=body)]


class NotificationChannel(ABC):
    """Delivery channel interface"""

    @abstractmethod
    async def send(self, event: NotificationRequested) -> None:
        pass


class TelegramChannel(NotificationChannel):
    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(self, event: NotificationRequested) -> None:
        if event.chat_id is None:
            logger.info(f"User {event.user_id} has no Telegram chat, skipping '{event.title}'")
            return
        await self.bot.send_message(
            event.chat_id,
            f"<b>{event.title}</b>\n{event.body}",
            parse_mode="HTML"
        )
        logger.info(f"Notification sent to {event.user_id}")


class LogChannel(NotificationChannel):
    """Used when no bot token is configured"""

    async def send(self, event: NotificationRequested) -> None:
        logger.info(f"[notify user={event.user_id}] {event.title}: {event.body}")


class NotificationDispatcher:
    def __init__(
        self,
        channel: NotificationChannel,
        max_attempts: int = None,
        background: bool = False
    ):
        self.channel = channel
        self.max_attempts = max_attempts or config.NOTIFICATION_MAX_ATTEMPTS
        self.background = background
        self._tasks: Set[asyncio.Task] = set()

    async def publish(self, events: Iterable[NotificationRequested]) -> None:
        """Deliver events; never raises."""
        for event in events:
            if self.background:
                task = asyncio.create_task(self._deliver(event))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            else:
                await self._deliver(event)

    async def _deliver(self, event: NotificationRequested) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.channel.send(event)
                return True
            except Exception as e:
                logger.warning(
                    f"Failed to notify user {event.user_id} ('{event.title}'), "
                    f"attempt {attempt}/{self.max_attempts}: {e}"
                )
        return False

    async def drain(self) -> None:
        """Wait for background deliveries (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


notification_dispatcher = NotificationDispatcher(LogChannel())


def setup_notifications(
    bot: Optional[Bot] = None,
    channel: Optional[NotificationChannel] = None,
    background: bool = False
) -> NotificationDispatcher:
    global notification_dispatcher
    if channel is None:
        channel = TelegramChannel(bot) if bot is not None else LogChannel()
    notification_dispatcher = NotificationDispatcher(channel, background=background)
    return notification_dispatcher


def get_dispatcher() -> NotificationDispatcher:
    return notification_dispatcher
