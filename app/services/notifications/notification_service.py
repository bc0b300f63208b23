"""
Notification Service.
Pushes flight change alerts to every subscriber of a flight, best effort.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.metrics import notifications_sent_total
from app.exceptions import ProviderException
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.flight import FieldChange, FlightSnapshot

logger = logging.getLogger(__name__)
settings = get_settings()


def format_update_message(flight_number: str, changes: List[FieldChange]) -> str:
    """
    e.g.
        🚨 *AA123 Update*

        Status: scheduled → departed
        Delay: 0 min → 12 min
    """
    message = f"🚨 *{flight_number} Update*\n\n"
    for change in changes:
        message += f"{change.field}: {change.old or 'N/A'} → {change.new or 'N/A'}\n"
    return message


class NotificationSink(ABC):
    """Delivery channel for subscriber messages"""

    @abstractmethod
    async def send(self, subscriber_key: str, message: str) -> None:
        ...

    async def close(self) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes messages to the log; used when no bot token is configured"""

    async def send(self, subscriber_key: str, message: str) -> None:
        logger.info("Notification", extra={"subscriber_key": subscriber_key, "text": message})


class TelegramNotificationSink(NotificationSink):
    """Telegram Bot API sendMessage, Markdown formatted"""

    def __init__(
        self,
        bot_token: str,
        api_base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.bot_token = bot_token
        self.api_base_url = (api_base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self._http_client = http_client or httpx.AsyncClient(timeout=10.0)
        self._owns_client = http_client is None

    async def send(self, subscriber_key: str, message: str) -> None:
        url = f"{self.api_base_url}/bot{self.bot_token}/sendMessage"
        try:
            response = await self._http_client.post(
                url,
                json={"chat_id": subscriber_key, "text": message, "parse_mode": "Markdown"}
            )
        except httpx.HTTPError as e:
            raise ProviderException(f"Telegram request failed: {str(e)}") from e

        if response.status_code >= 400:
            raise ProviderException(f"Telegram returned HTTP {response.status_code}: {response.text}")

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()


def create_notification_sink() -> NotificationSink:
    """Telegram when a bot token is configured, logging otherwise"""
    if settings.TELEGRAM_BOT_TOKEN:
        return TelegramNotificationSink(settings.TELEGRAM_BOT_TOKEN)
    logger.info("TELEGRAM_BOT_TOKEN not set, notifications go to the log")
    return LoggingNotificationSink()


class NotificationService:
    """
    Fans flight updates out to subscribers.
    A failed send is logged and counted; it never stops the rest of the batch.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], sink: NotificationSink):
        self.session_factory = session_factory
        self.sink = sink

    async def notify_flight_update(self, snapshot: FlightSnapshot, changes: List[FieldChange]) -> int:
        """
        Send a change summary to everyone following the flight.
        
        Returns:
            Number of subscribers successfully notified
        """
        if not changes:
            return 0

        async with self.session_factory() as session:
            subscriber_keys = await SubscriptionRepository(session).get_subscriber_keys(snapshot.id)

        message = format_update_message(snapshot.flight_number, changes)
        sent = 0

        for subscriber_key in subscriber_keys:
            try:
                await self.sink.send(subscriber_key, message)
                sent += 1
                notifications_sent_total.labels(status="sent").inc()
            except Exception as e:
                notifications_sent_total.labels(status="failed").inc()
                logger.error(
                    f"Error sending alert to {subscriber_key}: {str(e)}",
                    extra={"flight_id": snapshot.id}
                )

        logger.info(
            f"Notified {sent}/{len(subscriber_keys)} subscribers of {snapshot.flight_number}",
            extra={"flight_id": snapshot.id, "changes": [c.field for c in changes]}
        )
        return sent
