import logging
from typing import Optional, Protocol

import httpx

from config import Settings, get_settings
from schemas import RideProposedEvent

logger = logging.getLogger(__name__)


class NotificationGateway(Protocol):
    def publish(self, event: RideProposedEvent) -> None:
        ...


class LoggingGateway:
    """Default gateway when no delivery webhook is configured."""

    def publish(self, event: RideProposedEvent) -> None:
        logger.info("ride %s proposed to users %s", event.ride_id, event.participant_user_ids)


class WebhookGateway:
    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def publish(self, event: RideProposedEvent) -> None:
        resp = self._client.post(self.url, json=event.model_dump(mode="json"), timeout=self.timeout)
        resp.raise_for_status()


def build_gateway(settings: Optional[Settings] = None) -> NotificationGateway:
    settings = settings or get_settings()
    if settings.notification_webhook_url:
        return WebhookGateway(settings.notification_webhook_url, settings.notification_timeout_seconds)
    return LoggingGateway()
