"""
Customer and staff notifications (SMS + email).

``get_notification_service`` doubles as the FastAPI dependency; it returns
the in-memory mock in development and Twilio/SendGrid otherwise.
"""

import logging
from functools import lru_cache

from bistro.core.config import get_settings
from bistro.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)
from bistro.services.notifications.mock import MockNotificationService
from bistro.services.notifications.real import RealNotificationService

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_service() -> BaseNotificationService:
    settings = get_settings()

    if settings.is_development:
        service = MockNotificationService(failure_rate=0.05)
    else:
        service = RealNotificationService()

    logger.info(f"Notification provider: {service.provider_name} ({settings.env_mode.value})")
    return service


__all__ = [
    "get_notification_service",
    "BaseNotificationService",
    "NotificationResult",
    "MockNotificationService",
    "RealNotificationService",
]
