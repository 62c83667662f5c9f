"""
Mock Notification Service

Development stand-in for Twilio and SendGrid. Nothing leaves the
process: every delivered message is logged and appended to ``sent``.
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from bistro.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class MockNotificationService(BaseNotificationService):

    def __init__(self, failure_rate: float = 0.05, latency: float = 0.2):
        self.failure_rate = failure_rate
        self.latency = latency
        self.sent: list[dict] = []
        logger.info(f"MockNotificationService ready (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _deliver(self, channel: str, to: str, **fields) -> NotificationResult:
        if self.latency > 0:
            await asyncio.sleep(random.uniform(self.latency / 2, self.latency))

        if random.random() < self.failure_rate:
            logger.warning(f"Mock {channel} to {to} failed (simulated)")
            return NotificationResult(
                success=False,
                error_message=f"Simulated {channel} failure",
                provider=self.provider_name,
            )

        message_id = f"{channel}_mock_{uuid.uuid4().hex[:12]}"
        self.sent.append({"channel": channel, "to": to, **fields})
        logger.info(f"Mock {channel} delivered to {to} ({message_id})")
        return NotificationResult(success=True, message_id=message_id, provider=self.provider_name)

    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        return await self._deliver("sms", to_phone, body=message)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        return await self._deliver("email", to_email, subject=subject, body=body_text)

    async def health_check(self) -> bool:
        return True
