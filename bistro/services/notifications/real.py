"""
Twilio / SendGrid Notification Service

Used outside development. A channel whose credentials are missing is
disabled rather than fatal: sends on it fail with a result and the other
channel keeps working.
"""

import logging
from typing import Optional

from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from bistro.core.config import get_settings
from bistro.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
)

logger = logging.getLogger(__name__)

SENDGRID_ACCEPTED = (200, 201, 202)


class RealNotificationService(BaseNotificationService):

    def __init__(self):
        settings = get_settings()

        self.twilio_client: Optional[TwilioClient] = None
        if settings.twilio_account_sid and settings.twilio_auth_token:
            self.twilio_client = TwilioClient(settings.twilio_account_sid, settings.twilio_auth_token)
        self.twilio_from_number = settings.twilio_phone_number

        self.sendgrid_client: Optional[SendGridAPIClient] = None
        if settings.sendgrid_api_key:
            self.sendgrid_client = SendGridAPIClient(settings.sendgrid_api_key)
        self.sendgrid_from_email = settings.sendgrid_from_email

        logger.info(
            f"RealNotificationService ready "
            f"(sms={'on' if self.twilio_client else 'off'}, "
            f"email={'on' if self.sendgrid_client else 'off'})"
        )

    @property
    def provider_name(self) -> str:
        return "real"

    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        if self.twilio_client is None:
            return NotificationResult(success=False, error_message="Twilio not configured", provider="twilio")

        try:
            sms = self.twilio_client.messages.create(body=message, from_=self.twilio_from_number, to=to_phone)
        except TwilioException as e:
            logger.error(f"Twilio send to {to_phone} failed - {e}")
            return NotificationResult(success=False, error_message=str(e), provider="twilio")

        logger.info(f"SMS {sms.sid} sent to {to_phone}")
        return NotificationResult(success=True, message_id=sms.sid, provider="twilio")

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        if self.sendgrid_client is None:
            return NotificationResult(success=False, error_message="SendGrid not configured", provider="sendgrid")

        mail = Mail(
            from_email=self.sendgrid_from_email,
            to_emails=to_email,
            subject=subject,
            html_content=body_html,
            plain_text_content=body_text,
        )
        try:
            response = self.sendgrid_client.send(mail)
        except HTTPError as e:
            logger.error(f"SendGrid send to {to_email} failed - {e}")
            return NotificationResult(success=False, error_message=str(e), provider="sendgrid")

        accepted = response.status_code in SENDGRID_ACCEPTED
        logger.info(f"Email to {to_email}: HTTP {response.status_code}")
        return NotificationResult(
            success=accepted,
            message_id=response.headers.get("X-Message-Id"),
            error_message=None if accepted else f"SendGrid returned HTTP {response.status_code}",
            provider="sendgrid",
        )

    async def health_check(self) -> bool:
        """Healthy while at least one channel is configured."""
        return self.twilio_client is not None or self.sendgrid_client is not None
