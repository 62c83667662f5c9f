"""
Notification Service Abstract Base Class

Defines interface for sending SMS and Email notifications.
Supports both Mock (development) and Real (production) implementations.

Message composition for the restaurant's customer and staff notices
lives here so both implementations send identical text.

Version: 4.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from bistro.core.config import get_settings


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotificationService(ABC):
    """Abstract base class for notification services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Send an SMS message."""
        pass

    @abstractmethod
    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send an email."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    # =========================================================================
    # COMPOSED NOTICES
    # =========================================================================

    async def send_order_ready(
        self,
        order_number: str,
        customer_name: str,
        customer_email: Optional[str],
        customer_phone: Optional[str],
        order_type: str,
    ) -> NotificationResult:
        """Tell the customer their order can be collected."""
        settings = get_settings()

        if order_type == "DINE_IN":
            details = "Your server will bring it to your table shortly."
        else:
            details = f"Please collect it at {settings.restaurant_address}."

        message = (
            f"Hi {customer_name}! Your order {order_number} is ready.\n"
            f"{details}\n"
            f"- {settings.restaurant_name}"
        )

        sms_result = None
        if customer_phone:
            sms_result = await self.send_sms(customer_phone, message)

        email_result = None
        if customer_email:
            email_html = f"""
            <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
                <h1 style="color: #ff4757;">Your order is ready!</h1>
                <p>Hi {customer_name},</p>
                <p>Order <strong>{order_number}</strong> is ready.</p>
                <p>{details}</p>
                <p>Thank you for ordering from {settings.restaurant_name}!</p>
            </div>
            """
            email_result = await self.send_email(
                to_email=customer_email,
                subject=f"Order {order_number} is ready - {settings.restaurant_name}",
                body_html=email_html,
                body_text=message,
            )

        sent = [r for r in (sms_result, email_result) if r is not None]
        if not sent:
            return NotificationResult(
                success=False,
                error_message="Customer has no contact details",
                provider=self.provider_name,
            )

        first_ok = next((r for r in sent if r.success), None)
        return NotificationResult(
            success=first_ok is not None,
            message_id=first_ok.message_id if first_ok else None,
            error_message=None if first_ok else sent[0].error_message,
            provider=self.provider_name,
        )

    async def send_staff_invitation(
        self,
        to_email: str,
        name: str,
        role: str,
        invited_by: str,
    ) -> NotificationResult:
        """Welcome a newly created staff member."""
        settings = get_settings()

        text = (
            f"Hi {name},\n"
            f"{invited_by} has added you to the {settings.restaurant_name} team "
            f"as {role.title()}.\n"
            f"Sign in at {settings.app_base_url} with this email address."
        )
        html = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h1 style="color: #ff4757;">Welcome to {settings.restaurant_name}</h1>
            <p>Hi {name},</p>
            <p>{invited_by} has added you to the team as <strong>{role.title()}</strong>.</p>
            <a href="{settings.app_base_url}" style="display: inline-block; background: #ff4757; color: white; padding: 15px 30px; text-decoration: none; border-radius: 8px; margin: 20px 0;">
                Sign in
            </a>
        </div>
        """
        return await self.send_email(
            to_email=to_email,
            subject=f"You're invited to {settings.restaurant_name}",
            body_html=html,
            body_text=text,
        )
