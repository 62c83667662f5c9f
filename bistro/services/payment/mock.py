"""
Mock Payment Service

Stand-in for Stripe in development and tests. Intents get Stripe-shaped
ids (pi_mock_..., re_mock_...) and a client secret that Stripe.js would
reject; webhooks are verified with the real Stripe signing scheme
whenever a secret is configured, so the local webhook endpoint behaves
exactly like production.
"""

import asyncio
import json
import logging
import random
import uuid
from decimal import Decimal
from typing import Optional

from bistro.core.config import get_settings
from bistro.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)

# (error_code, message) pairs picked at random for simulated failures
SIMULATED_ERRORS = [
    ("processing_error", "An error occurred while processing your card."),
    ("rate_limit", "Too many requests hit the API too quickly."),
    ("api_connection_error", "Payment service temporarily unavailable."),
]


def _mock_id(prefix: str) -> str:
    return f"{prefix}_mock_{uuid.uuid4().hex[:24]}"


class MockPaymentService(BasePaymentService):
    """
    Simulated provider with configurable latency and failure rate.

    ``refunds`` keeps every successful refund so tests can inspect them.
    """

    def __init__(
        self,
        failure_rate: float = 0.10,
        min_latency: float = 0.2,
        max_latency: float = 0.8,
        webhook_secret: Optional[str] = None,
    ):
        settings = get_settings()
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self._webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._tolerance = settings.stripe_webhook_tolerance
        self.refunds: list[RefundResult] = []

        logger.info(
            f"MockPaymentService ready (failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s, "
            f"webhooks={'signed' if self._webhook_secret else 'unverified'})"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _pause(self) -> float:
        """Sleep for a random latency; returns it in milliseconds."""
        if self.max_latency <= 0:
            return 0.0
        seconds = random.uniform(self.min_latency, self.max_latency)
        await asyncio.sleep(seconds)
        return seconds * 1000

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        customer_email: Optional[str] = None,
    ) -> PaymentResult:
        elapsed = await self._pause()

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
                response_time_ms=elapsed,
            )

        if random.random() < self.failure_rate:
            code, message = random.choice(SIMULATED_ERRORS)
            logger.info(f"Mock: simulated {code} for ${amount:.2f}")
            return PaymentResult(
                success=False,
                amount=amount,
                currency=currency,
                error_message=message,
                error_code=code,
                response_time_ms=elapsed,
            )

        intent_id = _mock_id("pi")
        logger.info(f"Mock: PaymentIntent {intent_id} for ${amount:.2f}")
        return PaymentResult(
            success=True,
            payment_intent_id=intent_id,
            client_secret=f"{intent_id}_secret_mock",
            amount=amount,
            currency=currency,
            response_time_ms=elapsed,
            metadata={**(metadata or {}), "receipt_email": customer_email, "mock": True},
        )

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        await self._pause()

        # Only intents the provider could have issued are refundable
        if not (payment_intent_id or "").startswith("pi_"):
            return RefundResult(success=False, status="failed", error_message="Invalid payment intent ID")

        result = RefundResult(success=True, refund_id=_mock_id("re"), amount=amount, status="succeeded")
        self.refunds.append(result)
        logger.info(f"Mock: refund {result.refund_id} for {payment_intent_id} ({reason or 'no reason'})")
        return result

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        """Signed check when a secret is configured; plain JSON otherwise."""
        if self._webhook_secret:
            return self._verify_signed_payload(payload, signature, self._webhook_secret, self._tolerance)

        logger.warning("Mock: no webhook secret configured, accepting unsigned event")
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            return None
        return event if isinstance(event, dict) else None

    async def health_check(self) -> bool:
        return True
