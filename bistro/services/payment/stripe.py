"""
Stripe Payment Service

Real payment provider for ENV_MODE=staging/production, built on the
official Stripe SDK. Card data never reaches this service: the browser
confirms the PaymentIntent with its client_secret and Stripe reports the
outcome through the signed webhook.
"""

import logging
import time
from decimal import Decimal
from typing import Optional

import stripe
from stripe import APIConnectionError, AuthenticationError, InvalidRequestError, StripeError

from bistro.core.config import get_settings
from bistro.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
    from_cents,
    to_cents,
)

logger = logging.getLogger(__name__)

API_VERSION = "2023-10-16"


def _describe(error: StripeError) -> tuple[str, str]:
    """(error_code, message safe to show a customer) for an SDK error."""
    if isinstance(error, InvalidRequestError):
        return "invalid_request", str(error)
    if isinstance(error, AuthenticationError):
        return "authentication_error", "Payment service configuration error"
    if isinstance(error, APIConnectionError):
        return "connection_error", "Payment service temporarily unavailable"
    return "stripe_error", "Payment processing error"


class StripePaymentService(BasePaymentService):
    """PaymentIntents, refunds and webhook verification against Stripe."""

    def __init__(self):
        settings = get_settings()
        if not settings.stripe_secret_key:
            raise ValueError("STRIPE_SECRET_KEY must be set when ENV_MODE is staging or production")

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = API_VERSION

        self._webhook_secret = settings.stripe_webhook_secret
        self._tolerance = settings.stripe_webhook_tolerance
        self._currency = settings.stripe_currency

        if not self._webhook_secret:
            logger.warning("Stripe: STRIPE_WEBHOOK_SECRET unset, every webhook will be rejected")
        logger.info(f"StripePaymentService ready (api_version={API_VERSION})")

    @property
    def provider_name(self) -> str:
        return "stripe"

    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        customer_email: Optional[str] = None,
    ) -> PaymentResult:
        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        params = {
            "amount": to_cents(amount),
            "currency": currency or self._currency,
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_email:
            params["receipt_email"] = customer_email

        started = time.perf_counter()
        try:
            intent = stripe.PaymentIntent.create(**params)
        except StripeError as e:
            code, message = _describe(e)
            log = logger.critical if code == "authentication_error" else logger.error
            log(f"Stripe: PaymentIntent for order {params['metadata'].get('orderId')} failed ({code}) - {e}")
            return PaymentResult(
                success=False,
                error_message=message,
                error_code=code,
                response_time_ms=(time.perf_counter() - started) * 1000,
            )

        logger.info(f"Stripe: PaymentIntent {intent.id} created ({intent.status})")
        return PaymentResult(
            success=True,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=from_cents(intent.amount),
            currency=intent.currency,
            response_time_ms=(time.perf_counter() - started) * 1000,
            metadata={"status": intent.status},
        )

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Full refund unless ``amount`` is given; ``reason`` is a Stripe reason code."""
        params = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = to_cents(amount)
        if reason:
            params["reason"] = reason

        try:
            refund = stripe.Refund.create(**params)
        except StripeError as e:
            logger.error(f"Stripe: refund of {payment_intent_id} failed - {e}")
            return RefundResult(success=False, status="failed", error_message=str(e))

        logger.info(f"Stripe: refund {refund.id} for {payment_intent_id} ({refund.status})")
        return RefundResult(
            success=True,
            refund_id=refund.id,
            amount=from_cents(refund.amount),
            status=refund.status,
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        if not self._webhook_secret:
            logger.error("Stripe: webhook received but no signing secret is configured")
            return None
        return self._verify_signed_payload(payload, signature, self._webhook_secret, self._tolerance)

    async def health_check(self) -> bool:
        try:
            stripe.Account.retrieve()
        except StripeError as e:
            logger.error(f"Stripe: health check failed - {e}")
            return False
        return True
