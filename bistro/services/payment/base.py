"""
Payment Provider Interface

Checkout, refunds and the webhook endpoint only talk to
``BasePaymentService``; ENV_MODE decides whether the mock or Stripe sits
behind it. Money crosses this boundary as ``Decimal`` dollars and is
converted to integer cents only at the provider edge.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import stripe

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    """Decimal("29.99") -> 2999, rounding half-up."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


@dataclass
class PaymentResult:
    """
    Outcome of opening a payment intent.

    On success ``payment_intent_id`` and ``client_secret`` are set and the
    browser finishes the payment; ``error_code`` and ``error_message``
    describe a refusal otherwise.
    """
    success: bool
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "usd"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: str = "pending"  # pending | succeeded | failed
    error_message: Optional[str] = None


class BasePaymentService(ABC):
    """Strategy interface implemented by the mock and the Stripe service."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        customer_email: Optional[str] = None,
    ) -> PaymentResult:
        """
        Open an intent for ``amount`` dollars.

        ``metadata`` (string values only) is stored on the intent and echoed
        back on every webhook event for it; reconciliation relies on its
        ``orderId``.
        """
        pass

    @abstractmethod
    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Refund an intent, in full when ``amount`` is None."""
        pass

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Optional[dict]:
        """The decoded event, or None when the request must be rejected."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    @staticmethod
    def _verify_signed_payload(
        payload: bytes,
        signature: Optional[str],
        secret: str,
        tolerance: int,
    ) -> Optional[dict]:
        """
        Check a Stripe-Signature header (HMAC-SHA256 over "timestamp.body")
        and decode the JSON body. Shared by both implementations so they
        accept and reject exactly the same requests.
        """
        if not signature:
            logger.warning("Webhook rejected: no Stripe-Signature header")
            return None

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
            event = json.loads(body)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook rejected: {e}")
            return None
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Webhook rejected: body is not UTF-8 JSON")
            return None

        return event if isinstance(event, dict) else None
