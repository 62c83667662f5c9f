"""
Payment providers.

``get_payment_service`` is both the factory and the FastAPI dependency:
development gets ``MockPaymentService``, staging and production get
``StripePaymentService``. Tests replace it through
``app.dependency_overrides``.
"""

import logging
from functools import lru_cache

from bistro.core.config import get_settings
from bistro.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
    from_cents,
    to_cents,
)
from bistro.services.payment.mock import MockPaymentService
from bistro.services.payment.stripe import StripePaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """One provider per process, chosen by ENV_MODE."""
    settings = get_settings()

    if settings.is_development:
        service = MockPaymentService(failure_rate=0.0, min_latency=0.05, max_latency=0.2)
    else:
        service = StripePaymentService()

    logger.info(f"Payment provider: {service.provider_name} ({settings.env_mode.value})")
    return service


__all__ = [
    "get_payment_service",
    "BasePaymentService",
    "PaymentResult",
    "RefundResult",
    "MockPaymentService",
    "StripePaymentService",
    "from_cents",
    "to_cents",
]
