"""
Checkout

Turns a priced cart into a PENDING order and opens a payment intent for
its total. The provider reports the outcome later through the webhook;
until then the order waits in PENDING and the customer may retry the
payment on the same order.
"""

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.config import get_settings
from bistro.core.errors import AuthorizationError, ExternalServiceError, InvalidStateError
from bistro.core.security import RequestContext
from bistro.models import Order, OrderStatus, OrderStatusUpdate, PaymentStatus, utcnow
from bistro.schemas import CheckoutRequest, CheckoutResponse, PaymentRetryResponse
from bistro.services import orders
from bistro.services.common import ZERO
from bistro.services.orders import ChangeKind, OrderChange
from bistro.services.payment import BasePaymentService, PaymentResult

logger = logging.getLogger(__name__)


def payment_metadata(order: Order) -> dict[str, str]:
    """Metadata echoed back by the provider on every event for this payment."""
    return {
        "orderId": order.id,
        "userId": order.user_id,
        "orderType": order.order_type.value,
        "pickupTime": order.estimated_pickup_time.isoformat() if order.estimated_pickup_time else "",
    }


async def _open_payment_intent(
    db: AsyncSession,
    order: Order,
    payment_service: BasePaymentService,
    customer_email: Optional[str],
) -> PaymentResult:
    settings = get_settings()

    result = await payment_service.create_payment_intent(
        amount=order.total,
        currency=settings.stripe_currency,
        metadata=payment_metadata(order),
        customer_email=customer_email,
    )
    if not result.success:
        logger.error(
            f"Payment intent failed for order {order.id}: "
            f"{result.error_code} - {result.error_message}"
        )
        raise ExternalServiceError(
            "Payment could not be started, please try again",
            detail=result.error_message,
        )

    await db.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(payment_intent_id=result.payment_intent_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    logger.info(f"Order {order.id} awaiting payment {result.payment_intent_id}")
    return result


async def _confirm_without_payment(db: AsyncSession, ctx: RequestContext, order: Order) -> OrderChange:
    """A promotion covered the whole order, so there is nothing to charge."""
    await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING)
        .values(
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            payment_method="promotion",
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.add(
        OrderStatusUpdate(
            order_id=order.id,
            status=OrderStatus.CONFIRMED,
            note="Order fully covered by promotion",
            updated_by_id=ctx.user_id,
        )
    )
    await db.commit()
    return OrderChange(order.id, ChangeKind.PAYMENT_CONFIRMED, OrderStatus.PENDING, OrderStatus.CONFIRMED)


async def checkout(
    db: AsyncSession,
    ctx: RequestContext,
    request: CheckoutRequest,
    payment_service: BasePaymentService,
) -> tuple[CheckoutResponse, OrderChange]:
    """
    Create the order (with any promotion) and its payment intent.

    Raises:
        ValidationError: Empty cart, unknown item or coupon
        ExternalServiceError: Provider refused the intent; the order stays
            PENDING and can be paid through ``retry_payment``
    """
    settings = get_settings()

    placed = await orders.create_order(
        db,
        ctx,
        items=request.items,
        order_type=request.order_type,
        notes=request.order_notes,
        pickup_time=request.pickup_time,
        coupon_code=request.coupon_code,
    )
    order = placed.order
    change = placed.change

    payment_intent_id = None
    client_secret = None
    if order.total > ZERO:
        intent = await _open_payment_intent(db, order, payment_service, ctx.email)
        payment_intent_id = intent.payment_intent_id
        client_secret = intent.client_secret
    else:
        change = await _confirm_without_payment(db, ctx, order)

    evaluation = placed.promotion
    response = CheckoutResponse(
        order_id=order.id,
        order_number=order.short_number,
        payment_intent_id=payment_intent_id,
        client_secret=client_secret,
        subtotal=float(placed.subtotal),
        discount=float(order.discount_amount),
        total=float(order.total),
        promotion_applied=bool(evaluation and evaluation.applicable),
        promotion_message=evaluation.reason if evaluation and not evaluation.applicable else None,
        estimated_time=f"{settings.estimated_prep_minutes} minutes",
    )
    return response, change


async def retry_payment(
    db: AsyncSession,
    ctx: RequestContext,
    order_id: str,
    payment_service: BasePaymentService,
) -> PaymentRetryResponse:
    """Open a fresh payment intent for an unpaid order the caller owns."""
    order = await orders.load_order(db, order_id)
    if order.user_id != ctx.user_id:
        raise AuthorizationError("You can only pay for your own orders")
    if order.status != OrderStatus.PENDING or order.payment_status not in (
        PaymentStatus.PENDING,
        PaymentStatus.FAILED,
    ):
        raise InvalidStateError("This order is not awaiting payment")

    intent = await _open_payment_intent(db, order, payment_service, ctx.email)
    return PaymentRetryResponse(
        order_id=order.id,
        payment_intent_id=intent.payment_intent_id,
        client_secret=intent.client_secret,
        total=float(order.total),
    )
