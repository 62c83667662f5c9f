"""
Payment Reconciliation

Applies verified payment provider events to orders. Delivery is
at-least-once and may arrive out of order, so every handler is an
idempotent conditional write keyed on the provider's identifiers.

Once a signature has been verified the provider is never asked to
retry: processing errors are logged and acknowledged with a warning.

Version: 4.0.0
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import pydantic
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.errors import ValidationError
from bistro.models import (
    MenuItem,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusUpdate,
    OrderType,
    PaymentStatus,
    User,
    new_id,
    utcnow,
)
from bistro.schemas import (
    ChargeObject,
    CheckoutSessionObject,
    MetadataItem,
    PaymentIntentObject,
    ReconstructionMetadata,
    WebhookEvent,
)
from bistro.services.common import ZERO, as_utc, money
from bistro.services.orders import ChangeKind, OrderChange
from bistro.services.payment import from_cents

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
PICKUP_TIME_PATTERN = re.compile(r"(\d+):(\d+)\s*(a\.m\.|p\.m\.|am|pm)", re.IGNORECASE)


@dataclass
class WebhookOutcome:
    """What the endpoint acknowledges back to the provider."""
    event_type: str
    handled: bool = False
    change: Optional[OrderChange] = None
    warning: Optional[str] = None

    def to_response(self) -> dict:
        body = {"received": True, "type": self.event_type}
        if self.warning:
            body["warning"] = self.warning
        return body


# =============================================================================
# PICKUP TIME PARSING
# =============================================================================

def parse_pickup_time(value: Optional[str], today: Optional[datetime] = None) -> Optional[datetime]:
    """
    Best-effort parse of a pickup time from payment metadata.

    Accepts ISO-8601 timestamps, or a clock time such as "4:30 p.m." which
    is placed on today's date. Anything else yields None.
    """
    if not value or not value.strip():
        return None
    value = value.strip()

    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        pass

    match = PICKUP_TIME_PATTERN.search(value)
    if not match:
        logger.info(f"Unparseable pickup time '{value}', leaving it empty")
        return None

    hour, minute = int(match.group(1)), int(match.group(2))
    period = match.group(3).lower()
    if period.startswith("p") and hour < 12:
        hour += 12
    elif period.startswith("a") and hour == 12:
        hour = 0

    if hour > 23 or minute > 59:
        return None

    today = today or datetime.now(timezone.utc)
    return today.replace(hour=hour, minute=minute, second=0, microsecond=0)


# =============================================================================
# SHARED WRITES
# =============================================================================

async def _confirm_payment(
    db: AsyncSession,
    order_id: str,
    actor: str,
    note: str,
    payment_intent_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> Optional[OrderChange]:
    """Mark an order PAID exactly once; later deliveries only fill in a missing charge id."""
    order = await db.get(Order, order_id, populate_existing=True)
    if order is None:
        logger.error(f"Payment event for unknown order {order_id}")
        return None

    if order.payment_status == PaymentStatus.PAID:
        if charge_id and order.charge_id is None:
            await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.charge_id.is_(None))
                .values(charge_id=charge_id, payment_method=payment_method or order.payment_method)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.info(f"Order {order_id} already paid, event ignored")
        return None

    old_status = order.status
    new_status = OrderStatus.CONFIRMED if old_status == OrderStatus.PENDING else old_status

    values = {
        "payment_status": PaymentStatus.PAID,
        "status": new_status,
        "updated_at": utcnow(),
    }
    if payment_method:
        values["payment_method"] = payment_method
    if payment_intent_id:
        values["payment_intent_id"] = payment_intent_id
    if charge_id:
        values["charge_id"] = charge_id

    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status != PaymentStatus.PAID,
            Order.status == old_status,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        logger.info(f"Order {order_id} was updated concurrently, event ignored")
        return None

    db.add(OrderStatusUpdate(order_id=order_id, status=new_status, note=note, updated_by_id=actor))
    await db.commit()

    logger.info(f"Order {order_id} payment status updated to PAID")
    return OrderChange(order_id, ChangeKind.PAYMENT_CONFIRMED, old_status, new_status)


async def _record_failure(
    db: AsyncSession,
    order_id: str,
    actor: str,
    note: str,
) -> Optional[OrderChange]:
    """Send an unpaid order back to PENDING so the customer can retry."""
    order = await db.get(Order, order_id, populate_existing=True)
    if order is None:
        logger.error(f"Payment failure for unknown order {order_id}")
        return None

    if order.payment_status == PaymentStatus.PAID:
        logger.info(f"Order {order_id} already paid, late failure event ignored")
        return None

    old_status = order.status
    new_status = OrderStatus.CANCELED if old_status == OrderStatus.CANCELED else OrderStatus.PENDING

    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status != PaymentStatus.PAID,
            Order.status == old_status,
        )
        .values(payment_status=PaymentStatus.FAILED, status=new_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        logger.info(f"Order {order_id} was updated concurrently, failure event ignored")
        return None

    db.add(OrderStatusUpdate(order_id=order_id, status=new_status, note=note, updated_by_id=actor))
    await db.commit()

    logger.warning(f"Order {order_id} payment failed: {note}")
    return OrderChange(order_id, ChangeKind.PAYMENT_FAILED, old_status, new_status)


# =============================================================================
# ORDER RECONSTRUCTION
# =============================================================================

def _metadata_error(error: pydantic.ValidationError) -> str:
    fields = sorted({str(e["loc"][0]) for e in error.errors() if e.get("loc")})
    return f"Missing or invalid payment metadata: {', '.join(fields) or 'unknown'}"


async def reconstruct_order(db: AsyncSession, charge: ChargeObject) -> Optional[OrderChange]:
    """
    Create a paid order from a charge that carries no order reference.

    Raises:
        ValidationError: Required metadata missing or malformed, unknown
            customer, or none of the listed items exist
    """
    try:
        meta = ReconstructionMetadata.model_validate(charge.metadata)
    except pydantic.ValidationError as e:
        raise ValidationError(_metadata_error(e))

    lookup = [Order.charge_id == charge.id]
    if charge.payment_intent:
        lookup.append(Order.payment_intent_id == charge.payment_intent)
    existing = await db.scalar(select(Order.id).where(or_(*lookup)))
    if existing:
        logger.info(f"Charge {charge.id} already recorded on order {existing}")
        return None

    if await db.get(User, meta.userId) is None:
        raise ValidationError(f"Unknown customer in payment metadata: {meta.userId}")

    lines = []
    for position, entry in enumerate(meta.items):
        try:
            lines.append(MetadataItem.model_validate(entry))
        except pydantic.ValidationError as e:
            logger.warning(f"Charge {charge.id}: item entry {position} is malformed, skipping ({e.error_count()} error(s))")

    ids = {item.menuItemId for item in lines}
    result = await db.execute(select(MenuItem).where(MenuItem.id.in_(ids)))
    catalog = {menu_item.id: menu_item for menu_item in result.scalars().all()}

    order_items = []
    for item in lines:
        menu_item = catalog.get(item.menuItemId)
        if menu_item is None:
            logger.warning(f"Charge {charge.id}: menu item {item.menuItemId} not found, skipping")
            continue
        order_items.append(
            OrderItem(
                menu_item_id=menu_item.id,
                quantity=item.quantity,
                price=money(menu_item.price),
                special_instructions=item.specialInstructions,
            )
        )

    if not order_items:
        raise ValidationError("No valid order items could be created")

    subtotal = money(sum((i.price * i.quantity for i in order_items), ZERO))
    # The charged amount is authoritative for total; discount only absorbs
    # an undercharge, so an overcharge leaves total above the item sum
    total = from_cents(charge.amount)
    discount = subtotal - total if subtotal > total else ZERO
    if total > subtotal:
        logger.warning(
            f"Charge {charge.id}: charged {total} exceeds rebuilt subtotal {subtotal}; "
            f"order total kept at the charged amount"
        )

    try:
        order_type = OrderType(meta.orderType) if meta.orderType else OrderType.PICKUP
    except ValueError:
        order_type = OrderType.PICKUP

    order = Order(
        id=new_id(),
        user_id=meta.userId,
        total=total,
        discount_amount=money(discount),
        status=OrderStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
        payment_method=charge.payment_method,
        payment_intent_id=charge.payment_intent,
        charge_id=charge.id,
        order_type=order_type,
        order_notes=meta.orderNotes,
        estimated_pickup_time=parse_pickup_time(meta.pickupTime),
    )
    order.items = order_items
    db.add(order)
    db.add(
        OrderStatusUpdate(
            order_id=order.id,
            status=OrderStatus.CONFIRMED,
            note="Order created and payment confirmed via webhook",
            updated_by_id=meta.userId,
        )
    )

    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same charge won the insert
        await db.rollback()
        logger.info(f"Charge {charge.id} recorded concurrently, duplicate ignored")
        return None

    logger.info(f"Created order {order.id} from charge {charge.id} ({len(order_items)} item(s))")
    return OrderChange(order.id, ChangeKind.PAYMENT_CONFIRMED, None, OrderStatus.CONFIRMED)


# =============================================================================
# EVENT HANDLERS
# =============================================================================

async def handle_charge_succeeded(db: AsyncSession, obj: dict) -> Optional[OrderChange]:
    charge = ChargeObject.model_validate(obj)
    order_id = charge.metadata.get("orderId")

    if not order_id:
        logger.info(f"Charge {charge.id} has no orderId, reconstructing order")
        return await reconstruct_order(db, charge)

    return await _confirm_payment(
        db,
        order_id,
        actor=charge.metadata.get("userId") or SYSTEM_ACTOR,
        note="Payment confirmed",
        payment_intent_id=charge.payment_intent,
        charge_id=charge.id,
        payment_method=charge.payment_method,
    )


async def handle_payment_intent_succeeded(db: AsyncSession, obj: dict) -> Optional[OrderChange]:
    intent = PaymentIntentObject.model_validate(obj)
    order_id = intent.metadata.get("orderId")
    if not order_id:
        logger.error(f"No orderId in payment intent {intent.id} metadata")
        return None

    return await _confirm_payment(
        db,
        order_id,
        actor=intent.metadata.get("userId") or SYSTEM_ACTOR,
        note="Payment confirmed via payment intent",
        payment_intent_id=intent.id,
    )


async def handle_payment_intent_failed(db: AsyncSession, obj: dict) -> Optional[OrderChange]:
    intent = PaymentIntentObject.model_validate(obj)
    order_id = intent.metadata.get("orderId")
    if not order_id:
        logger.error(f"No orderId in payment intent {intent.id} metadata")
        return None

    return await _record_failure(
        db,
        order_id,
        actor=intent.metadata.get("userId") or SYSTEM_ACTOR,
        note=f"Payment failed: {intent.failure_message}",
    )


async def handle_checkout_session_completed(db: AsyncSession, obj: dict) -> Optional[OrderChange]:
    session = CheckoutSessionObject.model_validate(obj)
    order_id = session.metadata.get("orderId")
    if not order_id:
        logger.error(f"No orderId in checkout session {session.id} metadata")
        return None

    if session.payment_status != "paid":
        logger.info(f"Checkout session {session.id} completed unpaid ({session.payment_status})")
        return None

    return await _confirm_payment(
        db,
        order_id,
        actor=session.metadata.get("userId") or SYSTEM_ACTOR,
        note="Payment confirmed through Stripe Checkout",
        payment_intent_id=session.payment_intent,
    )


HANDLERS = {
    "charge.succeeded": handle_charge_succeeded,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "checkout.session.completed": handle_checkout_session_completed,
}


async def handle_event(db: AsyncSession, event: dict) -> WebhookOutcome:
    """
    Dispatch a verified event to its handler.

    Never raises: failures are logged and reported as a warning so the
    provider does not redeliver.
    """
    event_type = event.get("type") if isinstance(event, dict) else None
    outcome = WebhookOutcome(event_type=str(event_type or "unknown"))

    try:
        envelope = WebhookEvent.model_validate(event)
        handler = HANDLERS.get(envelope.type)
        if handler is None:
            logger.info(f"Unhandled event type: {envelope.type}")
            return outcome

        outcome.change = await handler(db, envelope.data.object)
        outcome.handled = True

    except Exception:
        logger.exception(f"Error handling {outcome.event_type} event")
        await db.rollback()
        outcome.warning = "Event processed with errors"

    return outcome
