"""
Order Lifecycle Manager

Creates orders, moves them through the kitchen workflow and records every
move in the append-only ``OrderStatusUpdate`` trail:

    PENDING → CONFIRMED → PREPARING → READY_FOR_PICKUP → COMPLETED
        ╰──────────╰──→ CANCELED

Each status write and its audit entry share one commit. Mutations return
an ``OrderChange`` describing what happened so the API layer can trigger
side effects (notifications, ledger export) without re-querying.

Version: 4.0.0
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.config import get_settings
from bistro.core.errors import (
    AuthorizationError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
)
from bistro.core.security import RequestContext, ensure_role
from bistro.models import (
    MANAGEMENT_ROLES,
    STAFF_ROLES,
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
from bistro.schemas import CartItemIn
from bistro.services import promotions
from bistro.services.cart import price_lines, subtotal_of
from bistro.services.common import ZERO, as_utc, page_bounds
from bistro.services.payment import BasePaymentService
from bistro.services.promotions import PromotionEvaluation

logger = logging.getLogger(__name__)

WORKFLOW = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.COMPLETED,
)
CANCELABLE = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


# =============================================================================
# CHANGE NOTIFICATION
# =============================================================================

class ChangeKind(str, enum.Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    CANCELED = "canceled"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class OrderChange:
    """What a mutating call did to an order."""
    order_id: str
    kind: ChangeKind
    old_status: Optional[OrderStatus]
    new_status: OrderStatus
    notify_customer: bool = False

    @property
    def queues_ledger_export(self) -> bool:
        return self.kind == ChangeKind.PAYMENT_CONFIRMED


@dataclass
class PlacedOrder:
    """Result of ``create_order``."""
    order: Order
    change: OrderChange
    subtotal: Decimal
    promotion: Optional[PromotionEvaluation] = None


# =============================================================================
# LOADING
# =============================================================================

async def load_order(db: AsyncSession, order_id: str) -> Order:
    """Fetch an order with lines and audit trail, overwriting stale state."""
    order = await db.scalar(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    if order is None:
        raise NotFoundError("Order not found")
    return order


def _ensure_can_view(ctx: RequestContext, order: Order) -> None:
    if order.user_id != ctx.user_id and not ctx.is_staff:
        raise AuthorizationError("You do not have access to this order")


# =============================================================================
# CREATE
# =============================================================================

async def create_order(
    db: AsyncSession,
    ctx: RequestContext,
    items: list[CartItemIn],
    order_type: OrderType = OrderType.PICKUP,
    notes: Optional[str] = None,
    pickup_time: Optional[datetime] = None,
    coupon_code: Optional[str] = None,
) -> PlacedOrder:
    """
    Create a PENDING order from cart lines.

    Prices are snapshotted from the catalog. When a coupon is given the
    promotion is redeemed in the same transaction as the order insert;
    an inapplicable promotion leaves the order at full price.

    Raises:
        ValidationError: Empty cart, unknown item or unknown coupon code
    """
    lines = await price_lines(db, items)
    promotion = await promotions.find_by_coupon(db, coupon_code) if coupon_code else None
    subtotal = subtotal_of(lines)

    order = Order(
        id=new_id(),
        user_id=ctx.user_id,
        total=subtotal,
        discount_amount=ZERO,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        order_type=order_type,
        order_notes=notes,
        estimated_pickup_time=as_utc(pickup_time),
    )
    order.items = [
        OrderItem(
            menu_item_id=line.menu_item_id,
            quantity=line.quantity,
            price=line.unit_price,
            special_instructions=line.special_instructions,
        )
        for line in lines
    ]
    db.add(order)
    db.add(
        OrderStatusUpdate(
            order_id=order.id,
            status=OrderStatus.PENDING,
            note="Order created, awaiting payment",
            updated_by_id=ctx.user_id,
        )
    )

    evaluation = None
    try:
        if promotion is not None:
            evaluation = await promotions.apply(db, promotion, order, lines, ctx)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        f"Order {order.id} created for {ctx.user_id}: "
        f"{len(lines)} line(s), total ${order.total}"
    )

    return PlacedOrder(
        order=await load_order(db, order.id),
        change=OrderChange(order.id, ChangeKind.CREATED, None, OrderStatus.PENDING),
        subtotal=subtotal,
        promotion=evaluation,
    )


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def check_transition(old: OrderStatus, new: OrderStatus) -> None:
    """
    Enforce the forward-only workflow.

    Steps may be skipped but never reversed; CANCELED is only reachable
    before preparation starts.
    """
    if new == OrderStatus.CANCELED:
        if old not in CANCELABLE:
            raise InvalidStateError(f"Cannot cancel an order that is {old.value}")
        return

    if old not in WORKFLOW or new not in WORKFLOW:
        raise InvalidStateError(f"Cannot move an order from {old.value} to {new.value}")

    if WORKFLOW.index(new) <= WORKFLOW.index(old):
        raise InvalidStateError(f"Cannot move an order back from {old.value} to {new.value}")


async def update_status(
    db: AsyncSession,
    ctx: RequestContext,
    order_id: str,
    new_status: OrderStatus,
    note: Optional[str] = None,
) -> OrderChange:
    """
    Set an order's status and append the audit entry (staff only).

    Permissive unless STRICT_STATUS_TRANSITIONS is enabled. The write is
    conditional on the status read here, so a concurrent cancellation is
    reported instead of silently overwritten.
    """
    ensure_role(ctx, *STAFF_ROLES)

    order = await load_order(db, order_id)
    old_status = order.status

    if get_settings().strict_status_transitions:
        check_transition(old_status, new_status)

    values = {"status": new_status, "updated_at": utcnow()}
    if new_status == OrderStatus.COMPLETED:
        values["completed_time"] = utcnow()

    notify = new_status == OrderStatus.READY_FOR_PICKUP and not order.is_notified
    if notify:
        values["is_notified"] = True

    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == old_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise InvalidStateError("Order was changed by someone else, please refresh")

    db.add(
        OrderStatusUpdate(
            order_id=order_id,
            status=new_status,
            note=note or f"Status updated to {new_status.value}",
            updated_by_id=ctx.user_id,
        )
    )
    await db.commit()

    logger.info(f"Order {order_id}: {old_status.value} → {new_status.value} by {ctx.user_id}")

    kind = ChangeKind.CANCELED if new_status == OrderStatus.CANCELED else ChangeKind.STATUS_CHANGED
    return OrderChange(order_id, kind, old_status, new_status, notify_customer=notify)


async def cancel(db: AsyncSession, ctx: RequestContext, order_id: str) -> OrderChange:
    """
    Customer cancellation.

    A single conditional UPDATE guarded by ownership and status, so a
    staff member moving the order into preparation at the same moment
    wins or loses cleanly.
    """
    order = await db.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id != ctx.user_id:
        raise AuthorizationError("You can only cancel your own orders")
    old_status = order.status

    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.user_id == ctx.user_id,
            Order.status.in_(CANCELABLE),
        )
        .values(status=OrderStatus.CANCELED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise InvalidStateError("Cannot cancel order that is already being prepared")

    db.add(
        OrderStatusUpdate(
            order_id=order_id,
            status=OrderStatus.CANCELED,
            note="Cancelled by customer",
            updated_by_id=ctx.user_id,
        )
    )
    await db.commit()

    logger.info(f"Order {order_id} cancelled by customer {ctx.user_id}")
    return OrderChange(order_id, ChangeKind.CANCELED, old_status, OrderStatus.CANCELED)


async def refund(
    db: AsyncSession,
    ctx: RequestContext,
    order_id: str,
    payment_service: BasePaymentService,
    reason: Optional[str] = None,
) -> OrderChange:
    """
    Refund a paid order in full through the payment provider.

    Raises:
        InvalidStateError: Order is not paid
        ExternalServiceError: Provider rejected or could not process the refund
    """
    ensure_role(ctx, *MANAGEMENT_ROLES)

    order = await load_order(db, order_id)
    if order.payment_status != PaymentStatus.PAID:
        raise InvalidStateError("Only paid orders can be refunded")
    if not order.payment_intent_id:
        raise InvalidStateError("Order has no recorded payment to refund")
    old_status = order.status

    result = await payment_service.refund_payment(order.payment_intent_id, reason=reason)
    if not result.success:
        logger.error(f"Refund failed for order {order_id}: {result.error_message}")
        raise ExternalServiceError("Refund could not be processed", detail=result.error_message)

    updated = await db.execute(
        update(Order)
        .where(Order.id == order_id, Order.payment_status == PaymentStatus.PAID)
        .values(
            status=OrderStatus.REFUNDED,
            payment_status=PaymentStatus.REFUNDED,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if updated.rowcount != 1:
        await db.rollback()
        raise InvalidStateError("Order was refunded by someone else")

    db.add(
        OrderStatusUpdate(
            order_id=order_id,
            status=OrderStatus.REFUNDED,
            note=f"Refunded ({result.refund_id})" + (f": {reason}" if reason else ""),
            updated_by_id=ctx.user_id,
        )
    )
    await db.commit()

    logger.info(f"Order {order_id} refunded by {ctx.user_id} - {result.refund_id}")
    return OrderChange(order_id, ChangeKind.REFUNDED, old_status, OrderStatus.REFUNDED)


# =============================================================================
# READS
# =============================================================================

async def get_order(db: AsyncSession, ctx: RequestContext, order_id: str) -> Order:
    order = await load_order(db, order_id)
    _ensure_can_view(ctx, order)
    return order


async def get_order_by_payment_intent(
    db: AsyncSession, ctx: RequestContext, payment_intent_id: str
) -> Order:
    order = await db.scalar(select(Order).where(Order.payment_intent_id == payment_intent_id))
    if order is None:
        raise NotFoundError("Order not found")
    _ensure_can_view(ctx, order)
    return order


async def list_user_orders(db: AsyncSession, ctx: RequestContext) -> list[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.user_id == ctx.user_id)
        .order_by(Order.created_at.desc())
    )
    return list(result.scalars().all())


async def list_orders(
    db: AsyncSession,
    ctx: RequestContext,
    status: Optional[OrderStatus] = None,
    order_type: Optional[OrderType] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[int, list[Order]]:
    """Staff order board with filters. Returns (total matching, page of orders)."""
    ensure_role(ctx, *STAFF_ROLES)

    query = select(Order)
    if status:
        query = query.where(Order.status == status)
    if order_type:
        query = query.where(Order.order_type == order_type)
    if date_from:
        query = query.where(Order.created_at >= as_utc(date_from))
    if date_to:
        query = query.where(Order.created_at <= as_utc(date_to))
    if search:
        term = search.strip().lstrip("#")
        pattern = f"%{term}%"
        query = query.join(User, User.id == Order.user_id).where(
            or_(
                Order.id.ilike(pattern),
                User.email.ilike(pattern),
                User.name.ilike(pattern),
            )
        )

    total = await db.scalar(select(func.count()).select_from(query.subquery()))

    offset, limit = page_bounds(page, page_size)
    result = await db.execute(
        query.order_by(Order.created_at.desc()).offset(offset).limit(limit)
    )
    return total or 0, list(result.scalars().all())


def today_bounds(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Start and end of the current UTC day."""
    now = now or datetime.now(timezone.utc)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start.replace(hour=23, minute=59, second=59, microsecond=999999)
