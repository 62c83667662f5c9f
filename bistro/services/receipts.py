"""
Receipts and Kitchen Tickets

Renders an order snapshot into a self-printing HTML page. The customer
receipt carries prices, totals and the payment method; the kitchen ticket
lists only what to cook.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.config import get_settings
from bistro.core.security import RequestContext, ensure_role
from bistro.models import STAFF_ROLES, Order
from bistro.services.common import as_utc, money
from bistro.services.orders import load_order

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

ORDER_TYPE_LABELS = {"DINE_IN": "Dine-in", "PICKUP": "Pickup"}


def _fmt_time(value) -> Optional[str]:
    value = as_utc(value)
    return value.strftime("%b %d, %Y %I:%M %p UTC") if value else None


def _restaurant() -> dict:
    settings = get_settings()
    return {
        "name": settings.restaurant_name,
        "address": settings.restaurant_address,
        "phone": settings.restaurant_phone,
        "email": settings.restaurant_email,
    }


def _base_context(order: Order) -> dict:
    return {
        "restaurant": _restaurant(),
        "order_number": order.short_number,
        "order_type": ORDER_TYPE_LABELS.get(order.order_type.value, order.order_type.value),
        "created_at": _fmt_time(order.created_at),
        "pickup_time": _fmt_time(order.estimated_pickup_time),
        "customer": order.user.display_name if order.user else "Guest",
        "notes": order.order_notes,
    }


def receipt_context(order: Order) -> dict:
    lines = [
        {
            "name": item.menu_item.name if item.menu_item else "Item",
            "quantity": item.quantity,
            "price": f"{money(item.price):.2f}",
            "line_total": f"{money(item.price * item.quantity):.2f}",
            "instructions": item.special_instructions,
        }
        for item in order.items
    ]
    subtotal = money(sum(item.price * item.quantity for item in order.items))
    discount = money(order.discount_amount)

    context = _base_context(order)
    context.update({
        "lines": lines,
        "subtotal": f"{subtotal:.2f}",
        "discount": f"{discount:.2f}" if discount > 0 else None,
        "promotion_name": order.applied_promotion.name if order.applied_promotion else None,
        "total": f"{money(order.total):.2f}",
        "payment_method": (order.payment_method or "Card").replace("_", " ").title(),
        "payment_status": order.payment_status.value.title(),
    })
    return context


def ticket_context(order: Order) -> dict:
    context = _base_context(order)
    context["lines"] = [
        {
            "name": item.menu_item.name if item.menu_item else "Item",
            "category": (
                item.menu_item.category.name
                if item.menu_item and item.menu_item.category else None
            ),
            "quantity": item.quantity,
            "instructions": item.special_instructions,
        }
        for item in order.items
    ]
    context["item_count"] = sum(item.quantity for item in order.items)
    return context


async def render_receipt(db: AsyncSession, ctx: RequestContext, order_id: str) -> str:
    """Customer receipt as printable HTML (staff only)."""
    ensure_role(ctx, *STAFF_ROLES)
    order = await load_order(db, order_id)
    logger.info(f"Receipt printed for order {order.id} by {ctx.user_id}")
    return templates.get_template("receipt.html").render(**receipt_context(order))


async def render_kitchen_ticket(db: AsyncSession, ctx: RequestContext, order_id: str) -> str:
    """Kitchen ticket as printable HTML, without prices (staff only)."""
    ensure_role(ctx, *STAFF_ROLES)
    order = await load_order(db, order_id)
    logger.info(f"Kitchen ticket printed for order {order.id} by {ctx.user_id}")
    return templates.get_template("kitchen_ticket.html").render(**ticket_context(order))
