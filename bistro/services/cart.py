"""
Cart Pricing

The cart itself lives on the client. The server only prices it against
the current catalog: duplicate lines are merged, each line gets the
item's live price, and an optional coupon is previewed without being
redeemed.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.errors import ValidationError
from bistro.models import MenuItem
from bistro.schemas import CartItemIn, CartQuoteResponse, PromotionPreview, QuoteLine
from bistro.services import promotions
from bistro.services.common import ZERO, money

logger = logging.getLogger(__name__)


@dataclass
class PricedLine:
    """A cart line resolved against the catalog at a fixed unit price."""
    menu_item_id: str
    name: str
    category_id: Optional[str]
    category_name: Optional[str]
    unit_price: Decimal
    quantity: int
    special_instructions: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


def merge_lines(items: Iterable[CartItemIn]) -> list[CartItemIn]:
    """Collapse lines for the same item and instructions, keeping first-seen order."""
    merged: dict[tuple[str, str], CartItemIn] = {}
    for item in items:
        instructions = (item.special_instructions or "").strip()
        key = (item.menu_item_id, instructions)
        if key in merged:
            existing = merged[key]
            merged[key] = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
        else:
            merged[key] = item.model_copy(update={"special_instructions": instructions or None})
    return list(merged.values())


def subtotal_of(lines: Iterable[PricedLine]) -> Decimal:
    return money(sum((line.line_total for line in lines), ZERO))


async def price_lines(
    db: AsyncSession,
    items: list[CartItemIn],
    require_available: bool = True,
) -> list[PricedLine]:
    """
    Resolve cart lines to catalog items at their current price.

    Raises:
        ValidationError: If the cart is empty, or an item is missing or
            (when ``require_available``) unavailable.
    """
    if not items:
        raise ValidationError("Order must contain at least one item")

    items = merge_lines(items)
    ids = {item.menu_item_id for item in items}
    result = await db.execute(select(MenuItem).where(MenuItem.id.in_(ids)))
    catalog = {menu_item.id: menu_item for menu_item in result.scalars().all()}

    missing = sorted(ids - catalog.keys())
    if missing:
        raise ValidationError(f"Menu item not found: {', '.join(missing)}")

    lines = []
    for item in items:
        menu_item = catalog[item.menu_item_id]
        if require_available and not menu_item.is_available:
            raise ValidationError(f"{menu_item.name} is currently unavailable")

        lines.append(
            PricedLine(
                menu_item_id=menu_item.id,
                name=menu_item.name,
                category_id=menu_item.category_id,
                category_name=menu_item.category.name if menu_item.category else None,
                unit_price=money(menu_item.price),
                quantity=item.quantity,
                special_instructions=item.special_instructions,
            )
        )
    return lines


async def quote(
    db: AsyncSession,
    items: list[CartItemIn],
    coupon_code: Optional[str] = None,
) -> CartQuoteResponse:
    """Price a cart and, if given, preview a coupon against it."""
    lines = await price_lines(db, items)
    subtotal = subtotal_of(lines)

    preview = None
    discount = ZERO
    if coupon_code:
        promotion, evaluation = await promotions.validate_coupon(db, coupon_code, lines)
        preview = PromotionPreview(
            promotion_id=promotion.id,
            name=promotion.name,
            applicable=evaluation.applicable,
            reason=evaluation.reason,
            discount=float(evaluation.discount),
            final_total=float(evaluation.final_total),
        )
        if evaluation.applicable:
            discount = evaluation.discount

    return CartQuoteResponse(
        lines=[
            QuoteLine(
                menu_item_id=line.menu_item_id,
                name=line.name,
                category=line.category_name,
                unit_price=float(line.unit_price),
                quantity=line.quantity,
                line_total=float(line.line_total),
                special_instructions=line.special_instructions,
            )
            for line in lines
        ],
        item_count=sum(line.quantity for line in lines),
        subtotal=float(subtotal),
        discount=float(discount),
        total=float(money(subtotal - discount)),
        promotion=preview,
    )
