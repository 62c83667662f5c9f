"""
Promotion Engine

Decides whether a promotion applies to a set of priced lines, computes
the discount, and redeems it inside the caller's order transaction.

Evaluation never raises for an inapplicable promotion; it returns a
``PromotionEvaluation`` with ``applicable=False`` and a reason the
customer can read. Redemption bumps ``usage_count`` with a single
conditional UPDATE so concurrent checkouts can never push it past
``usage_limit``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Sequence

from sqlalchemy import exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.errors import InvalidStateError, NotFoundError, ValidationError
from bistro.core.security import RequestContext, ensure_role
from bistro.models import (
    Category,
    MANAGEMENT_ROLES,
    MenuItem,
    Order,
    Promotion,
    PromotionType,
    PromotionUsage,
)
from bistro.schemas import PromotionCreate, PromotionUpdate
from bistro.services.common import ZERO, as_utc, money

if TYPE_CHECKING:
    from bistro.services.cart import PricedLine

logger = logging.getLogger(__name__)


@dataclass
class PromotionEvaluation:
    """Result of checking a promotion against an order's lines."""
    applicable: bool
    subtotal: Decimal
    discount: Decimal = ZERO
    reason: Optional[str] = None

    @property
    def final_total(self) -> Decimal:
        return money(self.subtotal - self.discount)


def _not_applicable(subtotal: Decimal, reason: str) -> PromotionEvaluation:
    return PromotionEvaluation(applicable=False, subtotal=subtotal, reason=reason)


def _subtotal(lines: Sequence["PricedLine"]) -> Decimal:
    return money(sum((line.line_total for line in lines), ZERO))


# =============================================================================
# EVALUATION
# =============================================================================

def qualifying_lines(promotion: Promotion, lines: Sequence["PricedLine"]) -> list["PricedLine"]:
    """Lines the promotion is scoped to; a line qualifies by item or by category."""
    if promotion.apply_to_all_items:
        return list(lines)

    item_ids = {item.id for item in promotion.menu_items}
    category_ids = {category.id for category in promotion.categories}
    return [
        line for line in lines
        if line.menu_item_id in item_ids or line.category_id in category_ids
    ]


def calculate_discount(
    promotion: Promotion,
    lines: Sequence["PricedLine"],
    qualifying: Sequence["PricedLine"],
    subtotal: Decimal,
) -> Decimal:
    """Discount for the promotion's type, rounded to cents and capped at the subtotal."""
    value = Decimal(promotion.value)

    if promotion.promotion_type == PromotionType.PERCENTAGE_DISCOUNT:
        discount = subtotal * value / Decimal(100)

    elif promotion.promotion_type == PromotionType.FIXED_AMOUNT_DISCOUNT:
        discount = min(value, subtotal)

    elif promotion.promotion_type == PromotionType.FREE_ITEM:
        free_line = next(
            (line for line in lines if line.menu_item_id == promotion.free_item_id),
            None,
        )
        discount = free_line.unit_price if free_line else ZERO

    elif promotion.promotion_type == PromotionType.BUY_ONE_GET_ONE:
        discount = min((line.unit_price for line in qualifying), default=ZERO)

    else:
        discount = ZERO

    return min(money(discount), subtotal)


def evaluate(
    promotion: Promotion,
    lines: Sequence["PricedLine"],
    now: Optional[datetime] = None,
) -> PromotionEvaluation:
    """
    Check a promotion against priced lines.

    Checks run in order: active flag, date window, minimum order value,
    usage limit, scope. The first failing check is reported as the reason.
    A promotion that would discount nothing is also reported as not
    applicable so that it never consumes a usage.
    """
    now = now or datetime.now(timezone.utc)
    subtotal = _subtotal(lines)

    if not promotion.is_active:
        return _not_applicable(subtotal, "Promotion is not active")

    if now < as_utc(promotion.start_date):
        return _not_applicable(subtotal, "Promotion has not started yet")
    if now > as_utc(promotion.end_date):
        return _not_applicable(subtotal, "Promotion has expired")

    if promotion.minimum_order_value is not None and subtotal < promotion.minimum_order_value:
        return _not_applicable(
            subtotal,
            f"Minimum order value of ${money(promotion.minimum_order_value):.2f} required",
        )

    if promotion.usage_limit is not None and promotion.usage_count >= promotion.usage_limit:
        return _not_applicable(subtotal, "Promotion usage limit reached")

    qualifying = qualifying_lines(promotion, lines)
    if not qualifying:
        return _not_applicable(subtotal, "Promotion does not apply to the items in this order")

    discount = calculate_discount(promotion, lines, qualifying, subtotal)
    if discount <= ZERO:
        if promotion.promotion_type == PromotionType.FREE_ITEM:
            return _not_applicable(subtotal, "Add the free item to your order to use this promotion")
        return _not_applicable(subtotal, "Promotion gives no discount on this order")

    return PromotionEvaluation(applicable=True, subtotal=subtotal, discount=discount)


# =============================================================================
# REDEMPTION
# =============================================================================

async def apply(
    db: AsyncSession,
    promotion: Promotion,
    order: Order,
    lines: Sequence["PricedLine"],
    ctx: RequestContext,
    now: Optional[datetime] = None,
) -> PromotionEvaluation:
    """
    Redeem a promotion for an order that has been added but not committed.

    Runs inside the caller's transaction: nothing is committed here, so a
    later failure rolls the usage increment back together with the order.
    """
    evaluation = evaluate(promotion, lines, now)
    if not evaluation.applicable:
        return evaluation

    result = await db.execute(
        update(Promotion)
        .where(
            Promotion.id == promotion.id,
            Promotion.is_active.is_(True),
            or_(
                Promotion.usage_limit.is_(None),
                Promotion.usage_count < Promotion.usage_limit,
            ),
        )
        .values(usage_count=Promotion.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"Promotion {promotion.id} exhausted while redeeming for order {order.id}")
        return _not_applicable(evaluation.subtotal, "Promotion usage limit reached")

    used_before = await db.scalar(
        select(
            exists().where(
                PromotionUsage.promotion_id == promotion.id,
                PromotionUsage.user_id == ctx.user_id,
            )
        )
    )

    db.add(
        PromotionUsage(
            promotion_id=promotion.id,
            user_id=ctx.user_id,
            order_id=order.id,
            discount_amount=evaluation.discount,
            original_amount=evaluation.subtotal,
            final_amount=evaluation.final_total,
            coupon_code=promotion.coupon_code,
            order_type=order.order_type,
            cart_item_count=sum(line.quantity for line in lines),
            is_first_time_use=not used_before,
        )
    )

    order.applied_promotion_id = promotion.id
    order.discount_amount = evaluation.discount
    order.total = evaluation.final_total

    logger.info(
        f"Promotion '{promotion.name}' applied to order {order.id}: "
        f"-${evaluation.discount} on ${evaluation.subtotal}"
    )
    return evaluation


# =============================================================================
# LOOKUPS
# =============================================================================

async def get_promotion(db: AsyncSession, promotion_id: str) -> Promotion:
    promotion = await db.get(Promotion, promotion_id)
    if promotion is None:
        raise NotFoundError("Promotion not found")
    return promotion


async def find_by_coupon(db: AsyncSession, coupon_code: str) -> Promotion:
    code = (coupon_code or "").strip().upper()
    if not code:
        raise ValidationError("Coupon code is required")

    promotion = await db.scalar(select(Promotion).where(Promotion.coupon_code == code))
    if promotion is None:
        raise ValidationError("Invalid coupon code")
    return promotion


async def validate_coupon(
    db: AsyncSession,
    coupon_code: str,
    lines: Sequence["PricedLine"],
    now: Optional[datetime] = None,
) -> tuple[Promotion, PromotionEvaluation]:
    """Preview a coupon against priced lines without redeeming it."""
    promotion = await find_by_coupon(db, coupon_code)
    return promotion, evaluate(promotion, lines, now)


async def list_promotions(db: AsyncSession, active_only: bool = False) -> list[Promotion]:
    query = select(Promotion).order_by(Promotion.created_at.desc())
    if active_only:
        now = datetime.now(timezone.utc)
        query = query.where(
            Promotion.is_active.is_(True),
            Promotion.start_date <= now,
            Promotion.end_date >= now,
        )
    result = await db.execute(query)
    return list(result.scalars().all())


# =============================================================================
# ADMINISTRATION
# =============================================================================

async def _resolve_scope(
    db: AsyncSession, menu_item_ids: list[str], category_ids: list[str]
) -> tuple[list[MenuItem], list[Category]]:
    items: list[MenuItem] = []
    categories: list[Category] = []

    if menu_item_ids:
        items = list((await db.execute(
            select(MenuItem).where(MenuItem.id.in_(menu_item_ids))
        )).scalars().all())
        if len(items) != len(set(menu_item_ids)):
            raise ValidationError("One or more menu items do not exist")

    if category_ids:
        categories = list((await db.execute(
            select(Category).where(Category.id.in_(category_ids))
        )).scalars().all())
        if len(categories) != len(set(category_ids)):
            raise ValidationError("One or more categories do not exist")

    return items, categories


async def _check_rules(
    db: AsyncSession,
    promotion_type: PromotionType,
    value: Decimal,
    start_date: datetime,
    end_date: datetime,
    free_item_id: Optional[str],
    coupon_code: Optional[str],
    exclude_id: Optional[str] = None,
) -> None:
    if as_utc(end_date) <= as_utc(start_date):
        raise ValidationError("End date must be after start date")

    if promotion_type == PromotionType.PERCENTAGE_DISCOUNT and not (0 < value <= 100):
        raise ValidationError("Percentage discount must be between 0 and 100")
    if promotion_type == PromotionType.FIXED_AMOUNT_DISCOUNT and value <= 0:
        raise ValidationError("Discount amount must be greater than 0")

    if promotion_type == PromotionType.FREE_ITEM:
        if not free_item_id:
            raise ValidationError("Free item promotions need a free item")
        if await db.get(MenuItem, free_item_id) is None:
            raise ValidationError("Free item does not exist")

    if coupon_code:
        query = select(Promotion.id).where(Promotion.coupon_code == coupon_code)
        if exclude_id:
            query = query.where(Promotion.id != exclude_id)
        if (await db.execute(query)).first() is not None:
            raise ValidationError(f"Coupon code {coupon_code} is already in use")


async def create_promotion(
    db: AsyncSession, ctx: RequestContext, data: PromotionCreate
) -> Promotion:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    await _check_rules(
        db,
        data.promotion_type,
        data.value,
        data.start_date,
        data.end_date,
        data.free_item_id,
        data.coupon_code,
    )
    items, categories = await _resolve_scope(db, data.menu_item_ids, data.category_ids)

    promotion = Promotion(
        **data.model_dump(exclude={"menu_item_ids", "category_ids"}),
        usage_count=0,
    )
    promotion.menu_items = items
    promotion.categories = categories

    db.add(promotion)
    await db.commit()
    await db.refresh(promotion, attribute_names=["menu_items", "categories", "free_item"])

    logger.info(f"Promotion created: {promotion.name} ({promotion.promotion_type.value}) by {ctx.user_id}")
    return promotion


async def update_promotion(
    db: AsyncSession, ctx: RequestContext, promotion_id: str, data: PromotionUpdate
) -> Promotion:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    promotion = await get_promotion(db, promotion_id)
    updates = data.model_dump(exclude_unset=True)

    await _check_rules(
        db,
        promotion.promotion_type,
        updates.get("value", promotion.value),
        updates.get("start_date", promotion.start_date),
        updates.get("end_date", promotion.end_date),
        updates.get("free_item_id", promotion.free_item_id),
        updates.get("coupon_code"),
        exclude_id=promotion.id,
    )

    menu_item_ids = updates.pop("menu_item_ids", None)
    category_ids = updates.pop("category_ids", None)
    if menu_item_ids is not None or category_ids is not None:
        items, categories = await _resolve_scope(db, menu_item_ids or [], category_ids or [])
        if menu_item_ids is not None:
            promotion.menu_items = items
        if category_ids is not None:
            promotion.categories = categories

    limit = updates.get("usage_limit")
    if limit is not None and limit < promotion.usage_count:
        raise ValidationError("Usage limit cannot be lower than the current usage count")

    for field, value in updates.items():
        setattr(promotion, field, value)

    await db.commit()
    await db.refresh(promotion, attribute_names=["menu_items", "categories", "free_item"])
    return promotion


async def delete_promotion(db: AsyncSession, ctx: RequestContext, promotion_id: str) -> None:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    promotion = await get_promotion(db, promotion_id)

    if promotion.usage_count > 0:
        raise InvalidStateError("Promotion has been redeemed. Deactivate it instead.")

    await db.delete(promotion)
    await db.commit()
    logger.info(f"Promotion deleted: {promotion_id} by {ctx.user_id}")
