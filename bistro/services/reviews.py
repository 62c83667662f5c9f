"""
Menu Item Reviews

Only customers who actually paid for a dish may review it, once per dish.
A second submission replaces the first.
"""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.errors import AuthorizationError, NotFoundError
from bistro.core.security import RequestContext
from bistro.models import (
    MANAGEMENT_ROLES,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Review,
    utcnow,
)
from bistro.schemas import ReviewCreate
from bistro.services.catalog import get_menu_item

logger = logging.getLogger(__name__)


async def _has_purchased(db: AsyncSession, user_id: str, menu_item_id: str) -> bool:
    result = await db.execute(
        select(OrderItem.id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(
            Order.user_id == user_id,
            Order.payment_status == PaymentStatus.PAID,
            Order.status != OrderStatus.CANCELED,
            OrderItem.menu_item_id == menu_item_id,
        )
        .limit(1)
    )
    return result.first() is not None


async def upsert_review(db: AsyncSession, ctx: RequestContext, data: ReviewCreate) -> Review:
    """
    Create or replace the caller's review of a menu item.

    Raises:
        NotFoundError: Unknown menu item
        AuthorizationError: Caller never bought the item
    """
    await get_menu_item(db, data.menu_item_id)

    if not await _has_purchased(db, ctx.user_id, data.menu_item_id):
        raise AuthorizationError("You can only review items you have ordered")

    review = await db.scalar(
        select(Review).where(
            Review.user_id == ctx.user_id,
            Review.menu_item_id == data.menu_item_id,
        )
    )
    if review is None:
        review = Review(user_id=ctx.user_id, menu_item_id=data.menu_item_id)
        db.add(review)

    review.rating = data.rating
    review.title = data.title
    review.content = data.content
    review.is_verified = True
    review.updated_at = utcnow()

    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent first submission; update that row instead.
        await db.rollback()
        review = await db.scalar(
            select(Review).where(
                Review.user_id == ctx.user_id,
                Review.menu_item_id == data.menu_item_id,
            )
        )
        review.rating = data.rating
        review.title = data.title
        review.content = data.content
        review.updated_at = utcnow()
        await db.commit()

    await db.refresh(review, attribute_names=["user"])
    logger.info(f"Review saved for item {data.menu_item_id} by {ctx.user_id} ({data.rating}/5)")
    return review


async def list_reviews(db: AsyncSession, menu_item_id: str) -> tuple[list[Review], Optional[float]]:
    """Reviews for an item, newest first, with the average rating."""
    result = await db.execute(
        select(Review)
        .where(Review.menu_item_id == menu_item_id)
        .order_by(Review.created_at.desc(), Review.id)
    )
    reviews = list(result.scalars().all())

    average = await db.scalar(
        select(func.avg(Review.rating)).where(Review.menu_item_id == menu_item_id)
    )
    return reviews, round(float(average), 2) if average is not None else None


async def delete_review(db: AsyncSession, ctx: RequestContext, review_id: str) -> None:
    review = await db.get(Review, review_id)
    if review is None:
        raise NotFoundError("Review not found")
    if review.user_id != ctx.user_id and not ctx.has_role(*MANAGEMENT_ROLES):
        raise AuthorizationError("You can only delete your own reviews")

    await db.delete(review)
    await db.commit()
    logger.info(f"Review {review_id} deleted by {ctx.user_id}")
