"""
Reporting / Analytics

Read-only aggregations for the management dashboard. Rows are fetched
with SQL and aggregated with pandas. A report that fails for any reason
is logged and returned empty so the dashboard shows "no data" instead of
an error; only authorization failures propagate.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.security import RequestContext, ensure_role
from bistro.models import (
    Category,
    MANAGEMENT_ROLES,
    MenuItem,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusUpdate,
    PaymentStatus,
    Promotion,
    PromotionUsage,
    STAFF_ROLES,
    User,
)
from bistro.schemas import DashboardStatsResponse
from bistro.services.common import as_utc

logger = logging.getLogger(__name__)

EXCLUDED_FROM_REVENUE = (OrderStatus.CANCELED, OrderStatus.REFUNDED)
OPEN_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING)


def _range(start: Optional[datetime], end: Optional[datetime]) -> tuple[datetime, datetime]:
    """Default to the last 30 days; always UTC."""
    end = as_utc(end) or datetime.now(timezone.utc)
    start = as_utc(start) or end - timedelta(days=30)
    return start, end


def _frame(rows, columns: list[str]) -> pd.DataFrame:
    df = pd.DataFrame([tuple(r) for r in rows], columns=columns)
    for col in columns:
        if col in ("total", "price", "discount_amount", "final_amount", "original_amount"):
            df[col] = df[col].astype(float)
        elif col == "created_at":
            df[col] = pd.to_datetime(df[col], utc=True)
    return df


def _r(value) -> float:
    return round(float(value), 2)


# =============================================================================
# REVENUE
# =============================================================================

EMPTY_REVENUE = {
    "total_revenue": 0.0,
    "order_count": 0,
    "average_order_value": 0.0,
    "revenue_by_day": [],
    "revenue_by_type": [],
}


async def revenue_report(
    db: AsyncSession,
    ctx: RequestContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    start, end = _range(start, end)

    try:
        rows = (await db.execute(
            select(Order.id, Order.total, Order.order_type, Order.created_at).where(
                Order.created_at >= start,
                Order.created_at <= end,
                Order.status.not_in(EXCLUDED_FROM_REVENUE),
            )
        )).all()
        df = _frame(rows, ["id", "total", "order_type", "created_at"])
        if df.empty:
            return dict(EMPTY_REVENUE)

        total_revenue = df["total"].sum()

        by_day = (
            df.groupby(df["created_at"].dt.date)
            .agg(revenue=("total", "sum"), orders=("total", "count"))
            .reset_index()
            .sort_values("created_at")
        )

        df["order_type"] = df["order_type"].map(lambda t: getattr(t, "value", t))
        by_type = (
            df.groupby("order_type")
            .agg(revenue=("total", "sum"), orders=("total", "count"))
            .reset_index()
        )

        return {
            "total_revenue": _r(total_revenue),
            "order_count": int(len(df)),
            "average_order_value": _r(total_revenue / len(df)),
            "revenue_by_day": [
                {"date": row.created_at.isoformat(), "revenue": _r(row.revenue), "orders": int(row.orders)}
                for row in by_day.itertuples(index=False)
            ],
            "revenue_by_type": [
                {
                    "order_type": row.order_type,
                    "revenue": _r(row.revenue),
                    "orders": int(row.orders),
                    "percentage": _r(row.revenue / total_revenue * 100) if total_revenue else 0.0,
                }
                for row in by_type.itertuples(index=False)
            ],
        }
    except Exception:
        logger.exception("Revenue report failed")
        return dict(EMPTY_REVENUE)


# =============================================================================
# POPULAR ITEMS
# =============================================================================

async def popular_items(
    db: AsyncSession,
    ctx: RequestContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 10,
) -> list[dict]:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    start, end = _range(start, end)

    try:
        rows = (await db.execute(
            select(
                OrderItem.menu_item_id,
                MenuItem.name,
                Category.name,
                OrderItem.quantity,
                OrderItem.price,
                OrderItem.order_id,
            )
            .join(Order, Order.id == OrderItem.order_id)
            .join(MenuItem, MenuItem.id == OrderItem.menu_item_id)
            .join(Category, Category.id == MenuItem.category_id)
            .where(
                Order.created_at >= start,
                Order.created_at <= end,
                Order.status.not_in(EXCLUDED_FROM_REVENUE),
            )
        )).all()
        df = _frame(rows, ["menu_item_id", "name", "category", "quantity", "price", "order_id"])
        if df.empty:
            return []

        df["revenue"] = df["quantity"] * df["price"]
        grouped = (
            df.groupby(["menu_item_id", "name", "category"])
            .agg(quantity=("quantity", "sum"), revenue=("revenue", "sum"), orders=("order_id", "nunique"))
            .reset_index()
            .sort_values(["quantity", "revenue"], ascending=False)
            .head(limit)
        )

        return [
            {
                "menu_item_id": row.menu_item_id,
                "name": row.name,
                "category": row.category,
                "quantity": int(row.quantity),
                "revenue": _r(row.revenue),
                "order_count": int(row.orders),
            }
            for row in grouped.itertuples(index=False)
        ]
    except Exception:
        logger.exception("Popular items report failed")
        return []


# =============================================================================
# COMPLETION TIMES
# =============================================================================

EMPTY_COMPLETION = {
    "completed_orders": 0,
    "average_minutes": None,
    "p50_minutes": None,
    "p90_minutes": None,
    "time_by_status": [],
    "peak_hours": [],
}


async def completion_metrics(
    db: AsyncSession,
    ctx: RequestContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    """
    Kitchen timing: first to last audit entry of each completed order,
    minutes spent reaching each status, and the busiest hours.
    """
    ensure_role(ctx, *MANAGEMENT_ROLES)
    start, end = _range(start, end)

    try:
        rows = (await db.execute(
            select(
                OrderStatusUpdate.order_id,
                OrderStatusUpdate.id,
                OrderStatusUpdate.status,
                OrderStatusUpdate.created_at,
            )
            .join(Order, Order.id == OrderStatusUpdate.order_id)
            .where(
                Order.status == OrderStatus.COMPLETED,
                Order.created_at >= start,
                Order.created_at <= end,
            )
        )).all()
        updates = _frame(rows, ["order_id", "seq", "status", "created_at"])

        order_rows = (await db.execute(
            select(Order.created_at).where(
                Order.created_at >= start,
                Order.created_at <= end,
                Order.status != OrderStatus.CANCELED,
            )
        )).all()
        placed = _frame(order_rows, ["created_at"])

        result = dict(EMPTY_COMPLETION)

        if not placed.empty:
            hours = placed["created_at"].dt.hour.value_counts().sort_values(ascending=False).head(5)
            result["peak_hours"] = [{"hour": int(h), "orders": int(n)} for h, n in hours.items()]

        if updates.empty:
            return result

        updates = updates.sort_values(["order_id", "seq"])
        spans = updates.groupby("order_id")["created_at"].agg(["min", "max", "count"])
        spans = spans[spans["count"] >= 2]
        minutes = (spans["max"] - spans["min"]).dt.total_seconds() / 60

        updates["step_minutes"] = (
            updates.groupby("order_id")["created_at"].diff().dt.total_seconds() / 60
        )
        updates["status"] = updates["status"].map(lambda s: getattr(s, "value", s))
        steps = updates.dropna(subset=["step_minutes"]).groupby("status")["step_minutes"].agg(["mean", "count"])

        result.update({
            "completed_orders": int(updates["order_id"].nunique()),
            "time_by_status": [
                {"status": status, "average_minutes": _r(row["mean"]), "transitions": int(row["count"])}
                for status, row in steps.iterrows()
            ],
        })
        if not minutes.empty:
            result.update({
                "average_minutes": _r(minutes.mean()),
                "p50_minutes": _r(minutes.quantile(0.5)),
                "p90_minutes": _r(minutes.quantile(0.9)),
            })
        return result
    except Exception:
        logger.exception("Completion metrics report failed")
        return dict(EMPTY_COMPLETION)


# =============================================================================
# CUSTOMERS
# =============================================================================

EMPTY_SEGMENTS = {
    "total_customers": 0,
    "new_customers": 0,
    "returning_customers": 0,
    "top_customers": [],
}


async def customer_segments(
    db: AsyncSession,
    ctx: RequestContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    start, end = _range(start, end)

    try:
        rows = (await db.execute(
            select(Order.user_id, User.name, User.email, Order.total)
            .join(User, User.id == Order.user_id)
            .where(
                Order.created_at >= start,
                Order.created_at <= end,
                Order.status.not_in(EXCLUDED_FROM_REVENUE),
            )
        )).all()
        df = _frame(rows, ["user_id", "name", "email", "total"])
        if df.empty:
            return dict(EMPTY_SEGMENTS)

        earlier = (await db.execute(
            select(Order.user_id)
            .where(Order.created_at < start, Order.user_id.in_(df["user_id"].unique().tolist()))
            .distinct()
        )).scalars().all()
        returning = set(earlier)

        per_customer = (
            df.groupby(["user_id", "name", "email"], dropna=False)
            .agg(spent=("total", "sum"), orders=("total", "count"))
            .reset_index()
            .sort_values("spent", ascending=False)
        )

        customers = set(df["user_id"])
        return {
            "total_customers": len(customers),
            "new_customers": len(customers - returning),
            "returning_customers": len(customers & returning),
            "top_customers": [
                {
                    "user_id": row.user_id,
                    "name": row.name if isinstance(row.name, str) else None,
                    "email": row.email,
                    "total_spent": _r(row.spent),
                    "order_count": int(row.orders),
                }
                for row in per_customer.head(10).itertuples(index=False)
            ],
        }
    except Exception:
        logger.exception("Customer segments report failed")
        return dict(EMPTY_SEGMENTS)


# =============================================================================
# PROMOTIONS
# =============================================================================

async def promotion_performance(
    db: AsyncSession,
    ctx: RequestContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[dict]:
    ensure_role(ctx, *MANAGEMENT_ROLES)
    start, end = _range(start, end)

    try:
        rows = (await db.execute(
            select(
                PromotionUsage.promotion_id,
                Promotion.name,
                PromotionUsage.discount_amount,
                PromotionUsage.final_amount,
            )
            .join(Promotion, Promotion.id == PromotionUsage.promotion_id)
            .where(PromotionUsage.created_at >= start, PromotionUsage.created_at <= end)
        )).all()
        df = _frame(rows, ["promotion_id", "name", "discount_amount", "final_amount"])
        if df.empty:
            return []

        grouped = (
            df.groupby(["promotion_id", "name"])
            .agg(
                redemptions=("discount_amount", "count"),
                total_discount=("discount_amount", "sum"),
                revenue=("final_amount", "sum"),
                average_discount=("discount_amount", "mean"),
            )
            .reset_index()
            .sort_values("redemptions", ascending=False)
        )
        return [
            {
                "promotion_id": row.promotion_id,
                "name": row.name,
                "redemptions": int(row.redemptions),
                "total_discount": _r(row.total_discount),
                "revenue_after_discount": _r(row.revenue),
                "average_discount": _r(row.average_discount),
            }
            for row in grouped.itertuples(index=False)
        ]
    except Exception:
        logger.exception("Promotion performance report failed")
        return []


# =============================================================================
# DASHBOARD
# =============================================================================

async def dashboard_stats(
    db: AsyncSession,
    ctx: RequestContext,
    now: Optional[datetime] = None,
) -> DashboardStatsResponse:
    """Headline counters for the staff dashboard, polled by the client."""
    ensure_role(ctx, *STAFF_ROLES)

    now = now or datetime.now(timezone.utc)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=1)

    try:
        total = await db.scalar(select(func.count(Order.id)))
        pending = await db.scalar(
            select(func.count(Order.id)).where(Order.status.in_(OPEN_STATUSES))
        )
        today = await db.scalar(
            select(func.count(Order.id)).where(Order.created_at >= day_start, Order.created_at < day_end)
        )
        revenue = await db.scalar(
            select(func.coalesce(func.sum(Order.total), 0)).where(
                Order.created_at >= day_start,
                Order.created_at < day_end,
                Order.payment_status == PaymentStatus.PAID,
            )
        )
        return DashboardStatsResponse(
            total_orders=total or 0,
            pending_orders=pending or 0,
            today_orders=today or 0,
            today_revenue=_r(revenue or 0),
        )
    except Exception:
        logger.exception("Dashboard stats failed")
        return DashboardStatsResponse(total_orders=0, pending_orders=0, today_orders=0, today_revenue=0.0)
