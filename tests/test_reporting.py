"""
Management report tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from bistro.core.errors import AuthorizationError
from bistro.core.security import context_for
from bistro.models import Order, OrderStatus, OrderStatusUpdate, OrderType, PaymentStatus
from bistro.services import orders, reporting


async def set_state(session_maker, order_id, **values):
    async with session_maker() as session:
        await session.execute(update(Order).where(Order.id == order_id).values(**values))
        await session.commit()


@pytest.fixture
async def history(world, session_maker, place_order):
    """Four orders: two counted, one canceled, one refunded."""
    burger = await place_order(world.customer, [(world.burger, 2)])
    salad = await place_order(world.other_customer, [(world.salad, 1), (world.soda, 1)], order_type=OrderType.DINE_IN)
    canceled = await place_order(world.customer, [(world.juice, 5)])
    refunded = await place_order(world.other_customer, [(world.burger, 3)])

    await set_state(session_maker, burger.order.id, payment_status=PaymentStatus.PAID, status=OrderStatus.CONFIRMED)
    await set_state(session_maker, canceled.order.id, status=OrderStatus.CANCELED)
    await set_state(
        session_maker, refunded.order.id, status=OrderStatus.REFUNDED, payment_status=PaymentStatus.REFUNDED
    )
    return burger.order, salad.order


class TestRevenue:

    async def test_excludes_canceled_and_refunded(self, world, db, history):
        report = await reporting.revenue_report(db, context_for(world.manager))

        assert report["total_revenue"] == 27.0
        assert report["order_count"] == 2
        assert report["average_order_value"] == 13.5
        assert len(report["revenue_by_day"]) == 1
        assert report["revenue_by_day"][0]["orders"] == 2

    async def test_split_by_order_type(self, world, db, history):
        report = await reporting.revenue_report(db, context_for(world.admin))

        by_type = {row["order_type"]: row for row in report["revenue_by_type"]}
        assert by_type["PICKUP"]["revenue"] == 20.0
        assert by_type["DINE_IN"]["revenue"] == 7.0
        assert by_type["PICKUP"]["percentage"] == pytest.approx(74.07, abs=0.01)

    async def test_empty_range(self, world, db, history):
        past = datetime.now(timezone.utc) - timedelta(days=400)
        report = await reporting.revenue_report(db, context_for(world.manager), past, past + timedelta(days=1))
        assert report == reporting.EMPTY_REVENUE

    async def test_requires_management(self, world, db):
        with pytest.raises(AuthorizationError):
            await reporting.revenue_report(db, context_for(world.waiter))


class TestPopularItems:

    async def test_ranked_by_quantity(self, world, db, history):
        items = await reporting.popular_items(db, context_for(world.manager))

        assert [(i["name"], i["quantity"]) for i in items] == [("Burger", 2), ("Salad", 1), ("Soda", 1)]
        assert items[0]["revenue"] == 20.0
        assert items[0]["category"] == "Mains"
        assert items[0]["order_count"] == 1

    async def test_limit(self, world, db, history):
        assert len(await reporting.popular_items(db, context_for(world.manager), limit=1)) == 1


class TestCompletionMetrics:

    async def test_kitchen_timing(self, world, db, session_maker, place_order):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        kitchen = context_for(world.chef)
        for status in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP, OrderStatus.COMPLETED):
            await orders.update_status(db, kitchen, order_id, status)

        base = datetime.now(timezone.utc) - timedelta(hours=1)
        offsets = {
            OrderStatus.PENDING: 0,
            OrderStatus.CONFIRMED: 5,
            OrderStatus.PREPARING: 10,
            OrderStatus.READY_FOR_PICKUP: 25,
            OrderStatus.COMPLETED: 30,
        }
        async with session_maker() as session:
            for status, minutes in offsets.items():
                await session.execute(
                    update(OrderStatusUpdate)
                    .where(OrderStatusUpdate.order_id == order_id, OrderStatusUpdate.status == status)
                    .values(created_at=base + timedelta(minutes=minutes))
                )
            await session.commit()

        metrics = await reporting.completion_metrics(db, context_for(world.manager))

        assert metrics["completed_orders"] == 1
        assert metrics["average_minutes"] == 30.0
        assert metrics["p50_minutes"] == 30.0
        steps = {row["status"]: row["average_minutes"] for row in metrics["time_by_status"]}
        assert steps["READY_FOR_PICKUP"] == 15.0
        assert metrics["peak_hours"][0]["orders"] == 1

    async def test_nothing_completed(self, world, db, history):
        metrics = await reporting.completion_metrics(db, context_for(world.manager))

        assert metrics["completed_orders"] == 0
        assert metrics["average_minutes"] is None
        assert sum(h["orders"] for h in metrics["peak_hours"]) == 3


class TestCustomerSegments:

    async def test_new_and_returning(self, world, db, session_maker, place_order):
        old = await place_order(world.other_customer, [(world.soda, 1)])
        await set_state(session_maker, old.order.id, created_at=datetime.now(timezone.utc) - timedelta(days=90))
        await place_order(world.other_customer, [(world.salad, 1)])
        await place_order(world.customer, [(world.burger, 1)])
        await place_order(world.customer, [(world.burger, 1)])

        segments = await reporting.customer_segments(db, context_for(world.manager))

        assert segments["total_customers"] == 2
        assert segments["new_customers"] == 1
        assert segments["returning_customers"] == 1
        top = segments["top_customers"][0]
        assert (top["email"], top["total_spent"], top["order_count"]) == ("kim@example.com", 20.0, 2)


class TestPromotionPerformance:

    async def test_redemptions_summed(self, world, db, make_promotion, place_order):
        promotion = await make_promotion(name="Lunch", coupon_code="LUNCH")
        await place_order(world.customer, [(world.burger, 2)], coupon_code="LUNCH")
        await place_order(world.other_customer, [(world.salad, 2)], coupon_code="LUNCH")

        rows = await reporting.promotion_performance(db, context_for(world.manager))

        assert rows == [{
            "promotion_id": promotion.id,
            "name": "Lunch",
            "redemptions": 2,
            "total_discount": 3.0,
            "revenue_after_discount": 27.0,
            "average_discount": 1.5,
        }]


class TestDashboard:

    async def test_headline_counters(self, world, db, history):
        stats = await reporting.dashboard_stats(db, context_for(world.waiter))

        assert stats.total_orders == 4
        assert stats.pending_orders == 2
        assert stats.today_orders == 4
        assert stats.today_revenue == 20.0

    async def test_customers_denied(self, world, db):
        with pytest.raises(AuthorizationError):
            await reporting.dashboard_stats(db, context_for(world.customer))
