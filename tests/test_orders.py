"""
Order lifecycle tests: creation, the status workflow, cancellation and
refunds.
"""

from decimal import Decimal

import pytest
from sqlalchemy import update

from bistro.core.errors import (
    AuthorizationError,
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from bistro.core.security import context_for
from bistro.models import MenuItem, Order, OrderStatus, OrderType, PaymentStatus, PromotionType
from bistro.schemas import CartItemIn
from bistro.services import orders
from bistro.services.orders import ChangeKind


async def set_state(session_maker, order_id, **values):
    async with session_maker() as session:
        await session.execute(update(Order).where(Order.id == order_id).values(**values))
        await session.commit()


async def mark_paid(session_maker, order_id, intent="pi_test_123", status=OrderStatus.CONFIRMED):
    await set_state(
        session_maker,
        order_id,
        payment_status=PaymentStatus.PAID,
        payment_intent_id=intent,
        status=status,
    )


class TestCreateOrder:
    """Creating PENDING orders from cart lines."""

    async def test_prices_snapshot_and_audit_entry(self, world, place_order):
        placed = await place_order(
            world.customer, [(world.burger, 2), (world.soda, 1)], order_type=OrderType.DINE_IN, notes="Table 4"
        )
        order = placed.order

        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.order_type == OrderType.DINE_IN
        assert order.order_notes == "Table 4"
        assert order.total == Decimal("22.00")
        assert order.discount_amount == Decimal("0")
        assert {(i.menu_item_id, i.quantity, i.price) for i in order.items} == {
            (world.burger.id, 2, Decimal("10.00")),
            (world.soda.id, 1, Decimal("2.00")),
        }
        assert [u.status for u in order.status_updates] == [OrderStatus.PENDING]
        assert order.status_updates[0].updated_by_id == world.customer.id
        assert placed.change.kind == ChangeKind.CREATED

    async def test_total_equals_lines_minus_discount(self, world, place_order, make_promotion):
        await make_promotion(
            coupon_code="FIVE", promotion_type=PromotionType.FIXED_AMOUNT_DISCOUNT, value=Decimal("5")
        )

        order = (await place_order(world.customer, [(world.salad, 3), (world.juice, 2)], coupon_code="FIVE")).order

        subtotal = sum(i.price * i.quantity for i in order.items)
        assert subtotal == Decimal("23.00")
        assert order.total == subtotal - order.discount_amount == Decimal("18.00")

    async def test_duplicate_lines_are_merged(self, world, place_order):
        order = (await place_order(world.customer, [(world.burger, 1), (world.burger, 2)])).order
        assert [(i.menu_item_id, i.quantity) for i in order.items] == [(world.burger.id, 3)]

    async def test_price_change_does_not_touch_existing_orders(self, world, place_order, session_maker, db):
        placed = await place_order(world.customer, [(world.burger, 1)])
        async with session_maker() as session:
            await session.execute(
                update(MenuItem).where(MenuItem.id == world.burger.id).values(price=Decimal("12.00"))
            )
            await session.commit()

        order = await orders.load_order(db, placed.order.id)
        assert order.items[0].price == Decimal("10.00")
        assert order.total == Decimal("10.00")

    async def test_empty_cart(self, world, db):
        with pytest.raises(ValidationError, match="at least one item"):
            await orders.create_order(db, context_for(world.customer), [])

    async def test_unknown_item(self, world, db):
        with pytest.raises(ValidationError, match="Menu item not found"):
            await orders.create_order(
                db, context_for(world.customer), [CartItemIn(menu_item_id="ghost", quantity=1)]
            )

    async def test_unavailable_item(self, world, place_order, session_maker):
        async with session_maker() as session:
            await session.execute(
                update(MenuItem).where(MenuItem.id == world.juice.id).values(is_available=False)
            )
            await session.commit()

        with pytest.raises(ValidationError, match="Juice is currently unavailable"):
            await place_order(world.customer, [(world.juice, 1)])


class TestStatusWorkflow:
    """Staff status changes and the audit trail."""

    async def test_newest_audit_entry_mirrors_status(self, world, place_order, db):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        chef = context_for(world.chef)

        for status in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP):
            await orders.update_status(db, chef, order_id, status)

        order = await orders.load_order(db, order_id)
        assert order.status == OrderStatus.READY_FOR_PICKUP
        assert [u.status for u in order.status_updates] == [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
            OrderStatus.READY_FOR_PICKUP,
        ]
        assert order.status_updates[-1].updated_by_id == world.chef.id

    async def test_customer_cannot_change_status(self, world, place_order, db):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        with pytest.raises(AuthorizationError):
            await orders.update_status(db, context_for(world.customer), order_id, OrderStatus.CONFIRMED)

    async def test_unknown_order(self, world, db):
        with pytest.raises(NotFoundError):
            await orders.update_status(db, context_for(world.chef), "missing", OrderStatus.CONFIRMED)

    async def test_ready_notifies_only_once(self, world, place_order, db):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        waiter = context_for(world.waiter)

        first = await orders.update_status(db, waiter, order_id, OrderStatus.READY_FOR_PICKUP)
        await orders.update_status(db, waiter, order_id, OrderStatus.PREPARING)
        second = await orders.update_status(db, waiter, order_id, OrderStatus.READY_FOR_PICKUP)

        assert first.notify_customer
        assert not second.notify_customer
        assert (await orders.load_order(db, order_id)).is_notified

    async def test_completed_sets_completion_time(self, world, place_order, db):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        change = await orders.update_status(
            db, context_for(world.manager), order_id, OrderStatus.COMPLETED, note="Collected"
        )

        order = await orders.load_order(db, order_id)
        assert change.old_status == OrderStatus.PENDING
        assert order.completed_time is not None
        assert order.status_updates[-1].note == "Collected"

    async def test_permissive_by_default(self, world, place_order, db):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        chef = context_for(world.chef)

        await orders.update_status(db, chef, order_id, OrderStatus.PREPARING)
        await orders.update_status(db, chef, order_id, OrderStatus.CONFIRMED)

        assert (await orders.load_order(db, order_id)).status == OrderStatus.CONFIRMED

    async def test_strict_mode_rejects_backwards_moves(self, world, place_order, db, settings, monkeypatch):
        monkeypatch.setattr(settings, "strict_status_transitions", True)
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        chef = context_for(world.chef)

        await orders.update_status(db, chef, order_id, OrderStatus.PREPARING)
        with pytest.raises(InvalidStateError):
            await orders.update_status(db, chef, order_id, OrderStatus.CONFIRMED)
        with pytest.raises(InvalidStateError):
            await orders.update_status(db, chef, order_id, OrderStatus.CANCELED)

        order = await orders.load_order(db, order_id)
        assert order.status == OrderStatus.PREPARING
        assert len(order.status_updates) == 2

    @pytest.mark.parametrize("old,new,allowed", [
        (OrderStatus.PENDING, OrderStatus.CONFIRMED, True),
        (OrderStatus.PENDING, OrderStatus.READY_FOR_PICKUP, True),
        (OrderStatus.CONFIRMED, OrderStatus.CANCELED, True),
        (OrderStatus.PREPARING, OrderStatus.CANCELED, False),
        (OrderStatus.COMPLETED, OrderStatus.PREPARING, False),
        (OrderStatus.CANCELED, OrderStatus.CONFIRMED, False),
        (OrderStatus.CONFIRMED, OrderStatus.CONFIRMED, False),
    ])
    def test_check_transition(self, old, new, allowed):
        if allowed:
            orders.check_transition(old, new)
        else:
            with pytest.raises(InvalidStateError):
                orders.check_transition(old, new)


class TestCancel:
    """Customer cancellation."""

    @pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.CONFIRMED])
    async def test_cancel_before_preparation(self, world, place_order, session_maker, db, status):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        await set_state(session_maker, order_id, status=status)

        change = await orders.cancel(db, context_for(world.customer), order_id)

        order = await orders.load_order(db, order_id)
        assert change.kind == ChangeKind.CANCELED
        assert order.status == OrderStatus.CANCELED
        assert order.status_updates[-1].status == OrderStatus.CANCELED
        assert order.status_updates[-1].note == "Cancelled by customer"

    @pytest.mark.parametrize("status", [
        OrderStatus.PREPARING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELED,
    ])
    async def test_cannot_cancel_later(self, world, place_order, session_maker, db, status):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        await set_state(session_maker, order_id, status=status)

        with pytest.raises(InvalidStateError, match="already being prepared"):
            await orders.cancel(db, context_for(world.customer), order_id)

        assert (await orders.load_order(db, order_id)).status == status

    async def test_cannot_cancel_someone_elses_order(self, world, place_order, db):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        with pytest.raises(AuthorizationError):
            await orders.cancel(db, context_for(world.other_customer), order_id)

    async def test_unknown_order(self, world, db):
        with pytest.raises(NotFoundError):
            await orders.cancel(db, context_for(world.customer), "missing")


class TestRefund:
    """Full refunds through the payment provider."""

    async def test_refund_paid_order(self, world, place_order, session_maker, db, payment_service):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        await mark_paid(session_maker, order_id)

        change = await orders.refund(
            db, context_for(world.manager), order_id, payment_service, reason="Cold food"
        )

        order = await orders.load_order(db, order_id)
        assert change.kind == ChangeKind.REFUNDED
        assert order.status == OrderStatus.REFUNDED
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.status_updates[-1].note.endswith(": Cold food")
        assert len(payment_service.refunds) == 1

    async def test_unpaid_order_cannot_be_refunded(self, world, place_order, db, payment_service):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        with pytest.raises(InvalidStateError, match="Only paid orders"):
            await orders.refund(db, context_for(world.admin), order_id, payment_service)
        assert payment_service.refunds == []

    async def test_only_management_refunds(self, world, place_order, session_maker, db, payment_service):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        await mark_paid(session_maker, order_id)
        with pytest.raises(AuthorizationError):
            await orders.refund(db, context_for(world.waiter), order_id, payment_service)

    async def test_provider_failure_leaves_order_paid(self, world, place_order, session_maker, db, payment_service):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id
        await mark_paid(session_maker, order_id, intent="ch_not_an_intent")

        with pytest.raises(ExternalServiceError, match="Refund could not be processed"):
            await orders.refund(db, context_for(world.manager), order_id, payment_service)

        assert (await orders.load_order(db, order_id)).payment_status == PaymentStatus.PAID


class TestReads:
    """Order lookups and the staff board."""

    async def test_owner_and_staff_can_view(self, world, place_order, db):
        order_id = (await place_order(world.customer, [(world.burger, 1)])).order.id

        assert (await orders.get_order(db, context_for(world.customer), order_id)).id == order_id
        assert (await orders.get_order(db, context_for(world.waiter), order_id)).id == order_id
        with pytest.raises(AuthorizationError):
            await orders.get_order(db, context_for(world.other_customer), order_id)

    async def test_user_orders_only_their_own(self, world, place_order, db):
        await place_order(world.customer, [(world.burger, 1)])
        await place_order(world.other_customer, [(world.soda, 1)])

        mine = await orders.list_user_orders(db, context_for(world.customer))
        assert [o.user_id for o in mine] == [world.customer.id]

    async def test_board_filters_and_search(self, world, place_order, session_maker, db):
        first = (await place_order(world.customer, [(world.burger, 1)])).order.id
        await place_order(world.other_customer, [(world.soda, 1)], order_type=OrderType.DINE_IN)
        await set_state(session_maker, first, status=OrderStatus.PREPARING)
        staff = context_for(world.chef)

        total, found = await orders.list_orders(db, staff)
        assert total == 2

        total, found = await orders.list_orders(db, staff, status=OrderStatus.PREPARING)
        assert (total, [o.id for o in found]) == (1, [first])

        total, found = await orders.list_orders(db, staff, order_type=OrderType.DINE_IN)
        assert total == 1

        total, found = await orders.list_orders(db, staff, search="kim@")
        assert [o.id for o in found] == [first]

        total, found = await orders.list_orders(db, staff, search=f"#{first[-6:]}")
        assert [o.id for o in found] == [first]

    async def test_board_is_staff_only(self, world, db):
        with pytest.raises(AuthorizationError):
            await orders.list_orders(db, context_for(world.customer))

    async def test_board_pagination(self, world, place_order, db):
        for _ in range(3):
            await place_order(world.customer, [(world.soda, 1)])

        total, found = await orders.list_orders(db, context_for(world.manager), page=2, page_size=2)
        assert total == 3
        assert len(found) == 1
