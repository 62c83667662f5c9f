"""
Payment reconciliation tests: applying provider events to orders,
idempotent redelivery and rebuilding orders from bare charges.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from bistro.core.errors import ValidationError
from bistro.models import Order, OrderStatus, OrderType, PaymentStatus
from bistro.schemas import ChargeObject
from bistro.services import orders, reconciliation
from bistro.services.orders import ChangeKind


def intent_event(event_type, order_id, intent_id="pi_test_1", user_id=None, error=None):
    metadata = {"orderId": order_id} if order_id else {}
    if user_id:
        metadata["userId"] = user_id
    obj = {"id": intent_id, "amount": 1000, "metadata": metadata}
    if error:
        obj["last_payment_error"] = {"message": error}
    return {"id": "evt_1", "type": event_type, "data": {"object": obj}}


def charge_event(charge_id="ch_test_1", intent_id="pi_test_1", amount=1000, metadata=None, method="card"):
    return {
        "id": "evt_2",
        "type": "charge.succeeded",
        "data": {
            "object": {
                "id": charge_id,
                "amount": amount,
                "payment_intent": intent_id,
                "payment_method_details": {"type": method},
                "metadata": metadata or {},
            }
        },
    }


@pytest.fixture
async def pending_order(world, place_order):
    return (await place_order(world.customer, [(world.burger, 1)])).order


class TestPaymentConfirmation:
    """payment_intent.succeeded, charge.succeeded and checkout sessions."""

    async def test_intent_succeeded_confirms_pending_order(self, world, db, pending_order):
        outcome = await reconciliation.handle_event(
            db, intent_event("payment_intent.succeeded", pending_order.id, user_id=world.customer.id)
        )

        order = await orders.load_order(db, pending_order.id)
        assert outcome.handled and outcome.warning is None
        assert outcome.change.kind == ChangeKind.PAYMENT_CONFIRMED
        assert outcome.change.queues_ledger_export
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert order.payment_intent_id == "pi_test_1"
        assert order.status_updates[-1].status == OrderStatus.CONFIRMED
        assert order.status_updates[-1].updated_by_id == world.customer.id

    async def test_redelivery_is_a_no_op(self, db, pending_order):
        event = intent_event("payment_intent.succeeded", pending_order.id)

        first = await reconciliation.handle_event(db, event)
        second = await reconciliation.handle_event(db, event)

        order = await orders.load_order(db, pending_order.id)
        assert first.change is not None
        assert second.change is None
        assert second.warning is None
        assert [u.status for u in order.status_updates] == [OrderStatus.PENDING, OrderStatus.CONFIRMED]
        assert order.status_updates[-1].updated_by_id == reconciliation.SYSTEM_ACTOR

    async def test_charge_after_intent_fills_in_charge(self, db, pending_order):
        await reconciliation.handle_event(db, intent_event("payment_intent.succeeded", pending_order.id))
        outcome = await reconciliation.handle_event(
            db, charge_event(metadata={"orderId": pending_order.id}, method="card_present")
        )

        order = await orders.load_order(db, pending_order.id)
        assert outcome.change is None
        assert order.charge_id == "ch_test_1"
        assert order.payment_method == "card_present"
        assert len(order.status_updates) == 2

    async def test_charge_confirms_order_first(self, db, pending_order):
        outcome = await reconciliation.handle_event(db, charge_event(metadata={"orderId": pending_order.id}))

        order = await orders.load_order(db, pending_order.id)
        assert outcome.change.new_status == OrderStatus.CONFIRMED
        assert order.charge_id == "ch_test_1"
        assert order.payment_intent_id == "pi_test_1"
        assert order.payment_method == "card"

    async def test_payment_for_order_already_in_kitchen_keeps_status(self, db, session_maker, pending_order):
        async with session_maker() as session:
            await session.execute(
                update(Order).where(Order.id == pending_order.id).values(status=OrderStatus.PREPARING)
            )
            await session.commit()

        outcome = await reconciliation.handle_event(db, intent_event("payment_intent.succeeded", pending_order.id))

        order = await orders.load_order(db, pending_order.id)
        assert outcome.change.new_status == OrderStatus.PREPARING
        assert order.status == OrderStatus.PREPARING
        assert order.payment_status == PaymentStatus.PAID

    async def test_checkout_session(self, db, pending_order):
        unpaid = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "payment_status": "unpaid", "metadata": {"orderId": pending_order.id}}},
        }
        assert (await reconciliation.handle_event(db, unpaid)).change is None

        paid = json.loads(json.dumps(unpaid))
        paid["data"]["object"].update(payment_status="paid", payment_intent="pi_cs_1")
        outcome = await reconciliation.handle_event(db, paid)

        order = await orders.load_order(db, pending_order.id)
        assert outcome.change.kind == ChangeKind.PAYMENT_CONFIRMED
        assert order.payment_intent_id == "pi_cs_1"

    async def test_unknown_order_is_acknowledged(self, db, world):
        outcome = await reconciliation.handle_event(db, intent_event("payment_intent.succeeded", "nope"))
        assert outcome.handled
        assert outcome.change is None

    async def test_intent_without_order_reference(self, db, world):
        outcome = await reconciliation.handle_event(db, intent_event("payment_intent.succeeded", None))
        assert outcome.change is None


class TestPaymentFailure:
    """payment_intent.payment_failed."""

    async def test_failure_marks_payment_failed(self, db, pending_order):
        outcome = await reconciliation.handle_event(
            db, intent_event("payment_intent.payment_failed", pending_order.id, error="Card declined")
        )

        order = await orders.load_order(db, pending_order.id)
        assert outcome.change.kind == ChangeKind.PAYMENT_FAILED
        assert not outcome.change.queues_ledger_export
        assert order.payment_status == PaymentStatus.FAILED
        assert order.status == OrderStatus.PENDING
        assert order.status_updates[-1].note == "Payment failed: Card declined"

    async def test_late_failure_after_payment_ignored(self, db, pending_order):
        await reconciliation.handle_event(db, intent_event("payment_intent.succeeded", pending_order.id))
        outcome = await reconciliation.handle_event(
            db, intent_event("payment_intent.payment_failed", pending_order.id)
        )

        order = await orders.load_order(db, pending_order.id)
        assert outcome.change is None
        assert order.payment_status == PaymentStatus.PAID
        assert order.status == OrderStatus.CONFIRMED

    async def test_failure_on_canceled_order_stays_canceled(self, db, session_maker, pending_order):
        async with session_maker() as session:
            await session.execute(
                update(Order).where(Order.id == pending_order.id).values(status=OrderStatus.CANCELED)
            )
            await session.commit()

        await reconciliation.handle_event(db, intent_event("payment_intent.payment_failed", pending_order.id))

        order = await orders.load_order(db, pending_order.id)
        assert order.status == OrderStatus.CANCELED
        assert order.payment_status == PaymentStatus.FAILED

    async def test_failed_then_succeeded_on_retry(self, db, pending_order):
        await reconciliation.handle_event(db, intent_event("payment_intent.payment_failed", pending_order.id))
        await reconciliation.handle_event(
            db, intent_event("payment_intent.succeeded", pending_order.id, intent_id="pi_retry")
        )

        order = await orders.load_order(db, pending_order.id)
        assert order.payment_status == PaymentStatus.PAID
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_intent_id == "pi_retry"


class TestReconstruction:
    """Orders rebuilt from a charge that carries the cart in its metadata."""

    def _metadata(self, world, **overrides):
        metadata = {
            "userId": world.customer.id,
            "items": json.dumps([
                {"menuItemId": world.burger.id, "quantity": 2, "specialInstructions": "No onions"},
                {"menuItemId": "retired-dish", "quantity": 1},
                {"menuItemId": world.soda.id, "quantity": 1},
            ]),
            "orderType": "DINE_IN",
            "pickupTime": "4:30 p.m.",
            "orderNotes": "Birthday",
        }
        metadata.update(overrides)
        return metadata

    async def test_rebuilds_paid_order_and_skips_unknown_items(self, db, world):
        outcome = await reconciliation.handle_event(
            db, charge_event(charge_id="ch_rebuild", intent_id="pi_rebuild", amount=2000, metadata=self._metadata(world))
        )

        order = await orders.load_order(db, outcome.change.order_id)
        assert outcome.change.kind == ChangeKind.PAYMENT_CONFIRMED
        assert order.user_id == world.customer.id
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert order.order_type == OrderType.DINE_IN
        assert order.charge_id == "ch_rebuild"
        assert order.order_notes == "Birthday"
        assert sorted((i.menu_item_id, i.quantity) for i in order.items) == sorted(
            [(world.burger.id, 2), (world.soda.id, 1)]
        )
        assert order.total == Decimal("20.00")
        assert order.discount_amount == Decimal("2.00")
        assert order.estimated_pickup_time is not None
        assert order.status_updates[0].note == "Order created and payment confirmed via webhook"

    async def test_malformed_entries_skipped(self, db, world):
        items = json.dumps([
            {"menuItemId": world.burger.id, "quantity": 2},
            {"quantity": 1},
            "half a sandwich",
            {"menuItemId": world.soda.id, "quantity": 0},
        ])
        outcome = await reconciliation.handle_event(
            db, charge_event(charge_id="ch_partial", amount=2000, metadata=self._metadata(world, items=items))
        )

        assert outcome.warning is None
        order = await orders.load_order(db, outcome.change.order_id)
        assert [(i.menu_item_id, i.quantity) for i in order.items] == [(world.burger.id, 2)]
        assert order.total == Decimal("20.00")
        assert order.discount_amount == Decimal("0.00")

    async def test_overcharge_keeps_charged_total(self, db, world, caplog):
        items = json.dumps([{"menuItemId": world.burger.id, "quantity": 1}, {"menuItemId": "retired-dish", "quantity": 1}])

        with caplog.at_level(logging.WARNING, logger="bistro.services.reconciliation"):
            outcome = await reconciliation.handle_event(
                db, charge_event(charge_id="ch_over", amount=1500, metadata=self._metadata(world, items=items))
            )

        order = await orders.load_order(db, outcome.change.order_id)
        assert order.total == Decimal("15.00")
        assert order.discount_amount == Decimal("0.00")
        assert "exceeds rebuilt subtotal 10.00" in caplog.text

    async def test_same_charge_twice_creates_one_order(self, db, world):
        event = charge_event(charge_id="ch_dup", intent_id="pi_dup", amount=2200, metadata=self._metadata(world))

        await reconciliation.handle_event(db, event)
        second = await reconciliation.handle_event(db, event)

        assert second.change is None
        assert await db.scalar(select(func.count(Order.id)).where(Order.charge_id == "ch_dup")) == 1

    async def test_unparseable_pickup_time_left_empty(self, db, world):
        outcome = await reconciliation.handle_event(
            db, charge_event(metadata=self._metadata(world, pickupTime="sometime tomorrow"))
        )
        order = await orders.load_order(db, outcome.change.order_id)
        assert order.estimated_pickup_time is None

    async def test_unknown_order_type_defaults_to_pickup(self, db, world):
        outcome = await reconciliation.handle_event(
            db, charge_event(metadata=self._metadata(world, orderType="DRIVE_THRU"))
        )
        order = await orders.load_order(db, outcome.change.order_id)
        assert order.order_type == OrderType.PICKUP

    async def test_missing_metadata_raises(self, db, world):
        charge = ChargeObject(id="ch_bad", amount=100, metadata={"items": "[]"})
        with pytest.raises(ValidationError, match="userId"):
            await reconciliation.reconstruct_order(db, charge)

    async def test_no_valid_items_raises(self, db, world):
        charge = ChargeObject(
            id="ch_ghost",
            amount=100,
            metadata=self._metadata(world, items=json.dumps([{"menuItemId": "ghost", "quantity": 1}])),
        )
        with pytest.raises(ValidationError, match="No valid order items"):
            await reconciliation.reconstruct_order(db, charge)

    async def test_unknown_customer_raises(self, db, world):
        charge = ChargeObject(id="ch_who", amount=100, metadata=self._metadata(world, userId="nobody"))
        with pytest.raises(ValidationError, match="Unknown customer"):
            await reconciliation.reconstruct_order(db, charge)

    async def test_processing_errors_are_acknowledged_with_warning(self, db, world):
        outcome = await reconciliation.handle_event(
            db, charge_event(metadata={"userId": world.customer.id, "items": "not json"})
        )
        assert outcome.warning == "Event processed with errors"
        assert outcome.to_response() == {
            "received": True,
            "type": "charge.succeeded",
            "warning": "Event processed with errors",
        }


class TestEventDispatch:
    """Envelope handling."""

    async def test_unhandled_type(self, db):
        outcome = await reconciliation.handle_event(db, {"type": "customer.created", "data": {"object": {}}})
        assert not outcome.handled
        assert outcome.to_response() == {"received": True, "type": "customer.created"}

    async def test_malformed_envelope(self, db):
        outcome = await reconciliation.handle_event(db, {"type": "charge.succeeded"})
        assert outcome.warning is not None


class TestPickupTimeParsing:
    """Best-effort pickup time parsing."""

    TODAY = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value,expected", [
        ("4:30 p.m.", (16, 30)),
        ("4:30 PM", (16, 30)),
        ("11:15 am", (11, 15)),
        ("12:05 a.m.", (0, 5)),
        ("12:45 p.m.", (12, 45)),
    ])
    def test_clock_times_land_on_today(self, value, expected):
        parsed = reconciliation.parse_pickup_time(value, today=self.TODAY)
        assert (parsed.date(), parsed.hour, parsed.minute) == (self.TODAY.date(), *expected)

    def test_iso_timestamp(self):
        parsed = reconciliation.parse_pickup_time("2026-03-14T18:30:00Z")
        assert parsed == datetime(2026, 3, 14, 18, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "   ", "sometime tomorrow", "25:00 pm"])
    def test_unparseable(self, value):
        assert reconciliation.parse_pickup_time(value, today=self.TODAY) is None
