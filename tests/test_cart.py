"""
Cart pricing tests.
"""

from decimal import Decimal

import pytest

from bistro.core.errors import ValidationError
from bistro.core.security import context_for
from bistro.models import Promotion
from bistro.schemas import CartItemIn
from bistro.services import cart, catalog


class TestMergeLines:

    def test_same_item_and_instructions_merge(self):
        merged = cart.merge_lines([
            CartItemIn(menu_item_id="a", quantity=1),
            CartItemIn(menu_item_id="b", quantity=1),
            CartItemIn(menu_item_id="a", quantity=2, special_instructions="  "),
        ])
        assert [(m.menu_item_id, m.quantity) for m in merged] == [("a", 3), ("b", 1)]

    def test_different_instructions_stay_apart(self):
        merged = cart.merge_lines([
            CartItemIn(menu_item_id="a", quantity=1, special_instructions="No onions"),
            CartItemIn(menu_item_id="a", quantity=1),
        ])
        assert [(m.quantity, m.special_instructions) for m in merged] == [(1, "No onions"), (1, None)]


class TestQuote:

    async def test_prices_at_catalog_price(self, world, db):
        quote = await cart.quote(db, [
            CartItemIn(menu_item_id=world.burger.id, quantity=2),
            CartItemIn(menu_item_id=world.soda.id, quantity=3),
        ])

        assert quote.item_count == 5
        assert quote.subtotal == 26.0
        assert quote.discount == 0.0
        assert quote.total == 26.0
        assert quote.promotion is None
        assert [(l.name, l.category, l.line_total) for l in quote.lines] == [
            ("Burger", "Mains", 20.0),
            ("Soda", "Drinks", 6.0),
        ]

    async def test_coupon_preview_does_not_redeem(self, world, db, make_promotion):
        promotion = await make_promotion(coupon_code="PREVIEW", usage_limit=1)

        quote = await cart.quote(db, [CartItemIn(menu_item_id=world.burger.id, quantity=1)], "preview")

        assert quote.promotion.applicable
        assert quote.promotion.promotion_id == promotion.id
        assert quote.discount == 1.0
        assert quote.total == 9.0
        assert (await db.get(Promotion, promotion.id)).usage_count == 0

    async def test_inapplicable_coupon_preview(self, world, db, make_promotion):
        await make_promotion(coupon_code="MIN50", minimum_order_value=Decimal("50"))

        quote = await cart.quote(db, [CartItemIn(menu_item_id=world.soda.id, quantity=1)], "MIN50")

        assert not quote.promotion.applicable
        assert quote.promotion.reason == "Minimum order value of $50.00 required"
        assert quote.total == 2.0

    async def test_unknown_coupon(self, world, db):
        with pytest.raises(ValidationError, match="Invalid coupon code"):
            await cart.quote(db, [CartItemIn(menu_item_id=world.soda.id, quantity=1)], "GHOST")

    async def test_empty_cart(self, world, db):
        with pytest.raises(ValidationError):
            await cart.quote(db, [])

    async def test_unavailable_items_can_be_priced_for_history(self, world, db):
        await catalog.set_availability(db, context_for(world.chef), world.soda.id, False)
        items = [CartItemIn(menu_item_id=world.soda.id, quantity=1)]

        with pytest.raises(ValidationError, match="currently unavailable"):
            await cart.price_lines(db, items)
        lines = await cart.price_lines(db, items, require_available=False)
        assert lines[0].unit_price == Decimal("2.00")
