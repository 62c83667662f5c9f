"""
Chaos Simulation Script

Fires concurrent checkouts at a running server, then plays the payment
provider by sending signed ``payment_intent.succeeded`` webhooks for each
order. Optionally races every checkout for one limited-use coupon.

Run from project root: python scripts/simulate.py
The server must run with ENV_MODE=development (mock payments, dev tokens)
and the same STRIPE_WEBHOOK_SECRET as this script.

Version: 4.0.0
"""

import asyncio
import hashlib
import hmac
import json
import os
import random
import sys
import time
import argparse
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from sqlalchemy import select  # noqa: E402

from bistro.core.config import get_settings  # noqa: E402
from bistro.database import async_session_maker, init_db  # noqa: E402
from bistro.models import (  # noqa: E402
    Category,
    Menu,
    MenuItem,
    Promotion,
    PromotionType,
    Role,
    User,
)

# Configuration
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8001")
WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
TOTAL_ORDERS = 50
RACE_COUPON = "CHAOS10"

CUSTOMER_EMAILS = [f"guest{i}@bistro.example" for i in range(1, 11)]
SEED_MENU = {
    "Mains": [("Bibimbap", "14.99"), ("Bulgogi", "17.50"), ("Japchae", "13.25")],
    "Sides": [("Kimchi", "4.50"), ("Mandu", "7.99")],
    "Drinks": [("Barley Tea", "2.99"), ("Soju Lemonade", "6.50")],
}


# =============================================================================
# SEEDING
# =============================================================================

async def seed(race_limit: int) -> None:
    """Create customers, a small menu and the race coupon if missing."""
    await init_db()
    async with async_session_maker() as db:
        for email in CUSTOMER_EMAILS:
            if not await db.scalar(select(User.id).where(User.email == email)):
                db.add(User(email=email, name=email.split("@")[0].title(), role=Role.CUSTOMER))

        if not await db.scalar(select(MenuItem.id).limit(1)):
            menu = Menu(name="All Day")
            db.add(menu)
            for category_name, dishes in SEED_MENU.items():
                category = Category(name=category_name)
                db.add(category)
                for name, price in dishes:
                    db.add(MenuItem(name=name, price=Decimal(price), menu=menu, category=category))

        if not await db.scalar(select(Promotion.id).where(Promotion.coupon_code == RACE_COUPON)):
            now = datetime.now(timezone.utc)
            db.add(Promotion(
                name="Chaos 10% off",
                promotion_type=PromotionType.PERCENTAGE_DISCOUNT,
                value=Decimal("10"),
                start_date=now - timedelta(days=1),
                end_date=now + timedelta(days=30),
                coupon_code=RACE_COUPON,
                usage_limit=race_limit,
                apply_to_all_items=True,
            ))
        await db.commit()
    print("🌱 Seed data ready")


# =============================================================================
# WEBHOOK SIGNING
# =============================================================================

def sign(payload: str, secret: str) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def payment_succeeded_event(order: dict[str, Any]) -> str:
    return json.dumps({
        "id": f"evt_{random.randint(10**8, 10**9)}",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": order["payment_intent_id"],
                "amount": int(round(order["total"] * 100)),
                "metadata": {"orderId": order["order_id"]},
            }
        },
    })


# =============================================================================
# FLOWS
# =============================================================================

async def get_token(client: httpx.AsyncClient, email: str) -> str:
    response = await client.post(f"{API_BASE_URL}/auth/token", json={"email": email})
    response.raise_for_status()
    return response.json()["access_token"]


def random_cart(items: list[dict]) -> list[dict]:
    return [
        {"menu_item_id": item["id"], "quantity": random.randint(1, 3)}
        for item in random.sample(items, k=random.randint(1, min(4, len(items))))
    ]


async def place_order(
    client: httpx.AsyncClient,
    order_num: int,
    token: str,
    menu: list[dict],
    coupon: Optional[str],
) -> dict[str, Any]:
    """Checkout one random cart."""
    payload = {
        "items": random_cart(menu),
        "order_type": random.choice(["PICKUP", "DINE_IN"]),
        "coupon_code": coupon,
        "order_notes": random.choice([None, "Extra napkins", "No sesame", "Mild please"]),
    }
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/checkout",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 201:
            data = response.json()
            return {
                "order_num": order_num,
                "success": True,
                "order_id": data["order_id"],
                "payment_intent_id": data.get("payment_intent_id"),
                "total": data["total"],
                "promotion_applied": data.get("promotion_applied", False),
                "time": elapsed,
            }
        return {
            "order_num": order_num,
            "success": False,
            "error": response.text[:100],
            "time": elapsed,
        }
    except httpx.HTTPError as e:
        return {
            "order_num": order_num,
            "success": False,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
        }


async def confirm_payment(client: httpx.AsyncClient, order: dict[str, Any]) -> bool:
    """Deliver the provider's success webhook for one order."""
    if not order.get("payment_intent_id"):
        return True  # fully covered by a promotion
    body = payment_succeeded_event(order)
    headers = {"Content-Type": "application/json"}
    if WEBHOOK_SECRET:
        headers["Stripe-Signature"] = sign(body, WEBHOOK_SECRET)
    response = await client.post(f"{API_BASE_URL}/webhook/stripe", content=body, headers=headers)
    return response.status_code == 200 and "warning" not in response.json()


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS, race: bool = False) -> dict[str, Any]:
    """
    Run the chaos simulation.

    Args:
        num_orders: Number of concurrent checkouts
        race: Every checkout uses the limited coupon
    """
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - HIGH CONCURRENCY TEST")
    print("=" * 70)
    print(f"📋 Total Orders: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"🎟️  Coupon race: {'on' if race else 'off'}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        menu = (await client.get(f"{API_BASE_URL}/api/menu-items", params={"available_only": True})).json()
        tokens = await asyncio.gather(*(get_token(client, e) for e in CUSTOMER_EMAILS))

        print("\n🚀 Firing checkouts...\n")
        results = await asyncio.gather(*(
            place_order(client, i + 1, random.choice(tokens), menu, RACE_COUPON if race else None)
            for i in range(num_orders)
        ))

        successful = [r for r in results if r["success"]]
        print("💳 Delivering payment webhooks...\n")
        confirmed = await asyncio.gather(*(confirm_payment(client, r) for r in successful))

    total_time = round(time.time() - start_time, 2)
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Successful Checkouts: {len(successful)}/{num_orders}")
    print(f"❌ Failed Checkouts: {len(failed)}/{num_orders}")
    print(f"💳 Payments Confirmed: {sum(confirmed)}/{len(successful)}")
    print(f"⏱️  Total Time: {total_time}s")

    if race:
        discounted = len([r for r in successful if r["promotion_applied"]])
        settings = get_settings()
        print(f"\n🎟️  Coupon applied to {discounted} order(s) (limit set at seed time)")
        print(f"   Ledger: {os.path.join(settings.data_directory, settings.ledger_filename)}")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print(f"\n📈 Performance Metrics:")
        print(f"   Average Response: {avg_time}s")
        print(f"   Fastest: {min(r['time'] for r in successful)}s")
        print(f"   Slowest: {max(r['time'] for r in successful)}s")
        print(f"   💰 Total Revenue: ${sum(r['total'] for r in successful):.2f}")

    if failed:
        print(f"\n⚠️  Failed Checkout Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    print("\n" + "=" * 70)
    print("🔍 VERIFICATION STEPS")
    print("=" * 70)
    print("1. Check Celery terminal - all ledger exports should complete")
    print("2. Run: python scripts/verify.py")
    print("=" * 70)

    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--race", action="store_true", help="All checkouts race for one coupon")
    parser.add_argument("--race-limit", type=int, default=5, help="Usage limit of the race coupon")
    parser.add_argument("--skip-seed", action="store_true", help="Do not touch the database")
    args = parser.parse_args()

    if not args.skip_seed:
        asyncio.run(seed(args.race_limit))

    asyncio.run(run_simulation(args.orders, race=args.race))
