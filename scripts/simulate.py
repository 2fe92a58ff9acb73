"""
Chaos Simulation Script

Simulates a lunch rush against a running server: many students check out
at once, then the restaurant answers the IVR calls and the dashboard at
the same time, so the same order is often accepted twice concurrently.
Run from project root against a development-mode server (the mock
telephony service accepts unsigned webhooks): python scripts/simulate.py

Afterwards run ``python scripts/verify.py`` to check that no order was
charged twice and every balance matches its ledger.

Version: 1.0.0
"""

import argparse
import asyncio
import os
import random
import sys
import time
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from biteclub.core.config import get_settings
from biteclub.database import Database
from biteclub.models import Account, AccountRole, MenuItem, PromotionConfig, Restaurant
from biteclub.services import ServiceContainer

# Configuration
API_BASE_URL = "http://localhost:3001"
TOTAL_ORDERS = 50

FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]
LAST_NAMES = ["Smith", "Johnson", "Williams", "Brown", "Jones", "Garcia", "Miller", "Davis", "Wilson", "Taylor"]
MENU_ITEMS = [
    ("Chicken Bowl", "9.50"),
    ("Veggie Wrap", "7.25"),
    ("Cheeseburger", "8.99"),
    ("Fries", "3.49"),
    ("Iced Tea", "2.50"),
]

# Digits a restaurant presses on the call, weighted towards accepting
KEYPAD_CHOICES = ["1"] * 6 + ["2", "3", "0", "9"]


# =============================================================================
# SEED DATA
# =============================================================================

async def seed_campus(num_students: int) -> dict[str, Any]:
    """Create a restaurant with a menu and a set of funded students."""
    settings = get_settings()
    database = Database(settings.database_url)
    await database.create_all()
    services = ServiceContainer.build(database, settings)
    run_id = datetime.now().strftime("%H%M%S")

    try:
        async with database.transaction() as session:
            owner = Account(
                email=f"owner-{run_id}@sim.local",
                first_name="Sim",
                last_name="Owner",
                role=AccountRole.RESTAURANT,
            )
            session.add(owner)
            await session.flush()

            restaurant = Restaurant(
                owner_id=owner.id,
                name=f"Simulation Diner {run_id}",
                phone="+15550001111",
                call_enabled=True,
                call_retries=2,
            )
            session.add(restaurant)
            await session.flush()

            session.add(PromotionConfig(
                restaurant_id=restaurant.id,
                first_time_enabled=True,
                first_time_percent=Decimal("10"),
                loyalty_enabled=True,
                loyalty_spend_threshold=Decimal("30"),
                loyalty_reward_amount=Decimal("5"),
            ))
            items = [MenuItem(restaurant_id=restaurant.id, name=n, price=Decimal(p)) for n, p in MENU_ITEMS]
            session.add_all(items)

            students = [
                Account(
                    email=f"student-{run_id}-{i}@sim.local",
                    first_name=random.choice(FIRST_NAMES),
                    last_name=random.choice(LAST_NAMES),
                    role=AccountRole.STUDENT,
                )
                for i in range(num_students)
            ]
            session.add_all(students)

        # Some students start short so acceptance can fail
        for student in students:
            amount = random.choice(["5.00", "25.00", "50.00", "100.00"])
            await services.credits.admin_add_credits(student.id, amount, "Simulation seed")
    finally:
        await database.dispose()

    return {
        "owner_id": owner.id,
        "restaurant_id": restaurant.id,
        "items": [(item.id, Decimal(price)) for item, (_, price) in zip(items, MENU_ITEMS)],
        "student_ids": [s.id for s in students],
    }


def generate_checkout(campus: dict[str, Any]) -> dict[str, Any]:
    """Random basket for the seeded restaurant."""
    lines = random.sample(campus["items"], k=random.randint(1, 3))
    items = []
    total = Decimal("0.00")
    for item_id, price in lines:
        quantity = random.randint(1, 2)
        items.append({"menu_item_id": item_id, "quantity": quantity})
        total += price * quantity
    return {
        "restaurant_id": campus["restaurant_id"],
        "items": items,
        "total_amount": str(total),
        "custom_instructions": random.choice([None, "Extra napkins", "No onions", "Pickup at side door"]),
    }


# =============================================================================
# ORDER RUSH
# =============================================================================

async def send_order(client: httpx.AsyncClient, campus: dict[str, Any], order_num: int) -> dict[str, Any]:
    """Check out as a random student."""
    student_id = random.choice(campus["student_ids"])
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders",
            json=generate_checkout(campus),
            headers={"X-Account-Id": student_id},
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)

        if response.status_code == 201:
            data = response.json()
            return {
                "order_num": order_num,
                "success": True,
                "order_id": data["order"]["id"],
                "total": Decimal(data["order"]["final_amount"]),
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


async def answer_call(client: httpx.AsyncClient, campus: dict[str, Any], order_id: str) -> dict[str, Any]:
    """
    Press a keypad digit for the order while, half of the time, the
    dashboard accepts the same order.
    """
    digit = random.choice(KEYPAD_CHOICES)
    keypad = client.post(
        f"{API_BASE_URL}/api/calls/handle-response/{order_id}",
        data={"Digits": digit},
        timeout=30.0,
    )
    requests = [keypad]
    if random.random() < 0.5:
        requests.append(client.put(
            f"{API_BASE_URL}/api/orders/{order_id}/accept",
            headers={"X-Account-Id": campus["owner_id"]},
            timeout=30.0,
        ))

    responses = await asyncio.gather(*requests, return_exceptions=True)
    dashboard = responses[1] if len(responses) > 1 else None
    return {
        "order_id": order_id,
        "digit": digit,
        "keypad_ok": isinstance(responses[0], httpx.Response) and responses[0].status_code == 200,
        "dashboard_status": dashboard.status_code if isinstance(dashboard, httpx.Response) else None,
    }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS, num_students: int = 15) -> dict[str, Any]:
    """
    Run the chaos simulation.

    Args:
        num_orders: Number of orders to place
        num_students: Number of funded students placing them
    """
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - LUNCH RUSH")
    print("=" * 70)
    print(f"📋 Total Orders: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    campus = await seed_campus(num_students)
    print(f"\n🌱 Seeded restaurant {campus['restaurant_id']} with {num_students} students")

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        print("\n🚀 Firing checkouts...\n")
        results = await asyncio.gather(*[send_order(client, campus, i + 1) for i in range(num_orders)])

        successful = [r for r in results if r["success"]]
        print("📞 Answering restaurant calls...\n")
        answers = await asyncio.gather(*[answer_call(client, campus, r["order_id"]) for r in successful])

    total_time = round(time.time() - start_time, 2)
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Successful Orders: {len(successful)}/{num_orders}")
    print(f"❌ Failed Orders: {len(failed)}/{num_orders}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print("\n📈 Performance Metrics:")
        print(f"   Average Response: {avg_time}s")
        print(f"   Fastest: {min(r['time'] for r in successful)}s")
        print(f"   Slowest: {max(r['time'] for r in successful)}s")
        print(f"   💰 Ordered Value: ${sum(r['total'] for r in successful):.2f}")

    if answers:
        raced = [a for a in answers if a["dashboard_status"] is not None]
        print("\n📞 Calls:")
        for digit in sorted({a["digit"] for a in answers}):
            print(f"   Digit {digit}: {len([a for a in answers if a['digit'] == digit])}")
        print(f"   Raced with dashboard accept: {len(raced)}")
        print(f"   Dashboard lost the race (409): {len([a for a in raced if a['dashboard_status'] == 409])}")

    if failed:
        print("\n⚠️  Failed Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error', 'Unknown error')}")

    print("\n" + "=" * 70)
    print("🔍 VERIFICATION STEPS")
    print("=" * 70)
    print("1. Check Celery terminal - call and POS tasks should complete")
    print("2. Run: python scripts/verify.py")
    print("=" * 70)

    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


async def test_single_flows() -> bool:
    """Pre-flight: the server is up and healthy."""
    print("\n" + "=" * 70)
    print("🧪 PRE-FLIGHT")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        print("\n1️⃣ Health Check...")
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ Server unreachable: {e}")
            return False
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text}")
            return False

        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Database: {data.get('database')}")
        print(f"   Payment: {data.get('payment')}")
        print(f"   Telephony: {data.get('telephony')}")

        print("\n2️⃣ Integration Types...")
        response = await client.get(f"{API_BASE_URL}/")
        print(f"   ✅ {response.json().get('message')}")

    print("\n" + "=" * 70)
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--students", type=int, default=15, help="Number of students")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    parser.add_argument("--skip-tests", action="store_true", help="Skip pre-flight checks")
    args = parser.parse_args()

    API_BASE_URL = args.url

    if not args.skip_tests:
        if not asyncio.run(test_single_flows()):
            print("\n❌ Pre-flight checks failed. Start the server before running the simulation.")
            sys.exit(1)
        print("\n✅ Pre-flight checks passed!")

    asyncio.run(run_simulation(args.orders, args.students))
