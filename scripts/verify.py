"""
Ledger Verification Script

Verifies data integrity of the Excel ledger of paid orders.
Run from project root: python scripts/verify.py

Version: 4.0.0
"""

import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd  # noqa: E402

from bistro.services.excel_manager import LedgerManager, ledger_paths  # noqa: E402


def verify_ledger() -> bool:
    """Verify ledger integrity after a simulation."""
    ledger, _ = ledger_paths()

    print("=" * 60)
    print("🔍 LEDGER VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {ledger}")
    print("=" * 60)

    if not ledger.exists():
        print("\n❌ Ledger file not found!")
        print("   Run the simulation first: python scripts/simulate.py")
        return False

    df = pd.DataFrame(LedgerManager.get_all_orders())
    print(f"\n✅ File loaded successfully!")

    print(f"\n📊 STATISTICS:")
    print(f"   Total Orders: {len(df)}")
    print(f"   Columns: {len(df.columns)}")

    missing = [col for col in LedgerManager.COLUMNS if col not in df.columns]
    if missing:
        print(f"\n⚠️ Missing Columns: {missing}")
    else:
        print(f"\n✅ All ledger columns present")

    ok = not missing
    if "order_id" in df.columns:
        duplicates = df["order_id"].duplicated().sum()
        if duplicates > 0:
            print(f"\n⚠️ {duplicates} duplicate order IDs found!")
            ok = False
        else:
            print(f"✅ No duplicate order IDs")

    if {"subtotal", "discount", "total_amount"} <= set(df.columns):
        mismatched = df[(df["subtotal"] - df["discount"] - df["total_amount"]).abs() > 0.005]
        if len(mismatched):
            print(f"\n⚠️ {len(mismatched)} row(s) where subtotal - discount != total")
            ok = False
        else:
            print(f"✅ Totals consistent on every row")

        print(f"\n💰 REVENUE:")
        print(f"   Total: ${df['total_amount'].sum():.2f}")
        print(f"   Discounts: ${df['discount'].sum():.2f}")

    print(f"\n📋 RECENT ORDERS:")
    print("-" * 60)
    if len(df) > 0:
        cols = [c for c in ["order_number", "customer_name", "total_amount", "promotion"] if c in df.columns]
        print(df[cols].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE" if ok else "⚠️ VERIFICATION FOUND PROBLEMS")
    print("=" * 60)

    return ok


if __name__ == "__main__":
    sys.exit(0 if verify_ledger() else 1)
