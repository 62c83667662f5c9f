"""
Excel Ledger with Concurrency Control

Append-only spreadsheet of paid orders for the bookkeeper. Rows are
written by the Celery worker after payment is confirmed; a file lock
serialises writers across worker processes.

Version: 4.0.0
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pandas as pd
from filelock import FileLock, Timeout

from bistro.core.config import get_settings
from bistro.models import Order
from bistro.services.common import as_utc, money

logger = logging.getLogger(__name__)


class LedgerReadError(OSError):
    """The ledger file exists but cannot be parsed; it is left untouched."""


def ledger_paths() -> tuple[Path, Path]:
    """Ledger file and its lock file, under the configured data directory."""
    settings = get_settings()
    data_dir = Path(settings.data_directory)
    ledger = data_dir / settings.ledger_filename
    return ledger, data_dir / f"{settings.ledger_filename}.lock"


def ledger_row(order: Order) -> dict[str, Any]:
    """Flatten a loaded order into one JSON-safe ledger row."""
    subtotal = money(sum(item.price * item.quantity for item in order.items))
    created = as_utc(order.created_at)
    pickup = as_utc(order.estimated_pickup_time)
    return {
        "order_id": order.id,
        "order_number": order.short_number,
        "order_type": order.order_type.value,
        "date_time": created.isoformat() if created else None,
        "customer_name": order.user.display_name if order.user else None,
        "customer_email": order.user.email if order.user else None,
        "customer_phone": order.user.phone if order.user else None,
        "pickup_time": pickup.isoformat() if pickup else None,
        "items": "; ".join(
            f"{item.quantity}x {item.menu_item.name if item.menu_item else item.menu_item_id}"
            for item in order.items
        ),
        "special_instructions": order.order_notes,
        "subtotal": float(subtotal),
        "discount": float(money(order.discount_amount)),
        "promotion": order.applied_promotion.name if order.applied_promotion else None,
        "total_amount": float(money(order.total)),
        "payment_method": order.payment_method,
        "payment_status": order.payment_status.value,
        "payment_intent_id": order.payment_intent_id,
        "charge_id": order.charge_id,
        "order_status": order.status.value,
    }


class LedgerManager:
    """Process-safe Excel ledger of paid orders."""

    COLUMNS = [
        "order_id",
        "order_number",
        "order_type",
        "date_time",
        "customer_name",
        "customer_email",
        "customer_phone",
        "pickup_time",
        "items",
        "special_instructions",
        "subtotal",
        "discount",
        "promotion",
        "total_amount",
        "payment_method",
        "payment_status",
        "payment_intent_id",
        "charge_id",
        "order_status",
        "exported_at",
    ]

    @classmethod
    def _ensure_data_dir(cls, ledger: Path) -> None:
        """Create data directory if needed."""
        if not ledger.parent.exists():
            ledger.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {ledger.parent}")

    @classmethod
    def _load_or_create_df(cls, file_path: Path) -> pd.DataFrame:
        """
        Load the existing ledger, or an empty frame when there is none yet.

        Raises:
            LedgerReadError: The file exists but is unreadable
        """
        if not file_path.exists():
            return pd.DataFrame(columns=cls.COLUMNS)
        try:
            return pd.read_excel(file_path, engine="openpyxl", dtype={"order_id": str})
        except Exception as e:
            logger.error(f"Ledger {file_path} is unreadable, refusing to overwrite it: {e}")
            raise LedgerReadError(f"Cannot read ledger {file_path}: {e}") from e

    @classmethod
    def export_order(cls, row: dict[str, Any]) -> dict[str, Any]:
        """
        Append one order to the ledger under the file lock.

        An order already in the ledger is not written twice, so a retried
        task is harmless.

        Raises:
            LedgerReadError: The existing ledger is unreadable; nothing is written
        """
        ledger, lock_path = ledger_paths()
        cls._ensure_data_dir(ledger)
        timeout = get_settings().ledger_lock_timeout

        order_id = row.get("order_id", "unknown")
        result = {
            "success": False,
            "message": "",
            "order_id": order_id,
            "exported_at": None,
        }

        try:
            with FileLock(str(lock_path), timeout=timeout):
                logger.debug(f"Lock acquired for order {order_id}")

                df = cls._load_or_create_df(ledger)

                if not df.empty and (df["order_id"].astype(str) == str(order_id)).any():
                    result["success"] = True
                    result["message"] = f"Order {order_id} already in ledger"
                    logger.info(result["message"])
                    return result

                export_time = datetime.now(timezone.utc).isoformat()
                new_row = {column: row.get(column) for column in cls.COLUMNS}
                new_row["exported_at"] = export_time

                new_df = pd.DataFrame([new_row], columns=cls.COLUMNS)
                df = new_df if df.empty else pd.concat([df, new_df], ignore_index=True)
                df.to_excel(str(ledger), index=False, engine="openpyxl")

                logger.info(f"Order {order_id} exported to ledger")

                result["success"] = True
                result["message"] = f"Order {order_id} exported"
                result["exported_at"] = export_time

            logger.debug(f"Lock released for order {order_id}")

        except Timeout:
            result["message"] = f"Lock timeout ({timeout}s)"
            logger.error(f"Lock timeout for order {order_id}")

        return result

    @classmethod
    def get_all_orders(cls) -> list[dict[str, Any]]:
        """Get all ledger rows."""
        ledger, _ = ledger_paths()
        if not ledger.exists():
            return []

        try:
            df = pd.read_excel(ledger, engine="openpyxl", dtype={"order_id": str})
            return df.to_dict("records")
        except Exception as e:
            logger.error(f"Error reading ledger: {e}")
            return []
