"""
Celery tasks.

``export_order_to_ledger`` receives a flattened row (``ledger_row``)
rather than an order id, so the worker never needs a database
connection.
"""

import logging
import time
from datetime import datetime, timezone

from bistro.celery_worker import celery_app
from bistro.services.excel_manager import LedgerManager

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(OSError,),
    retry_backoff=True,
)
def export_order_to_ledger(self, row: dict) -> dict:
    """Append one paid order to the Excel ledger; a repeat for the same order is a no-op."""
    order_id = row.get("order_id", "unknown")
    started = time.perf_counter()

    result = LedgerManager.export_order(row)

    result["task_id"] = self.request.id
    result["processing_time_seconds"] = round(time.perf_counter() - started, 3)

    if result["success"]:
        logger.info(f"Ledger task {self.request.id}: {result['message']}")
    else:
        logger.warning(f"Ledger task {self.request.id}: order {order_id} not exported - {result['message']}")
    return result


@celery_app.task
def health_check() -> dict:
    return {
        "status": "healthy",
        "worker": "celery",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
