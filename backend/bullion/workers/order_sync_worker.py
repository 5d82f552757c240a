"""
Order Sync Worker

Runs the order resync batch on a fixed interval. Equivalent to the cron
calling ``GET /api/orders/sync-status``, without the HTTP hop.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bullion.config import settings
from bullion.database import SessionLocal
from bullion.services.order_reconciler import OrderReconciler
from bullion.utils.logger import logger


async def run_order_sync_once(reconciler: Optional[OrderReconciler] = None) -> Dict[str, Any]:
    reconciler = reconciler or OrderReconciler()
    db = SessionLocal()
    try:
        result = await reconciler.resync(db)
        logger.info(
            "[order-sync-worker] cycle done: synced=%s attempted=%s",
            result["syncedCount"],
            len(result["results"]),
        )
        return {
            "status": "completed",
            **result,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as e:
        logger.error(f"[order-sync-worker] cycle failed: {e}", exc_info=True)
        return {
            "status": "error",
            "error": str(e),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    finally:
        db.close()


async def run_order_sync_loop(interval_seconds: Optional[int] = None):
    """
    Run the order sync worker forever.
    This is the main entry point for the background worker.
    """
    interval = interval_seconds or settings.ORDER_SYNC_INTERVAL_SECONDS
    logger.info(f"Order sync worker loop started (every {interval} seconds)")

    reconciler = OrderReconciler()
    while True:
        await run_order_sync_once(reconciler)
        await asyncio.sleep(interval)


if __name__ == "__main__":
    asyncio.run(run_order_sync_loop())
