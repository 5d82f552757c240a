"""
Background workers for Summit Bullion.

Workers:
- order_sync_worker: periodically reconciles paid orders with Platform Gold
  (async order creation, fulfillment status, tracking numbers) and retries
  orders whose supplier submission failed.

Workers run as separate processes, e.g. ``python -m bullion.workers.order_sync_worker``.
They are not started by the API.
"""

from bullion.workers.order_sync_worker import run_order_sync_loop, run_order_sync_once
