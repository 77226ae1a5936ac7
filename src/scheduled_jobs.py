"""
===============================================================================
SCHEDULED JOBS - Payment retries and order expiry
===============================================================================
Two periodic sweeps, started as asyncio tasks on the bot's event loop:

- attempt_pending_payments: retries queued buyer payouts
- cancel_orders: reverts stale takes and expires untaken orders

Each tick reads a bounded working set and calls the coordinator once per
item; an error on one item is logged and the sweep moves on.
"""

import asyncio
import logging
from datetime import timedelta

import bot_config
import pending_payments
from database import order_store
from database.models import utcnow
from order_states import OrderStatus

logger = logging.getLogger(__name__)


async def attempt_pending_payments(coordinator) -> int:
    """Retry every due payout once. Returns the number paid."""
    paid = 0
    for pending_payment in pending_payments.due_payments():
        try:
            if await coordinator.attempt_pending_payment(pending_payment):
                paid += 1
        except Exception as e:
            coordinator.bot_logger.log_error(
                f"Pending payment {pending_payment.id} of order {pending_payment.order_id} failed",
                exception=e,
            )
    return paid


async def cancel_orders(coordinator, now=None) -> dict:
    """Revert takes left unfunded and expire old untaken orders"""
    now = now or utcnow()
    result = {'reverted': 0, 'expired': 0}

    take_cutoff = now - timedelta(seconds=bot_config.HOLD_INVOICE_EXPIRATION_WINDOW)
    for order in order_store.orders_in_status([OrderStatus.WAITING_PAYMENT], taken_before=take_cutoff):
        try:
            if await coordinator.expire_take(order.id, now=now):
                result['reverted'] += 1
        except Exception as e:
            coordinator.bot_logger.log_error(f"Reverting take of order {order.id} failed", exception=e)

    pending_cutoff = now - timedelta(hours=bot_config.ORDER_EXPIRATION_HOURS)
    for order in order_store.orders_in_status([OrderStatus.PENDING], created_before=pending_cutoff):
        try:
            if await coordinator.expire_order(order.id, now=now):
                result['expired'] += 1
        except Exception as e:
            coordinator.bot_logger.log_error(f"Expiring order {order.id} failed", exception=e)

    return result


async def run_periodically(name: str, job, interval_seconds: float):
    """
    Run ``job()`` forever every ``interval_seconds``.
    A failing tick is logged and the loop keeps going.
    """
    while True:
        try:
            await job()
        except Exception as e:
            logger.error(f"Error in {name}: {e}")

        await asyncio.sleep(interval_seconds)


def start_sweeps(coordinator):
    """Create both sweep tasks on the running loop"""
    return [
        asyncio.create_task(run_periodically(
            'attempt_pending_payments',
            lambda: attempt_pending_payments(coordinator),
            bot_config.PENDING_PAYMENT_WINDOW * 60,
        )),
        asyncio.create_task(run_periodically(
            'cancel_orders',
            lambda: cancel_orders(coordinator),
            bot_config.ORDER_SWEEP_MINUTES * 60,
        )),
    ]
