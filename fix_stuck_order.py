#!/usr/bin/env python3
"""
Manual Order Inspection Script
Use this script to find orders that may need an admin

Usage:
    python3 fix_stuck_order.py --list-stuck
    python3 fix_stuck_order.py --order-id 3 --show
    python3 fix_stuck_order.py --stats

Fixing an order is done from Telegram with /cancelorder, /settleorder and
/paytobuyer, so the bot notifies both parties.
"""

import os
import sys
import argparse
from datetime import timedelta

# Add src directory to path
sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'src'))

import bot_config  # noqa: E402
import pending_payments  # noqa: E402
from database import order_store  # noqa: E402
from database.models import get_database_stats, utcnow  # noqa: E402
from order_states import OrderStatus  # noqa: E402


def find_stuck_orders(now=None):
    """Orders in DISPUTE or PAID_HOLD_INVOICE, plus takes past the hold invoice window"""
    now = now or utcnow()
    stuck = order_store.orders_in_status(
        [OrderStatus.DISPUTE, OrderStatus.PAID_HOLD_INVOICE], limit=1000
    )
    cutoff = now - timedelta(seconds=bot_config.HOLD_INVOICE_EXPIRATION_WINDOW)
    stuck += order_store.orders_in_status(
        [OrderStatus.WAITING_PAYMENT], taken_before=cutoff, limit=1000
    )
    return sorted(stuck, key=lambda order: order.id)


def print_order(order):
    print(f"Order #{order.id} ({order.type})")
    print(f"  Status: {order.status}")
    print(f"  Amount: {order.amount} sats + {order.fee} fee")
    print(f"  Fiat: {order.fiat_amount} {order.fiat_code} via {order.payment_method}")
    print(f"  Creator ID: {order.creator_id}")
    print(f"  Buyer ID: {order.buyer_id}")
    print(f"  Seller ID: {order.seller_id}")
    print(f"  Hold invoice: {'yes' if order.hash else 'no'}")
    print(f"  Settle requested: {order.settle_requested}  Settled at: {order.settled_at}")
    print(f"  Buyer invoice: {'yes' if order.buyer_invoice else 'no'}")
    print(f"  Created: {order.created_at}  Taken: {order.taken_at}")
    for payment in pending_payments.payments_for_order(order.id):
        print(f"  Pending payment #{payment.id}: attempts={payment.attempts} paid={payment.paid}")
    print()


def list_stuck_orders():
    """List all potentially stuck orders"""
    stuck_orders = find_stuck_orders()
    if not stuck_orders:
        print("✅ No stuck orders found")
        return stuck_orders

    print(f"📋 Found {len(stuck_orders)} potentially stuck orders:")
    print("=" * 80)
    for order in stuck_orders:
        print_order(order)
    return stuck_orders


def show_order(order_id):
    order = order_store.get_order(order_id)
    if order is None:
        print(f"❌ Order #{order_id} not found")
        return None
    print_order(order)
    return order


def print_stats():
    stats = get_database_stats()
    print("📊 Database stats")
    for name, value in stats.items():
        print(f"  {name}: {value}")
    return stats


def main():
    parser = argparse.ArgumentParser(description='Manual Order Inspection Script')
    parser.add_argument('--order-id', type=int, help='Order ID to inspect')
    parser.add_argument('--show', action='store_true', help='Print the order')
    parser.add_argument('--list-stuck', action='store_true', help='List all stuck orders')
    parser.add_argument('--stats', action='store_true', help='Print order and payment counts')

    args = parser.parse_args()

    if args.list_stuck:
        list_stuck_orders()
    elif args.stats:
        print_stats()
    elif args.order_id and args.show:
        show_order(args.order_id)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
