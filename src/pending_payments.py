"""
===============================================================================
PENDING PAYMENT QUEUE - Retryable payouts to buyers
===============================================================================
Invariant: at most one unexhausted PendingPayment (attempts < max) per order.

enqueue() performs the existence check and the insert as one statement
(INSERT ... SELECT ... WHERE NOT EXISTS) after locking the order row, so two
concurrent callers cannot both queue a payout for the same order.
"""

import logging
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, exists, insert, literal, select

import bot_config
from database.models import get_db, Order, PendingPayment, utcnow

logger = logging.getLogger(__name__)


def _max_attempts() -> int:
    return bot_config.MAX_PENDING_PAYMENT_ATTEMPTS


def find_unexhausted(order_id) -> Optional[PendingPayment]:
    """Return the unexhausted PendingPayment for the order, if any"""
    db = get_db()
    try:
        return db.query(PendingPayment).filter(
            PendingPayment.order_id == order_id,
            PendingPayment.attempts < _max_attempts(),
        ).first()
    finally:
        db.close()


def is_pending(order_id) -> bool:
    return find_unexhausted(order_id) is not None


def enqueue(order_id, user_id, amount: int, payment_request: str,
            description: str = None, payment_hash: str = None) -> bool:
    """
    Queue a payout unless an unexhausted one already exists for the order.

    Returns:
        True if a new PendingPayment was created, False if one was already queued
    """
    max_attempts = _max_attempts()
    db = get_db()
    try:
        # Row lock on backends that support it; SQLite serializes writers anyway
        db.query(Order.id).filter(Order.id == order_id).with_for_update().first()

        already_queued = exists().where(
            PendingPayment.order_id == order_id,
            PendingPayment.attempts < max_attempts,
        )
        row = select(
            literal(order_id, Integer),
            literal(user_id, Integer),
            literal(int(amount), Integer),
            literal(payment_request, String),
            literal(description, String),
            literal(payment_hash, String),
            literal(0, Integer),
            literal(False, Boolean),
            literal(utcnow(), DateTime),
        ).where(~already_queued)

        statement = insert(PendingPayment).from_select(
            [
                PendingPayment.order_id,
                PendingPayment.user_id,
                PendingPayment.amount,
                PendingPayment.payment_request,
                PendingPayment.description,
                PendingPayment.hash,
                PendingPayment.attempts,
                PendingPayment.paid,
                PendingPayment.created_at,
            ],
            row,
        )
        result = db.execute(statement)
        db.commit()
        created = result.rowcount == 1
        if created:
            logger.info(f"Pending payment queued for order {order_id}")
        else:
            logger.info(f"Pending payment already queued for order {order_id}")
        return created
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def due_payments(limit: int = 50) -> List[PendingPayment]:
    """Unpaid payouts that still have attempts left"""
    db = get_db()
    try:
        return db.query(PendingPayment).filter(
            PendingPayment.paid.is_(False),
            PendingPayment.attempts < _max_attempts(),
        ).order_by(PendingPayment.id).limit(limit).all()
    finally:
        db.close()


def claim_attempt(pending_payment: PendingPayment) -> Optional[int]:
    """
    Count one attempt against the payout before trying it.

    The increment is conditional on the attempts value we read, so two
    overlapping sweeps never both attempt the same payout.

    Returns:
        The new attempts value, or None if another sweep claimed it first
    """
    db = get_db()
    try:
        updated = db.query(PendingPayment).filter(
            PendingPayment.id == pending_payment.id,
            PendingPayment.attempts == pending_payment.attempts,
            PendingPayment.paid.is_(False),
        ).update({PendingPayment.attempts: pending_payment.attempts + 1},
                 synchronize_session=False)
        db.commit()
        if updated != 1:
            return None
        return pending_payment.attempts + 1
    finally:
        db.close()


def mark_paid(pending_payment_id) -> None:
    db = get_db()
    try:
        db.query(PendingPayment).filter(PendingPayment.id == pending_payment_id).update(
            {PendingPayment.paid: True, PendingPayment.paid_at: utcnow()},
            synchronize_session=False,
        )
        db.commit()
    finally:
        db.close()


def payments_for_order(order_id) -> List[PendingPayment]:
    db = get_db()
    try:
        return db.query(PendingPayment).filter(
            PendingPayment.order_id == order_id
        ).order_by(PendingPayment.id).all()
    finally:
        db.close()
