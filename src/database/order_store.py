"""
===============================================================================
ORDER STORE - Persistence contract for users and orders
===============================================================================
Every function opens its own short session and closes it before returning,
so no caller keeps a session (or a cached order) across network I/O.

Transitions are written with update_order_if(): a conditional UPDATE whose
row count says whether the persisted state still matched when the write
happened. A loaded Order is only a hint for deciding which conditional
update to try.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from database.models import get_db, Order, User, utcnow
from order_states import OrderStatus, TERMINAL_STATES

logger = logging.getLogger(__name__)

# =============================================================================
# USERS
# =============================================================================

def get_user(user_id) -> Optional[User]:
    if user_id is None:
        return None
    db = get_db()
    try:
        return db.query(User).filter(User.id == user_id).first()
    finally:
        db.close()


def get_user_by_telegram_id(telegram_id) -> Optional[User]:
    db = get_db()
    try:
        return db.query(User).filter(User.telegram_id == telegram_id).first()
    finally:
        db.close()


def get_user_by_username(username: str) -> Optional[User]:
    db = get_db()
    try:
        return db.query(User).filter(User.username == username.lstrip('@')).first()
    finally:
        db.close()


def get_or_create_user(telegram_id, username: str) -> User:
    """Register the Telegram user on first contact, refresh the username otherwise"""
    db = get_db()
    try:
        user = db.query(User).filter(User.telegram_id == telegram_id).first()
        if user is None:
            user = User(telegram_id=telegram_id, username=username, disputes=0, banned=False)
            db.add(user)
            db.commit()
            logger.info(f"New user registered: {telegram_id} ({username})")
        elif username and user.username != username:
            user.username = username
            db.commit()
        return user
    finally:
        db.close()


def increment_disputes(user_id) -> User:
    """Atomically add one dispute to the user and return the fresh record"""
    db = get_db()
    try:
        db.query(User).filter(User.id == user_id).update(
            {User.disputes: User.disputes + 1}, synchronize_session=False
        )
        db.commit()
        return db.query(User).filter(User.id == user_id).one()
    finally:
        db.close()


def ban_user(user_id) -> bool:
    """Set the ban flag. Returns True only for the call that actually banned."""
    db = get_db()
    try:
        updated = db.query(User).filter(
            User.id == user_id, User.banned.is_(False)
        ).update({User.banned: True}, synchronize_session=False)
        db.commit()
        return updated == 1
    finally:
        db.close()

# =============================================================================
# ORDERS
# =============================================================================

def create_order(**fields) -> Order:
    db = get_db()
    try:
        order = Order(**fields)
        db.add(order)
        db.commit()
        return order
    finally:
        db.close()


def get_order(order_id) -> Optional[Order]:
    db = get_db()
    try:
        return db.query(Order).filter(Order.id == order_id).first()
    finally:
        db.close()


def get_order_by_hash(payment_hash: str) -> Optional[Order]:
    db = get_db()
    try:
        return db.query(Order).filter(Order.hash == payment_hash).first()
    finally:
        db.close()


def update_order_if(order_id, values: Dict, statuses: Iterable = None,
                    **conditions) -> bool:
    """
    Conditional single-row update.

    Args:
        order_id: Order to update
        values: column name -> new value
        statuses: the update applies only if the persisted status is one of these
        **conditions: extra column == value requirements (None means IS NULL)

    Returns:
        True if the row matched and was updated
    """
    db = get_db()
    try:
        query = db.query(Order).filter(Order.id == order_id)
        if statuses is not None:
            query = query.filter(Order.status.in_([OrderStatus(s).value for s in statuses]))
        for column, expected in conditions.items():
            attr = getattr(Order, column)
            query = query.filter(attr.is_(None) if expected is None else attr == expected)

        values = {
            key: (value.value if isinstance(value, OrderStatus) else value)
            for key, value in values.items()
        }
        values['last_updated'] = utcnow()
        updated = query.update(values, synchronize_session=False)
        db.commit()
        return updated == 1
    finally:
        db.close()


def seller_has_fiat_sent_order(user_id) -> bool:
    """Sellers with an order in FIAT_SENT must resolve it before selling again"""
    db = get_db()
    try:
        return db.query(Order).filter(
            Order.seller_id == user_id,
            Order.status == OrderStatus.FIAT_SENT.value,
        ).first() is not None
    finally:
        db.close()


def open_orders_for_user(user_id) -> List[Order]:
    """Non-terminal orders where the user is creator, buyer or seller"""
    terminal = [status.value for status in TERMINAL_STATES]
    db = get_db()
    try:
        return db.query(Order).filter(
            (Order.creator_id == user_id) | (Order.buyer_id == user_id) | (Order.seller_id == user_id),
            ~Order.status.in_(terminal),
        ).order_by(Order.id).all()
    finally:
        db.close()


def orders_in_status(statuses: Iterable, taken_before: datetime = None,
                     created_before: datetime = None, limit: int = 100) -> List[Order]:
    """Bounded working set for the scheduled sweeps"""
    db = get_db()
    try:
        query = db.query(Order).filter(
            Order.status.in_([OrderStatus(s).value for s in statuses])
        )
        if taken_before is not None:
            query = query.filter(Order.taken_at <= taken_before)
        if created_before is not None:
            query = query.filter(Order.created_at <= created_before)
        return query.order_by(Order.id).limit(limit).all()
    finally:
        db.close()


def orders_with_open_invoice(statuses: Iterable) -> List[Order]:
    db = get_db()
    try:
        return db.query(Order).filter(
            Order.status.in_([OrderStatus(s).value for s in statuses]),
            Order.hash.isnot(None),
        ).all()
    finally:
        db.close()
