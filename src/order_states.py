"""
===============================================================================
ORDER STATES - Closed status enumeration and central transition table
===============================================================================
Every status change in the bot is checked against TRANSITIONS here instead
of scattered string comparisons. Admin overrides are the only edges not in
the table: an admin may move any non-terminal order to CANCELED_BY_ADMIN or
COMPLETED_BY_ADMIN.

ORDER FLOW:

1. PENDING            - Published, waiting for a taker
2. WAITING_PAYMENT    - Taken, hold invoice being set up / waiting for seller
3. ACTIVE             - Seller's funds are held by the hold invoice
4. FIAT_SENT          - Buyer says the fiat payment was sent
5. PAID_HOLD_INVOICE  - Seller released, hold invoice settled
6. SUCCESS            - Buyer's invoice paid out

Side branches: DISPUTE, CANCELED, CANCELED_BY_ADMIN, COMPLETED_BY_ADMIN, EXPIRED
"""

from enum import Enum
from typing import Dict, FrozenSet


class OrderStatus(str, Enum):
    PENDING = 'PENDING'
    WAITING_PAYMENT = 'WAITING_PAYMENT'
    ACTIVE = 'ACTIVE'
    FIAT_SENT = 'FIAT_SENT'
    PAID_HOLD_INVOICE = 'PAID_HOLD_INVOICE'
    SUCCESS = 'SUCCESS'
    DISPUTE = 'DISPUTE'
    CANCELED = 'CANCELED'
    CANCELED_BY_ADMIN = 'CANCELED_BY_ADMIN'
    COMPLETED_BY_ADMIN = 'COMPLETED_BY_ADMIN'
    EXPIRED = 'EXPIRED'


class OrderType(str, Enum):
    BUY = 'buy'
    SELL = 'sell'


class Role(str, Enum):
    BUYER = 'buyer'
    SELLER = 'seller'

    @property
    def counterparty(self) -> 'Role':
        return Role.SELLER if self is Role.BUYER else Role.BUYER


TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.SUCCESS,
    OrderStatus.CANCELED,
    OrderStatus.CANCELED_BY_ADMIN,
    OrderStatus.COMPLETED_BY_ADMIN,
    OrderStatus.EXPIRED,
})

ADMIN_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.CANCELED_BY_ADMIN,
    OrderStatus.COMPLETED_BY_ADMIN,
})

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.WAITING_PAYMENT,   # taken
        OrderStatus.CANCELED,          # creator cancels
        OrderStatus.EXPIRED,           # nobody took it
    }),
    OrderStatus.WAITING_PAYMENT: frozenset({
        OrderStatus.PENDING,           # taker backed out or setup timed out
        OrderStatus.ACTIVE,            # hold invoice accepted
        OrderStatus.CANCELED,          # creator cancels
        OrderStatus.DISPUTE,
    }),
    OrderStatus.ACTIVE: frozenset({
        OrderStatus.FIAT_SENT,
        OrderStatus.PAID_HOLD_INVOICE,  # seller released before fiat-sent
        OrderStatus.CANCELED,           # cooperative cancel
        OrderStatus.DISPUTE,
    }),
    OrderStatus.FIAT_SENT: frozenset({
        OrderStatus.PAID_HOLD_INVOICE,
        OrderStatus.DISPUTE,
    }),
    OrderStatus.PAID_HOLD_INVOICE: frozenset({
        OrderStatus.SUCCESS,
        OrderStatus.DISPUTE,
    }),
    # A repeated dispute keeps the order in DISPUTE; only an admin resolves it
    OrderStatus.DISPUTE: frozenset({
        OrderStatus.DISPUTE,
    }),
    OrderStatus.SUCCESS: frozenset(),
    OrderStatus.CANCELED: frozenset(),
    OrderStatus.CANCELED_BY_ADMIN: frozenset(),
    OrderStatus.COMPLETED_BY_ADMIN: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}

# Statuses in which the seller's funds are locked in the hold invoice
ESCROW_HELD_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.ACTIVE,
    OrderStatus.FIAT_SENT,
})

# Statuses whose hold invoice may still change state at the node
SUBSCRIBABLE_STATES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.WAITING_PAYMENT,
    OrderStatus.ACTIVE,
    OrderStatus.FIAT_SENT,
    OrderStatus.PAID_HOLD_INVOICE,
    OrderStatus.DISPUTE,
})


def is_terminal(status) -> bool:
    return OrderStatus(status) in TERMINAL_STATES


def can_transition(current, new, is_admin: bool = False) -> bool:
    """Check a status change against the transition table"""
    current = OrderStatus(current)
    new = OrderStatus(new)
    if is_admin and new in ADMIN_STATES:
        return current not in TERMINAL_STATES
    return new in TRANSITIONS[current]


def sources_for(new, is_admin: bool = False) -> FrozenSet[OrderStatus]:
    """All statuses from which ``new`` is reachable"""
    return frozenset(
        status for status in OrderStatus
        if can_transition(status, new, is_admin=is_admin)
    )


# =============================================================================
# ROLE-INDEXED FLAG ACCESSORS
# =============================================================================

_DISPUTE_FLAGS = {Role.BUYER: 'buyer_dispute', Role.SELLER: 'seller_dispute'}
_COOPERATIVE_CANCEL_FLAGS = {
    Role.BUYER: 'buyer_cooperativecancel',
    Role.SELLER: 'seller_cooperativecancel',
}
_PARTY_COLUMNS = {Role.BUYER: 'buyer_id', Role.SELLER: 'seller_id'}


def dispute_flag(role: Role) -> str:
    """Column name of the dispute flag owned by ``role``"""
    return _DISPUTE_FLAGS[Role(role)]


def cooperative_cancel_flag(role: Role) -> str:
    """Column name of the cooperative-cancel flag owned by ``role``"""
    return _COOPERATIVE_CANCEL_FLAGS[Role(role)]


def party_column(role: Role) -> str:
    return _PARTY_COLUMNS[Role(role)]


def role_of(order, user_id):
    """Return the Role ``user_id`` plays in ``order`` or None"""
    if user_id is None:
        return None
    if order.buyer_id == user_id:
        return Role.BUYER
    if order.seller_id == user_id:
        return Role.SELLER
    return None


def taker_role(order_type) -> Role:
    """The role a user takes when taking an order of ``order_type``"""
    return Role.BUYER if OrderType(order_type) is OrderType.SELL else Role.SELLER
