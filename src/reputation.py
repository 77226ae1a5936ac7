"""
===============================================================================
REPUTATION & BAN ENGINE
===============================================================================
Pure decision logic over dispute counters. A dispute on an order counts
against both parties, whoever opened it. Reaching MAX_DISPUTES bans the
user; a ban is never lifted.
"""

from typing import NamedTuple


class DisputeOutcome(NamedTuple):
    disputes: int
    banned: bool
    newly_banned: bool


def record_dispute(disputes: int, banned: bool, max_disputes: int) -> DisputeOutcome:
    """Counter and ban flag after one more dispute"""
    disputes = (disputes or 0) + 1
    return evaluate_ban(disputes, banned, max_disputes)


def evaluate_ban(disputes: int, banned: bool, max_disputes: int) -> DisputeOutcome:
    """Ban state for an already incremented counter"""
    should_ban = disputes >= max_disputes
    return DisputeOutcome(
        disputes=disputes,
        banned=bool(banned) or should_ban,
        newly_banned=should_ban and not banned,
    )


def dispute_counts_for(buyer_involved: bool, seller_involved: bool):
    """
    Which parties' counters a dispute event increments.

    Both role indicators are honoured independently: every party on the
    order gets one more dispute.
    """
    return {'buyer': 1 if buyer_involved else 0, 'seller': 1 if seller_involved else 0}


def may_initiate_orders(user) -> bool:
    """Banned users cannot create or take orders"""
    return user is not None and not user.banned
