"""
Cooperative cancellation: both parties of an ACTIVE order must ask to cancel
before the hold invoice is canceled and the seller refunded.

State is the pair of flags on the order (buyer_cooperativecancel,
seller_cooperativecancel).
"""

from enum import Enum


class CooperativeCancelStep(str, Enum):
    MUST_WAIT = 'must_wait'     # asserter already asked; nothing changes
    REQUESTED = 'requested'     # first request; counterparty is asked
    AGREED = 'agreed'           # both asked; refund and cancel


def decide(own_flag: bool, counterparty_flag: bool) -> CooperativeCancelStep:
    """Next step for a party asserting cooperative cancel"""
    if own_flag:
        return CooperativeCancelStep.MUST_WAIT
    if counterparty_flag:
        return CooperativeCancelStep.AGREED
    return CooperativeCancelStep.REQUESTED
