import time

import pytest

import pending_payments
from conftest import TEST_INVOICE
from database import order_store
from lightning_utils import INVOICE_ACCEPTED, INVOICE_SETTLED
from order_coordinator import Outcome
from order_errors import (
    AmountMismatchError, GatewayError, InvalidInvoiceError, NotOrderPartyError, PriceFeedError,
    SellerHasFiatSentOrderError, StateGuardError, UserBannedError, ValidationError,
)
from order_states import OrderStatus, OrderType


async def _make_buy_order_active(coordinator, seller, buyer, amount=20000):
    """Buy order taken by the seller with the hold invoice paid, no buyer invoice yet"""
    order = await coordinator.create_order(buyer, OrderType.BUY, amount, 10, 'USD', 'zelle')
    await coordinator.take_order(seller, order.id)
    order = await coordinator.continue_take(order.id, user=seller)
    await coordinator.on_invoice_event(order.hash, INVOICE_ACCEPTED)
    return order_store.get_order(order.id)


# =============================================================================
# CREATE / TAKE
# =============================================================================

async def test_create_order_publishes_pending_order(coordinator, notifier, seller):
    order = await coordinator.create_order(seller, 'sell', 0, 100, 'usd', 'bank transfer')

    assert order.status == OrderStatus.PENDING.value
    assert order.seller_id == seller.id and order.buyer_id is None
    assert order.fiat_code == 'USD'
    assert order.price_from_api
    assert notifier.published == [order.id]
    assert (order.tg_channel_message1, order.tg_channel_message2) == (1000 + order.id, 2000 + order.id)
    assert notifier.events_for(seller) == ['order_created']


async def test_banned_user_cannot_create(coordinator, seller):
    order_store.ban_user(seller.id)
    banned = order_store.get_user(seller.id)

    with pytest.raises(UserBannedError):
        await coordinator.create_order(banned, 'sell', 1000, 10, 'USD', 'cash')


async def test_seller_with_fiat_sent_order_cannot_sell(coordinator, seller, buyer, make_active_order):
    order = await make_active_order()
    await coordinator.fiat_sent(buyer, order.id)

    with pytest.raises(SellerHasFiatSentOrderError):
        await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')


async def test_currency_without_price_needs_an_amount(coordinator, seller):
    with pytest.raises(ValidationError) as excinfo:
        await coordinator.create_order(seller, 'sell', 0, 100, 'CUP', 'cash')
    assert excinfo.value.message_key == 'currency_without_price'


async def test_market_price_sell_order_is_priced_on_take(coordinator, gateway, price_feed, config,
                                                         seller, buyer):
    order = await coordinator.create_order(seller, 'sell', 0, 100, 'USD', 'bank transfer')

    taken = await coordinator.take_order(buyer, order.id)

    assert price_feed.calls == [('USD', 100)]
    assert taken.status == OrderStatus.WAITING_PAYMENT.value
    assert taken.buyer_id == buyer.id
    assert taken.amount == 250000
    assert taken.fee == pytest.approx(250000 * config.FEE)

    await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)

    [create] = gateway.calls_of('create_hold_invoice')
    assert create[2] == int(250000 + 250000 * config.FEE)
    stored = order_store.get_order(order.id)
    assert stored.hash and stored.secret
    assert gateway.calls_of('subscribe_invoice') == [('subscribe_invoice', stored.hash)]


async def test_price_feed_failure_leaves_order_untaken(coordinator, price_feed, seller, buyer):
    order = await coordinator.create_order(seller, 'sell', 0, 100, 'USD', 'cash')
    price_feed.fail = True

    with pytest.raises(PriceFeedError):
        await coordinator.take_order(buyer, order.id)

    stored = order_store.get_order(order.id)
    assert stored.status == OrderStatus.PENDING.value
    assert stored.buyer_id is None and stored.amount == 0


async def test_creator_cannot_take_own_order(coordinator, seller):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')

    with pytest.raises(ValidationError) as excinfo:
        await coordinator.take_order(seller, order.id)
    assert excinfo.value.message_key == 'cannot_take_own_order'


async def test_second_taker_is_rejected(coordinator, seller, buyer):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')
    await coordinator.take_order(buyer, order.id)
    carol = order_store.get_or_create_user(303, 'carol')

    with pytest.raises(StateGuardError) as excinfo:
        await coordinator.take_order(carol, order.id)
    assert excinfo.value.message_key == 'order_already_taken'
    assert order_store.get_order(order.id).buyer_id == buyer.id


async def test_release_take_republishes(coordinator, notifier, seller, buyer):
    order = await coordinator.create_order(seller, 'sell', 0, 100, 'USD', 'cash')
    await coordinator.take_order(buyer, order.id)

    released = await coordinator.release_take(buyer, order.id)

    assert released.status == OrderStatus.PENDING.value
    assert released.buyer_id is None and released.taken_at is None
    assert released.amount == 0 and released.fee == 0
    assert notifier.published == [order.id, order.id]
    assert 'order_republished' in notifier.events_for(seller)


async def test_buy_order_continue_take_only_by_seller(coordinator, gateway, seller, buyer):
    order = await coordinator.create_order(buyer, 'buy', 20000, 10, 'USD', 'zelle')
    await coordinator.take_order(seller, order.id)

    with pytest.raises(NotOrderPartyError):
        await coordinator.continue_take(order.id, user=buyer)

    order = await coordinator.continue_take(order.id, user=seller)
    assert order.hash is not None
    assert order.status == OrderStatus.WAITING_PAYMENT.value

    # Pressing continue again shows the same invoice
    again = await coordinator.continue_take(order.id, user=seller)
    assert again.hash == order.hash
    assert len(gateway.calls_of('create_hold_invoice')) == 1


async def test_gateway_failure_on_continue_take_changes_nothing(coordinator, gateway, seller, buyer):
    order = await coordinator.create_order(buyer, 'buy', 20000, 10, 'USD', 'zelle')
    await coordinator.take_order(seller, order.id)
    gateway.fail_create = True

    with pytest.raises(GatewayError):
        await coordinator.continue_take(order.id, user=seller)
    assert order_store.get_order(order.id).hash is None


async def test_invoice_created_for_an_order_canceled_meanwhile_is_canceled(coordinator, gateway,
                                                                           seller, buyer):
    order = await coordinator.create_order(buyer, 'buy', 20000, 10, 'USD', 'zelle')
    await coordinator.take_order(seller, order.id)
    gateway.on_create = lambda: order_store.update_order_if(
        order.id, {'status': OrderStatus.CANCELED}
    )

    with pytest.raises(StateGuardError):
        await coordinator.continue_take(order.id, user=seller)

    stored = order_store.get_order(order.id)
    assert stored.hash is None
    assert len(gateway.calls_of('cancel_hold_invoice')) == 1

# =============================================================================
# ESCROW FLOW
# =============================================================================

async def test_invoice_accepted_activates_order(make_active_order, notifier, seller, buyer):
    order = await make_active_order()

    assert order.status == OrderStatus.ACTIVE.value
    assert 'hold_invoice_paid_buyer' in notifier.events_for(buyer)
    assert 'hold_invoice_paid_seller' in notifier.events_for(seller)


async def test_fiat_sent_moves_active_order(coordinator, notifier, seller, buyer, make_active_order):
    order = await make_active_order()

    assert await coordinator.fiat_sent(buyer, order.id) is Outcome.FIAT_SENT

    assert order_store.get_order(order.id).status == OrderStatus.FIAT_SENT.value
    assert 'fiat_sent_seller' in notifier.events_for(seller)


async def test_fiat_sent_only_by_buyer(coordinator, seller, make_active_order):
    order = await make_active_order()

    with pytest.raises(NotOrderPartyError):
        await coordinator.fiat_sent(seller, order.id)


async def test_release_settles_exactly_once(coordinator, gateway, seller, buyer, make_active_order):
    order = await make_active_order()

    released = await coordinator.release(seller, order.id)
    assert released.status == OrderStatus.PAID_HOLD_INVOICE.value
    assert released.settle_requested and released.settled_at is not None

    with pytest.raises(StateGuardError):
        await coordinator.release(seller, order.id)
    assert gateway.calls_of('settle_hold_invoice') == [('settle_hold_invoice', order.secret)]


async def test_release_only_by_seller(coordinator, buyer, make_active_order):
    order = await make_active_order()

    with pytest.raises(NotOrderPartyError):
        await coordinator.release(buyer, order.id)


async def test_failed_settle_is_not_retried(coordinator, gateway, notifier, seller, make_active_order):
    order = await make_active_order()
    gateway.fail_settle = True

    with pytest.raises(GatewayError):
        await coordinator.release(seller, order.id)

    assert [event for event, _ in notifier.admin_events] == ['settle_failed']
    held = order_store.get_order(order.id)
    assert held.status == OrderStatus.ACTIVE.value
    assert held.settle_requested and held.settled_at is None

    gateway.fail_settle = False
    with pytest.raises(StateGuardError):
        await coordinator.release(seller, order.id)
    assert len(gateway.calls_of('settle_hold_invoice')) == 1


async def test_failed_settle_never_pays_the_buyer(coordinator, gateway, seller, buyer):
    order = await _make_buy_order_active(coordinator, seller, buyer)
    gateway.fail_settle = True
    with pytest.raises(GatewayError):
        await coordinator.release(seller, order.id)

    assert await coordinator.set_invoice(buyer, order.id, TEST_INVOICE) is Outcome.INVOICE_UPDATED
    assert pending_payments.payments_for_order(order.id) == []
    assert not await coordinator.pay_to_buyer(order.id)

    pending_payments.enqueue(order.id, buyer.id, order.amount, TEST_INVOICE)
    [payment] = pending_payments.payments_for_order(order.id)
    assert not await coordinator.attempt_pending_payment(payment)

    assert gateway.calls_of('pay_request') == []
    assert pending_payments.payments_for_order(order.id)[0].attempts == 0
    assert order_store.get_order(order.id).status == OrderStatus.ACTIVE.value


async def test_late_invoice_needs_a_settled_hold_invoice(coordinator, seller, buyer):
    order = await _make_buy_order_active(coordinator, seller, buyer)
    order_store.update_order_if(order.id, {'status': OrderStatus.PAID_HOLD_INVOICE.value})

    with pytest.raises(StateGuardError) as excinfo:
        await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)
    assert excinfo.value.message_key == 'hold_invoice_not_settled'
    assert pending_payments.payments_for_order(order.id) == []


async def test_cooperative_cancel_refused_after_settle_requested(coordinator, gateway, seller, buyer,
                                                                 make_active_order):
    order = await make_active_order()
    gateway.fail_settle = True
    with pytest.raises(GatewayError):
        await coordinator.release(seller, order.id)

    with pytest.raises(StateGuardError):
        await coordinator.cooperative_cancel(buyer, order.id)
    assert gateway.calls_of('cancel_hold_invoice') == []


async def test_fiat_sent_after_release_informs_buyer(coordinator, gateway, notifier, seller, buyer,
                                                     make_active_order):
    order = await make_active_order()
    await coordinator.release(seller, order.id)

    outcome = await coordinator.fiat_sent(buyer, order.id)

    assert outcome is Outcome.SELLER_ALREADY_PAID
    assert order_store.get_order(order.id).status == OrderStatus.PAID_HOLD_INVOICE.value
    assert notifier.events_for(buyer)[-1] == 'seller_already_paid'
    assert len(gateway.calls_of('settle_hold_invoice')) == 1


async def test_settled_event_pays_buyer(coordinator, gateway, notifier, seller, buyer, make_active_order):
    order = await make_active_order()
    await coordinator.release(seller, order.id)

    await coordinator.on_invoice_event(order.hash, INVOICE_SETTLED)

    done = order_store.get_order(order.id)
    assert done.status == OrderStatus.SUCCESS.value
    assert done.settled_at is not None
    assert done.routing_fee == gateway.routing_fee
    assert gateway.calls_of('pay_request') == [('pay_request', TEST_INVOICE, order.amount)]
    assert 'buyer_received_sats' in notifier.events_for(buyer)
    assert 'seller_order_completed' in notifier.events_for(seller)


async def test_failed_payout_is_queued(coordinator, gateway, notifier, seller, buyer, make_active_order):
    order = await make_active_order()
    await coordinator.release(seller, order.id)
    gateway.pay_confirmed = False

    await coordinator.on_invoice_event(order.hash, INVOICE_SETTLED)

    assert order_store.get_order(order.id).status == OrderStatus.PAID_HOLD_INVOICE.value
    [payment] = pending_payments.payments_for_order(order.id)
    assert payment.attempts == 0 and payment.payment_request == TEST_INVOICE
    assert 'invoice_payment_failed' in notifier.events_for(buyer)


async def test_payout_skipped_when_already_queued(coordinator, gateway, seller, buyer, make_active_order):
    order = await make_active_order()
    await coordinator.release(seller, order.id)
    pending_payments.enqueue(order.id, buyer.id, order.amount, TEST_INVOICE)

    assert not await coordinator.pay_to_buyer(order.id)
    assert gateway.calls_of('pay_request') == []

# =============================================================================
# SET INVOICE
# =============================================================================

async def test_invoice_after_release_is_queued_once(coordinator, gateway, notifier, seller, buyer):
    order = await _make_buy_order_active(coordinator, seller, buyer)
    await coordinator.release(seller, order.id)
    await coordinator.on_invoice_event(order.hash, INVOICE_SETTLED)
    assert 'missing_buyer_invoice' in notifier.events_for(buyer)

    first = await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)
    assert first is Outcome.PAYMENT_QUEUED
    [payment] = pending_payments.payments_for_order(order.id)
    assert payment.attempts == 0

    second = await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)
    assert second is Outcome.PAYMENT_ALREADY_QUEUED
    assert len(pending_payments.payments_for_order(order.id)) == 1
    assert notifier.events_for(buyer)[-1] == 'invoice_already_queued'
    assert order_store.get_order(order.id).paid_hold_buyer_invoice_updated


async def test_late_invoice_latch_blocks_requeue(coordinator, config, seller, buyer):
    order = await _make_buy_order_active(coordinator, seller, buyer)
    await coordinator.release(seller, order.id)
    await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)
    [payment] = pending_payments.due_payments()
    for _ in range(config.MAX_PENDING_PAYMENT_ATTEMPTS):
        payment = pending_payments.payments_for_order(order.id)[0]
        pending_payments.claim_attempt(payment)

    outcome = await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)

    assert outcome is Outcome.PAYMENT_ALREADY_QUEUED
    assert len(pending_payments.payments_for_order(order.id)) == 1


async def test_invoice_amount_must_match(coordinator, gateway, buyer, make_active_order):
    order = await make_active_order(amount=100000)
    gateway.decoded = {'num_satoshis': 99999, 'timestamp': int(time.time()), 'expiry': 3600}

    with pytest.raises(AmountMismatchError):
        await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)


async def test_expired_invoice_is_rejected(coordinator, gateway, buyer, make_active_order):
    order = await make_active_order()
    gateway.decoded = {'num_satoshis': 0, 'timestamp': int(time.time()) - 7200, 'expiry': 3600}

    with pytest.raises(InvalidInvoiceError) as excinfo:
        await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)
    assert excinfo.value.message_key == 'invoice_expired'


async def test_set_invoice_on_completed_order(coordinator, seller, buyer, make_active_order):
    order = await make_active_order()
    await coordinator.release(seller, order.id)
    await coordinator.on_invoice_event(order.hash, INVOICE_SETTLED)

    with pytest.raises(StateGuardError) as excinfo:
        await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)
    assert excinfo.value.message_key == 'order_already_completed'


async def test_only_buyer_sets_invoice(coordinator, seller, make_active_order):
    order = await make_active_order()

    with pytest.raises(NotOrderPartyError):
        await coordinator.set_invoice(seller, order.id, TEST_INVOICE)

# =============================================================================
# CANCEL
# =============================================================================

async def test_cancel_pending_order(coordinator, notifier, gateway, seller):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')

    canceled = await coordinator.cancel(seller, order.id)

    assert canceled.status == OrderStatus.CANCELED.value
    assert canceled.canceled_by == seller.id
    assert notifier.removed == [order.id]
    assert gateway.calls_of('cancel_hold_invoice') == []


async def test_cancel_with_hold_invoice_refunds(coordinator, gateway, notifier, seller, buyer):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')
    await coordinator.take_order(buyer, order.id)
    await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)
    payment_hash = order_store.get_order(order.id).hash

    await coordinator.cancel(seller, order.id)

    assert gateway.calls_of('cancel_hold_invoice') == [('cancel_hold_invoice', payment_hash)]
    assert 'order_canceled_by_creator' in notifier.events_for(buyer)

    # The seller pays the invoice anyway: funds go straight back
    await coordinator.on_invoice_event(payment_hash, INVOICE_ACCEPTED)
    assert order_store.get_order(order.id).status == OrderStatus.CANCELED.value
    assert len(gateway.calls_of('cancel_hold_invoice')) == 2


async def test_cancel_rejected_once_escrow_is_funded(coordinator, seller, make_active_order):
    order = await make_active_order()

    with pytest.raises(StateGuardError) as excinfo:
        await coordinator.cancel(seller, order.id)
    assert excinfo.value.message_key == 'bad_status_on_cancel'


async def test_only_creator_cancels(coordinator, seller, buyer):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')

    with pytest.raises(NotOrderPartyError):
        await coordinator.cancel(buyer, order.id)


async def test_terminal_orders_accept_nothing(coordinator, seller, buyer):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')
    await coordinator.take_order(buyer, order.id)
    await coordinator.cancel(seller, order.id)

    with pytest.raises(StateGuardError):
        await coordinator.dispute(buyer, order.id)
    with pytest.raises(StateGuardError):
        await coordinator.cancel(seller, order.id)
    with pytest.raises(StateGuardError):
        await coordinator.fiat_sent(buyer, order.id)
    assert order_store.get_order(order.id).status == OrderStatus.CANCELED.value

# =============================================================================
# DISPUTES
# =============================================================================

async def test_dispute_counts_against_both_parties(coordinator, notifier, seller, buyer, make_active_order):
    order = await make_active_order()

    disputed = await coordinator.dispute(buyer, order.id)

    assert disputed.status == OrderStatus.DISPUTE.value
    assert disputed.buyer_dispute and not disputed.seller_dispute
    assert order_store.get_user(buyer.id).disputes == 1
    assert order_store.get_user(seller.id).disputes == 1
    assert 'dispute_started' in notifier.events_for(buyer)
    assert 'dispute_started' in notifier.events_for(seller)
    assert [event for event, _ in notifier.admin_events] == ['dispute_admin']


async def test_dispute_at_limit_bans_both_parties(coordinator, notifier, config, seller, buyer,
                                                  make_active_order):
    order = await make_active_order()
    for user in (seller, buyer):
        for _ in range(config.MAX_DISPUTES - 1):
            order_store.increment_disputes(user.id)

    await coordinator.dispute(seller, order.id)

    assert order_store.get_user(seller.id).banned
    assert order_store.get_user(buyer.id).banned
    bans = [event for event, _ in notifier.admin_events if event == 'user_banned_by_disputes']
    assert len(bans) == 2

    # A second dispute on the same order counts again, without banning twice
    await coordinator.dispute(buyer, order.id)
    assert order_store.get_user(buyer.id).disputes == config.MAX_DISPUTES + 1
    bans = [event for event, _ in notifier.admin_events if event == 'user_banned_by_disputes']
    assert len(bans) == 2


async def test_dispute_needs_a_counterparty(coordinator, seller):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')

    with pytest.raises(StateGuardError):
        await coordinator.dispute(seller, order.id)

# =============================================================================
# READ OPERATIONS
# =============================================================================

async def test_list_orders_returns_open_orders(coordinator, seller, buyer):
    open_order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')
    closed = await coordinator.create_order(seller, 'sell', 2000, 20, 'USD', 'cash')
    await coordinator.cancel(seller, closed.id)

    assert [order.id for order in coordinator.list_orders(seller)] == [open_order.id]
    assert coordinator.list_orders(buyer) == []


async def test_node_info(coordinator):
    info = await coordinator.node_info()
    assert info == {'alias': 'testnode', 'synced': True, 'channels': 3, 'block_height': 800000}


async def test_resubscribe_invoices(coordinator, gateway, make_active_order):
    order = await make_active_order()
    gateway.calls.clear()

    assert await coordinator.resubscribe_invoices() == 1
    assert gateway.calls_of('subscribe_invoice') == [('subscribe_invoice', order.hash)]
