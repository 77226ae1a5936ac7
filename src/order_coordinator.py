"""
===============================================================================
ORDER COORDINATOR - Lifecycle of escrowed buy/sell orders
===============================================================================
Every operation follows the same unit of work:

1. load the order (a hint only)
2. check identity and status guards, raising an OrderError on failure
3. write the transition with order_store.update_order_if(), which only
   succeeds if the persisted status still allows it
4. perform the Lightning side effect, then notify the parties

Gateway and price feed calls are blocking (requests) and run in a worker
thread through asyncio.to_thread, so command handling never stalls the loop.
The scheduled sweeps call into the same methods as interactive commands.
"""

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Dict, List

import bot_config
import pending_payments
from command_validation import validate_invoice
from cooperative_cancel import CooperativeCancelStep, decide
from database import order_store
from database.models import Order, utcnow
from lightning_utils import INVOICE_ACCEPTED, INVOICE_CANCELED, INVOICE_SETTLED, node_summary
from logger_config import get_bot_logger
from order_errors import (
    AmountMismatchError, GatewayError, NotOrderPartyError, OrderNotFoundError,
    PriceFeedError, SellerHasFiatSentOrderError, StateGuardError, UserBannedError,
    ValidationError,
)
from order_states import (
    ESCROW_HELD_STATES, SUBSCRIBABLE_STATES, TERMINAL_STATES,
    OrderStatus, OrderType, Role,
    can_transition, cooperative_cancel_flag, dispute_flag, party_column,
    role_of, sources_for, taker_role,
)
from price_utils import CURRENCIES, PriceFeed
from reputation import dispute_counts_for, evaluate_ban, may_initiate_orders

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Results of operations that may succeed without changing state"""
    FIAT_SENT = 'fiat_sent'
    SELLER_ALREADY_PAID = 'seller_already_paid'
    INVOICE_UPDATED = 'invoice_updated'
    PAYMENT_QUEUED = 'payment_queued'
    PAYMENT_ALREADY_QUEUED = 'payment_already_queued'


# Statuses where the buyer may still replace the payout invoice directly
_INVOICE_EDITABLE_STATES = frozenset(
    set(OrderStatus) - TERMINAL_STATES - {OrderStatus.PAID_HOLD_INVOICE}
)


class OrderCoordinator:
    """
    Applies order transitions and their Lightning side effects.

    Args:
        gateway: LNDClient-like object (hold invoices, payments, node info)
        notifier: TelegramNotifier-like object delivering named events
        price_feed: PriceFeed-like object converting fiat amounts to sats
    """

    def __init__(self, gateway, notifier, price_feed=None, bot_logger=None):
        self.gateway = gateway
        self.notifier = notifier
        self.price_feed = price_feed or PriceFeed()
        self.bot_logger = bot_logger or get_bot_logger()

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def load_order(order_id) -> Order:
        order = order_store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    @staticmethod
    def _party_role(order: Order, user) -> Role:
        role = role_of(order, user.id)
        if role is None:
            raise NotOrderPartyError(f"User {user.id} is not a party of order {order.id}",
                                     order_id=order.id)
        return role

    async def _call_gateway(self, method, *args):
        return await asyncio.to_thread(method, *args)

    def _transition(self, order: Order, new_status: OrderStatus, actor: str = 'system',
                    values: Dict = None, allowed_from=None, is_admin: bool = False,
                    message_key: str = None, **conditions) -> Order:
        """
        Persist ``order`` -> ``new_status`` if the stored status still allows it.

        ``allowed_from`` narrows the sources given by the transition table.
        Returns the reloaded order; raises StateGuardError when the guard fails.
        """
        current = OrderStatus(order.status)
        if not can_transition(current, new_status, is_admin=is_admin):
            raise StateGuardError(
                f"Order {order.id}: {current.value} -> {new_status.value} not allowed",
                status=current, message_key=message_key, order_id=order.id,
            )

        sources = sources_for(new_status, is_admin=is_admin)
        if allowed_from is not None:
            sources = sources & frozenset(allowed_from)

        update = dict(values or {})
        update['status'] = new_status
        if not order_store.update_order_if(order.id, update, statuses=sources, **conditions):
            fresh = order_store.get_order(order.id)
            status = OrderStatus(fresh.status) if fresh else None
            raise StateGuardError(
                f"Order {order.id} changed concurrently (now {status.value if status else 'gone'})",
                status=status, message_key=message_key, order_id=order.id,
            )

        self.bot_logger.log_order_transition(order.id, current.value, new_status.value, actor=actor)
        return order_store.get_order(order.id)

    async def _notify(self, user, event: str, **context) -> None:
        """Deliver one event; a failed notification never undoes a transition"""
        if user is None:
            return
        try:
            await self.notifier.notify(user, event, **context)
        except Exception as e:
            self.bot_logger.log_error(f"Notification {event} failed", exception=e, user_id=user.id)

    async def _notify_admins(self, event: str, **context) -> None:
        try:
            await self.notifier.notify_admins(event, **context)
        except Exception as e:
            self.bot_logger.log_error(f"Admin notification {event} failed", exception=e)

    async def _publish(self, order: Order) -> None:
        try:
            message_ids = await self.notifier.publish_order(order)
        except Exception as e:
            self.bot_logger.log_error(f"Publishing order {order.id} failed", exception=e)
            return
        if message_ids:
            first, second = (list(message_ids) + [None, None])[:2]
            order_store.update_order_if(
                order.id, {'tg_channel_message1': first, 'tg_channel_message2': second}
            )

    async def _unpublish(self, order: Order) -> None:
        if order.tg_channel_message1 is None and order.tg_channel_message2 is None:
            return
        try:
            await self.notifier.remove_order_messages(order)
        except Exception as e:
            self.bot_logger.log_error(f"Removing channel messages of order {order.id} failed", exception=e)
        order_store.update_order_if(order.id, {'tg_channel_message1': None, 'tg_channel_message2': None})

    async def _cancel_invoice(self, order: Order, payment_hash: str, actor: str) -> bool:
        """Refund the seller; failures are surfaced to the admins"""
        try:
            await self._call_gateway(self.gateway.cancel_hold_invoice, payment_hash)
        except GatewayError as e:
            self.bot_logger.log_payment(order.id, 'cancel_hold_invoice_failed', str(e),
                                        level=logging.ERROR)
            await self._notify_admins('cancel_invoice_failed', order=order, error=str(e))
            return False
        self.bot_logger.log_payment(order.id, 'cancel_hold_invoice', f"actor={actor}")
        return True

    def parties(self, order: Order):
        """(buyer, seller) User records, either may be None"""
        return order_store.get_user(order.buyer_id), order_store.get_user(order.seller_id)

    async def resolve_amount(self, order: Order):
        """
        Amount in sats and fee for the order.

        Orders created with amount 0 are priced from the fiat amount.
        Raises PriceFeedError; nothing is persisted here.
        """
        if order.amount and order.amount > 0:
            fee = order.fee if order.fee else order.amount * bot_config.FEE
            return int(order.amount), fee
        amount = await self._call_gateway(
            self.price_feed.get_btc_fiat_price, order.fiat_code, order.fiat_amount
        )
        if not amount or amount <= 0:
            raise PriceFeedError(f"No price for {order.fiat_amount} {order.fiat_code}")
        return int(amount), amount * bot_config.FEE

    # =========================================================================
    # CREATE / TAKE
    # =========================================================================

    async def create_order(self, user, order_type, amount: int, fiat_amount: float,
                           fiat_code: str, payment_method: str, show_username: bool = False) -> Order:
        """Create a PENDING buy or sell order and publish it to the channel"""
        order_type = OrderType(order_type)
        if not may_initiate_orders(user):
            raise UserBannedError(f"User {user.id} is banned")
        if order_type is OrderType.SELL and order_store.seller_has_fiat_sent_order(user.id):
            raise SellerHasFiatSentOrderError(f"User {user.id} has an order in FIAT_SENT")

        fiat_code = fiat_code.upper()
        if not amount and not CURRENCIES.get(fiat_code, {}).get('price'):
            raise ValidationError(f"{fiat_code} has no price", message_key='currency_without_price')

        order = order_store.create_order(
            type=order_type.value,
            amount=int(amount or 0),
            fee=(amount or 0) * bot_config.FEE,
            fiat_amount=fiat_amount,
            fiat_code=fiat_code,
            payment_method=payment_method,
            price_from_api=not amount,
            creator_id=user.id,
            buyer_id=user.id if order_type is OrderType.BUY else None,
            seller_id=user.id if order_type is OrderType.SELL else None,
            show_username=show_username,
            status=OrderStatus.PENDING.value,
        )
        self.bot_logger.log_order_transition(order.id, 'NEW', OrderStatus.PENDING.value,
                                             actor=f'user_{user.id}', details=f"type={order_type.value}")

        await self._publish(order)
        await self._notify(user, 'order_created', order=order)
        return order_store.get_order(order.id)

    async def take_order(self, user, order_id) -> Order:
        """
        Take a PENDING order: the taker fills the free role and the order
        moves to WAITING_PAYMENT. Sell orders are priced here so the buyer
        knows the invoice amount.
        """
        if not may_initiate_orders(user):
            raise UserBannedError(f"User {user.id} is banned")
        order = self.load_order(order_id)
        if OrderStatus(order.status) is not OrderStatus.PENDING:
            raise StateGuardError(f"Order {order.id} is not available",
                                  status=OrderStatus(order.status), message_key='order_already_taken')
        if order.creator_id == user.id:
            raise ValidationError(f"User {user.id} created order {order.id}",
                                  message_key='cannot_take_own_order')

        role = taker_role(order.type)
        values = {party_column(role): user.id, 'taken_at': utcnow()}
        if role is Role.BUYER:
            amount, fee = await self.resolve_amount(order)
            values.update({'amount': amount, 'fee': fee})

        order = self._transition(
            order, OrderStatus.WAITING_PAYMENT, actor=f'user_{user.id}', values=values,
            message_key='order_already_taken', **{party_column(role): None}
        )
        await self._unpublish(order)

        creator = order_store.get_user(order.creator_id)
        if role is Role.BUYER:
            await self._notify(user, 'order_taken_sell_buyer', order=order)
        else:
            await self._notify(user, 'order_taken_buy_seller', order=order)
        await self._notify(creator, 'order_taken_creator', order=order)
        return order

    async def release_take(self, user, order_id) -> Order:
        """The taker backs out before a hold invoice exists"""
        order = self.load_order(order_id)
        role = self._party_role(order, user)
        if order.creator_id == user.id or role is not taker_role(order.type):
            raise NotOrderPartyError(f"User {user.id} did not take order {order.id}", order_id=order.id)
        if OrderStatus(order.status) is not OrderStatus.WAITING_PAYMENT or order.hash:
            raise StateGuardError(f"Order {order.id} can no longer be released",
                                  status=OrderStatus(order.status))

        order = await self._revert_take(order, actor=f'user_{user.id}')
        await self._notify(user, 'take_released', order=order)
        await self._notify(order_store.get_user(order.creator_id), 'order_republished', order=order)
        return order

    async def _revert_take(self, order: Order, actor: str) -> Order:
        """WAITING_PAYMENT -> PENDING: clear the taker, refund any hold invoice, republish"""
        taker = taker_role(order.type)
        values = {
            party_column(taker): None,
            'taken_at': None,
            'hash': None,
            'secret': None,
            'hold_invoice_request': None,
            'buyer_cooperativecancel': False,
            'seller_cooperativecancel': False,
        }
        if taker is Role.BUYER:
            values['buyer_invoice'] = None
        if order.price_from_api:
            values.update({'amount': 0, 'fee': 0})

        payment_hash = order.hash
        fresh = self._transition(
            order, OrderStatus.PENDING, actor=actor, values=values,
            allowed_from={OrderStatus.WAITING_PAYMENT}, hash=payment_hash,
        )
        if payment_hash:
            await self._cancel_invoice(fresh, payment_hash, actor)
        await self._publish(fresh)
        return order_store.get_order(fresh.id)

    async def continue_take(self, order_id, user=None) -> Order:
        """
        Create the hold invoice of a taken order and show it to the seller.

        Called when the seller of a buy order presses continue, and
        automatically once the buyer of a taken sell order set an invoice.
        """
        order = self.load_order(order_id)
        if user is not None and role_of(order, user.id) is not Role.SELLER:
            raise NotOrderPartyError(f"User {user.id} is not the seller of order {order.id}",
                                     order_id=order.id)
        if OrderStatus(order.status) is not OrderStatus.WAITING_PAYMENT:
            raise StateGuardError(f"Order {order.id} is not waiting for payment",
                                  status=OrderStatus(order.status))
        if order.buyer_id is None or order.seller_id is None:
            raise StateGuardError(f"Order {order.id} has no counterparty",
                                  status=OrderStatus(order.status))

        buyer, seller = self.parties(order)
        if order.hash:
            # Already set up; show the same invoice again
            await self._notify(seller, 'show_hold_invoice', order=order,
                               request=order.hold_invoice_request, amount=order.hold_invoice_amount)
            return order

        amount, fee = await self.resolve_amount(order)
        description = f"Escrow order #{order.id}: {order.fiat_amount} {order.fiat_code}"
        invoice = await self._call_gateway(self.gateway.create_hold_invoice, description, int(amount + fee))
        self.bot_logger.log_payment(order.id, 'create_hold_invoice', f"amount={int(amount + fee)}")

        stored = order_store.update_order_if(
            order.id,
            {
                'amount': amount,
                'fee': fee,
                'description': description,
                'hash': invoice['hash'],
                'secret': invoice['secret'],
                'hold_invoice_request': invoice['request'],
            },
            statuses={OrderStatus.WAITING_PAYMENT},
            hash=None,
        )
        if not stored:
            await self._cancel_invoice(order, invoice['hash'], 'system')
            fresh = order_store.get_order(order.id)
            raise StateGuardError(f"Order {order.id} changed while creating the hold invoice",
                                  status=OrderStatus(fresh.status) if fresh else None)

        self.subscribe(invoice['hash'])
        order = order_store.get_order(order.id)
        await self._notify(seller, 'show_hold_invoice', order=order,
                           request=invoice['request'], amount=order.hold_invoice_amount)
        await self._notify(buyer, 'waiting_seller_payment', order=order)
        return order

    # =========================================================================
    # ESCROW FLOW
    # =========================================================================

    async def release(self, user, order_id) -> Order:
        """
        Seller releases the escrow: the hold invoice is settled.

        The settle_requested latch is won before the gateway call, so the
        settle runs at most once. The order stays escrow-held until the node
        confirms the settle; a failed settle is left to the admins.
        """
        order = self.load_order(order_id)
        if self._party_role(order, user) is not Role.SELLER:
            raise NotOrderPartyError(f"User {user.id} is not the seller of order {order.id}",
                                     order_id=order.id)
        status = OrderStatus(order.status)
        if status not in ESCROW_HELD_STATES or not order.secret or order.settle_requested:
            raise StateGuardError(f"Order {order.id} cannot be released in {status.value}",
                                  status=status, message_key='release_not_allowed')

        if not order_store.update_order_if(order.id, {'settle_requested': True},
                                           statuses=ESCROW_HELD_STATES, settle_requested=False):
            fresh = self.load_order(order.id)
            raise StateGuardError(f"Order {order.id} cannot be released",
                                  status=OrderStatus(fresh.status), message_key='release_not_allowed')
        try:
            await self._call_gateway(self.gateway.settle_hold_invoice, order.secret)
        except GatewayError as e:
            self.bot_logger.log_payment(order.id, 'settle_hold_invoice_failed', str(e), level=logging.ERROR)
            await self._notify_admins('settle_failed', order=order, error=str(e))
            raise
        self.bot_logger.log_payment(order.id, 'settle_hold_invoice', f"actor=user_{user.id}")

        order = self.mark_settled(order, actor=f'user_{user.id}')
        await self._notify(user, 'release_success', order=order)
        return order

    def mark_settled(self, order: Order, actor: str = 'system', move_status: bool = True) -> Order:
        """
        Record a confirmed settle. Payouts to the buyer require settled_at,
        and escrow-held orders only move to PAID_HOLD_INVOICE from here.
        """
        order_store.update_order_if(order.id, {'settled_at': utcnow()}, settled_at=None)
        order = self.load_order(order.id)
        if move_status and OrderStatus(order.status) in ESCROW_HELD_STATES:
            try:
                order = self._transition(order, OrderStatus.PAID_HOLD_INVOICE, actor=actor,
                                         values={'settle_requested': True},
                                         allowed_from=ESCROW_HELD_STATES)
            except StateGuardError:
                order = self.load_order(order.id)
        return order

    async def fiat_sent(self, user, order_id) -> Outcome:
        """Buyer reports the fiat payment as sent"""
        order = self.load_order(order_id)
        buyer_role = self._party_role(order, user)
        if buyer_role is not Role.BUYER:
            raise NotOrderPartyError(f"User {user.id} is not the buyer of order {order.id}",
                                     order_id=order.id)

        if OrderStatus(order.status) is OrderStatus.PAID_HOLD_INVOICE:
            await self._notify(user, 'seller_already_paid', order=order)
            return Outcome.SELLER_ALREADY_PAID
        if OrderStatus(order.status) is not OrderStatus.ACTIVE:
            raise StateGuardError(f"Order {order.id} is not active",
                                  status=OrderStatus(order.status), message_key='not_active_order')

        try:
            order = self._transition(order, OrderStatus.FIAT_SENT, actor=f'user_{user.id}',
                                     allowed_from={OrderStatus.ACTIVE}, message_key='not_active_order')
        except StateGuardError as e:
            if e.status is OrderStatus.PAID_HOLD_INVOICE:
                await self._notify(user, 'seller_already_paid', order=order)
                return Outcome.SELLER_ALREADY_PAID
            raise

        buyer, seller = self.parties(order)
        await self._notify(buyer, 'fiat_sent_buyer', order=order)
        await self._notify(seller, 'fiat_sent_seller', order=order, buyer=buyer)
        return Outcome.FIAT_SENT

    async def cancel(self, user, order_id) -> Order:
        """Creator cancels an order whose escrow is not funded yet"""
        order = self.load_order(order_id)
        if order.creator_id != user.id:
            raise NotOrderPartyError(f"User {user.id} did not create order {order.id}", order_id=order.id)
        allowed = {OrderStatus.PENDING, OrderStatus.WAITING_PAYMENT}
        if OrderStatus(order.status) not in allowed:
            raise StateGuardError(f"Order {order.id} cannot be canceled",
                                  status=OrderStatus(order.status), message_key='bad_status_on_cancel')

        order = self._transition(order, OrderStatus.CANCELED, actor=f'user_{user.id}',
                                 values={'canceled_by': user.id}, allowed_from=allowed,
                                 message_key='bad_status_on_cancel')
        # Re-read: a hold invoice may have been created right before the cancel won
        if order.hash:
            await self._cancel_invoice(order, order.hash, f'user_{user.id}')
        await self._unpublish(order)

        await self._notify(user, 'cancel_success', order=order)
        taker = order.seller_id if order.buyer_id == user.id else order.buyer_id
        await self._notify(order_store.get_user(taker), 'order_canceled_by_creator', order=order)
        return order

    async def cooperative_cancel(self, user, order_id) -> CooperativeCancelStep:
        """Both parties of an ACTIVE order must ask before the seller is refunded"""
        order = self.load_order(order_id)
        role = self._party_role(order, user)
        # A requested settle may already have gone through on the node
        if OrderStatus(order.status) is not OrderStatus.ACTIVE or order.settle_requested:
            raise StateGuardError(f"Order {order.id} is not active",
                                  status=OrderStatus(order.status),
                                  message_key='only_active_cooperative_cancel')

        own_flag = cooperative_cancel_flag(role)
        other_flag = cooperative_cancel_flag(role.counterparty)
        step = decide(getattr(order, own_flag), getattr(order, other_flag))
        if step is CooperativeCancelStep.MUST_WAIT:
            await self._notify(user, 'coop_cancel_must_wait', order=order)
            return step

        set_flag = order_store.update_order_if(
            order.id, {own_flag: True}, statuses={OrderStatus.ACTIVE}, **{own_flag: False}
        )
        fresh = self.load_order(order.id)
        if not set_flag:
            if getattr(fresh, own_flag):
                await self._notify(user, 'coop_cancel_must_wait', order=fresh)
                return CooperativeCancelStep.MUST_WAIT
            raise StateGuardError(f"Order {order.id} is not active",
                                  status=OrderStatus(fresh.status),
                                  message_key='only_active_cooperative_cancel')

        counterparty = order_store.get_user(getattr(fresh, party_column(role.counterparty)))
        if not getattr(fresh, other_flag):
            await self._notify(user, 'coop_cancel_init', order=fresh)
            await self._notify(counterparty, 'coop_cancel_counterparty_wants', order=fresh, role=role.value)
            return CooperativeCancelStep.REQUESTED

        try:
            canceled = self._transition(
                fresh, OrderStatus.CANCELED, actor=f'user_{user.id}', values={'canceled_by': user.id},
                allowed_from={OrderStatus.ACTIVE},
                buyer_cooperativecancel=True, seller_cooperativecancel=True, settle_requested=False,
            )
        except StateGuardError as e:
            if e.status is OrderStatus.CANCELED:
                # The counterparty's concurrent request completed the cancel
                return CooperativeCancelStep.AGREED
            raise

        if canceled.hash:
            await self._cancel_invoice(canceled, canceled.hash, f'user_{user.id}')
        await self._notify(user, 'cancel_success', order=canceled)
        await self._notify(counterparty, 'coop_cancel_ok', order=canceled)
        return CooperativeCancelStep.AGREED

    async def dispute(self, user, order_id) -> Order:
        """
        Open a dispute. Every dispute counts against both parties of the
        order; a party reaching MAX_DISPUTES is banned.
        """
        order = self.load_order(order_id)
        role = self._party_role(order, user)
        status = OrderStatus(order.status)
        if status in TERMINAL_STATES or order.buyer_id is None or order.seller_id is None:
            raise StateGuardError(f"Order {order.id} cannot be disputed in {status.value}",
                                  status=status, message_key='dispute_not_allowed')

        order = self._transition(order, OrderStatus.DISPUTE, actor=f'user_{user.id}',
                                 values={dispute_flag(role): True}, message_key='dispute_not_allowed')

        counts = dispute_counts_for(order.buyer_id is not None, order.seller_id is not None)
        for party, increment in counts.items():
            if not increment:
                continue
            user_id = getattr(order, party_column(Role(party)))
            updated = order_store.increment_disputes(user_id)
            outcome = evaluate_ban(updated.disputes, updated.banned, bot_config.MAX_DISPUTES)
            if outcome.newly_banned and order_store.ban_user(user_id):
                self.bot_logger.log_user_interaction(updated.telegram_id, 'banned',
                                                     f"disputes={outcome.disputes}")
                await self._notify_admins('user_banned_by_disputes', user=updated,
                                          disputes=outcome.disputes)

        buyer, seller = self.parties(order)
        initiator = buyer if role is Role.BUYER else seller
        for party in (buyer, seller):
            await self._notify(party, 'dispute_started', order=order, role=role.value)
        await self._notify_admins('dispute_admin', order=order, initiator=initiator,
                                  buyer=buyer, seller=seller, role=role.value)
        return order

    async def set_invoice(self, user, order_id, payment_request: str) -> Outcome:
        """Buyer sets or replaces the payout invoice"""
        order = self.load_order(order_id)
        if role_of(order, user.id) is not Role.BUYER:
            raise NotOrderPartyError(f"User {user.id} is not the buyer of order {order.id}",
                                     order_id=order.id)
        status = OrderStatus(order.status)
        if status is OrderStatus.SUCCESS:
            raise StateGuardError(f"Order {order.id} already completed",
                                  status=status, message_key='order_already_completed')
        if status in TERMINAL_STATES:
            raise StateGuardError(f"Order {order.id} is closed", status=status)

        decoded = await self._call_gateway(self.gateway.decode_payment_request, payment_request)
        invoice = validate_invoice(payment_request, decoded)
        if invoice['amount'] and invoice['amount'] != order.amount:
            raise AmountMismatchError(
                f"Invoice amount {invoice['amount']} != order amount {order.amount}",
                order_id=order.id, amount=order.amount,
            )

        if status is OrderStatus.PAID_HOLD_INVOICE:
            return await self._queue_late_invoice(user, order, payment_request)

        if not order_store.update_order_if(order.id, {'buyer_invoice': payment_request},
                                           statuses=_INVOICE_EDITABLE_STATES):
            fresh = self.load_order(order.id)
            if OrderStatus(fresh.status) is OrderStatus.PAID_HOLD_INVOICE:
                return await self._queue_late_invoice(user, fresh, payment_request)
            raise StateGuardError(f"Order {order.id} changed concurrently",
                                  status=OrderStatus(fresh.status))

        await self._notify(user, 'invoice_updated', order=order)
        if (OrderType(order.type) is OrderType.SELL
                and status is OrderStatus.WAITING_PAYMENT and not order.hash):
            await self.continue_take(order.id)
        return Outcome.INVOICE_UPDATED

    async def _queue_late_invoice(self, user, order: Order, payment_request: str) -> Outcome:
        """Seller already released: queue the payout once"""
        if order.settled_at is None:
            raise StateGuardError(f"Order {order.id}: hold invoice not settled",
                                  status=OrderStatus(order.status), message_key='hold_invoice_not_settled',
                                  order_id=order.id)
        if pending_payments.is_pending(order.id):
            await self._notify(user, 'invoice_already_queued', order=order)
            return Outcome.PAYMENT_ALREADY_QUEUED

        latched = order_store.update_order_if(
            order.id,
            {'buyer_invoice': payment_request, 'paid_hold_buyer_invoice_updated': True},
            statuses={OrderStatus.PAID_HOLD_INVOICE},
            paid_hold_buyer_invoice_updated=False,
        )
        if not latched:
            await self._notify(user, 'invoice_already_updated', order=order)
            return Outcome.PAYMENT_ALREADY_QUEUED

        created = pending_payments.enqueue(
            order.id, user.id, order.amount, payment_request,
            description=order.description, payment_hash=order.hash,
        )
        if not created:
            await self._notify(user, 'invoice_already_queued', order=order)
            return Outcome.PAYMENT_ALREADY_QUEUED

        self.bot_logger.log_payment(order.id, 'payout_queued', 'reason=late_invoice')
        await self._notify(user, 'invoice_updated_payment_will_be_sent', order=order)
        return Outcome.PAYMENT_QUEUED

    # =========================================================================
    # PAYOUTS
    # =========================================================================

    async def _pay(self, order: Order, payment_request: str) -> Dict:
        try:
            return await self._call_gateway(self.gateway.pay_request, payment_request, order.amount)
        except GatewayError as e:
            return {'confirmed': False, 'fee': 0, 'error': str(e)}

    async def _complete(self, order: Order, routing_fee: int) -> Order:
        """Record the payout and move PAID_HOLD_INVOICE -> SUCCESS"""
        if OrderStatus(order.status) is OrderStatus.PAID_HOLD_INVOICE:
            try:
                order = self._transition(order, OrderStatus.SUCCESS, values={'routing_fee': routing_fee},
                                         allowed_from={OrderStatus.PAID_HOLD_INVOICE})
            except StateGuardError as e:
                self.bot_logger.log_error(f"Order {order.id} paid but not completed", exception=e)
                order = self.load_order(order.id)
        else:
            order_store.update_order_if(order.id, {'routing_fee': routing_fee})
            order = self.load_order(order.id)
        return order

    async def pay_to_buyer(self, order_id) -> bool:
        """
        Pay the buyer's invoice after the hold invoice settled.

        Returns True when the payout went through. Failed payouts are
        queued for the pending payment sweep.
        """
        order = self.load_order(order_id)
        if order.settled_at is None:
            self.bot_logger.log_payment(order.id, 'payout_refused', 'hold invoice not settled',
                                        level=logging.WARNING)
            return False
        if pending_payments.is_pending(order.id):
            logger.info(f"Order {order.id}: payout already queued, skipping direct payment")
            return False

        buyer, seller = self.parties(order)
        if not order.buyer_invoice:
            await self._notify(buyer, 'missing_buyer_invoice', order=order)
            return False

        result = await self._pay(order, order.buyer_invoice)
        if result.get('confirmed'):
            self.bot_logger.log_payment(order.id, 'payout', f"fee={result.get('fee', 0)}")
            order = await self._complete(order, result.get('fee', 0))
            await self._notify(buyer, 'buyer_received_sats', order=order)
            await self._notify(seller, 'seller_order_completed', order=order)
            return True

        self.bot_logger.log_payment(order.id, 'payout_failed', str(result.get('error')),
                                    level=logging.WARNING)
        pending_payments.enqueue(order.id, order.buyer_id, order.amount, order.buyer_invoice,
                                 description=order.description, payment_hash=order.hash)
        await self._notify(buyer, 'invoice_payment_failed', order=order,
                           attempts=bot_config.MAX_PENDING_PAYMENT_ATTEMPTS,
                           minutes=bot_config.PENDING_PAYMENT_WINDOW)
        return False

    async def attempt_pending_payment(self, pending_payment) -> bool:
        """
        One retry of a queued payout, claimed so no other sweep repeats it.
        Nothing is paid, nor an attempt spent, before the hold invoice settled.
        """
        order = order_store.get_order(pending_payment.order_id)
        if order is None:
            self.bot_logger.log_error(f"Pending payment {pending_payment.id} has no order")
            return False
        if order.settled_at is None:
            self.bot_logger.log_payment(order.id, 'pending_payout_refused', 'hold invoice not settled',
                                        level=logging.WARNING)
            return False

        attempts = pending_payments.claim_attempt(pending_payment)
        if attempts is None:
            return False
        if OrderStatus(order.status) is OrderStatus.SUCCESS:
            pending_payments.mark_paid(pending_payment.id)
            return True

        buyer, seller = self.parties(order)
        result = await self._pay(order, pending_payment.payment_request)
        if result.get('confirmed'):
            pending_payments.mark_paid(pending_payment.id)
            self.bot_logger.log_payment(order.id, 'pending_payout', f"attempt={attempts}")
            order = await self._complete(order, result.get('fee', 0))
            await self._notify(buyer, 'pending_payment_success', order=order)
            await self._notify(seller, 'seller_order_completed', order=order)
            return True

        self.bot_logger.log_payment(order.id, 'pending_payout_failed',
                                    f"attempt={attempts} error={result.get('error')}",
                                    level=logging.WARNING)
        if attempts >= bot_config.MAX_PENDING_PAYMENT_ATTEMPTS:
            await self._notify(buyer, 'pending_payment_failed_final', order=order, attempts=attempts)
            await self._notify_admins('pending_payment_failed_admin', order=order, attempts=attempts,
                                      buyer=buyer)
        return False

    # =========================================================================
    # INVOICE EVENTS
    # =========================================================================

    def subscribe(self, payment_hash: str) -> None:
        """Route node updates of the hold invoice back into this loop"""
        loop = asyncio.get_running_loop()

        def on_update(updated_hash, state):
            asyncio.run_coroutine_threadsafe(self.on_invoice_event(updated_hash, state), loop)

        self.gateway.subscribe_invoice(payment_hash, on_update)

    async def resubscribe_invoices(self) -> int:
        """Subscribe again to every hold invoice that may still change state"""
        orders = order_store.orders_with_open_invoice(SUBSCRIBABLE_STATES)
        for order in orders:
            self.subscribe(order.hash)
        self.bot_logger.log_system_event('resubscribe_invoices', f"count={len(orders)}")
        return len(orders)

    async def on_invoice_event(self, payment_hash: str, state: str) -> None:
        try:
            if state == INVOICE_ACCEPTED:
                await self._on_invoice_accepted(payment_hash)
            elif state == INVOICE_SETTLED:
                await self._on_invoice_settled(payment_hash)
            elif state == INVOICE_CANCELED:
                order = order_store.get_order_by_hash(payment_hash)
                if order is not None:
                    self.bot_logger.log_payment(order.id, 'hold_invoice_canceled')
        except Exception as e:
            self.bot_logger.log_error(f"Invoice event {state} failed", exception=e)

    async def _on_invoice_accepted(self, payment_hash: str) -> None:
        """The seller paid the hold invoice: funds are now held"""
        order = order_store.get_order_by_hash(payment_hash)
        if order is None:
            # The take was reverted after the invoice was shown; give the funds back
            logger.warning(f"Hold invoice {payment_hash[:10]}... accepted for no order, canceling")
            await self._call_gateway(self.gateway.cancel_hold_invoice, payment_hash)
            return

        status = OrderStatus(order.status)
        if status is OrderStatus.WAITING_PAYMENT:
            try:
                order = self._transition(order, OrderStatus.ACTIVE, allowed_from={OrderStatus.WAITING_PAYMENT},
                                         hash=payment_hash)
            except StateGuardError:
                order = self.load_order(order.id)
            else:
                self.bot_logger.log_payment(order.id, 'hold_invoice_accepted')
                buyer, seller = self.parties(order)
                await self._notify(buyer, 'hold_invoice_paid_buyer', order=order, seller=seller)
                await self._notify(seller, 'hold_invoice_paid_seller', order=order, buyer=buyer)
                return

        if OrderStatus(order.status) in (OrderStatus.PENDING, OrderStatus.CANCELED,
                                         OrderStatus.CANCELED_BY_ADMIN, OrderStatus.EXPIRED):
            await self._cancel_invoice(order, payment_hash, 'system')

    async def _on_invoice_settled(self, payment_hash: str) -> None:
        order = order_store.get_order_by_hash(payment_hash)
        if order is None:
            logger.warning(f"Hold invoice {payment_hash[:10]}... settled for no order")
            return

        order = self.mark_settled(order)
        self.bot_logger.log_payment(order.id, 'hold_invoice_settled')
        if OrderStatus(order.status) in (OrderStatus.PAID_HOLD_INVOICE, OrderStatus.COMPLETED_BY_ADMIN):
            await self.pay_to_buyer(order.id)

    # =========================================================================
    # SWEEPS
    # =========================================================================

    async def expire_take(self, order_id, now=None) -> bool:
        """Revert a take whose escrow was not funded within the hold invoice window"""
        now = now or utcnow()
        order = order_store.get_order(order_id)
        cutoff = now - timedelta(seconds=bot_config.HOLD_INVOICE_EXPIRATION_WINDOW)
        if (order is None or OrderStatus(order.status) is not OrderStatus.WAITING_PAYMENT
                or order.taken_at is None or order.taken_at > cutoff):
            return False

        taker = order_store.get_user(getattr(order, party_column(taker_role(order.type))))
        order = await self._revert_take(order, actor='system')
        await self._notify(taker, 'take_expired_taker', order=order)
        await self._notify(order_store.get_user(order.creator_id), 'take_expired_creator', order=order)
        return True

    async def expire_order(self, order_id, now=None) -> bool:
        """Expire a PENDING order nobody took"""
        now = now or utcnow()
        order = order_store.get_order(order_id)
        cutoff = now - timedelta(hours=bot_config.ORDER_EXPIRATION_HOURS)
        if (order is None or OrderStatus(order.status) is not OrderStatus.PENDING
                or order.created_at > cutoff):
            return False

        order = self._transition(order, OrderStatus.EXPIRED, allowed_from={OrderStatus.PENDING})
        await self._unpublish(order)
        await self._notify(order_store.get_user(order.creator_id), 'order_expired', order=order)
        return True

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    def list_orders(self, user) -> List[Order]:
        return order_store.open_orders_for_user(user.id)

    async def node_info(self) -> Dict:
        info = await self._call_gateway(self.gateway.get_info)
        return node_summary(info)

    def order_report(self, order_id) -> Dict:
        """Read-only snapshot of an order, its parties and queued payouts"""
        order = self.load_order(order_id)
        buyer, seller = self.parties(order)
        payments = pending_payments.payments_for_order(order.id)
        return {
            'order': order,
            'creator': order_store.get_user(order.creator_id),
            'buyer': buyer,
            'seller': seller,
            'pending_payments': payments,
        }

