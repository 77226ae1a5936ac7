"""
===============================================================================
ADMIN ACTIONS - Operator overrides for stuck or disputed orders
===============================================================================
Authorized by role (ADMIN_IDS), not by order-party identity. Admins may move
any non-terminal order, DISPUTE included, to CANCELED_BY_ADMIN or
COMPLETED_BY_ADMIN; cooperative-cancel and fiat-sent guards do not apply.
Both parties and the acting admin are always notified.
"""

import logging
from typing import Dict

import bot_config
import pending_payments
from database import order_store
from database.models import Order
from order_coordinator import OrderCoordinator
from order_errors import GatewayError, NotAdminError, StateGuardError, UserNotFoundError
from order_states import OrderStatus, TERMINAL_STATES

logger = logging.getLogger(__name__)

_OPEN_STATES = frozenset(set(OrderStatus) - TERMINAL_STATES)


class AdminActions:

    def __init__(self, coordinator: OrderCoordinator):
        self.coordinator = coordinator
        self.bot_logger = coordinator.bot_logger

    @staticmethod
    def require_admin(admin) -> None:
        if admin is None or not bot_config.is_admin(admin.telegram_id):
            raise NotAdminError(f"User {getattr(admin, 'telegram_id', None)} is not an admin")

    def _load_open_order(self, order_id) -> Order:
        order = self.coordinator.load_order(order_id)
        status = OrderStatus(order.status)
        if status in TERMINAL_STATES:
            raise StateGuardError(f"Order {order.id} is already closed ({status.value})",
                                  status=status, message_key='order_already_closed')
        return order

    async def _notify_parties(self, order: Order, event: str) -> None:
        buyer, seller = self.coordinator.parties(order)
        for party in (buyer, seller):
            await self.coordinator._notify(party, event, order=order)

    async def _report_gateway_failure(self, admin, order: Order, event: str, error: GatewayError) -> None:
        """The order is left open so the admin can issue the command again"""
        await self.coordinator._notify(admin, event, order=order, error=str(error))
        await self._notify_parties(order, 'order_admin_action_failed')

    async def cancel_order(self, admin, order_id) -> Order:
        """
        Refund the seller if funds are held and close the order.

        The hold invoice is canceled before the order is closed; when the
        node refuses, the order keeps its status and the admin may retry.
        """
        self.require_admin(admin)
        order = self._load_open_order(order_id)
        actor = f'admin_{admin.id}'
        was_pending = OrderStatus(order.status) is OrderStatus.PENDING

        refunded_hash = None
        if order.hash and order.settled_at is None:
            try:
                await self.coordinator._call_gateway(self.coordinator.gateway.cancel_hold_invoice, order.hash)
            except GatewayError as e:
                self.bot_logger.log_payment(order.id, 'admin_cancel_failed', str(e), level=logging.ERROR)
                await self._report_gateway_failure(admin, order, 'cancel_invoice_failed', e)
                raise
            self.bot_logger.log_payment(order.id, 'cancel_hold_invoice', f"actor={actor}")
            refunded_hash = order.hash

        order = self.coordinator._transition(
            self.coordinator.load_order(order.id), OrderStatus.CANCELED_BY_ADMIN, actor=actor,
            values={'canceled_by': admin.id}, is_admin=True, allowed_from=_OPEN_STATES,
        )
        # A hold invoice created while the refund was in flight
        if order.hash and order.hash != refunded_hash and order.settled_at is None:
            await self.coordinator._cancel_invoice(order, order.hash, actor)
        if was_pending:
            await self.coordinator._unpublish(order)

        await self.coordinator._notify(admin, 'admin_cancel_success', order=order)
        await self._notify_parties(order, 'order_canceled_by_admin')
        return order

    async def settle_order(self, admin, order_id) -> Order:
        """
        Close the order in the buyer's favour, settling the hold invoice.

        The settle is issued while the node has not confirmed one, which
        also covers a release whose settle call failed. The order is only
        closed once the settle went through.
        """
        self.require_admin(admin)
        order = self._load_open_order(order_id)
        actor = f'admin_{admin.id}'

        if order.secret and order.settled_at is None:
            order_store.update_order_if(order.id, {'settle_requested': True}, statuses=_OPEN_STATES)
            try:
                await self.coordinator._call_gateway(self.coordinator.gateway.settle_hold_invoice,
                                                     order.secret)
            except GatewayError as e:
                self.bot_logger.log_payment(order.id, 'admin_settle_failed', str(e), level=logging.ERROR)
                await self._report_gateway_failure(admin, order, 'settle_failed', e)
                raise
            self.bot_logger.log_payment(order.id, 'settle_hold_invoice', f"actor={actor}")
            order = self.coordinator.mark_settled(order, actor=actor, move_status=False)

        order = self.coordinator._transition(
            order, OrderStatus.COMPLETED_BY_ADMIN, actor=actor,
            values={'settle_requested': True}, is_admin=True, allowed_from=_OPEN_STATES,
        )

        await self.coordinator._notify(admin, 'admin_complete_success', order=order)
        await self._notify_parties(order, 'order_completed_by_admin')
        return order


    async def check_order(self, admin, order_id) -> Dict:
        """Read-only report of the order for the admin"""
        self.require_admin(admin)
        report = self.coordinator.order_report(order_id)
        order = report['order']
        payments = report['pending_payments']
        await self.coordinator._notify(
            admin, 'check_order',
            order=order,
            creator=_username(report['creator']),
            buyer=_username(report['buyer']),
            seller=_username(report['seller']),
            pending_payments=len(payments),
            attempts=max((p.attempts for p in payments), default=0),
        )
        return report

    async def pay_to_buyer(self, admin, order_id) -> bool:
        """Pay the buyer directly unless the payout is already queued"""
        self.require_admin(admin)
        order = self.coordinator.load_order(order_id)
        if order.settled_at is None:
            raise StateGuardError(f"Order {order.id}: hold invoice not settled",
                                  status=OrderStatus(order.status), message_key='hold_invoice_not_settled',
                                  order_id=order.id)
        if pending_payments.is_pending(order.id):
            await self.coordinator._notify(admin, 'payment_already_queued', order=order)
            return False
        paid = await self.coordinator.pay_to_buyer(order.id)
        event = 'admin_payment_sent' if paid else 'admin_payment_failed'
        await self.coordinator._notify(admin, event, order=self.coordinator.load_order(order.id))
        return paid

    async def ban_user(self, admin, username: str) -> bool:
        """Ban by username; a ban is never lifted"""
        self.require_admin(admin)
        user = order_store.get_user_by_username(username)
        if user is None:
            raise UserNotFoundError(f"User {username} not found", username=username)
        banned = order_store.ban_user(user.id)
        if banned:
            self.bot_logger.log_user_interaction(user.telegram_id, 'banned', f"by=admin_{admin.id}")
        await self.coordinator._notify(admin, 'user_banned_by_admin', banned_user=user)
        return banned


def _username(user) -> str:
    if user is None:
        return '-'
    return f"@{user.username}" if user.username else str(user.telegram_id)
