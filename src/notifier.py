"""
===============================================================================
NOTIFIER - Telegram delivery of order events
===============================================================================
The coordinator emits named events (``order_created``, ``dispute_started``,
...); this module renders them from messages.yaml and sends them to users,
admins and the public orders channel.
"""

import asyncio
import logging
from typing import List, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import TelegramError

import bot_config
from database import order_store
from message_manager import MessageManager
from order_states import OrderType

logger = logging.getLogger(__name__)

# Inline buttons attached to some events: (label message key, callback data)
EVENT_BUTTONS = {
    'order_taken_buy_seller': [
        ('button_continue', 'continuetakebuy_{order_id}'),
        ('button_cancel', 'canceltake_{order_id}'),
    ],
    'order_taken_sell_buyer': [
        ('button_cancel', 'canceltake_{order_id}'),
    ],
}


class TelegramNotifier:

    def __init__(self, bot, messages: MessageManager, channel: str = None, admin_ids: List[int] = None):
        self.bot = bot
        self.messages = messages
        self.channel = channel if channel is not None else bot_config.CHANNEL
        self.admin_ids = admin_ids if admin_ids is not None else bot_config.ADMIN_IDS

    def _keyboard(self, event: str, order) -> Optional[InlineKeyboardMarkup]:
        buttons = EVENT_BUTTONS.get(event)
        if not buttons or order is None:
            return None
        row = [
            InlineKeyboardButton(self.messages.get_message(label),
                                 callback_data=data.format(order_id=order.id))
            for label, data in buttons
        ]
        return InlineKeyboardMarkup([row])

    async def send_message_with_retry(self, chat_id, text, reply_markup=None, max_retries=3):
        """
        Send message with retry logic for critical notifications
        Implements exponential backoff: 1s, 2s, 4s delays
        Returns the sent message, None if every attempt failed
        """
        for attempt in range(max_retries):
            try:
                sent = await self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    reply_markup=reply_markup,
                )
                logger.info(f'Message sent successfully to {chat_id} on attempt {attempt + 1}')
                return sent
            except TelegramError as e:
                logger.warning(f'Failed to send message to {chat_id} on attempt {attempt + 1}: {e}')
                if attempt < max_retries - 1:
                    await asyncio.sleep(2 ** attempt)
        logger.error(f'All {max_retries} attempts failed to send message to {chat_id}')
        return None

    # =========================================================================
    # PARTIES AND ADMINS
    # =========================================================================

    async def notify(self, user, event: str, **context) -> bool:
        """Render ``event`` and send it to ``user``"""
        order = context.get('order')
        text = self.messages.get_message(event, **context)
        sent = await self.send_message_with_retry(
            user.telegram_id, text, reply_markup=self._keyboard(event, order)
        )
        return sent is not None

    async def notify_admins(self, event: str, **context) -> int:
        """Send ``event`` to every configured admin. Returns deliveries."""
        text = self.messages.get_message(event, **context)
        delivered = 0
        for admin_id in self.admin_ids:
            if await self.send_message_with_retry(admin_id, text) is not None:
                delivered += 1
        return delivered

    # =========================================================================
    # ORDERS CHANNEL
    # =========================================================================

    def _order_text(self, order) -> str:
        creator = order_store.get_user(order.creator_id)
        if order.show_username and creator is not None and creator.username:
            trader = f"@{creator.username}"
        else:
            trader = self.messages.get_message('anonymous_trader')
        event = 'channel_sell_order' if OrderType(order.type) is OrderType.SELL else 'channel_buy_order'
        amount = (self.messages.format_amount(order.amount) if order.amount
                  else self.messages.get_message('market_price'))
        return self.messages.get_message(event, order=order, trader=trader, amount=amount)

    async def publish_order(self, order) -> Optional[tuple]:
        """
        Post the order and its take button to the channel.
        Returns the two channel message ids.
        """
        if not self.channel:
            logger.warning("CHANNEL not configured - order not published")
            return None

        first = await self.send_message_with_retry(self.channel, self._order_text(order))
        if first is None:
            return None

        action = 'takesell' if OrderType(order.type) is OrderType.SELL else 'takebuy'
        keyboard = InlineKeyboardMarkup([[InlineKeyboardButton(
            self.messages.get_message('button_take'), callback_data=f"{action}_{order.id}"
        )]])
        second = await self.send_message_with_retry(
            self.channel, self.messages.get_message('channel_take_prompt', order=order),
            reply_markup=keyboard,
        )
        return first.message_id, second.message_id if second is not None else None

    async def remove_order_messages(self, order) -> None:
        if not self.channel:
            return
        for message_id in (order.tg_channel_message1, order.tg_channel_message2):
            if message_id is None:
                continue
            try:
                await self.bot.delete_message(chat_id=self.channel, message_id=message_id)
            except TelegramError as e:
                logger.warning(f"Could not delete channel message {message_id} of order {order.id}: {e}")
