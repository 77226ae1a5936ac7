#!/usr/bin/env python3
"""
===============================================================================
LIGHTNING P2P ESCROW BOT - Telegram front end
===============================================================================

Peer-to-peer fiat <-> bitcoin trading bot. The seller's sats are escrowed in
a Lightning hold invoice until the buyer's fiat payment is confirmed.

SELL ORDER FLOW:
1. Seller /sell → Order published in the channel (PENDING)
2. Buyer presses Take → order WAITING_PAYMENT, buyer asked for an invoice
3. Buyer /setinvoice → hold invoice created and shown to the seller
4. Seller pays the hold invoice → ACTIVE
5. Buyer sends fiat → /fiatsent → FIAT_SENT
6. Seller /release → hold invoice settled → buyer paid → SUCCESS

BUY ORDER FLOW: same, except the seller takes, presses Continue to get the
hold invoice and the buyer sets the invoice once funds are locked.

This module only parses commands and replies; every order rule lives in
order_coordinator.py and admin_actions.py.
"""

import asyncio
import logging
from telegram import Update
from telegram.ext import Application, CommandHandler, CallbackQueryHandler, ContextTypes

import bot_config
from admin_actions import AdminActions
from command_validation import parse_order_id, parse_order_params, validate_params
from database import order_store
from database.models import create_tables
from lightning_utils import LNDClient, check_lnd_connection
from message_manager import MessageManager
from notifier import TelegramNotifier
from order_coordinator import OrderCoordinator
from order_errors import OrderError, UserBannedError
from order_states import OrderType
from price_utils import PriceFeed, get_currencies_with_price
from scheduled_jobs import start_sweeps

# Import logging system
from logger_config import init_logging

# Global message manager instance
msg = None

# Global bot logger instance
bot_logger = None

# Created in post_init, once the application's bot exists
coordinator = None
admin = None

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
logger = logging.getLogger(__name__)

# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

async def send_private(update: Update, text: str) -> None:
    """Replies go to the user's private chat, also for buttons pressed in the channel"""
    await update.get_bot().send_message(chat_id=update.effective_user.id, text=text)


async def reply(update: Update, message_key: str, **kwargs) -> None:
    await send_private(update, msg.get_message(message_key, **kwargs))


async def reply_error(update: Update, error: Exception, command: str) -> None:
    """Map an OrderError to its message; anything else is logged as unexpected"""
    user_id = update.effective_user.id if update.effective_user else None
    if isinstance(error, OrderError):
        logger.info(f"{command} rejected for {user_id}: {error}")
        text = msg.get_message(error.message_key, **error.context)
    else:
        bot_logger.log_error(f"Unexpected error in {command}", exception=error, user_id=user_id)
        text = msg.get_message('generic_error')
    await send_private(update, text)


async def authenticate(update: Update, command: str):
    """
    Register the Telegram user on first contact and reject banned users.
    Returns the User record or None if the caller was turned away.
    """
    tg_user = update.effective_user
    bot_logger.log_command(user_id=tg_user.id, command=command)

    if not tg_user.username:
        await reply(update, 'need_username')
        return None

    known = order_store.get_user_by_telegram_id(tg_user.id)
    user = order_store.get_or_create_user(tg_user.id, tg_user.username)
    if known is None:
        bot_logger.log_user_registration(user_id=tg_user.id, username=tg_user.username)

    if user.banned:
        await reply_error(update, UserBannedError(f"User {user.id} is banned"), command)
        return None
    return user


async def handle_order_command(update: Update, context: ContextTypes.DEFAULT_TYPE,
                               command: str, operation) -> None:
    """Shared body of commands taking a single order id"""
    user = await authenticate(update, f'/{command}')
    if user is None:
        return
    try:
        args = validate_params(context.args, 1, msg.get_message('order_id_usage', command=command))
        order_id = parse_order_id(args[0])
        await operation(user, order_id)
    except Exception as e:
        await reply_error(update, e, f'/{command}')

# =============================================================================
# SECTION 1: BASIC COMMANDS (/start, /help, /listcurrencies, /info)
# =============================================================================

async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Command /start - Register user automatically"""
    user = await authenticate(update, '/start')
    if user is None:
        return
    await reply(update, 'start')


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if await authenticate(update, '/help') is None:
        return
    await reply(update, 'help')


async def list_currencies(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if await authenticate(update, '/listcurrencies') is None:
        return
    lines = [f"{c['code']} - {c['name']}" for c in get_currencies_with_price()]
    await reply(update, 'list_currencies', currencies='\n'.join(lines))


async def info(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Command /info - Lightning node status"""
    user = await authenticate(update, '/info')
    if user is None:
        return
    try:
        summary = await coordinator.node_info()
        await reply(update, 'info', **summary)
    except Exception as e:
        await reply_error(update, e, '/info')

# =============================================================================
# SECTION 2: ORDER CREATION (/sell, /buy) AND LISTING
# =============================================================================

async def create_order_command(update: Update, context: ContextTypes.DEFAULT_TYPE,
                               order_type: OrderType) -> None:
    command = f'/{order_type.value}'
    user = await authenticate(update, command)
    if user is None:
        return
    try:
        usage = msg.get_message(f'{order_type.value}_usage')
        params = parse_order_params(context.args, usage)
        await coordinator.create_order(user, order_type, **params)
    except Exception as e:
        await reply_error(update, e, command)


async def sell(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Command /sell <sats> <fiat amount> <currency> <payment method> [-u]"""
    await create_order_command(update, context, OrderType.SELL)


async def buy(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Command /buy <sats> <fiat amount> <currency> <payment method> [-u]"""
    await create_order_command(update, context, OrderType.BUY)


async def list_orders(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = await authenticate(update, '/listorders')
    if user is None:
        return
    orders = coordinator.list_orders(user)
    if not orders:
        await reply(update, 'no_open_orders')
        return
    lines = [msg.get_message('list_orders_header')]
    lines += [msg.get_message('list_orders_item', order=order) for order in orders]
    await send_private(update, '\n'.join(lines))

# =============================================================================
# SECTION 3: BUTTONS (take, continue, cancel take)
# =============================================================================

async def button_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle button clicks from the channel and from take prompts"""
    query = update.callback_query
    await query.answer()

    data = query.data or ''
    bot_logger.log_button_click(user_id=query.from_user.id, callback_data=data, context='button_handler')

    user = await authenticate(update, 'button')
    if user is None:
        return

    action, _, raw_id = data.rpartition('_')
    try:
        order_id = parse_order_id(raw_id)
        if action in ('takesell', 'takebuy'):
            await coordinator.take_order(user, order_id)
        elif action == 'continuetakebuy':
            await coordinator.continue_take(order_id, user=user)
        elif action == 'canceltake':
            await coordinator.release_take(user, order_id)
        else:
            logger.warning(f"Unknown callback data: {data}")
    except Exception as e:
        await reply_error(update, e, f'button:{action}')

# =============================================================================
# SECTION 4: ORDER COMMANDS
# =============================================================================

async def set_invoice(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Command /setinvoice <order id> <invoice> - buyer's payout invoice"""
    user = await authenticate(update, '/setinvoice')
    if user is None:
        return
    try:
        args = validate_params(context.args, 2, msg.get_message('setinvoice_usage'))
        order_id = parse_order_id(args[0])
        await coordinator.set_invoice(user, order_id, args[1].strip())
    except Exception as e:
        await reply_error(update, e, '/setinvoice')


async def fiat_sent(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'fiatsent', coordinator.fiat_sent)


async def release(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'release', coordinator.release)


async def cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'cancel', coordinator.cancel)


async def cooperative_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'cooperativecancel', coordinator.cooperative_cancel)


async def dispute(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'dispute', coordinator.dispute)

# =============================================================================
# SECTION 5: ADMIN COMMANDS
# =============================================================================

async def cancel_order(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'cancelorder', admin.cancel_order)


async def settle_order(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'settleorder', admin.settle_order)


async def check_order(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'checkorder', admin.check_order)


async def pay_to_buyer(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await handle_order_command(update, context, 'paytobuyer', admin.pay_to_buyer)


async def ban(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Command /ban <username> - admin only"""
    user = await authenticate(update, '/ban')
    if user is None:
        return
    try:
        args = validate_params(context.args, 1, msg.get_message('ban_usage'))
        await admin.ban_user(user, args[0])
    except Exception as e:
        await reply_error(update, e, '/ban')

# =============================================================================
# MAIN FUNCTION AND APPLICATION SETUP
# =============================================================================

async def on_startup(application: Application) -> None:
    """Wire the coordinator to the running bot, resubscribe invoices, start sweeps"""
    global coordinator, admin
    notifier = TelegramNotifier(application.bot, msg)
    gateway = LNDClient()
    coordinator = OrderCoordinator(gateway, notifier, PriceFeed(), bot_logger=bot_logger)
    admin = AdminActions(coordinator)

    if not await asyncio.to_thread(check_lnd_connection, gateway):
        bot_logger.log_system_event('lnd_unavailable', 'LND not reachable at startup', level=logging.WARNING)

    try:
        await coordinator.resubscribe_invoices()
    except Exception as e:
        bot_logger.log_error("Resubscribing hold invoices failed", exception=e)

    application.bot_data['sweeps'] = start_sweeps(coordinator)


def main():
    """
    Main bot function - Configure all handlers and monitors
    """
    if not bot_config.TELEGRAM_BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN not configured")
        return

    if not bot_config.CHANNEL:
        logger.warning("CHANNEL not configured - channel posting disabled")

    # Create database tables
    create_tables()

    global msg, bot_logger
    msg = MessageManager()
    bot_logger = init_logging()

    application = (
        Application.builder()
        .token(bot_config.TELEGRAM_BOT_TOKEN)
        .post_init(on_startup)
        .build()
    )

    # Add command handlers
    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("sell", sell))
    application.add_handler(CommandHandler("buy", buy))
    application.add_handler(CommandHandler("setinvoice", set_invoice))
    application.add_handler(CommandHandler("fiatsent", fiat_sent))
    application.add_handler(CommandHandler("release", release))
    application.add_handler(CommandHandler("cancel", cancel))
    application.add_handler(CommandHandler("cooperativecancel", cooperative_cancel))
    application.add_handler(CommandHandler("dispute", dispute))
    application.add_handler(CommandHandler("listorders", list_orders))
    application.add_handler(CommandHandler("listcurrencies", list_currencies))
    application.add_handler(CommandHandler("info", info))

    # Admin commands
    application.add_handler(CommandHandler("ban", ban))
    application.add_handler(CommandHandler("cancelorder", cancel_order))
    application.add_handler(CommandHandler("settleorder", settle_order))
    application.add_handler(CommandHandler("checkorder", check_order))
    application.add_handler(CommandHandler("paytobuyer", pay_to_buyer))

    # Button handler
    application.add_handler(CallbackQueryHandler(button_handler))

    bot_logger.log_system_event('bot_startup', 'Lightning P2P escrow bot starting')

    # Start bot
    logger.info("Starting Lightning P2P escrow bot...")
    application.run_polling(
        drop_pending_updates=True,
        allowed_updates=['message', 'callback_query']
    )


if __name__ == '__main__':
    main()
