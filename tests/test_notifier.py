from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import TelegramError

import notifier as notifier_module
from message_manager import MessageManager
from notifier import TelegramNotifier


@pytest.fixture
def messages():
    return MessageManager()


@pytest.fixture
def bot():
    bot = MagicMock()
    bot.send_message = AsyncMock(side_effect=lambda **kwargs: MagicMock(message_id=77))
    bot.delete_message = AsyncMock()
    return bot


@pytest.fixture
def telegram_notifier(bot, messages):
    return TelegramNotifier(bot, messages, channel='@orders', admin_ids=[1, 2])


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(notifier_module.asyncio, 'sleep', AsyncMock())


async def test_notify_renders_event(telegram_notifier, bot, messages, coordinator, seller):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')

    assert await telegram_notifier.notify(seller, 'order_created', order=order)

    kwargs = bot.send_message.call_args.kwargs
    assert kwargs['chat_id'] == seller.telegram_id
    assert kwargs['text'] == messages.get_message('order_created', order=order)
    assert kwargs['reply_markup'] is None


async def test_take_events_carry_buttons(telegram_notifier, bot, coordinator, seller, buyer):
    order = await coordinator.create_order(buyer, 'buy', 1000, 10, 'USD', 'cash')

    await telegram_notifier.notify(seller, 'order_taken_buy_seller', order=order)

    keyboard = bot.send_message.call_args.kwargs['reply_markup']
    callbacks = [button.callback_data for button in keyboard.inline_keyboard[0]]
    assert callbacks == [f'continuetakebuy_{order.id}', f'canceltake_{order.id}']


async def test_send_retries_then_gives_up(telegram_notifier, bot):
    bot.send_message = AsyncMock(side_effect=TelegramError('flood'))

    assert await telegram_notifier.send_message_with_retry(5, 'hi') is None
    assert bot.send_message.await_count == 3


async def test_send_recovers_after_a_failure(telegram_notifier, bot):
    sent = MagicMock(message_id=9)
    bot.send_message = AsyncMock(side_effect=[TelegramError('timeout'), sent])

    assert await telegram_notifier.send_message_with_retry(5, 'hi') is sent


async def test_notify_admins_counts_deliveries(telegram_notifier, bot):
    delivered = await telegram_notifier.notify_admins('settle_failed', order=MagicMock(id=3), error='x')

    assert delivered == 2
    assert [c.kwargs['chat_id'] for c in bot.send_message.call_args_list] == [1, 2]


async def test_publish_hides_username_unless_asked(telegram_notifier, bot, messages, coordinator, seller):
    anonymous = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')
    public = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash', show_username=True)

    assert await telegram_notifier.publish_order(anonymous) == (77, 77)
    text = bot.send_message.call_args_list[0].kwargs['text']
    assert '@alice' not in text
    assert messages.get_message('anonymous_trader') in text
    take = bot.send_message.call_args_list[1].kwargs['reply_markup'].inline_keyboard[0][0]
    assert take.callback_data == f'takesell_{anonymous.id}'

    bot.send_message.reset_mock()
    await telegram_notifier.publish_order(public)
    assert '@alice' in bot.send_message.call_args_list[0].kwargs['text']


async def test_publish_without_channel(bot, messages, coordinator, seller):
    order = await coordinator.create_order(seller, 'sell', 1000, 10, 'USD', 'cash')

    assert await TelegramNotifier(bot, messages, channel='').publish_order(order) is None
    bot.send_message.assert_not_awaited()


async def test_remove_order_messages(telegram_notifier, bot):
    order = MagicMock(id=1, tg_channel_message1=10, tg_channel_message2=None)

    await telegram_notifier.remove_order_messages(order)

    bot.delete_message.assert_awaited_once_with(chat_id='@orders', message_id=10)
