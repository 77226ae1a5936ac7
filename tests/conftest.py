"""
Shared fixtures for the escrow bot tests.

The database and log directory are pointed at a temporary location before
any bot module is imported; every test starts with empty tables. The
Lightning node, Telegram and the price API are replaced by recording fakes.
"""

import hashlib
import os
import tempfile
import time

_TMP_DIR = tempfile.mkdtemp(prefix='lnp2pbot-tests-')
os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ['LOG_DIR'] = os.path.join(_TMP_DIR, 'logs')

import pytest  # noqa: E402

import bot_config  # noqa: E402
from admin_actions import AdminActions  # noqa: E402
from database import order_store  # noqa: E402
from database.models import create_tables, drop_all_tables  # noqa: E402
from lightning_utils import INVOICE_ACCEPTED  # noqa: E402
from order_coordinator import OrderCoordinator  # noqa: E402
from order_errors import GatewayError, PriceFeedError  # noqa: E402
from order_states import OrderType  # noqa: E402

TEST_INVOICE = 'lnbc1pvjluezpp5qqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqfqqqsyqcyq5rqwzqfqypqdpl2pkx2ctnv5sxxmmwwd5kgetjypeh2ursdae8g6twvus8g6rfwvs8qun0dfjkxaq8rkx3yf5tcsyz3d73gafnh3cax9rn449d9p5uxz9ezhhypd0elx87sjle52x86fux2ypatgddc6k63n7erqz25le42c4u4ecky03ylcqca784w'
ADMIN_TELEGRAM_ID = 999


class FakeGateway:
    """Records every call; behaviour is switched with the attributes"""

    def __init__(self):
        self.calls = []
        self.subscriptions = {}
        self.fail_create = False
        self.fail_settle = False
        self.fail_cancel = False
        self.fail_pay = False
        self.pay_confirmed = True
        self.routing_fee = 2
        self.decoded = None
        self.on_create = None
        self._counter = 0

    def calls_of(self, name):
        return [call for call in self.calls if call[0] == name]

    def create_hold_invoice(self, description, amount):
        self.calls.append(('create_hold_invoice', description, amount))
        if self.fail_create:
            raise GatewayError('create_hold_invoice failed')
        if self.on_create:
            self.on_create()
        self._counter += 1
        secret = f"{self._counter:064x}"
        payment_hash = hashlib.sha256(bytes.fromhex(secret)).hexdigest()
        return {'request': f"lnbcholdinvoice{self._counter}", 'hash': payment_hash, 'secret': secret}

    def settle_hold_invoice(self, secret):
        self.calls.append(('settle_hold_invoice', secret))
        if self.fail_settle:
            raise GatewayError('settle_hold_invoice failed')

    def cancel_hold_invoice(self, payment_hash):
        self.calls.append(('cancel_hold_invoice', payment_hash))
        if self.fail_cancel:
            raise GatewayError('cancel_hold_invoice failed')

    def subscribe_invoice(self, payment_hash, callback):
        self.calls.append(('subscribe_invoice', payment_hash))
        self.subscriptions[payment_hash] = callback

    def pay_request(self, payment_request, amount):
        self.calls.append(('pay_request', payment_request, amount))
        if self.fail_pay:
            raise GatewayError('pay_request failed')
        if not self.pay_confirmed:
            return {'confirmed': False, 'fee': 0, 'error': 'no route'}
        return {'confirmed': True, 'fee': self.routing_fee, 'error': None}

    def decode_payment_request(self, payment_request):
        self.calls.append(('decode_payment_request', payment_request))
        if self.decoded is not None:
            return self.decoded
        return {'num_satoshis': 0, 'timestamp': int(time.time()), 'expiry': 3600}

    def get_info(self):
        return {'alias': 'testnode', 'synced_to_chain': True, 'synced_to_graph': True,
                'num_active_channels': 3, 'block_height': 800000}


class FakeNotifier:

    def __init__(self):
        self.events = []
        self.admin_events = []
        self.published = []
        self.removed = []

    async def notify(self, user, event, **context):
        self.events.append((user.id, event, context))
        return True

    async def notify_admins(self, event, **context):
        self.admin_events.append((event, context))
        return 1

    async def publish_order(self, order):
        self.published.append(order.id)
        return 1000 + order.id, 2000 + order.id

    async def remove_order_messages(self, order):
        self.removed.append(order.id)

    def events_for(self, user):
        return [event for user_id, event, _ in self.events if user_id == user.id]


class FakePriceFeed:

    def __init__(self, sats=250000):
        self.sats = sats
        self.fail = False
        self.calls = []

    def get_btc_fiat_price(self, fiat_code, fiat_amount):
        self.calls.append((fiat_code, fiat_amount))
        if self.fail:
            raise PriceFeedError('price api down')
        return self.sats


@pytest.fixture(autouse=True)
def fresh_db():
    drop_all_tables()
    create_tables()
    yield


@pytest.fixture(autouse=True)
def config(monkeypatch):
    monkeypatch.setattr(bot_config, 'FEE', 0.002)
    monkeypatch.setattr(bot_config, 'MAX_DISPUTES', 4)
    monkeypatch.setattr(bot_config, 'MAX_PENDING_PAYMENT_ATTEMPTS', 3)
    monkeypatch.setattr(bot_config, 'ADMIN_IDS', [ADMIN_TELEGRAM_ID])
    return bot_config


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def price_feed():
    return FakePriceFeed()


@pytest.fixture
def coordinator(gateway, notifier, price_feed):
    return OrderCoordinator(gateway, notifier, price_feed)


@pytest.fixture
def admin_actions(coordinator):
    return AdminActions(coordinator)


@pytest.fixture
def seller():
    return order_store.get_or_create_user(101, 'alice')


@pytest.fixture
def buyer():
    return order_store.get_or_create_user(202, 'bob')


@pytest.fixture
def admin_user():
    return order_store.get_or_create_user(ADMIN_TELEGRAM_ID, 'admin')


@pytest.fixture
def make_active_order(coordinator, seller, buyer):
    """Sell order with the hold invoice paid: ACTIVE, buyer invoice set"""
    async def make(amount=100000):
        order = await coordinator.create_order(seller, OrderType.SELL, amount, 50, 'USD', 'bank transfer')
        await coordinator.take_order(buyer, order.id)
        await coordinator.set_invoice(buyer, order.id, TEST_INVOICE)
        order = order_store.get_order(order.id)
        await coordinator.on_invoice_event(order.hash, INVOICE_ACCEPTED)
        return order_store.get_order(order.id)
    return make
