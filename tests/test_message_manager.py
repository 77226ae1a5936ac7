import inspect

import pytest

import order_errors
from message_manager import MessageManager
from notifier import EVENT_BUTTONS


@pytest.fixture(scope='module')
def messages():
    return MessageManager()


def _error_classes():
    return [
        cls for _, cls in inspect.getmembers(order_errors, inspect.isclass)
        if issubclass(cls, order_errors.OrderError)
    ]


def test_every_error_has_a_reply(messages):
    for cls in _error_classes():
        assert messages.has_message(cls.message_key), cls.__name__


@pytest.mark.parametrize('key', [
    'order_already_taken', 'cannot_take_own_order', 'release_not_allowed', 'not_active_order',
    'bad_status_on_cancel', 'only_active_cooperative_cancel', 'dispute_not_allowed',
    'order_already_completed', 'order_already_closed', 'invoice_expired', 'currency_without_price',
    'invalid_currency', 'hold_invoice_not_settled',
])
def test_guard_message_keys_exist(messages, key):
    assert messages.has_message(key)


def test_button_labels_exist(messages):
    for buttons in EVENT_BUTTONS.values():
        for label, _ in buttons:
            assert messages.has_message(label)


def test_ids_are_unique(messages):
    ids = [
        data['id']
        for category in messages.messages.values() if isinstance(category, dict)
        for data in category.values() if isinstance(data, dict)
    ]
    assert len(ids) == len(set(ids))
    assert len(messages.key_index) == len(ids)


def test_lookup_by_id_and_key(messages):
    msg_id = messages.resolve_id('invalid_currency')

    assert msg_id.startswith('MSG-')
    assert messages.get_message(msg_id, fiat_code='XYZ') == messages.get_message('invalid_currency',
                                                                                fiat_code='XYZ')
    assert 'XYZ' in messages.get_message('invalid_currency', fiat_code='XYZ')


def test_missing_message(messages):
    assert not messages.has_message('no_such_message')
    assert messages.get_message('no_such_message') == '❌ Message no_such_message not found'


def test_missing_variable_returns_raw_text(messages):
    raw = messages.message_index[messages.resolve_id('invalid_currency')]['text']

    assert messages.get_message('invalid_currency') == raw


def test_declared_variables_are_used(messages):
    for msg_id, data in messages.message_index.items():
        assert messages.validate_message(msg_id, data['variables']), msg_id


def test_format_amount(messages):
    assert messages.format_amount(1250000) == '1.250.000'
