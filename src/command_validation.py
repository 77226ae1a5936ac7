"""
Shape checks for command arguments, applied before anything reaches the
order coordinator. Every failure raises a ValidationError subclass whose
message_key the bot replies with.
"""

import time
from typing import Dict, List, Optional

from order_errors import InvalidInvoiceError, InvalidOrderIdError, ValidationError
from price_utils import is_supported_currency

INVOICE_PREFIXES = ('lnbc', 'lntbs', 'lntb', 'lnbcrt')
SHOW_USERNAME_FLAG = '-u'


def parse_order_id(raw) -> int:
    """Order ids are positive integers"""
    try:
        order_id = int(str(raw).strip().lstrip('#'))
    except (TypeError, ValueError):
        raise InvalidOrderIdError(f"Invalid order id: {raw!r}")
    if order_id <= 0:
        raise InvalidOrderIdError(f"Invalid order id: {raw!r}")
    return order_id


def validate_params(args: List[str], count: int, usage: str) -> List[str]:
    """Require at least ``count`` arguments"""
    if args is None or len(args) < count:
        raise ValidationError(f"Expected {count} arguments", message_key='invalid_params', usage=usage)
    return list(args)


def parse_order_params(args: List[str], usage: str) -> Dict:
    """
    Parse ``<sats> <fiat_amount> <fiat_code> <payment method...> [-u]``.

    ``sats`` may be 0: the amount is then priced from the fiat amount.
    A trailing ``-u`` shows the creator's username in the channel.
    """
    args = validate_params(args, 4, usage)
    show_username = args[-1] == SHOW_USERNAME_FLAG
    if show_username:
        args = validate_params(args[:-1], 4, usage)

    try:
        amount = int(args[0])
        fiat_amount = float(args[1].replace(',', '.'))
    except ValueError:
        raise ValidationError("Amounts must be numbers", message_key='invalid_params', usage=usage)
    if amount < 0 or fiat_amount <= 0:
        raise ValidationError("Amounts must be positive", message_key='invalid_params', usage=usage)

    fiat_code = args[2].upper()
    if not is_supported_currency(fiat_code):
        raise ValidationError(f"Unsupported currency {fiat_code}", message_key='invalid_currency',
                              fiat_code=fiat_code)

    payment_method = ' '.join(args[3:]).strip()
    if not payment_method:
        raise ValidationError("Missing payment method", message_key='invalid_params', usage=usage)

    return {
        'amount': amount,
        'fiat_amount': fiat_amount,
        'fiat_code': fiat_code,
        'payment_method': payment_method[:200],
        'show_username': show_username,
    }


def validate_invoice(payment_request: str, decoded: Optional[Dict], now: float = None) -> Dict:
    """
    Check a buyer's payout invoice.

    Args:
        payment_request: bolt11 string as typed by the buyer
        decoded: result of the node's decode, None if the node rejected it
        now: unix time, defaults to the current time

    Returns:
        dict with 'request', 'amount' (0 when the invoice has no amount)
        and 'expires_at' (unix time)
    """
    payment_request = (payment_request or '').strip()
    if not payment_request.lower().startswith(INVOICE_PREFIXES):
        raise InvalidInvoiceError("Not a Lightning invoice")
    if not decoded:
        raise InvalidInvoiceError("Invoice could not be decoded")

    now = time.time() if now is None else now
    expires_at = decoded.get('timestamp', 0) + decoded.get('expiry', 0)
    if decoded.get('expiry') and expires_at <= now:
        raise InvalidInvoiceError("Invoice expired", message_key='invoice_expired')

    return {
        'request': payment_request,
        'amount': int(decoded.get('num_satoshis') or 0),
        'expires_at': expires_at,
    }
