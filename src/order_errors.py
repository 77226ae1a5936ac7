"""
Exception taxonomy for order operations.

Every error carries ``message_key``, the messages.yaml entry the front end
replies with. Raising any of these means no state was changed.
"""


class OrderError(Exception):
    """Base exception for order-related errors."""
    message_key = 'generic_error'

    def __init__(self, message: str = '', message_key: str = None, **context):
        super().__init__(message or self.__class__.__name__)
        self.context = context
        if message_key:
            self.message_key = message_key


# =============================================================================
# VALIDATION ERRORS - bad parameters, unknown orders, wrong party
# =============================================================================

class ValidationError(OrderError):
    """Raised when command parameters or caller identity are not acceptable."""
    message_key = 'invalid_params'


class InvalidOrderIdError(ValidationError):
    message_key = 'invalid_order_id'


class OrderNotFoundError(ValidationError):
    message_key = 'order_not_found'


class NotOrderPartyError(ValidationError):
    message_key = 'not_order_party'


class InvalidInvoiceError(ValidationError):
    message_key = 'invalid_invoice'


class AmountMismatchError(ValidationError):
    message_key = 'incorrect_amount_invoice'


class UserBannedError(ValidationError):
    message_key = 'user_banned'


class NotAdminError(ValidationError):
    message_key = 'not_admin'


class UserNotFoundError(ValidationError):
    message_key = 'user_not_found'


class SellerHasFiatSentOrderError(ValidationError):
    message_key = 'seller_has_fiat_sent_order'


# =============================================================================
# STATE GUARD VIOLATIONS
# =============================================================================

class StateGuardError(OrderError):
    """Raised when the current order status does not permit the action."""
    message_key = 'bad_status'

    def __init__(self, message: str = '', status=None, message_key: str = None, **context):
        super().__init__(message, message_key=message_key, **context)
        self.status = status


# =============================================================================
# EXTERNAL FAILURES
# =============================================================================

class GatewayError(OrderError):
    """Raised when a Lightning node call fails. Never retried automatically."""
    message_key = 'gateway_error'


class PriceFeedError(OrderError):
    """Raised when the fiat price could not be resolved."""
    message_key = 'price_api_failed'
