"""
===============================================================================
CORE CONFIGURATION - LIGHTNING P2P ESCROW BOT
===============================================================================
All tunables live here as module constants loaded from the environment
(.env supported). Other modules read them as ``bot_config.NAME`` at call
time, never via ``from bot_config import NAME``, so a changed value is
always picked up.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return int(value)


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return float(value)


def _id_list_env(name: str) -> list:
    raw = os.getenv(name, '')
    return [int(part) for part in raw.replace(' ', '').split(',') if part]


# =============================================================================
# TELEGRAM
# =============================================================================

TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN')
CHANNEL = os.getenv('CHANNEL')            # Public channel where orders are published
ADMIN_IDS = _id_list_env('ADMIN_IDS')     # Telegram ids with the admin role

# =============================================================================
# ECONOMICS AND REPUTATION
# =============================================================================

FEE = _float_env('FEE', 0.002)                 # Fraction of amount paid by the seller
MAX_DISPUTES = _int_env('MAX_DISPUTES', 4)     # Disputes before a user is banned

# =============================================================================
# SCHEDULED SWEEPS
# =============================================================================

PENDING_PAYMENT_WINDOW = _int_env('PENDING_PAYMENT_WINDOW', 5)           # minutes
MAX_PENDING_PAYMENT_ATTEMPTS = _int_env('MAX_PENDING_PAYMENT_ATTEMPTS', 3)
ORDER_SWEEP_MINUTES = _int_env('ORDER_SWEEP_MINUTES', 2)
HOLD_INVOICE_EXPIRATION_WINDOW = _int_env('HOLD_INVOICE_EXPIRATION_WINDOW', 900)  # seconds
ORDER_EXPIRATION_HOURS = _int_env('ORDER_EXPIRATION_HOURS', 24)

# =============================================================================
# HOLD INVOICES
# =============================================================================

HOLD_INVOICE_EXPIRY_SECONDS = _int_env('HOLD_INVOICE_EXPIRY_SECONDS', 3600)
HOLD_INVOICE_CLTV_DELTA = _int_env('HOLD_INVOICE_CLTV_DELTA', 144)


def is_admin(telegram_id) -> bool:
    """True when the Telegram id is configured as an admin"""
    return telegram_id in ADMIN_IDS
