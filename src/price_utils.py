"""
===============================================================================
PRICE UTILITIES - Fiat to satoshi conversion
===============================================================================
Orders created with amount 0 are priced in sats when they are taken,
using the fiat amount and the current BTC price.
"""

import os
import time
import logging
from typing import Dict, List

import requests

from order_errors import PriceFeedError

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURACIÓN - MODIFICAR AQUÍ PARA CAMBIOS RÁPIDOS
# =============================================================================

PRICE_API_URL = os.getenv('PRICE_API_URL', 'https://api.yadio.io')
API_TIMEOUT = 10        # Timeout para requests API (segundos)
RETRY_ATTEMPTS = 3      # Número de reintentos para APIs
SATS_PER_BTC = 100_000_000

# Supported fiat currencies; price=True means the amount can be computed
# from the fiat amount when an order is created with amount 0
CURRENCIES: Dict[str, Dict] = {
    'USD': {'name': 'US Dollar', 'symbol': '$', 'price': True},
    'EUR': {'name': 'Euro', 'symbol': '€', 'price': True},
    'ARS': {'name': 'Peso argentino', 'symbol': '$', 'price': True},
    'BRL': {'name': 'Real', 'symbol': 'R$', 'price': True},
    'CLP': {'name': 'Peso chileno', 'symbol': '$', 'price': True},
    'COP': {'name': 'Peso colombiano', 'symbol': '$', 'price': True},
    'MXN': {'name': 'Peso mexicano', 'symbol': '$', 'price': True},
    'PEN': {'name': 'Sol', 'symbol': 'S/', 'price': True},
    'VES': {'name': 'Bolívar', 'symbol': 'Bs', 'price': True},
    'CUP': {'name': 'Peso cubano', 'symbol': '$', 'price': False},
}


def is_supported_currency(fiat_code: str) -> bool:
    return fiat_code.upper() in CURRENCIES


def get_currencies_with_price() -> List[Dict]:
    """Currencies whose orders may be created with amount 0"""
    return [
        {'code': code, **info}
        for code, info in sorted(CURRENCIES.items())
        if info['price']
    ]


class PriceFeed:
    """Client for the fiat/BTC conversion API"""

    def __init__(self, base_url: str = None):
        self.base_url = base_url or PRICE_API_URL
        self.session = requests.Session()
        self.session.headers.update({'User-Agent': 'LnP2PEscrowBot/1.0'})

    def get_btc_fiat_price(self, fiat_code: str, fiat_amount: float) -> int:
        """
        Convert ``fiat_amount`` of ``fiat_code`` into satoshis.

        Raises:
            PriceFeedError if the currency has no price or the API fails
        """
        code = fiat_code.upper()
        if not CURRENCIES.get(code, {}).get('price'):
            raise PriceFeedError(f"No price available for {code}")

        url = f"{self.base_url}/convert/{fiat_amount}/{code}/BTC"
        for attempt in range(RETRY_ATTEMPTS):
            try:
                response = self.session.get(url, timeout=API_TIMEOUT)
                if response.status_code == 200:
                    btc = float(response.json()['result'])
                    sats = int(btc * SATS_PER_BTC)
                    if sats <= 0:
                        raise PriceFeedError(f"Price API returned {btc} BTC for {fiat_amount} {code}")
                    logger.info(f"{fiat_amount} {code} = {sats} sats")
                    return sats
                logger.warning(f"Price API returned status {response.status_code} for {code}")
            except (requests.RequestException, KeyError, ValueError) as e:
                logger.warning(f"Price API attempt {attempt + 1} failed: {e}")
            if attempt < RETRY_ATTEMPTS - 1:
                time.sleep(2)  # Esperar antes de reintentar

        raise PriceFeedError(f"Price API unavailable for {code}")
