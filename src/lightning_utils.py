#!/usr/bin/env python3
"""
===============================================================================
LIGHTNING UTILS - LND Hold Invoice Gateway for the P2P Escrow Bot
===============================================================================
Hold invoices are the escrow: the seller pays an invoice whose preimage
only the bot knows. Revealing the preimage (settle) completes the payment;
canceling releases the seller's funds.

Uses LND's REST API for simplicity and reliability. Calls that move money
raise GatewayError on failure and are never retried here.
"""

import os
import json
import base64
import hashlib
import threading
import requests
import logging
from typing import Callable, Dict, Optional

import bot_config
from order_errors import GatewayError

logger = logging.getLogger(__name__)

# =============================================================================
# LND CONFIGURATION
# =============================================================================

LND_REST_HOST = os.getenv('LND_REST_HOST', 'localhost:8080')
LND_TLS_CERT_PATH = os.getenv('LND_TLS_CERT_PATH', '~/.lnd/tls.cert')
LND_MACAROON_PATH = os.getenv('LND_MACAROON_PATH', '~/.lnd/data/chain/bitcoin/mainnet/admin.macaroon')
LND_TIMEOUT = 30                 # seconds for unary calls
PAYMENT_FEE_LIMIT_PERCENT = 0.2  # max routing fee paid to reach the buyer, as % of amount

# Invoice states reported by /v2/invoices/subscribe
INVOICE_ACCEPTED = 'ACCEPTED'
INVOICE_SETTLED = 'SETTLED'
INVOICE_CANCELED = 'CANCELED'


def _b64(hex_value: str) -> str:
    return base64.b64encode(bytes.fromhex(hex_value)).decode()


def _b64url(hex_value: str) -> str:
    return base64.urlsafe_b64encode(bytes.fromhex(hex_value)).decode().rstrip('=')


def new_secret_and_hash():
    """Random preimage and its sha256 payment hash, both hex"""
    secret = os.urandom(32)
    return secret.hex(), hashlib.sha256(secret).hexdigest()


class LNDClient:
    """Client for connecting to LND via REST API"""

    def __init__(self):
        self.base_url = f"https://{LND_REST_HOST}"
        self.session = requests.Session()
        self._setup_session()

    def _setup_session(self):
        """Setup SSL and authentication for LND REST API"""
        try:
            # Setup TLS certificate
            tls_cert_path = os.path.expanduser(LND_TLS_CERT_PATH)
            if os.path.exists(tls_cert_path):
                self.session.verify = tls_cert_path
            else:
                logger.warning(f"TLS cert not found: {tls_cert_path}")
                self.session.verify = False

            # Setup macaroon authentication
            macaroon_path = os.path.expanduser(LND_MACAROON_PATH)
            if os.path.exists(macaroon_path):
                with open(macaroon_path, 'rb') as f:
                    macaroon_hex = f.read().hex()

                self.session.headers.update({
                    'Grpc-Metadata-macaroon': macaroon_hex
                })
                logger.info("LND authentication configured successfully")
            else:
                logger.error(f"Macaroon not found: {macaroon_path}")

        except OSError as e:
            logger.error(f"Failed to setup LND session: {e}")

    def _post(self, path: str, payload: Dict, action: str) -> Dict:
        try:
            response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=LND_TIMEOUT)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"LND {action} failed: {e}")
            raise GatewayError(f"{action} failed: {e}") from e

    # =========================================================================
    # HOLD INVOICES
    # =========================================================================

    def create_hold_invoice(self, description: str, amount: int) -> Dict:
        """
        Create a hold invoice for ``amount`` sats.

        Returns:
            dict with 'request' (bolt11), 'hash' and 'secret' (hex)
        """
        secret, payment_hash = new_secret_and_hash()
        data = self._post('/v2/invoices/hodl', {
            'memo': description,
            'hash': _b64(payment_hash),
            'value': str(int(amount)),
            'expiry': str(bot_config.HOLD_INVOICE_EXPIRY_SECONDS),
            'cltv_expiry': str(bot_config.HOLD_INVOICE_CLTV_DELTA),
        }, 'create_hold_invoice')
        request = data.get('payment_request')
        if not request:
            raise GatewayError('create_hold_invoice returned no payment request')
        logger.info(f"Hold invoice created for {amount} sats, hash {payment_hash[:10]}...")
        return {'request': request, 'hash': payment_hash, 'secret': secret}

    def settle_hold_invoice(self, secret: str) -> None:
        """Reveal the preimage: the held payment completes irrevocably"""
        self._post('/v2/invoices/settle', {'preimage': _b64(secret)}, 'settle_hold_invoice')

    def cancel_hold_invoice(self, payment_hash: str) -> None:
        """Cancel the hold invoice: the payer's funds are released"""
        self._post('/v2/invoices/cancel', {'payment_hash': _b64(payment_hash)}, 'cancel_hold_invoice')

    def subscribe_invoice(self, payment_hash: str, callback: Callable[[str, str], None]) -> threading.Thread:
        """
        Stream state changes of one invoice in a daemon thread.

        ``callback(payment_hash, state)`` is called for every state update
        (OPEN, ACCEPTED, SETTLED, CANCELED). The stream ends once the invoice
        reaches a final state.
        """
        def stream():
            url = f"{self.base_url}/v2/invoices/subscribe/{_b64url(payment_hash)}"
            try:
                with self.session.get(url, stream=True, timeout=None) as response:
                    response.raise_for_status()
                    for line in response.iter_lines():
                        if not line:
                            continue
                        update = json.loads(line).get('result', {})
                        state = update.get('state')
                        if not state:
                            continue
                        logger.info(f"Invoice {payment_hash[:10]}... state: {state}")
                        try:
                            callback(payment_hash, state)
                        except Exception as e:
                            logger.error(f"Invoice callback failed for {payment_hash[:10]}...: {e}")
                        if state in (INVOICE_SETTLED, INVOICE_CANCELED):
                            return
            except (requests.RequestException, ValueError) as e:
                logger.error(f"Invoice subscription for {payment_hash[:10]}... ended: {e}")

        thread = threading.Thread(target=stream, name=f"invoice-{payment_hash[:8]}")
        thread.daemon = True
        thread.start()
        return thread

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    def pay_request(self, payment_request: str, amount: int) -> Dict:
        """
        Pay a bolt11 invoice.

        Returns:
            dict with 'confirmed' (bool), 'fee' (sats) and 'error' (str or None)
        """
        payload = {
            'payment_request': payment_request,
            'fee_limit': {'fixed': str(max(1, int(amount * PAYMENT_FEE_LIMIT_PERCENT / 100)))},
        }
        decoded = self.decode_payment_request(payment_request)
        if decoded is not None and not decoded.get('num_satoshis'):
            payload['amt'] = str(int(amount))

        data = self._post('/v1/channels/transactions', payload, 'pay_request')
        error = data.get('payment_error') or None
        route = data.get('payment_route') or {}
        return {
            'confirmed': error is None and bool(data.get('payment_preimage')),
            'fee': int(route.get('total_fees', 0) or 0),
            'error': error,
        }

    # =========================================================================
    # NODE INFORMATION
    # =========================================================================

    def get_info(self) -> Optional[Dict]:
        """Get node information from LND"""
        try:
            response = self.session.get(f"{self.base_url}/v1/getinfo", timeout=LND_TIMEOUT)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to get LND info: {e}")
            return None

    def decode_payment_request(self, payment_request: str) -> Optional[Dict]:
        """Decode Lightning invoice to extract payment hash and details"""
        try:
            response = self.session.get(
                f"{self.base_url}/v1/payreq/{payment_request}", timeout=LND_TIMEOUT
            )
            response.raise_for_status()
            decoded = response.json()

            return {
                'payment_hash': decoded.get('payment_hash'),
                'destination': decoded.get('destination'),
                'num_satoshis': int(decoded.get('num_satoshis', 0)),
                'timestamp': int(decoded.get('timestamp', 0)),
                'expiry': int(decoded.get('expiry', 0)),
                'description': decoded.get('description', ''),
                'cltv_expiry': int(decoded.get('cltv_expiry', 0))
            }
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to decode payment request: {e}")
            return None


# =============================================================================
# HIGH-LEVEL FUNCTIONS FOR BOT INTEGRATION
# =============================================================================

def node_summary(info: Optional[Dict]) -> Dict:
    """Fields of getinfo shown by /info"""
    if not info:
        return {'alias': 'unknown', 'synced': False, 'channels': 0, 'block_height': 0}
    return {
        'alias': info.get('alias', 'unknown'),
        'synced': bool(info.get('synced_to_chain')) and bool(info.get('synced_to_graph', True)),
        'channels': int(info.get('num_active_channels', 0) or 0),
        'block_height': int(info.get('block_height', 0) or 0),
    }


def check_lnd_connection(client: LNDClient = None) -> bool:
    """Check if LND is available and responding"""
    client = client or LNDClient()
    info = client.get_info()
    if info and info.get('synced_to_chain'):
        logger.info(f"LND connected: {info.get('alias', 'Unknown')}")
        return True
    logger.warning("LND not reachable or not fully synced")
    return False
