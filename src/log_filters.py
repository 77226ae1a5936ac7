"""
===============================================================================
LOG FILTERS FOR LIGHTNING P2P ESCROW BOT - SENSITIVE DATA PROTECTION
===============================================================================
Keeps secrets out of log files: hold invoice preimages, Lightning invoices,
macaroons, API tokens and personal information.
"""

import re
import logging


class SensitiveDataFilter(logging.Filter):
    """
    Filter to remove or mask sensitive data from log messages.
    A leaked preimage would let anyone settle the seller's hold invoice.
    """

    def __init__(self):
        super().__init__()
        self._setup_patterns()

    def _setup_patterns(self):
        """Initialize regex patterns for sensitive data detection"""

        # Lightning Network patterns
        self.lightning_patterns = [
            # Lightning invoices (lnbc, lntb, lntbs, lnbcrt)
            re.compile(r'\b(lnbc|lntbs|lntb|lnbcrt)[a-zA-Z0-9]{100,2000}\b', re.IGNORECASE),
            # Lightning node public keys (66 hex characters)
            re.compile(r'\b[a-fA-F0-9]{66}\b'),
        ]

        # Preimages, payment hashes and other 32 byte secrets (64 hex characters)
        self.secret_patterns = [
            re.compile(r'\b[a-fA-F0-9]{64}\b'),
        ]

        # Macaroons are long hex blobs
        self.macaroon_patterns = [
            re.compile(r'\b[a-fA-F0-9]{100,}\b'),
        ]

        # API keys and tokens
        self.api_key_patterns = [
            re.compile(r'\b[Aa][Pp][Ii]_?[Kk][Ee][Yy]\s*[=:]\s*[\'"]?([a-zA-Z0-9_\-]{20,})[\'"]?'),
            re.compile(r'\b[Tt][Oo][Kk][Ee][Nn]\s*[=:]\s*[\'"]?([a-zA-Z0-9_\-]{20,})[\'"]?'),
            # Telegram bot token pattern
            re.compile(r'\b\d{8,10}:[a-zA-Z0-9_\-]{35}\b'),
        ]

        # Personal information patterns
        self.personal_patterns = [
            # Email addresses
            re.compile(r'\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b'),
            # Phone numbers (basic pattern)
            re.compile(r'\b(?:\+?1[-.\s]?)?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}\b'),
        ]

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Filter log record to remove sensitive data.
        Always keeps the record.
        """
        record.msg = self._filter_message(record.getMessage())
        record.args = ()  # Clear args to prevent re-formatting

        if hasattr(record, 'details'):
            record.details = self._filter_message(str(record.details))

        return True

    def _filter_message(self, message: str) -> str:
        """Apply all sensitive data filters to a message"""
        if not message:
            return message

        # Macaroons before shorter hex patterns eat their prefix
        for pattern in self.macaroon_patterns:
            message = pattern.sub("[MACAROON_FILTERED]", message)

        # Filter Lightning invoices (show first 10 chars + ...)
        for pattern in self.lightning_patterns:
            message = pattern.sub(lambda m: f"{m.group()[:10]}...", message)

        # Filter secrets (completely remove)
        for pattern in self.secret_patterns:
            message = pattern.sub("[SECRET_FILTERED]", message)

        for pattern in self.api_key_patterns:
            message = pattern.sub("[API_KEY_FILTERED]", message)

        message = self._filter_emails(message)
        message = self._filter_phone_numbers(message)

        return message

    def _filter_emails(self, message: str) -> str:
        """Mask email addresses while keeping domain for debugging"""
        def mask_email(match):
            email = match.group()
            local, domain = email.split('@', 1)
            masked_local = local[0] + '*' * (len(local) - 1) if len(local) > 1 else '*'
            return f"{masked_local}@{domain}"

        return self.personal_patterns[0].sub(mask_email, message)

    def _filter_phone_numbers(self, message: str) -> str:
        """Mask phone numbers"""
        return self.personal_patterns[1].sub("***-***-****", message)


class LogEventFilter(logging.Filter):
    """
    Filter to include only specific event categories in themed log files.
    Used by specialized loggers (orders.log, payments.log, etc.)
    """

    def __init__(self, category: str = None, level: int = None):
        super().__init__()
        self.category = category
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Filter records based on category and/or level.
        Returns True to include the record in the log.
        """
        if self.category:
            record_category = getattr(record, 'category', 'SYSTEM')
            if record_category != self.category:
                return False

        if self.level and record.levelno < self.level:
            return False

        return True
