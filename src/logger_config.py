"""
===============================================================================
CENTRALIZED LOGGING CONFIGURATION FOR LIGHTNING P2P ESCROW BOT
===============================================================================
Provides logging infrastructure with synchronous file rotation and sensitive
data filtering.

Log Format: YYYY-MM-DD HH:MM:SS | LEVEL | CATEGORY | ENTITY | ACTION | DETAILS
Categories: USER_INTERACTION, ORDER_STATE, PAYMENT, SYSTEM, ERROR
"""

import os
import logging
import logging.handlers
import atexit
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

from log_filters import SensitiveDataFilter, LogEventFilter


class EscrowBotLogFormatter(logging.Formatter):
    """
    Custom formatter implementing the required log format:
    YYYY-MM-DD HH:MM:SS | LEVEL | CATEGORY | ENTITY | ACTION | DETAILS
    """

    def format(self, record):
        # Extract custom fields from log record
        category = getattr(record, 'category', 'SYSTEM')
        entity = getattr(record, 'entity', '')
        action = getattr(record, 'action', '')
        details = getattr(record, 'details', '')

        # Format timestamp in UTC
        dt = datetime.fromtimestamp(record.created, timezone.utc)
        timestamp = dt.strftime('%Y-%m-%d %H:%M:%S')

        parts = [
            timestamp,
            record.levelname,
            category,
            entity,
            action,
            details if details else record.getMessage()
        ]

        return ' | '.join(str(part) for part in parts)


class EscrowBotLogger:
    """
    Structured logger for the escrow bot: one rotating file per category
    plus an errors file, all passed through SensitiveDataFilter.
    """

    def __init__(self, logs_dir: Optional[str] = None):
        self.logs_dir = Path(logs_dir or os.getenv('LOG_DIR', 'logs'))
        self.sensitive_filter = SensitiveDataFilter()
        self._setup_directories()
        self._setup_loggers()

    def _setup_directories(self):
        """Create logs directory structure"""
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        log_files = [
            'bot.log',
            'user_interactions.log',
            'orders.log',
            'payments.log',
            'errors.log'
        ]

        for log_file in log_files:
            (self.logs_dir / log_file).touch(exist_ok=True)

    def _setup_loggers(self):
        """Configure all loggers with proper handlers and filters"""

        # Main bot logger - system events
        self.main_logger = self._create_logger(
            'escrow_bot',
            self.logs_dir / 'bot.log',
            level=logging.INFO
        )

        self.user_logger = self._create_logger(
            'escrow_bot.user',
            self.logs_dir / 'user_interactions.log',
            level=logging.INFO,
            filter_category='USER_INTERACTION'
        )

        # Order status transitions
        self.order_logger = self._create_logger(
            'escrow_bot.order',
            self.logs_dir / 'orders.log',
            level=logging.INFO,
            filter_category='ORDER_STATE'
        )

        # Hold invoice and payout events
        self.payment_logger = self._create_logger(
            'escrow_bot.payment',
            self.logs_dir / 'payments.log',
            level=logging.INFO,
            filter_category='PAYMENT'
        )

        # Error-only logger
        self.error_logger = self._create_logger(
            'escrow_bot.error',
            self.logs_dir / 'errors.log',
            level=logging.ERROR
        )

        # Register cleanup on exit
        atexit.register(self.shutdown)

    def _create_logger(self, name: str, log_file: Path, level: int,
                       filter_category: Optional[str] = None) -> logging.Logger:
        """Create a configured logger with file rotation and filtering"""

        logger = logging.getLogger(name)
        logger.setLevel(level)

        # Prevent duplicate handlers
        if logger.handlers:
            return logger

        # Create rotating file handler (10MB max, keep 30 files)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=30,
            encoding='utf-8'
        )

        file_handler.setFormatter(EscrowBotLogFormatter())
        file_handler.addFilter(self.sensitive_filter)

        if filter_category:
            file_handler.addFilter(LogEventFilter(category=filter_category))

        logger.addHandler(file_handler)
        logger.propagate = False  # Prevent duplicate logging

        return logger

    def shutdown(self):
        """Flush and close every handler we own"""
        for logger in (self.main_logger, self.user_logger, self.order_logger,
                       self.payment_logger, self.error_logger):
            for handler in logger.handlers:
                handler.flush()

    # =========================================================================
    # USER INTERACTIONS
    # =========================================================================

    def log_user_interaction(self, user_id: int, action: str, details: str = '',
                             level: int = logging.INFO):
        """Log user interaction events"""
        self._log_with_context(
            self.user_logger,
            level,
            category='USER_INTERACTION',
            entity=f'user_{user_id}',
            action=action,
            details=details
        )

    def log_command(self, user_id: int, command: str, details: Dict[str, Any] = None):
        """Log command execution"""
        details_str = self._format_details(details) if details else ''
        self.log_user_interaction(
            user_id=user_id,
            action=command,
            details=details_str
        )

    def log_button_click(self, user_id: int, callback_data: str, context: str = ''):
        """Log button click events"""
        details = f"callback={callback_data}"
        if context:
            details += f" context={context}"

        self.log_user_interaction(
            user_id=user_id,
            action='button_click',
            details=details
        )

    def log_user_registration(self, user_id: int, username: str = ''):
        details = f"username={username}" if username else ''
        self.log_user_interaction(user_id=user_id, action='user_registration', details=details)

    # =========================================================================
    # ORDERS AND PAYMENTS
    # =========================================================================

    def log_order_transition(self, order_id: int, old_status: str, new_status: str,
                             actor: str = 'system', details: str = ''):
        """Log an accepted order status change"""
        text = f"from={old_status} to={new_status} actor={actor}"
        if details:
            text += f" {details}"
        self._log_with_context(
            self.order_logger,
            logging.INFO,
            category='ORDER_STATE',
            entity=f'order_{order_id}',
            action='transition',
            details=text
        )

    def log_payment(self, order_id: int, action: str, details: str = '',
                    level: int = logging.INFO):
        """Log hold invoice and payout events"""
        self._log_with_context(
            self.payment_logger,
            level,
            category='PAYMENT',
            entity=f'order_{order_id}',
            action=action,
            details=details
        )

    # =========================================================================
    # SYSTEM AND ERRORS
    # =========================================================================

    def log_error(self, message: str, exception: Exception = None,
                  user_id: Optional[int] = None, context: str = ''):
        """Log error events"""
        entity = f'user_{user_id}' if user_id else 'system'
        details = message

        if exception:
            details += f" | exception={type(exception).__name__}: {str(exception)}"
        if context:
            details += f" | context={context}"

        self._log_with_context(
            self.error_logger,
            logging.ERROR,
            category='ERROR',
            entity=entity,
            action='error',
            details=details
        )

    def log_system_event(self, action: str, details: str = '', level: int = logging.INFO):
        """Log system-level events"""
        self._log_with_context(
            self.main_logger,
            level,
            category='SYSTEM',
            entity='bot',
            action=action,
            details=details
        )

    def _log_with_context(self, logger: logging.Logger, level: int,
                          category: str, entity: str, action: str, details: str):
        """Internal method to log with structured context"""
        filtered_details = self.sensitive_filter._filter_message(details)

        record = logger.makeRecord(
            logger.name, level, '', 0, filtered_details, None, None
        )
        record.category = category
        record.entity = entity
        record.action = action
        record.details = filtered_details

        logger.handle(record)

    def _format_details(self, details: Dict[str, Any]) -> str:
        """Format details dictionary as key=value pairs"""
        if not details:
            return ''

        return ' '.join(f"{key}={value}" for key, value in details.items())


# Global logger instance
_bot_logger = None


def get_bot_logger() -> EscrowBotLogger:
    """Get the global EscrowBotLogger instance"""
    global _bot_logger
    if _bot_logger is None:
        _bot_logger = EscrowBotLogger()
    return _bot_logger


def init_logging() -> EscrowBotLogger:
    """Initialize logging - call this on bot startup"""
    return get_bot_logger()
