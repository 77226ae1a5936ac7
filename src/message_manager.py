#!/usr/bin/env python3
"""
===============================================================================
MESSAGE MANAGER - LIGHTNING P2P ESCROW BOT
===============================================================================
Centralized message management for the escrow bot.
Loads messages from messages.yaml and provides lookup by MSG-XXX ID or by
message key. Order events and error replies are looked up by key; the key is
what the order coordinator and OrderError.message_key use.
"""

import os
import yaml
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MESSAGES_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'messages.yaml')


class MessageManager:
    """
    Centralized message manager that loads from messages.yaml
    and provides MSG-XXX / key lookup with variable substitution.
    """

    def __init__(self, messages_path: str = None):
        """
        Initialize MessageManager by loading messages from YAML file.

        Args:
            messages_path: Path to messages.yaml file (defaults to the one next to this module)
        """
        self.messages_path = messages_path or DEFAULT_MESSAGES_PATH
        self.messages = {}
        self.message_index = {}  # MSG-XXX -> message data
        self.key_index = {}      # message key -> MSG-XXX
        self._load_messages()

    def _load_messages(self):
        """Load messages from YAML file and build the indexes"""
        if not os.path.exists(self.messages_path):
            logger.error(f"Messages file not found: {self.messages_path}")
            return

        try:
            with open(self.messages_path, 'r', encoding='utf-8') as file:
                self.messages = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML: {e}")
            self.messages = {}
            return

        self._build_message_index()
        logger.info(f"Loaded {len(self.message_index)} messages from {self.messages_path}")

    def _build_message_index(self):
        """
        Build MSG-XXX -> message index and key -> MSG-XXX index.
        Traverses all categories in the YAML structure.
        """
        self.message_index = {}
        self.key_index = {}

        for category_name, category in self.messages.items():
            if not isinstance(category, dict):
                continue
            for message_key, message_data in category.items():
                if isinstance(message_data, dict) and 'id' in message_data:
                    msg_id = message_data['id']
                    if message_key in self.key_index:
                        logger.warning(f"Duplicate message key '{message_key}' in category '{category_name}'")
                    self.message_index[msg_id] = {
                        'text': message_data.get('text', ''),
                        'description': message_data.get('description', ''),
                        'category': category_name,
                        'key': message_key,
                        'variables': message_data.get('variables', [])
                    }
                    self.key_index[message_key] = msg_id

        logger.debug(f"Built message index with {len(self.message_index)} entries")

    def resolve_id(self, message_id: str) -> Optional[str]:
        """MSG-XXX id for either an id or a message key"""
        if message_id in self.message_index:
            return message_id
        return self.key_index.get(message_id)

    def has_message(self, message_id: str) -> bool:
        return self.resolve_id(message_id) is not None

    def get_message(self, message_id: str, **kwargs) -> str:
        """
        Get message by MSG-XXX ID or key with variable substitution.

        Args:
            message_id: Message ID (e.g., 'MSG-001') or key (e.g., 'order_created')
            **kwargs: Variables to substitute in the message

        Returns:
            Formatted message with variables substituted
        """
        msg_id = self.resolve_id(message_id)
        if msg_id is None:
            logger.error(f"Message ID '{message_id}' not found")
            return f"❌ Message {message_id} not found"

        text = self.message_index[msg_id]['text']

        try:
            return text.format(**kwargs)
        except (KeyError, AttributeError, IndexError) as e:
            logger.warning(f"Missing variable {e} for message {msg_id}")
            return text  # Return original text if substitution fails
        except ValueError as e:
            logger.error(f"Error formatting message {msg_id}: {e}")
            return text

    def format_amount(self, amount) -> str:
        """Format amount with dots as thousand separators (Latin format)"""
        return f"{int(amount):,}".replace(",", ".")

    def validate_message(self, message_id: str, required_vars: list) -> bool:
        """
        Validate that a message exists and has all required variables.

        Args:
            message_id: Message ID or key to validate
            required_vars: List of required variable names

        Returns:
            True if message is valid with all variables
        """
        msg_id = self.resolve_id(message_id)
        if msg_id is None:
            logger.error(f"Message {message_id} not found for validation")
            return False

        message_text = self.message_index[msg_id]['text']

        for var in required_vars:
            if f"{{{var}" not in message_text:
                logger.warning(f"Variable '{var}' not found in message {msg_id}")
                return False

        return True
