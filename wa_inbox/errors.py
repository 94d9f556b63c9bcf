"""
Exception taxonomy for the inbox core.

The HTTP layer maps each class to a status code (see main.py):
- ValidationError: 400, raised before any state is touched
- TransportError: 500, the provider refused or failed the send
- ConfigurationError: 500, the process is missing credentials or a sender
- StoreError: 500, the document store failed mid-pipeline
"""

from typing import Any, Dict, Optional


class InboxError(Exception):
    """Base class for all inbox errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(InboxError):
    """Inbound event or send request rejected before any mutation."""


class TransportError(InboxError):
    """Outbound send failed at the messaging provider."""


class ConfigurationError(InboxError):
    """Required provider configuration is missing."""


class StoreError(InboxError):
    """Underlying document store failure."""
