"""
Utility functions for the inbox API.
"""

import logging
import time
from typing import Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def public_url(url: str, base_url: Optional[str]) -> str:
    """
    Rebase a request URL onto the public base URL Twilio was configured with.

    Behind a proxy the app sees its internal host/scheme, while Twilio signs
    the URL it called.
    """
    if not base_url:
        return url
    base = urlsplit(base_url)
    requested = urlsplit(url)
    path = base.path.rstrip("/") + (requested.path or "/")
    return urlunsplit((base.scheme, base.netloc, path, requested.query, ""))


def verify_twilio_signature(url: str, params: Mapping[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify X-Twilio-Signature for a webhook request.

    Args:
        url: Full URL Twilio requested, including the query string
        params: Form parameters of the POST body
        signature: Value of the X-Twilio-Signature header
        auth_token: Twilio auth token

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not auth_token:
        logger.warning("Missing Twilio signature or auth token")
        return False

    is_valid = RequestValidator(auth_token).validate(url, dict(params), signature)
    logger.info(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
