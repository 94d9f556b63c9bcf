"""
Phone key normalization.

Every sender/recipient identifier is reduced to one canonical key of the
form +<countrycode><digits> before it is used to look up a conversation.
"""

import re

DEFAULT_COUNTRY_CODE = "39"
CHANNEL_PREFIX = "whatsapp:"

_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s+")


def strip_channel_prefix(raw, prefix: str = CHANNEL_PREFIX) -> str:
    """Drop the provider channel prefix (case-insensitive) and surrounding whitespace."""
    if raw is None:
        return ""
    value = str(raw).strip()
    if prefix and value.lower().startswith(prefix.lower()):
        value = value[len(prefix):]
    return value.strip()


def normalize(
    raw,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
    prefix: str = CHANNEL_PREFIX,
) -> str:
    """
    Normalize a raw phone identifier to a PhoneKey.

    Returns "" when the input carries no digits. Never raises.

    >>> normalize("whatsapp:+39 333 1234567")
    '+393331234567'
    >>> normalize("3331234567")
    '+393331234567'
    """
    value = _WHITESPACE.sub("", strip_channel_prefix(raw, prefix))
    if not value:
        return ""

    if value.startswith("+"):
        digits = _NON_DIGITS.sub("", value[1:])
    elif value.startswith("00"):
        digits = _NON_DIGITS.sub("", value[2:])
    else:
        digits = _NON_DIGITS.sub("", value)
        if digits and not digits.startswith(default_country_code):
            digits = default_country_code + digits

    if not digits:
        return ""
    return "+" + digits


def build_channel_address(
    raw,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
    prefix: str = CHANNEL_PREFIX,
) -> str:
    """Provider address for a number, e.g. whatsapp:+393331234567, or "" if invalid."""
    key = normalize(raw, default_country_code, prefix)
    if not key:
        return ""
    return f"{prefix}{key}"


def sender_address(
    configured: str,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
    prefix: str = CHANNEL_PREFIX,
) -> str:
    """Sender address from configuration; a value already carrying the prefix is used as-is."""
    if configured and configured.startswith(prefix):
        return configured
    return build_channel_address(configured, default_country_code, prefix)
