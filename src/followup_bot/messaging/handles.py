"""
Phone-key <-> channel handle conversion.

A handle is the channel's destination identifier for a direct chat
(``5511999998888@s.whatsapp.net``); a phone key is the bare digit string the
panel works with. Numbers typed without a country code get the configured
default prefix.
"""
import re

HANDLE_SUFFIX = "@s.whatsapp.net"
DEFAULT_COUNTRY_CODE = "55"

_NON_DIGITS = re.compile(r"\D+")


def normalize_phone(raw: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Strip formatting and make sure the number carries a country code.

    Args:
        raw: Phone number as typed (``"(11) 99999-8888"``).
        country_code: Prefix added when the digits do not already start with it.

    Returns:
        Digits-only phone key, or ``""`` if no digits were found.
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if not digits:
        return ""
    return digits if digits.startswith(country_code) else country_code + digits


def phone_key_to_handle(phone_key: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Build a direct-chat handle from a phone key.

    Raises:
        ValueError: If ``phone_key`` has no digits.
    """
    digits = normalize_phone(phone_key, country_code)
    if not digits:
        raise ValueError(f"Invalid phone number: {phone_key!r}")
    return f"{digits}{HANDLE_SUFFIX}"


def handle_to_phone_key(handle: str) -> str:
    """Digits of a handle (``"5511...@s.whatsapp.net"`` -> ``"5511..."``)."""
    return _NON_DIGITS.sub("", (handle or "").replace(HANDLE_SUFFIX, ""))


def is_direct_handle(handle: str) -> bool:
    """True for one-to-one chats; groups and broadcasts are ignored."""
    return bool(handle) and handle.endswith(HANDLE_SUFFIX)


def resolve_handle(target: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Accept either a full handle or a phone key and return a handle."""
    if is_direct_handle(target):
        return target
    return phone_key_to_handle(target, country_code)
