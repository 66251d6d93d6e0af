"""
Field normalization for identity matching.

Every helper returns ``None`` for missing or blank input so that blocking keys
built from it are skipped rather than compared; null never equals null.
"""

from __future__ import annotations

import re

from rapidfuzz import utils

MIN_PHONE_DIGITS = 7
PHONE_SIGNIFICANT_DIGITS = 10

GMAIL_DOMAINS = frozenset({"gmail.com", "googlemail.com"})

DEFAULT_FREE_EMAIL_DOMAINS = (
    "gmail.com",
    "googlemail.com",
    "yahoo.com",
    "hotmail.com",
    "outlook.com",
    "live.com",
    "aol.com",
    "icloud.com",
    "me.com",
    "proton.me",
    "protonmail.com",
)

_COMPANY_SUFFIXES = frozenset({"inc", "llc", "ltd", "limited", "corp", "corporation", "co", "gmbh", "plc", "company"})
_NON_DIGITS = re.compile(r"\D")


def _clean_text(value: object | None) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim an email address; anything without an ``@`` is rejected."""

    token = _clean_text(value).lower()
    if not token or "@" not in token:
        return None
    local_part, _, domain = token.partition("@")
    if not local_part or not domain:
        return None
    return token


def canonical_email(value: object | None) -> str | None:
    """
    Normalize email for loose deterministic matching.

    - Lower-case entire address
    - Drop plus-addressing suffix (everything after '+') in the local part
    - Remove dots from Gmail local parts and fold googlemail.com into gmail.com
    """

    token = normalize_email(value)
    if token is None:
        return None
    local_part, domain = token.split("@", 1)
    if "+" in local_part:
        local_part = local_part.split("+", 1)[0]
    if domain in GMAIL_DOMAINS:
        local_part = local_part.replace(".", "")
        domain = "gmail.com"
    if not local_part:
        return None
    return f"{local_part}@{domain}"


def email_domain(value: object | None) -> str | None:
    token = normalize_email(value)
    if token is None:
        return None
    return token.split("@", 1)[1]


def normalize_phone(value: object | None) -> str | None:
    """
    Reduce a phone number to its significant digits.

    Formatting and country codes are stripped by keeping only the last ten
    digits; numbers with fewer than seven digits are too short to identify
    anyone and are discarded.
    """

    digits = _NON_DIGITS.sub("", _clean_text(value))
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return digits[-PHONE_SIGNIFICANT_DIGITS:]


def normalize_name(value: object | None) -> str | None:
    """Lower-case, strip punctuation and collapse whitespace."""

    token = utils.default_process(_clean_text(value))
    token = " ".join(token.split())
    return token or None


def normalize_company(value: object | None) -> str | None:
    """Normalize a company name and drop trailing legal-entity suffixes."""

    token = normalize_name(value)
    if token is None:
        return None
    parts = token.split()
    while len(parts) > 1 and parts[-1] in _COMPANY_SUFFIXES:
        parts.pop()
    return " ".join(parts)


def normalize_postal_code(value: object | None) -> str | None:
    token = _clean_text(value).upper().replace(" ", "")
    if not token:
        return None
    # ZIP+4 collapses to the five-digit ZIP
    if len(token) == 10 and token[5] == "-" and token[:5].isdigit():
        return token[:5]
    return token


def split_full_name(value: object | None) -> tuple[str | None, str | None]:
    """Split a display name into (first, last); single tokens are treated as a surname."""

    token = normalize_name(value)
    if token is None:
        return None, None
    parts = token.split()
    if len(parts) == 1:
        return None, parts[0]
    return parts[0], parts[-1]


def is_free_email_domain(domain: str | None, free_domains: tuple[str, ...] | frozenset[str]) -> bool:
    return bool(domain) and domain in free_domains
