"""Merchant name canonicalization.

Bank descriptions carry the same merchant in many spellings
("SQ *BLUE BOTTLE COFFEE 94103", "Blue Bottle Coffee #12"). This module
reduces them to a display name and a lowercase alphanumeric key that the
categorizer, the merchant rules and the merchant cache all share.

Depends on ``lookups.py`` only.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from statement_importer.lookups import MERCHANT_ALIASES, POS_PREFIXES

# Applied in order; each pass sees the output of the previous one.
_TRAILING_PATTERNS = (
    re.compile(r"\s+#\d+$"),  # #12345
    re.compile(r"\s+\d{5,}$"),  # long reference numbers
    re.compile(r"\s+\d{2}/\d{2}$"),  # MM/DD suffix
    re.compile(r"\s+[A-Z]{2}\s+\d{5}(?:-\d{4})?$"),  # state + ZIP
    re.compile(r"\s+[A-Z]{2}$"),  # state code
    re.compile(r"\s+\d{3}-\d{3}-\d{4}$"),  # phone
    re.compile(r"\s+x{2,}\d{4}$", re.IGNORECASE),  # masked card
    re.compile(r"\s+REF\s*#?\s*\w+$", re.IGNORECASE),
    re.compile(r"\s+AUTH\s*#?\s*\w+$", re.IGNORECASE),
)

_NON_KEY_CHARS = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class CleanedMerchant:
    """Result of :func:`clean_merchant_name`.

    Attributes:
        display_name: Human-readable merchant name.
        normalized_key: Lowercase alphanumerics of ``display_name``.
    """

    display_name: str
    normalized_key: str


def clean_merchant_name(raw: str | None) -> CleanedMerchant:
    """Canonicalize a raw merchant/description string.

    Steps:
    1. Strip one known POS/payment-processor prefix (longest match first,
       case-insensitive).
    2. Strip trailing reference numbers, dates, state/ZIP, phone numbers,
       masked card numbers and REF/AUTH tokens.
    3. If the residual contains a known merchant alias, use its display name;
       otherwise title-case the residual.

    Variants of one merchant always produce the same ``normalized_key``.

    Args:
        raw: Raw merchant or description text.

    Returns:
        A :class:`CleanedMerchant`; both fields are empty for blank input.
    """
    if not raw or not raw.strip():
        return CleanedMerchant(display_name="", normalized_key="")

    cleaned = _strip_pos_prefix(raw.strip())

    for pattern in _TRAILING_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.strip()

    if not cleaned:
        fallback = raw.strip()
        return CleanedMerchant(display_name=fallback, normalized_key=normalize_key(fallback))

    lower = cleaned.lower()
    for alias, display_name in MERCHANT_ALIASES:
        if alias in lower:
            return CleanedMerchant(display_name=display_name, normalized_key=normalize_key(display_name))

    display_name = _title_case(cleaned)
    return CleanedMerchant(display_name=display_name, normalized_key=normalize_key(display_name))


def extract_description_pattern(raw: str | None) -> str:
    """Extract a stable "company name" key from a raw description.

    Strips a POS prefix, checks known merchants, then keeps the leading
    tokens up to the first purely numeric token of six or more digits.

    Examples::

        "Prudential Payments 251117 824436798310054" -> "prudentialpayments"
        "AMZN MKTP US*AB1CD2EF3"                     -> "amazon"
        "7-ELEVEN STORE #1234"                       -> "7elevenstore1234"

    Returns:
        The key, or ``""`` when it would be shorter than three characters.
    """
    if not raw or not raw.strip():
        return ""

    cleaned = _strip_pos_prefix(raw.strip())
    if not cleaned:
        return ""

    lower = cleaned.lower()
    for alias, display_name in MERCHANT_ALIASES:
        if alias in lower:
            return normalize_key(display_name)

    meaningful: list[str] = []
    for token in cleaned.replace("#", "").split():
        if token.isdigit() and len(token) >= 6:
            break
        meaningful.append(token)

    pattern = normalize_key(" ".join(meaningful))
    return pattern if len(pattern) >= 3 else ""


def merchant_cache_key(raw: str | None) -> str:
    """Cache key under which a merchant's AI categorization is stored."""
    return f"merchant:cat:{clean_merchant_name(raw).normalized_key}"


def normalize_key(text: str) -> str:
    """Lowercase *text* and drop everything but ``a-z`` and ``0-9``."""
    return _NON_KEY_CHARS.sub("", text.lower())


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _strip_pos_prefix(text: str) -> str:
    upper = text.upper()
    for prefix in POS_PREFIXES:
        if upper.startswith(prefix):
            return text[len(prefix):].strip()
    return text


def _title_case(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in text.lower().split())
