"""Vendor and Text Normalization.

Vendor names are normalized into a stable lookup key for the learning tables:
1. Converts to lowercase
2. Drops periods and apostrophes ("L.L.C." -> "llc", "Bob's" -> "bobs")
3. Turns remaining punctuation into spaces
4. Removes trailing business suffixes (LLC, Inc, Corp, Co, ...)
5. Collapses whitespace

Examples:
    "ACME Lumber Co."          -> "acme lumber"
    "  Acme   Lumber, Co "     -> "acme lumber"
    "Bright Spark Electric LLC" -> "bright spark electric"
    ""                         -> "unknown"
"""

import re
from typing import Iterable, List, Optional


UNKNOWN_VENDOR = "unknown"

# Legal entity suffixes removed from the end of a vendor name
BUSINESS_SUFFIXES = {
    "inc", "incorporated", "corp", "corporation", "co", "company",
    "llc", "ltd", "limited", "lp", "llp", "pllc", "pc",
}

_DROPPED_CHARS = re.compile(r"[.'’`]")
_PUNCTUATION = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")

# Separators used when splitting category names and free text into tokens
_TOKEN_SPLIT = re.compile(r"[\s\-_,&./]+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_vendor_name(name: Optional[str]) -> str:
    """Normalize a vendor name into a stable, case-insensitive key.

    Never raises. Empty or punctuation-only input yields "unknown".

    Args:
        name: Raw vendor name from extraction

    Returns:
        Normalized vendor key

    Examples:
        >>> normalize_vendor_name("ACME Lumber Co.")
        'acme lumber'
        >>> normalize_vendor_name("Acme Lumber Co")
        'acme lumber'
        >>> normalize_vendor_name(None)
        'unknown'
    """
    if not name or not isinstance(name, str):
        return UNKNOWN_VENDOR

    text = _DROPPED_CHARS.sub("", name.lower())
    text = _PUNCTUATION.sub(" ", text)
    tokens = _WHITESPACE.split(text.strip())
    tokens = [t for t in tokens if t]

    # Keep at least one token so "Co" alone is still a vendor
    while len(tokens) > 1 and tokens[-1] in BUSINESS_SUFFIXES:
        tokens.pop()

    result = " ".join(tokens)
    return result or UNKNOWN_VENDOR


def normalize_trade(trade: Optional[str]) -> Optional[str]:
    """Lowercase and trim a trade signal; blank becomes None."""
    if not trade:
        return None
    value = _WHITESPACE.sub(" ", trade.strip().lower())
    return value or None


def tokenize(text: Optional[str]) -> List[str]:
    """Split text into lowercase alphanumeric tokens longer than two characters.

    Examples:
        >>> tokenize("Electrical - Rough In")
        ['electrical', 'rough']
    """
    if not text:
        return []

    tokens = []
    for part in _TOKEN_SPLIT.split(text.lower()):
        if len(part) <= 2:
            continue
        cleaned = _NON_ALNUM.sub("", part)
        if cleaned:
            tokens.append(cleaned)
    return tokens


def normalize_keywords(keywords: Iterable[str]) -> List[str]:
    """Lowercase, trim and de-duplicate keywords, preserving order."""
    seen = set()
    result = []
    for keyword in keywords or []:
        if not keyword:
            continue
        value = keyword.strip().lower()
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result
