"""Text and value normalization for raw marketplace records.

Layered cleaning applied before fingerprinting so that incidental differences
in source text (markup, whitespace, number formatting) never register as a
listing change.
"""

import re
import html
from typing import Optional

from listingwatch.api.schemas import ListingStatus

# Suffix multipliers used by marketplaces for abbreviated amounts
MONEY_SUFFIXES = {
    "k": 1_000,
    "m": 1_000_000,
    "b": 1_000_000_000,
}

STATUS_ALIASES = {
    "active": ListingStatus.ACTIVE,
    "open": ListingStatus.ACTIVE,
    "live": ListingStatus.ACTIVE,
    "for sale": ListingStatus.ACTIVE,
    "under offer": ListingStatus.ACTIVE,
    "sold": ListingStatus.SOLD,
    "closed": ListingStatus.SOLD,
    "completed": ListingStatus.SOLD,
    "removed": ListingStatus.REMOVED,
    "withdrawn": ListingStatus.REMOVED,
    "deleted": ListingStatus.REMOVED,
}

_MONEY_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


def strip_html(text: str) -> str:
    """Remove HTML tags and decode entities."""
    text = re.sub(r"<[^>]+>", "", text)
    return html.unescape(text)


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace runs and strip."""
    return re.sub(r"\s+", " ", text).strip()


def clean_text(raw) -> Optional[str]:
    """Strip markup and whitespace; empty strings become None."""
    if raw is None:
        return None
    text = normalize_whitespace(strip_html(str(raw)))
    return text or None


def parse_money(raw) -> Optional[float]:
    """Parse an amount like 120000, "$120,000", "45K" or "$1.2M".

    Returns None for missing values. Raises ValueError for values that are
    present but cannot be read as an amount.
    """
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(f"Not an amount: {raw!r}")
    if isinstance(raw, (int, float)):
        return float(raw)

    text = clean_text(raw)
    if not text:
        return None

    text = text.lower().replace(",", "").replace(" ", "")
    text = re.sub(r"^(usd|us\$|\$|€|£)", "", text)
    text = re.sub(r"(usd|eur|gbp)$", "", text)
    text = re.sub(r"/(mo|month)$", "", text)

    multiplier = 1
    if text and text[-1] in MONEY_SUFFIXES:
        multiplier = MONEY_SUFFIXES[text[-1]]
        text = text[:-1]

    if not _MONEY_RE.match(text):
        raise ValueError(f"Not an amount: {raw!r}")
    return float(text) * multiplier


def normalize_status(raw) -> ListingStatus:
    """Map source status labels onto ListingStatus; unknown labels are active."""
    text = clean_text(raw)
    if not text:
        return ListingStatus.ACTIVE
    return STATUS_ALIASES.get(text.lower(), ListingStatus.ACTIVE)


def normalize_category(raw) -> Optional[str]:
    return clean_text(raw)
