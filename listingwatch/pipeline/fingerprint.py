"""Listing identity and content fingerprints.

The fingerprint is a SHA-256 digest over a canonical JSON encoding of every
tracked field. Two observations of an unchanged listing always produce the
same digest regardless of field order, markup or incidental whitespace.
"""

import hashlib
import json
import math
from typing import Mapping, Tuple

from listingwatch.api.schemas import Listing
from listingwatch.errors import MalformedRecord
from listingwatch.pipeline.normalizer import (
    clean_text, parse_money, normalize_status, normalize_category,
)

# Candidate keys for the stable external identifier, in priority order
ID_FIELDS = ("listing_id", "id", "listingId")

MONEY_FIELDS = ("asking_price", "monthly_revenue", "monthly_profit")
TEXT_FIELDS = ("title", "url")

# Every field that takes part in change detection
TRACKED_FIELDS = ("title", "url", "asking_price", "monthly_revenue",
                  "monthly_profit", "category", "status")


def extract_id(raw: Mapping) -> str:
    """Return the stable identifier of a raw record or raise MalformedRecord."""
    for key in ID_FIELDS:
        value = raw.get(key)
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    raise MalformedRecord("Record has no stable identifier", dict(raw))


def _canonical_value(value):
    if value is None:
        return None
    if hasattr(value, "value"):  # enums
        value = value.value
    if isinstance(value, (int, float)):
        return round(float(value), 2)
    return clean_text(value)


def compute_fingerprint(fields: Mapping) -> str:
    """Digest the tracked fields of a listing. Missing fields count as None."""
    payload = {key: _canonical_value(fields.get(key)) for key in TRACKED_FIELDS}
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def normalize_fields(raw: Mapping) -> dict:
    """Normalize the tracked fields of a raw record.

    Raises MalformedRecord when a money field is present but unreadable
    or negative.
    """
    fields = {}
    for key in TEXT_FIELDS:
        fields[key] = clean_text(raw.get(key))

    for key in MONEY_FIELDS:
        try:
            amount = parse_money(raw.get(key))
        except ValueError as e:
            raise MalformedRecord(f"Invalid {key}: {e}", dict(raw)) from e
        if amount is not None and (math.isnan(amount) or amount < 0):
            raise MalformedRecord(f"Invalid {key}: {amount}", dict(raw))
        fields[key] = amount

    fields["category"] = normalize_category(raw.get("category"))
    fields["status"] = normalize_status(raw.get("status"))
    return fields


def fingerprint_record(raw: Mapping) -> Tuple[str, str]:
    """Return (id, fingerprint) for a raw record."""
    listing_id = extract_id(raw)
    return listing_id, compute_fingerprint(normalize_fields(raw))


def build_listing(raw: Mapping, segment: str, page: int, observed_at: str) -> Listing:
    """Turn a raw record into a Listing observed at `observed_at`.

    All three timestamps are set to the observation time; the differ carries
    `first_seen` and `last_modified` forward from the baseline where needed.
    """
    listing_id = extract_id(raw)
    fields = normalize_fields(raw)
    return Listing(
        listing_id=listing_id,
        fingerprint=compute_fingerprint(fields),
        segment=segment,
        page=page,
        first_seen=observed_at,
        last_seen=observed_at,
        last_modified=observed_at,
        **fields,
    )
