"""Change detection between a baseline snapshot and a fresh crawl.

Compares observed listings against the baseline by identity and fingerprint,
producing new / modified / price_changed / removed changes. Removal is only
inferred for baseline listings whose last known location lies inside the
pages this scan actually fetched, so a partial crawl never reports listings
on uncrawled pages as deleted.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from listingwatch.api.schemas import ChangeType, Listing
from listingwatch.pipeline.fingerprint import TRACKED_FIELDS

# Fields whose sole change makes a modification a price change
PRICE_FIELDS = ("asking_price",)


@dataclass(frozen=True)
class ScanCoverage:
    """The segment and successfully fetched pages of one scan."""
    segment: str
    pages: FrozenSet[int] = frozenset()

    def covers(self, listing: Listing) -> bool:
        return listing.segment == self.segment and listing.page in self.pages


@dataclass(frozen=True)
class DetectedChange:
    """An unscored change between two baseline states."""
    listing_id: str
    change_type: ChangeType
    before: Optional[Listing] = None
    after: Optional[Listing] = None
    changed_fields: Tuple[str, ...] = ()


@dataclass
class DiffResult:
    changes: List[DetectedChange] = field(default_factory=list)
    listings: Dict[str, Listing] = field(default_factory=dict)
    unchanged_count: int = 0
    carried_count: int = 0


def dedupe_observed(observed: Iterable[Listing]) -> Dict[str, Listing]:
    """Collapse repeated ids (e.g. pagination overlap); last write wins."""
    result: Dict[str, Listing] = {}
    for listing in observed:
        result[listing.listing_id] = listing
    return result


def changed_fields(before: Listing, after: Listing) -> Tuple[str, ...]:
    return tuple(f for f in TRACKED_FIELDS if getattr(before, f) != getattr(after, f))


def classify_modification(fields: Tuple[str, ...]) -> ChangeType:
    if fields and all(f in PRICE_FIELDS for f in fields):
        return ChangeType.PRICE_CHANGED
    return ChangeType.MODIFIED


def diff_listings(
    baseline: Mapping[str, Listing],
    observed: Iterable[Listing],
    coverage: ScanCoverage,
    now: str,
) -> DiffResult:
    """Diff observed listings against the baseline.

    Args:
        baseline: Current snapshot listings keyed by id.
        observed: Listings built from this scan's fetched pages.
        coverage: Segment and pages fetched successfully by this scan.
        now: Scan timestamp used for last_seen / last_modified.

    Returns:
        DiffResult whose `changes` are sorted by listing id and whose
        `listings` is the complete next snapshot.
    """
    current = dedupe_observed(observed)
    result = DiffResult()

    for listing_id, seen in current.items():
        previous = baseline.get(listing_id)
        if previous is None:
            result.changes.append(DetectedChange(listing_id, ChangeType.NEW, after=seen))
            result.listings[listing_id] = seen
            continue

        if previous.fingerprint == seen.fingerprint:
            result.listings[listing_id] = previous.model_copy(update={
                "last_seen": now, "segment": seen.segment, "page": seen.page,
            })
            result.unchanged_count += 1
            continue

        updated = seen.model_copy(update={
            "first_seen": previous.first_seen, "last_seen": now, "last_modified": now,
        })
        fields = changed_fields(previous, updated)
        result.changes.append(DetectedChange(
            listing_id, classify_modification(fields),
            before=previous, after=updated, changed_fields=fields,
        ))
        result.listings[listing_id] = updated

    for listing_id, previous in baseline.items():
        if listing_id in current:
            continue
        if coverage.covers(previous):
            result.changes.append(DetectedChange(listing_id, ChangeType.REMOVED, before=previous))
        else:
            result.listings[listing_id] = previous
            result.carried_count += 1

    result.changes.sort(key=lambda c: c.listing_id)
    return result


def build_change_summary(changes: Iterable[DetectedChange]) -> Dict[str, int]:
    """Count changes per type for scan statistics and logging."""
    summary = {f"{t.value}_count": 0 for t in ChangeType}
    total = 0
    for change in changes:
        summary[f"{change.change_type.value}_count"] += 1
        total += 1
    summary["total_count"] = total
    return summary
