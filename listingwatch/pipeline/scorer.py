"""Notification scoring for detected changes.

Each change gets a 0-100 score built from its type, the value level of the
listing and the magnitude of any price move. Category boundaries come from
configuration; a score sitting exactly on a boundary takes the higher
category.
"""

import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from listingwatch.api.schemas import ChangeRecord, ChangeType, Listing, ScoreCategory
from listingwatch.pipeline.differ import DetectedChange


@dataclass(frozen=True)
class ScoringThresholds:
    high_value_price: float = 100_000
    high_value_revenue: float = 10_000
    price_change_percent: float = 20.0
    price_change_absolute: float = 25_000
    # Revenue moves must exceed this to score
    revenue_change_absolute: float = 5_000
    categories_of_interest: Tuple[str, ...] = ()
    medium_boundary: float = 30.0
    high_boundary: float = 55.0
    critical_boundary: float = 80.0
    new_base: float = 40.0
    price_changed_base: float = 30.0
    removed_base: float = 15.0
    modified_base: float = 10.0

    def base_score(self, change_type: ChangeType) -> float:
        return {
            ChangeType.NEW: self.new_base,
            ChangeType.PRICE_CHANGED: self.price_changed_base,
            ChangeType.REMOVED: self.removed_base,
            ChangeType.MODIFIED: self.modified_base,
        }[change_type]


def categorize(score: float, thresholds: ScoringThresholds) -> ScoreCategory:
    """Map a score onto a category. Boundaries are inclusive."""
    if score >= thresholds.critical_boundary:
        return ScoreCategory.CRITICAL
    if score >= thresholds.high_boundary:
        return ScoreCategory.HIGH
    if score >= thresholds.medium_boundary:
        return ScoreCategory.MEDIUM
    return ScoreCategory.LOW


def _value_points(listing: Optional[Listing], thresholds: ScoringThresholds) -> float:
    if listing is None:
        return 0.0
    points = 0.0
    if listing.asking_price is not None and listing.asking_price >= thresholds.high_value_price:
        points += 25
    if listing.monthly_revenue is not None and listing.monthly_revenue >= thresholds.high_value_revenue:
        points += 20
    interest = {c.lower() for c in thresholds.categories_of_interest}
    if listing.category and listing.category.lower() in interest:
        points += 10
    return points


def _price_move_points(before: Listing, after: Listing, thresholds: ScoringThresholds) -> float:
    old, new = before.asking_price, after.asking_price
    if old is None or new is None or old == new:
        return 0.0

    delta = new - old
    points = 0.0
    if old > 0:
        percent = abs(delta) / old * 100
        if percent >= thresholds.price_change_percent:
            points += 20
        elif percent >= thresholds.price_change_percent / 2:
            points += 10
    if abs(delta) >= thresholds.price_change_absolute:
        points += 10
    # Increases count for half
    if delta > 0:
        points /= 2
    return points


def _revenue_move_points(before: Listing, after: Listing, thresholds: ScoringThresholds) -> float:
    old, new = before.monthly_revenue, after.monthly_revenue
    if old is None or new is None:
        return 0.0
    return 5.0 if abs(new - old) > thresholds.revenue_change_absolute else 0.0


def score_change(
    change: DetectedChange,
    thresholds: Optional[ScoringThresholds] = None,
) -> Tuple[float, ScoreCategory]:
    """Score a change. Pure and deterministic."""
    thresholds = thresholds or ScoringThresholds()
    score = thresholds.base_score(change.change_type)

    subject = change.after if change.after is not None else change.before
    score += _value_points(subject, thresholds)

    if change.before is not None and change.after is not None:
        score += _price_move_points(change.before, change.after, thresholds)
        score += _revenue_move_points(change.before, change.after, thresholds)

    score = round(max(0.0, min(100.0, score)), 2)
    return score, categorize(score, thresholds)


def build_change_record(
    change: DetectedChange,
    scan_id: str,
    detected_at: str,
    thresholds: Optional[ScoringThresholds] = None,
) -> ChangeRecord:
    score, category = score_change(change, thresholds)
    return ChangeRecord(
        change_id=str(uuid.uuid4()),
        scan_id=scan_id,
        listing_id=change.listing_id,
        change_type=change.change_type,
        changed_fields=list(change.changed_fields),
        before=change.before,
        after=change.after,
        score=score,
        scored_category=category,
        detected_at=detected_at,
    )
