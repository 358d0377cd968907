"""Pydantic models for listings, change records, scan runs and API payloads."""

from enum import Enum
from typing import Optional, List, Dict

from pydantic import BaseModel, ConfigDict, Field


class ListingStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    REMOVED = "removed"


class ChangeType(str, Enum):
    NEW = "new"
    REMOVED = "removed"
    MODIFIED = "modified"
    PRICE_CHANGED = "price_changed"


class ScoreCategory(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _CATEGORY_ORDER.index(self)


_CATEGORY_ORDER = [
    ScoreCategory.LOW, ScoreCategory.MEDIUM,
    ScoreCategory.HIGH, ScoreCategory.CRITICAL,
]


class ScanStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Listing(BaseModel):
    """A marketplace listing as held in the baseline snapshot."""
    model_config = ConfigDict(frozen=True)

    listing_id: str
    fingerprint: str
    title: Optional[str] = None
    url: Optional[str] = None
    asking_price: Optional[float] = None
    monthly_revenue: Optional[float] = None
    monthly_profit: Optional[float] = None
    category: Optional[str] = None
    status: ListingStatus = ListingStatus.ACTIVE
    # Where the listing was last observed; drives removal scoping.
    segment: str = "all"
    page: int = 1
    first_seen: str
    last_seen: str
    last_modified: str


class BaselineSnapshot(BaseModel):
    """The full current listing set, versioned for optimistic concurrency."""
    version: int = 0
    as_of: Optional[str] = None
    listings: Dict[str, Listing] = {}


class ChangeRecord(BaseModel):
    """One detected change, scored and stamped. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    change_id: str
    scan_id: str
    listing_id: str
    change_type: ChangeType
    changed_fields: List[str] = []
    before: Optional[Listing] = None
    after: Optional[Listing] = None
    score: float
    scored_category: ScoreCategory
    detected_at: str


class ScanRun(BaseModel):
    """Lifecycle record of a single scan."""
    scan_id: str
    trigger: str = "manual"
    segment: str = "all"
    started_at: str
    completed_at: Optional[str] = None
    status: ScanStatus = ScanStatus.RUNNING
    pages_requested: int = 0
    pages_fetched: int = 0
    listings_observed: int = 0
    parse_errors: int = 0
    change_count: int = 0
    snapshot_version: Optional[int] = None
    error: Optional[str] = None
    failure_kind: Optional[str] = None


class ScanRequest(BaseModel):
    """Request to start a scan. Unset fields fall back to configured defaults."""
    segment: Optional[str] = None
    page_budget: Optional[int] = Field(default=None, ge=1, le=500)


class ScanAccepted(BaseModel):
    scan_id: str
    status: str
    poll_url: str
