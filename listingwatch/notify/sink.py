"""Notification sinks for scored change sets.

The orchestrator hands each successful scan's full change set to a sink once,
after the baseline commit. Delivery is at-least-once from the engine's side:
a sink failure is logged by the caller and never rolls the scan back.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from listingwatch.api.schemas import ChangeRecord, ChangeType, ScoreCategory
from listingwatch.resilience.retry import retry_async

logger = logging.getLogger(__name__)

# Notification priority per scored category
PRIORITY = {
    ScoreCategory.CRITICAL: "high",
    ScoreCategory.HIGH: "high",
    ScoreCategory.MEDIUM: "normal",
    ScoreCategory.LOW: "low",
}


def _money(value: Optional[float]) -> str:
    return f"${value:,.0f}" if value is not None else "n/a"


def build_subject(change: ChangeRecord) -> str:
    """One-line human summary of a change."""
    listing = change.after or change.before
    title = (listing.title if listing and listing.title else change.listing_id)

    if change.change_type == ChangeType.NEW:
        return f"New listing: {title} ({_money(listing.asking_price)})"
    if change.change_type == ChangeType.REMOVED:
        return f"Listing removed: {title}"
    if change.change_type == ChangeType.PRICE_CHANGED:
        old, new = change.before.asking_price, change.after.asking_price
        if old and new is not None:
            pct = (new - old) / old * 100
            label = "Price drop" if pct < 0 else "Price increase"
            return f"{label}: {title} {_money(old)} -> {_money(new)} ({pct:+.0f}%)"
        return f"Price change: {title} {_money(old)} -> {_money(new)}"
    return f"Listing updated: {title} ({', '.join(change.changed_fields) or 'details'})"


class NotificationSink(ABC):
    @abstractmethod
    async def deliver(self, changes: List[ChangeRecord]):
        """Deliver one scan's change set."""
        ...

    async def close(self):
        """Release any held connections."""


class LogSink(NotificationSink):
    """Writes each change to the log. Used when no webhook is configured."""

    async def deliver(self, changes: List[ChangeRecord]):
        if not changes:
            logger.info("No changes to deliver")
            return
        for change in changes:
            logger.info(
                "[%s %.0f] %s", change.scored_category.value, change.score, build_subject(change)
            )


class WebhookSink(NotificationSink):
    """POSTs a JSON payload of notification-worthy changes to a webhook."""

    def __init__(
        self,
        url: str,
        min_category: ScoreCategory = ScoreCategory.MEDIUM,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.min_category = min_category
        self._client = client or httpx.AsyncClient(timeout=15.0)

    def build_payload(self, changes: List[ChangeRecord]) -> dict:
        return {
            "event": "listing_monitoring_alert",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "scan_id": changes[0].scan_id,
            "count": len(changes),
            "changes": [
                {
                    "priority": PRIORITY[c.scored_category],
                    "subject": build_subject(c),
                    **c.model_dump(mode="json"),
                }
                for c in changes
            ],
        }

    @retry_async(max_attempts=3, base_delay=2.0, max_delay=30.0, retry_on=(httpx.HTTPError,))
    async def _post(self, payload: dict):
        response = await self._client.post(self.url, json=payload)
        response.raise_for_status()

    async def deliver(self, changes: List[ChangeRecord]):
        worthy = [c for c in changes if c.scored_category.rank >= self.min_category.rank]
        if not worthy:
            logger.info("No changes at or above %s; webhook skipped", self.min_category.value)
            return
        await self._post(self.build_payload(worthy))
        logger.info("Delivered %d change(s) to webhook", len(worthy))

    async def close(self):
        await self._client.aclose()


def create_sink(webhook_url: str = "", min_category: ScoreCategory = ScoreCategory.MEDIUM) -> NotificationSink:
    if webhook_url:
        return WebhookSink(webhook_url, min_category=min_category)
    return LogSink()
