"""Abstract base for crawl sources.

A crawl source is the black-box page fetcher the scan engine consumes: given
a segment and a page number it returns the raw listing records on that page,
or raises FetchError. Each concrete source implements fetch_page(); the base
class provides shared config access.
"""

from abc import ABC, abstractmethod
from typing import List


class BaseCrawlSource(ABC):
    """Abstract base class for all marketplace crawl sources."""

    def __init__(self, config: dict):
        self.config = config
        self.source_name = config.get("source", "unknown")

    @abstractmethod
    async def fetch_page(self, segment: str, page_number: int) -> List[dict]:
        """Fetch the raw listing records of one page.

        Records are dicts keyed by the engine's field names (see
        get_field_map). They may be malformed; the engine validates them.

        Raises:
            FetchError: The page could not be retrieved.
        """
        ...

    async def close(self):
        """Release any held connections."""

    def get_field_map(self) -> dict:
        """Get the field mapping from our field names to source keys."""
        return self.config.get("field_map", {})

    def get_timeout(self) -> float:
        return self.config.get("timeout_seconds", 30.0)

    def get_headers(self) -> dict:
        """Get request headers from config."""
        return self.config.get("request_headers", {})

    def map_fields(self, item: dict) -> dict:
        """Rename source keys to engine field names; unmapped keys pass through."""
        field_map = self.get_field_map()
        record = dict(item)
        for ours, theirs in field_map.items():
            if theirs in item:
                record[ours] = item[theirs]
        return record
