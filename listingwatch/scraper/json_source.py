"""JSON page crawl source.

Fetches one page of marketplace listings from a JSON search endpoint. The
endpoint URL, query parameter names and the key holding the items list all
come from the source config, along with the field mapping onto our schema.
"""

import httpx
import logging
from typing import List, Optional

from listingwatch.errors import FetchError
from listingwatch.scraper.base_source import BaseCrawlSource

logger = logging.getLogger(__name__)


class JsonPageSource(BaseCrawlSource):
    """Concrete source for paginated JSON listing endpoints."""

    def __init__(self, config: dict, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.get_timeout(), headers=self.get_headers()
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def build_params(self, segment: str, page_number: int) -> dict:
        params = dict(self.config.get("static_params", {}))
        params[self.config.get("page_param", "page")] = page_number
        segment_param = self.config.get("segment_param")
        if segment_param and segment != "all":
            params[segment_param] = segment
        return params

    async def fetch_page(self, segment: str, page_number: int) -> List[dict]:
        base_url = self.config.get("base_url")
        if not base_url:
            raise FetchError(page_number, f"No base_url configured for source '{self.source_name}'")

        params = self.build_params(segment, page_number)
        logger.info("Fetching %s page %d (segment=%s)", self.source_name, page_number, segment)

        try:
            response = await self._get_client().get(base_url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise FetchError(page_number, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FetchError(page_number, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise FetchError(page_number, f"Invalid JSON: {e}") from e

        items = data
        items_key = self.config.get("items_key")
        if items_key and isinstance(data, dict):
            items = data.get(items_key)
        if not isinstance(items, list):
            raise FetchError(page_number, "Response did not contain a listing array")

        records = [self.map_fields(item) for item in items if isinstance(item, dict)]
        logger.info("%s page %d: %d records", self.source_name, page_number, len(records))
        return records
