"""Tests for crawl sources and the source factory."""

import json

import httpx
import pytest
from listingwatch.errors import FetchError
from listingwatch.scraper.json_source import JsonPageSource
from listingwatch.scraper.source_factory import create_source, load_source_config

CONFIG = {
    "source": "test",
    "base_url": "https://marketplace.example.com/api/listings",
    "page_param": "p",
    "segment_param": "type",
    "items_key": "data",
    "static_params": {"sort": "newest"},
    "field_map": {"listing_id": "id", "asking_price": "price"},
}


def source_with(handler, config=CONFIG):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JsonPageSource(config, client=client)


class TestJsonPageSource:
    def test_build_params(self):
        source = JsonPageSource(CONFIG)
        assert source.build_params("saas", 3) == {"sort": "newest", "p": 3, "type": "saas"}
        assert source.build_params("all", 1) == {"sort": "newest", "p": 1}

    def test_map_fields(self):
        source = JsonPageSource(CONFIG)
        record = source.map_fields({"id": 7, "price": "$10k", "title": "Blog"})
        assert record["listing_id"] == 7
        assert record["asking_price"] == "$10k"
        assert record["title"] == "Blog"

    @pytest.mark.asyncio
    async def test_fetch_page(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"data": [{"id": 1, "price": 5000}, "junk"]})

        source = source_with(handler)
        records = await source.fetch_page("saas", 2)
        assert records == [{"id": 1, "price": 5000, "listing_id": 1, "asking_price": 5000}]
        assert seen == [{"sort": "newest", "p": "2", "type": "saas"}]

    @pytest.mark.asyncio
    async def test_http_error_becomes_fetch_error(self):
        source = source_with(lambda request: httpx.Response(503))
        with pytest.raises(FetchError) as exc:
            await source.fetch_page("all", 4)
        assert exc.value.page == 4
        assert "503" in exc.value.reason

    @pytest.mark.asyncio
    async def test_transport_error_becomes_fetch_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(FetchError):
            await source_with(handler).fetch_page("all", 1)

    @pytest.mark.asyncio
    async def test_invalid_json_becomes_fetch_error(self):
        source = source_with(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(FetchError):
            await source.fetch_page("all", 1)

    @pytest.mark.asyncio
    async def test_missing_items_becomes_fetch_error(self):
        source = source_with(lambda request: httpx.Response(200, json={"error": "rate limited"}))
        with pytest.raises(FetchError):
            await source.fetch_page("all", 1)

    @pytest.mark.asyncio
    async def test_missing_base_url(self):
        with pytest.raises(FetchError):
            await JsonPageSource({"source": "broken"}).fetch_page("all", 1)


class TestSourceFactory:
    def test_bundled_marketplace_config(self):
        config = load_source_config("marketplace")
        assert config["type"] == "json_pages"
        assert "listing_id" in config["field_map"]

    def test_create_from_configs_dir(self, tmp_path):
        (tmp_path / "flippa.json").write_text(json.dumps({"base_url": "https://x.example.com"}))
        source = create_source("flippa", configs_dir=str(tmp_path))
        assert isinstance(source, JsonPageSource)
        assert source.source_name == "flippa"

    def test_unknown_source(self, tmp_path):
        with pytest.raises(ValueError):
            create_source("nowhere", configs_dir=str(tmp_path))

    def test_unknown_type(self, tmp_path):
        (tmp_path / "odd.json").write_text(json.dumps({"type": "carrier_pigeon"}))
        with pytest.raises(ValueError):
            create_source("odd", configs_dir=str(tmp_path))
