"""Source factory: loads the crawl source for a configured marketplace.

A config-driven factory that maps source types to concrete source classes,
so a new marketplace needs only a JSON config (and a class if its endpoint
is not plain paginated JSON).
"""

import json
import os
import logging
from listingwatch.scraper.base_source import BaseCrawlSource
from listingwatch.scraper.json_source import JsonPageSource

logger = logging.getLogger(__name__)

SOURCE_TYPES = {
    "json_pages": JsonPageSource,
}

CONFIGS_DIR = os.environ.get(
    "LISTINGWATCH_CONFIGS_DIR",
    os.path.join(os.path.dirname(__file__), "..", "..", "configs"),
)


def load_source_config(source: str, configs_dir: str | None = None) -> dict:
    config_path = os.path.join(configs_dir or CONFIGS_DIR, f"{source}.json")

    if not os.path.exists(config_path):
        raise ValueError(f"No config found for source '{source}' at {config_path}")

    with open(config_path) as f:
        config = json.load(f)
    config.setdefault("source", source)
    return config


def create_source(source: str, configs_dir: str | None = None) -> BaseCrawlSource:
    """Create and return a crawl source for the given marketplace.

    Loads configs/{source}.json and instantiates the class named by its
    "type" key (default "json_pages").
    """
    config = load_source_config(source, configs_dir)

    source_type = config.get("type", "json_pages")
    source_class = SOURCE_TYPES.get(source_type)
    if not source_class:
        raise ValueError(f"Unknown source type: '{source_type}'. Available: {list(SOURCE_TYPES.keys())}")

    logger.info("Created %s for source '%s'", source_class.__name__, source)
    return source_class(config)
