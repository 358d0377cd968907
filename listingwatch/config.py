"""Runtime configuration loaded from environment variables.

Values may also come from a .env file in the working directory. Per-source
crawl settings (endpoint, field mapping) live in configs/<source>.json.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from listingwatch.api.schemas import ScoreCategory
from listingwatch.pipeline.scorer import ScoringThresholds

PREFIX = "LISTINGWATCH_"

# Named frequencies accepted in place of a crontab expression
SCHEDULE_FREQUENCIES = {
    "15min": "*/15 * * * *",
    "30min": "*/30 * * * *",
    "1hour": "0 * * * *",
    "2hours": "0 */2 * * *",
    "6hours": "0 */6 * * *",
    "12hours": "0 */12 * * *",
    "24hours": "0 0 * * *",
}


@dataclass(frozen=True)
class Settings:
    db_path: str = "listingwatch.db"
    source: str = "marketplace"
    segment: str = "all"
    page_budget: int = 5
    fetch_concurrency: int = 3
    fetch_max_attempts: int = 4
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    # Failed-page ratio above which a scan is failed outright
    max_fetch_error_rate: float = 0.5
    scan_timeout_seconds: float = 900.0
    schedule_minutes: int = 60
    # Crontab expression or named frequency; takes precedence over schedule_minutes
    schedule_cron: str = ""
    conflict_retries: int = 2
    webhook_url: str = ""
    notify_min_category: ScoreCategory = ScoreCategory.MEDIUM
    cache_ttl_seconds: float = 60.0
    cache_max_entries: int = 256
    thresholds: ScoringThresholds = field(default_factory=ScoringThresholds)


def _env(name: str) -> Optional[str]:
    value = os.environ.get(PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def schedule_trigger(expression: str) -> CronTrigger:
    """Build a UTC cron trigger from a crontab expression or named frequency.

    Raises ValueError for expressions APScheduler cannot parse.
    """
    crontab = SCHEDULE_FREQUENCIES.get(expression.strip().lower(), expression.strip())
    return CronTrigger.from_crontab(crontab, timezone="UTC")


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{PREFIX}{name} must be an integer, got {value!r}") from None


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{PREFIX}{name} must be a number, got {value!r}") from None


def _env_category(name: str, default: ScoreCategory) -> ScoreCategory:
    value = _env(name)
    if value is None:
        return default
    try:
        return ScoreCategory(value.lower())
    except ValueError:
        choices = ", ".join(c.value for c in ScoreCategory)
        raise ValueError(f"{PREFIX}{name} must be one of {choices}, got {value!r}") from None


def load_thresholds() -> ScoringThresholds:
    defaults = ScoringThresholds()
    interest = _env("CATEGORIES_OF_INTEREST")
    return ScoringThresholds(
        high_value_price=_env_float("HIGH_VALUE_PRICE", defaults.high_value_price),
        high_value_revenue=_env_float("HIGH_VALUE_REVENUE", defaults.high_value_revenue),
        price_change_percent=_env_float("PRICE_CHANGE_PERCENT", defaults.price_change_percent),
        price_change_absolute=_env_float("PRICE_CHANGE_ABSOLUTE", defaults.price_change_absolute),
        revenue_change_absolute=_env_float("REVENUE_CHANGE_ABSOLUTE", defaults.revenue_change_absolute),
        categories_of_interest=tuple(
            c.strip() for c in interest.split(",") if c.strip()
        ) if interest else defaults.categories_of_interest,
        medium_boundary=_env_float("MEDIUM_BOUNDARY", defaults.medium_boundary),
        high_boundary=_env_float("HIGH_BOUNDARY", defaults.high_boundary),
        critical_boundary=_env_float("CRITICAL_BOUNDARY", defaults.critical_boundary),
    )


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build Settings from the environment (and .env, if present)."""
    load_dotenv(env_file)
    defaults = Settings()
    settings = Settings(
        db_path=_env("DB") or defaults.db_path,
        source=_env("SOURCE") or defaults.source,
        segment=_env("SEGMENT") or defaults.segment,
        page_budget=_env_int("PAGE_BUDGET", defaults.page_budget),
        fetch_concurrency=_env_int("FETCH_CONCURRENCY", defaults.fetch_concurrency),
        fetch_max_attempts=_env_int("FETCH_MAX_ATTEMPTS", defaults.fetch_max_attempts),
        backoff_base_seconds=_env_float("BACKOFF_BASE_SECONDS", defaults.backoff_base_seconds),
        backoff_max_seconds=_env_float("BACKOFF_MAX_SECONDS", defaults.backoff_max_seconds),
        max_fetch_error_rate=_env_float("MAX_FETCH_ERROR_RATE", defaults.max_fetch_error_rate),
        scan_timeout_seconds=_env_float("SCAN_TIMEOUT_SECONDS", defaults.scan_timeout_seconds),
        schedule_minutes=_env_int("SCHEDULE_MINUTES", defaults.schedule_minutes),
        schedule_cron=_env("SCHEDULE_CRON") or defaults.schedule_cron,
        conflict_retries=_env_int("CONFLICT_RETRIES", defaults.conflict_retries),
        webhook_url=_env("WEBHOOK_URL") or defaults.webhook_url,
        notify_min_category=_env_category("NOTIFY_MIN_CATEGORY", defaults.notify_min_category),
        cache_ttl_seconds=_env_float("CACHE_TTL_SECONDS", defaults.cache_ttl_seconds),
        cache_max_entries=_env_int("CACHE_MAX_ENTRIES", defaults.cache_max_entries),
        thresholds=load_thresholds(),
    )
    if settings.page_budget < 1:
        raise ValueError(f"{PREFIX}PAGE_BUDGET must be at least 1")
    if settings.fetch_concurrency < 1:
        raise ValueError(f"{PREFIX}FETCH_CONCURRENCY must be at least 1")
    if settings.fetch_max_attempts < 1:
        raise ValueError(f"{PREFIX}FETCH_MAX_ATTEMPTS must be at least 1")
    if not 0.0 <= settings.max_fetch_error_rate <= 1.0:
        raise ValueError(f"{PREFIX}MAX_FETCH_ERROR_RATE must be between 0 and 1")
    if settings.schedule_cron:
        try:
            schedule_trigger(settings.schedule_cron)
        except ValueError as e:
            raise ValueError(
                f"{PREFIX}SCHEDULE_CRON is not a valid crontab or frequency: {settings.schedule_cron!r} ({e})"
            ) from None
    return settings
