"""Tests for environment-driven configuration."""

import pytest
from listingwatch.api.schemas import ScoreCategory
from listingwatch.config import Settings, load_settings, schedule_trigger


@pytest.fixture
def env(monkeypatch, tmp_path):
    # keep a stray .env in the working directory out of the way
    monkeypatch.chdir(tmp_path)

    def set_env(**values):
        for key, value in values.items():
            monkeypatch.setenv(f"LISTINGWATCH_{key}", value)
    return set_env


class TestLoadSettings:
    def test_defaults(self, env):
        settings = load_settings()
        assert settings.page_budget == Settings().page_budget
        assert settings.thresholds.high_value_price == 100_000
        assert settings.thresholds.revenue_change_absolute == 5_000
        assert settings.notify_min_category == ScoreCategory.MEDIUM

    def test_overrides(self, env):
        env(DB="/tmp/x.db", PAGE_BUDGET="12", SCAN_TIMEOUT_SECONDS="30",
            NOTIFY_MIN_CATEGORY="High", HIGH_VALUE_PRICE="250000",
            REVENUE_CHANGE_ABSOLUTE="7500", CATEGORIES_OF_INTEREST="saas, content ,")
        settings = load_settings()
        assert settings.db_path == "/tmp/x.db"
        assert settings.page_budget == 12
        assert settings.scan_timeout_seconds == 30.0
        assert settings.notify_min_category == ScoreCategory.HIGH
        assert settings.thresholds.high_value_price == 250_000
        assert settings.thresholds.categories_of_interest == ("saas", "content")
        assert settings.thresholds.revenue_change_absolute == 7_500

    def test_env_file(self, env, tmp_path, monkeypatch):
        monkeypatch.delenv("LISTINGWATCH_SEGMENT", raising=False)
        env_file = tmp_path / "custom.env"
        env_file.write_text("LISTINGWATCH_SEGMENT=saas\n")
        assert load_settings(str(env_file)).segment == "saas"

    @pytest.mark.parametrize("key,value", [
        ("PAGE_BUDGET", "zero"),
        ("PAGE_BUDGET", "0"),
        ("FETCH_CONCURRENCY", "0"),
        ("MAX_FETCH_ERROR_RATE", "1.5"),
        ("NOTIFY_MIN_CATEGORY", "urgent"),
    ])
    def test_invalid_values(self, env, key, value):
        env(**{key: value})
        with pytest.raises(ValueError):
            load_settings()


class TestScheduleCron:
    def test_crontab(self, env):
        env(SCHEDULE_CRON="*/15 * * * *")
        assert load_settings().schedule_cron == "*/15 * * * *"

    def test_named_frequency(self, env):
        env(SCHEDULE_CRON="6hours")
        settings = load_settings()
        assert str(schedule_trigger(settings.schedule_cron)) == str(schedule_trigger("0 */6 * * *"))

    @pytest.mark.parametrize("value", ["every day", "61 * * * *", "0 * * *"])
    def test_invalid(self, env, value):
        env(SCHEDULE_CRON=value)
        with pytest.raises(ValueError, match="SCHEDULE_CRON"):
            load_settings()
