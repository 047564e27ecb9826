"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from config import Config, MarketDataConfig, SchedulerConfig


class TestFromEnv:
    """Tests for environment overrides."""

    def test_defaults(self, monkeypatch):
        for name in ("PORTFOLIO_DB_PATH", "MARKET_DATA_SOURCE", "FMP_API_KEY", "HISTORICAL_DATA_DAYS"):
            monkeypatch.delenv(name, raising=False)

        cfg = Config.from_env()

        assert cfg.database.path == Path("db/portfolio.db")
        assert cfg.market_data.source == "live"
        assert cfg.market_data.fmp_api_key is None
        assert cfg.scheduler.historical_days == 365
        assert cfg.safety.cache_hours == 24
        assert cfg.validate() == []

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PORTFOLIO_DB_PATH", str(tmp_path / "custom.db"))
        monkeypatch.setenv("MARKET_DATA_SOURCE", "Synthetic")
        monkeypatch.setenv("FMP_API_KEY", "abc123")
        monkeypatch.setenv("FMP_DAILY_LIMIT", "100")
        monkeypatch.setenv("HISTORICAL_DATA_DAYS", "30")
        monkeypatch.setenv("QUOTE_CACHE_MARKET_HOURS", "5")
        monkeypatch.setenv("DIVIDEND_FALLBACK_PROVIDER", "")

        cfg = Config.from_env()

        assert cfg.database.path == tmp_path / "custom.db"
        assert cfg.market_data.source == "synthetic"
        assert cfg.market_data.fmp_api_key == "abc123"
        assert cfg.market_data.fmp_daily_limit == 100
        assert cfg.market_data.dividend_fallback_provider is None
        assert cfg.scheduler.historical_days == 30
        assert cfg.scheduler.quote_cache_market_hours == 5

    def test_database_url_override(self, monkeypatch):
        monkeypatch.setenv("PORTFOLIO_DB_URL", "sqlite:///:memory:")
        assert Config().database.url == "sqlite:///:memory:"


class TestValidate:
    """Tests for Config.validate."""

    @pytest.mark.parametrize("scheduler,message", [
        (SchedulerConfig(historical_days=0), "historical_days"),
        (SchedulerConfig(historical_days=4000), "historical_days"),
        (SchedulerConfig(market_open="9:30am"), "market_open must be in HH:MM"),
        (SchedulerConfig(market_close="24:00"), "market_close must be in HH:MM"),
        (SchedulerConfig(market_timezone="Mars/Olympus"), "Invalid market timezone"),
        (SchedulerConfig(quote_cache_market_hours=0), "quote_cache_market_hours"),
        (SchedulerConfig(quote_cache_after_hours=121), "quote_cache_after_hours"),
    ])
    def test_scheduler_errors(self, scheduler, message):
        errors = Config(scheduler=scheduler).validate()
        assert len(errors) == 1
        assert message in errors[0]

    def test_market_data_errors(self):
        cfg = Config(market_data=MarketDataConfig(
            source="mock",
            dividend_primary_provider="iex",
            dividend_fallback_provider="alpha_vantage",
        ))
        assert cfg.validate() == [
            "Unknown market data source: mock",
            "Unknown dividend provider: iex",
            "Unknown dividend provider: alpha_vantage",
        ]
