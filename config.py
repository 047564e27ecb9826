"""
Application configuration settings.

Centralizes all configuration parameters for the portfolio tracker.
Supports environment-based configuration and sensible defaults.

Components take their section at construction time:

    cache = PriceCache(db, settings=config.scheduler)
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""
    path: Path = field(default_factory=lambda: Path("db/portfolio.db"))

    @property
    def url(self) -> str:
        """SQLAlchemy connection URL."""
        # Prefer direct URL if provided in environment
        env_url = os.environ.get("PORTFOLIO_DB_URL") or os.environ.get("DATABASE_URL")
        if env_url:
            return env_url

        return f"sqlite:///{self.path}"


@dataclass(frozen=True)
class MarketDataConfig:
    """
    Market data provider configuration.

    Yahoo Finance is keyless and serves quotes, history and basic dividend
    dates. Financial Modeling Prep needs an API key, has a daily request
    quota and serves richer dividend and financial-statement data.
    """
    # "live" talks to the providers, "synthetic" serves generated data
    source: str = "live"

    # Yahoo Finance
    yahoo_base_url: str = "https://query1.finance.yahoo.com"
    yahoo_timeout: float = 10.0

    # Financial Modeling Prep
    fmp_base_url: str = "https://financialmodelingprep.com/api/v3"
    fmp_api_key: str | None = None
    fmp_daily_limit: int = 250
    fmp_timeout: float = 15.0

    # Dividend provider selection (primary first, fallback when empty)
    dividend_primary_provider: str = "yahoo_finance"
    dividend_fallback_provider: str | None = "financial_modeling_prep"

    user_agent: str = "Mozilla/5.0 (compatible; PortfolioTracker/1.0)"


@dataclass(frozen=True)
class SchedulerConfig:
    """Data freshness and rate limiting configuration."""
    # Lookback window for historical backfill (days)
    historical_days: int = 365

    # Quote staleness windows (minutes)
    quote_cache_market_hours: int = 15
    quote_cache_after_hours: int = 30

    # Market session in the market's local time
    market_timezone: str = "America/New_York"
    market_open: str = "09:30"
    market_close: str = "16:00"

    # Rate limiting (seconds between symbols)
    quote_delay: float = 0.25
    batch_delay: float = 0.5

    # Dividend history is refetched after this many days
    dividend_refresh_days: int = 7


@dataclass(frozen=True)
class SafetyConfig:
    """Dividend safety scoring configuration."""
    cache_hours: int = 24
    cleanup_days: int = 30
    statement_years: int = 5
    history_limit: int = 20

    # Non-corporate securities that are never scored
    etf_symbols: tuple[str, ...] = (
        "SPY", "VOO", "IVV", "VTI", "QQQ", "DIA", "IWM", "SCHD", "VYM",
        "HDV", "DVY", "SDY", "NOBL", "DGRO", "VIG", "JEPI", "JEPQ", "SPYD",
        "VNQ", "BND", "AGG", "TLT", "VXUS", "VEA", "VWO", "XLU", "XLE",
    )


@dataclass
class Config:
    """
    Main configuration container.

    Usage:
        from config import config
        db_path = config.database.path
    """
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)

    # Base paths
    project_root: ClassVar[Path] = Path(__file__).parent

    @classmethod
    def from_env(cls) -> "Config":
        """
        Create config from environment variables.

        Supports overrides via:
        - PORTFOLIO_DB_PATH: Custom database path
        - MARKET_DATA_SOURCE: live or synthetic
        - FMP_API_KEY / FMP_DAILY_LIMIT: Financial Modeling Prep access
        - HISTORICAL_DATA_DAYS: Backfill lookback window
        - QUOTE_CACHE_MARKET_HOURS / QUOTE_CACHE_AFTER_HOURS: Minutes
        - MARKET_TIMEZONE / MARKET_OPEN_TIME / MARKET_CLOSE_TIME
        """
        db_path_env = os.getenv("PORTFOLIO_DB_PATH")
        db_config = DatabaseConfig(
            path=Path(db_path_env) if db_path_env else DatabaseConfig().path
        )

        market_defaults = MarketDataConfig()
        market_config = MarketDataConfig(
            source=os.getenv("MARKET_DATA_SOURCE", market_defaults.source).lower(),
            fmp_api_key=os.getenv("FMP_API_KEY") or None,
            fmp_daily_limit=int(os.getenv("FMP_DAILY_LIMIT", market_defaults.fmp_daily_limit)),
            dividend_primary_provider=os.getenv(
                "DIVIDEND_PRIMARY_PROVIDER", market_defaults.dividend_primary_provider
            ),
            dividend_fallback_provider=os.getenv(
                "DIVIDEND_FALLBACK_PROVIDER", market_defaults.dividend_fallback_provider
            ) or None,
        )

        scheduler_defaults = SchedulerConfig()
        scheduler_config = SchedulerConfig(
            historical_days=int(os.getenv("HISTORICAL_DATA_DAYS", scheduler_defaults.historical_days)),
            quote_cache_market_hours=int(
                os.getenv("QUOTE_CACHE_MARKET_HOURS", scheduler_defaults.quote_cache_market_hours)
            ),
            quote_cache_after_hours=int(
                os.getenv("QUOTE_CACHE_AFTER_HOURS", scheduler_defaults.quote_cache_after_hours)
            ),
            market_timezone=os.getenv("MARKET_TIMEZONE", scheduler_defaults.market_timezone),
            market_open=os.getenv("MARKET_OPEN_TIME", scheduler_defaults.market_open),
            market_close=os.getenv("MARKET_CLOSE_TIME", scheduler_defaults.market_close),
        )

        return cls(
            database=db_config,
            market_data=market_config,
            scheduler=scheduler_config,
        )

    def validate(self) -> list[str]:
        """
        Check configuration values against their allowed ranges.

        Returns:
            List of error messages (empty when the configuration is valid).
        """
        errors = []
        sched = self.scheduler

        if not 1 <= sched.historical_days <= 3650:
            errors.append("historical_days must be between 1 and 3650")

        for name in ("market_open", "market_close"):
            if not _TIME_PATTERN.match(getattr(sched, name)):
                errors.append(f"{name} must be in HH:MM format")

        try:
            ZoneInfo(sched.market_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"Invalid market timezone: {sched.market_timezone}")

        if not 1 <= sched.quote_cache_market_hours <= 60:
            errors.append("quote_cache_market_hours must be between 1 and 60 minutes")
        if not 1 <= sched.quote_cache_after_hours <= 120:
            errors.append("quote_cache_after_hours must be between 1 and 120 minutes")

        if self.market_data.source not in ("live", "synthetic"):
            errors.append(f"Unknown market data source: {self.market_data.source}")

        providers = ("yahoo_finance", "financial_modeling_prep")
        if self.market_data.dividend_primary_provider not in providers:
            errors.append(
                f"Unknown dividend provider: {self.market_data.dividend_primary_provider}"
            )
        fallback = self.market_data.dividend_fallback_provider
        if fallback is not None and fallback not in providers:
            errors.append(f"Unknown dividend provider: {fallback}")

        return errors


# Global config instance
config = Config.from_env()
