"""
Price Cache - current quotes and daily bars with freshness rules.

Answers two questions for the refresh jobs:
1. Is the stored quote for a symbol still fresh enough to serve?
2. Which business days in a lookback window have no stored bar?

Quote freshness depends on the time of day: the window is shorter while
the market is open.
"""

import logging
from dataclasses import asdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, NamedTuple
from zoneinfo import ZoneInfo

import pandas as pd

from config import SchedulerConfig, config
from data.market_data import PriceBarRecord, QuoteSnapshot
from db import DatabaseManager, Quote, get_db, utcnow
from db.repositories import PriceBarRepository, QuoteRepository


logger = logging.getLogger(__name__)


class DateRange(NamedTuple):
    """Inclusive range of calendar dates."""
    start: date
    end: date


def compute_missing_ranges(start: date, end: date, existing_dates: Iterable[date]) -> list[DateRange]:
    """
    Business days (Mon-Fri) in [start, end] without a stored bar, coalesced.

    Consecutive missing business days form one range; a stored date always
    splits ranges. Weekends never appear in the result.

    Example:
        >>> compute_missing_ranges(date(2024, 1, 1), date(2024, 1, 5),
        ...                        {date(2024, 1, 2), date(2024, 1, 4)})
        [DateRange(2024-01-01, 2024-01-01), DateRange(2024-01-03, 2024-01-03),
         DateRange(2024-01-05, 2024-01-05)]
    """
    if start > end:
        return []

    existing = set(existing_dates)
    ranges: list[DateRange] = []
    run_start: date | None = None
    run_end: date | None = None

    for ts in pd.bdate_range(start, end):
        day = ts.date()
        if day in existing:
            if run_start is not None:
                ranges.append(DateRange(run_start, run_end))
                run_start = run_end = None
            continue

        if run_start is None:
            run_start = day
        run_end = day

    if run_start is not None:
        ranges.append(DateRange(run_start, run_end))

    return ranges


def _as_utc(at: datetime | None) -> datetime:
    """Naive UTC datetime (the storage convention); None means now."""
    if at is None:
        return utcnow()
    if at.tzinfo is not None:
        return at.astimezone(timezone.utc).replace(tzinfo=None)
    return at


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class PriceCache:
    """
    Persisted quotes and price bars.

    Usage:
        cache = PriceCache(db)
        if cache.is_quote_stale("KO"):
            cache.save_quote(client.get_quote("KO"))
    """

    def __init__(self, db: DatabaseManager | None = None, settings: SchedulerConfig | None = None):
        self.db = db or get_db()
        self.settings = settings or config.scheduler
        self.market_tz = ZoneInfo(self.settings.market_timezone)
        self.market_open = _parse_hhmm(self.settings.market_open)
        self.market_close = _parse_hhmm(self.settings.market_close)

    # ------------------------------------------------------------------
    # Market session
    # ------------------------------------------------------------------

    def _to_market_time(self, at: datetime | None) -> datetime:
        return _as_utc(at).replace(tzinfo=timezone.utc).astimezone(self.market_tz)

    def is_market_hours(self, at: datetime | None = None) -> bool:
        """Mon-Fri between the configured open and close, inclusive."""
        local = self._to_market_time(at)
        if local.weekday() >= 5:
            return False
        return self.market_open <= local.time().replace(tzinfo=None) <= self.market_close

    def quote_max_age(self, at: datetime | None = None) -> timedelta:
        """Freshness window for quotes at the given moment."""
        minutes = (
            self.settings.quote_cache_market_hours
            if self.is_market_hours(at)
            else self.settings.quote_cache_after_hours
        )
        return timedelta(minutes=minutes)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def get_quote(self, symbol: str) -> Quote | None:
        """Stored quote, or None."""
        with self.db.session() as session:
            return QuoteRepository(session).get(symbol)

    def get_current_price(self, symbol: str) -> float | None:
        """Stored current price, or None when no quote exists."""
        with self.db.session() as session:
            return QuoteRepository(session).get_current_price(symbol)

    def _is_stale(self, quote: Quote | None, at: datetime) -> bool:
        if quote is None:
            return True
        return at - quote.quote_time > self.quote_max_age(at)

    def is_quote_stale(self, symbol: str, at: datetime | None = None) -> bool:
        """Missing, or older than the current freshness window."""
        at = _as_utc(at)
        return self._is_stale(self.get_quote(symbol), at)

    def get_stale_symbols(self, symbols: list[str], at: datetime | None = None) -> list[str]:
        """Symbols whose quote is missing or stale."""
        at = _as_utc(at)
        with self.db.session() as session:
            quotes = QuoteRepository(session).get_many(symbols)
        return [s.upper() for s in symbols if self._is_stale(quotes.get(s.upper()), at)]

    def save_quote(self, snapshot: QuoteSnapshot) -> Quote:
        """Overwrite the stored quote with a fresh snapshot."""
        with self.db.session() as session:
            return QuoteRepository(session).upsert(
                snapshot.symbol,
                current_price=snapshot.current_price,
                previous_close=snapshot.previous_close,
                change_amount=snapshot.change_amount,
                change_percent=snapshot.change_percent,
                open_price=snapshot.open_price,
                day_high=snapshot.day_high,
                day_low=snapshot.day_low,
                volume=snapshot.volume,
                market_cap=snapshot.market_cap,
                week_52_high=snapshot.week_52_high,
                week_52_low=snapshot.week_52_low,
                market_state=snapshot.market_state,
                currency=snapshot.currency,
                exchange=snapshot.exchange,
                quote_time=snapshot.quote_time,
            )

    def freshness_stats(self, symbols: list[str], at: datetime | None = None) -> dict:
        """Counts of fresh, stale and missing quotes for the given symbols."""
        at = _as_utc(at)
        with self.db.session() as session:
            quotes = QuoteRepository(session).get_many(symbols)

        present = [quotes[s.upper()] for s in symbols if s.upper() in quotes]
        stale = sum(1 for q in present if self._is_stale(q, at))
        times = [q.quote_time for q in present]

        return {
            "total_symbols": len(symbols),
            "fresh": len(present) - stale,
            "stale": stale,
            "missing": len(symbols) - len(present),
            "oldest_quote": min(times) if times else None,
            "newest_quote": max(times) if times else None,
            "market_hours": self.is_market_hours(at),
            "max_age_minutes": int(self.quote_max_age(at).total_seconds() // 60),
        }

    # ------------------------------------------------------------------
    # Daily bars
    # ------------------------------------------------------------------

    def existing_dates(self, symbol: str, start: date, end: date) -> set[date]:
        """Dates with a stored bar in [start, end]."""
        with self.db.session() as session:
            return PriceBarRepository(session).get_existing_dates(symbol, start, end)

    def missing_ranges(self, symbol: str, start: date, end: date) -> list[DateRange]:
        """Coalesced business-day ranges with no stored bar."""
        return compute_missing_ranges(start, end, self.existing_dates(symbol, start, end))

    def save_bars(self, symbol: str, bars: list[PriceBarRecord]) -> int:
        """Insert bars not stored yet; returns the number inserted."""
        with self.db.session() as session:
            return PriceBarRepository(session).bulk_insert_bars(
                symbol, [asdict(bar) for bar in bars]
            )

    def get_price_history(
        self,
        symbols: list[str],
        start: date | None = None,
        end: date | None = None,
    ) -> pd.DataFrame:
        """
        Close prices as a DataFrame indexed by date, one column per symbol.

        Returns an empty DataFrame when nothing is stored.
        """
        with self.db.session() as session:
            bars = PriceBarRepository(session).get_history(symbols, start, end)
            rows = [
                {"date": pd.Timestamp(b.trade_date), "symbol": b.symbol, "close": b.close}
                for b in bars
            ]

        if not rows:
            return pd.DataFrame()

        df = pd.DataFrame(rows)
        return df.pivot(index="date", columns="symbol", values="close").sort_index()
