"""
Synthetic market data source for demos and offline development.

Selected once via MARKET_DATA_SOURCE=synthetic; nothing else in the code
base substitutes this data for a failed live call.
"""

import zlib
from datetime import date
from typing import Any

import numpy as np
import pandas as pd

from data.market_data import (
    DividendRecord,
    FinancialStatements,
    MarketDataError,
    PriceBarRecord,
    ProviderUnavailableError,
    QuoteSnapshot,
    SearchResult,
    normalize_symbol,
)
from db.models import MarketState


# symbol -> (name, price, previous close, volume, market cap, 52w high, 52w low)
SAMPLE_QUOTES: dict[str, tuple] = {
    "AAPL": ("Apple Inc.", 227.52, 225.77, 45_234_567, 3_456_789_012_345, 237.23, 164.08),
    "MSFT": ("Microsoft Corporation", 415.26, 413.65, 23_456_789, 3_123_456_789_012, 468.35, 309.45),
    "GOOGL": ("Alphabet Inc.", 175.84, 174.12, 18_765_432, 2_234_567_890_123, 193.31, 129.40),
    "TSLA": ("Tesla, Inc.", 248.98, 251.44, 67_890_123, 789_012_345_678, 299.29, 138.80),
}


class SyntheticMarketDataClient:
    """Deterministic stand-in with the MarketDataClient interface."""

    financials_available = False

    def get_quote(self, symbol: str) -> QuoteSnapshot:
        symbol = normalize_symbol(symbol)
        if symbol not in SAMPLE_QUOTES:
            raise MarketDataError(f"synthetic: no sample data for {symbol}")

        name, price, previous, volume, market_cap, high, low = SAMPLE_QUOTES[symbol]
        change = price - previous
        return QuoteSnapshot(
            symbol=symbol,
            current_price=price,
            previous_close=previous,
            change_amount=change,
            change_percent=change / previous * 100,
            volume=volume,
            market_cap=market_cap,
            week_52_high=high,
            week_52_low=low,
            market_state=MarketState.CLOSED,
            currency="USD",
            exchange="NASDAQ",
            name=name,
            quote_type="EQUITY",
        )

    def get_quotes(self, symbols: list[str]) -> dict[str, QuoteSnapshot]:
        return {s.upper(): self.get_quote(s) for s in symbols if s.upper() in SAMPLE_QUOTES}

    def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        query = (query or "").strip().upper()
        hits = [
            SearchResult(symbol=s, name=v[0], exchange="NASDAQ", quote_type="EQUITY")
            for s, v in SAMPLE_QUOTES.items()
            if query and (query in s or query in v[0].upper())
        ]
        return hits[:limit]

    def get_price_history(self, symbol: str, start: date, end: date) -> list[PriceBarRecord]:
        """Seeded random walk ending near the sample price."""
        symbol = normalize_symbol(symbol)
        if symbol not in SAMPLE_QUOTES:
            return []

        days = pd.bdate_range(start, end)
        if len(days) == 0:
            return []

        rng = np.random.default_rng(zlib.crc32(symbol.encode()))
        returns = rng.normal(0.0004, 0.015, len(days))
        closes = SAMPLE_QUOTES[symbol][1] * np.exp(np.cumsum(returns) - returns.sum())
        volumes = rng.integers(5_000_000, 50_000_000, len(days))

        return [
            PriceBarRecord(
                trade_date=day.date(),
                open=round(float(close) * 0.998, 2),
                high=round(float(close) * 1.01, 2),
                low=round(float(close) * 0.99, 2),
                close=round(float(close), 2),
                adjusted_close=round(float(close), 2),
                volume=int(volume),
            )
            for day, close, volume in zip(days, closes, volumes)
        ]

    def get_dividends(self, symbol: str, start: date | None = None, end: date | None = None) -> list[DividendRecord]:
        normalize_symbol(symbol)
        return []

    def get_company_profile(self, symbol: str) -> dict[str, Any]:
        symbol = normalize_symbol(symbol)
        name = SAMPLE_QUOTES.get(symbol, (None,))[0]
        return {"name": name, "exchange": "NASDAQ", "currency": "USD", "quote_type": "EQUITY"}

    def get_financial_statements(self, symbol: str, years: int = 5) -> FinancialStatements:
        raise ProviderUnavailableError("synthetic: financial statements are not simulated")

    def get_dividend_calendar(self, start: date, end: date) -> list[DividendRecord]:
        return []
