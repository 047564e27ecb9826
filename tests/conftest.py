"""Pytest configuration and fixtures."""

from datetime import date, datetime, timedelta

import pytest

from data.market_data import (
    DividendRecord,
    FinancialStatements,
    MarketDataError,
    PriceBarRecord,
    QuoteSnapshot,
    SearchResult,
    normalize_symbol,
)
from db import DatabaseManager, utcnow
from services.holdings_ledger import HoldingsLedger
from services.portfolio_service import PortfolioService


class FakeClock:
    """Settable clock; call it to read the current (naive UTC) time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMarketData:
    """In-memory stand-in with the MarketDataClient interface."""

    def __init__(self, clock=None):
        self.clock = clock
        self.prices: dict[str, float] = {}
        self.dividends: dict[str, list[DividendRecord]] = {}
        self.statements: dict[str, FinancialStatements] = {}
        self.profiles: dict[str, dict] = {}
        self.failing: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.statement_error: MarketDataError | None = None
        self.calls: list[tuple] = []
        self.financials_available = True

    def _check(self, method: str, symbol: str) -> str:
        symbol = normalize_symbol(symbol)
        self.calls.append((method, symbol))
        if symbol in self.errors:
            raise self.errors[symbol]
        if symbol in self.failing:
            raise MarketDataError(f"fake: {symbol} unavailable")
        return symbol

    def get_quote(self, symbol: str) -> QuoteSnapshot:
        symbol = self._check("get_quote", symbol)
        if symbol not in self.prices:
            raise MarketDataError(f"fake: no quote for {symbol}")
        price = self.prices[symbol]
        return QuoteSnapshot(
            symbol=symbol,
            current_price=price,
            previous_close=price - 1.0,
            change_amount=1.0,
            change_percent=1.0 / (price - 1.0) * 100,
            currency="USD",
            exchange="NYSE",
            name=f"{symbol} Corp",
            quote_type="EQUITY",
            quote_time=self.clock() if self.clock else utcnow(),
        )

    def get_quotes(self, symbols: list[str]) -> dict[str, QuoteSnapshot]:
        quotes = {}
        for symbol in symbols:
            try:
                quotes[symbol.upper()] = self.get_quote(symbol)
            except MarketDataError:
                continue
        return quotes

    def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        return [
            SearchResult(symbol=s, name=f"{s} Corp", exchange="NYSE", quote_type="EQUITY")
            for s in self.prices
            if query.upper() in s
        ][:limit]

    def get_price_history(self, symbol: str, start: date, end: date) -> list[PriceBarRecord]:
        symbol = self._check("get_price_history", symbol)
        self.calls[-1] = ("get_price_history", symbol, start, end)
        price = self.prices.get(symbol, 100.0)
        bars = []
        day = start
        while day <= end:
            if day.weekday() < 5:
                bars.append(PriceBarRecord(
                    trade_date=day, open=price, high=price, low=price,
                    close=price, adjusted_close=price, volume=1000,
                ))
            day += timedelta(days=1)
        return bars

    def get_dividends(self, symbol: str, start: date | None = None, end: date | None = None) -> list[DividendRecord]:
        symbol = self._check("get_dividends", symbol)
        return list(self.dividends.get(symbol, []))

    def get_company_profile(self, symbol: str) -> dict:
        symbol = self._check("get_company_profile", symbol)
        return dict(self.profiles.get(symbol, {"name": f"{symbol} Corp", "sector": "Consumer Defensive"}))

    def get_financial_statements(self, symbol: str, years: int = 5) -> FinancialStatements:
        symbol = normalize_symbol(symbol)
        self.calls.append(("get_financial_statements", symbol))
        if symbol in self.errors:
            raise self.errors[symbol]
        if self.statement_error is not None:
            raise self.statement_error
        return self.statements.get(symbol, FinancialStatements(symbol=symbol))

    def get_dividend_calendar(self, start: date, end: date) -> list[DividendRecord]:
        return []


def quarterly_dividends(symbol: str, last_ex_date: date, amounts: list[float]) -> list[DividendRecord]:
    """Dividend records roughly every 91 days, newest first."""
    return [
        DividendRecord(
            symbol=symbol,
            ex_date=last_ex_date - timedelta(days=91 * i),
            amount=amount,
            payment_date=last_ex_date - timedelta(days=91 * i) + timedelta(days=14),
            source="test",
        )
        for i, amount in enumerate(amounts)
    ]


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database per test."""
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'portfolio.db'}")
    manager.create_tables()
    yield manager
    manager.dispose()


@pytest.fixture
def clock():
    # Wednesday 2024-06-12 18:00 UTC = 14:00 New York (market open)
    return FakeClock(datetime(2024, 6, 12, 18, 0))


@pytest.fixture
def market_data(clock):
    return FakeMarketData(clock)


@pytest.fixture
def ledger(db):
    return HoldingsLedger(db)


@pytest.fixture
def portfolio_service(db):
    return PortfolioService(db)


@pytest.fixture
def portfolio(portfolio_service):
    return portfolio_service.create_portfolio(user_id=1, name="Income")


@pytest.fixture
def buy(ledger, portfolio):
    """Record a buy in the default portfolio."""

    def _buy(symbol: str, quantity: float, price: float, on: str = "2024-01-02", fees: float = 0.0):
        return ledger.add_transaction(portfolio.id, {
            "symbol": symbol,
            "transaction_type": "buy",
            "quantity": quantity,
            "price": price,
            "fees": fees,
            "transaction_date": on,
        })

    return _buy


@pytest.fixture
def make_dividends():
    return quarterly_dividends
