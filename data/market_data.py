"""
Market data client for Yahoo Finance and Financial Modeling Prep.

Normalizes provider responses into plain records:
1. Quotes and symbol search (Yahoo chart/search endpoints)
2. Daily price bars for a date range (Yahoo chart endpoint)
3. Dividend events (primary provider, then fallback)
4. Annual financial statements and the dividend calendar (FMP, keyed)
5. Company profiles (yfinance Ticker.info)

Calls are synchronous with a fixed timeout and no retry. Upstream failures
raise MarketDataError; the caller decides what to do next.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable

import httpx
import pandas as pd
import yfinance as yf

from config import MarketDataConfig, config
from db.models import MarketState, utcnow
from db.repositories import ApiUsageRepository


logger = logging.getLogger(__name__)

YAHOO = "yahoo_finance"
FMP = "financial_modeling_prep"

_SYMBOL_PATTERN = re.compile(r"[A-Z0-9.\-]{1,20}", re.IGNORECASE)

_MARKET_STATES = {
    "PRE": MarketState.PRE,
    "PREPRE": MarketState.PRE,
    "REGULAR": MarketState.REGULAR,
    "OPEN": MarketState.REGULAR,
    "POST": MarketState.POST,
    "POSTPOST": MarketState.POST,
}


class MarketDataError(Exception):
    """Upstream provider failed (timeout, non-200 status, malformed payload)."""


class ProviderUnavailableError(MarketDataError):
    """Provider cannot be used right now (no API key, daily quota exhausted)."""


class InvalidSymbolError(ValueError):
    """Ticker symbol does not pass the format check."""


@dataclass
class QuoteSnapshot:
    """Normalized current quote."""
    symbol: str
    current_price: float
    previous_close: float | None
    change_amount: float
    change_percent: float
    volume: int | None = None
    market_cap: int | None = None
    open_price: float | None = None
    day_high: float | None = None
    day_low: float | None = None
    week_52_high: float | None = None
    week_52_low: float | None = None
    market_state: MarketState = MarketState.CLOSED
    currency: str | None = None
    exchange: str | None = None
    name: str | None = None
    quote_type: str | None = None
    quote_time: datetime = field(default_factory=utcnow)


@dataclass
class PriceBarRecord:
    """One trading day of OHLCV data."""
    trade_date: date
    open: float | None
    high: float | None
    low: float | None
    close: float
    adjusted_close: float | None
    volume: int


@dataclass
class DividendRecord:
    """Normalized dividend event candidate."""
    symbol: str
    ex_date: date
    amount: float
    record_date: date | None = None
    payment_date: date | None = None
    declaration_date: date | None = None
    currency: str = "USD"
    dividend_type: str = "regular"
    source: str | None = None


@dataclass
class SearchResult:
    """Symbol search hit."""
    symbol: str
    name: str | None
    exchange: str | None
    quote_type: str | None


@dataclass
class FinancialStatements:
    """Annual statements, most recent year first."""
    symbol: str
    income_statements: list[dict] = field(default_factory=list)
    balance_sheets: list[dict] = field(default_factory=list)
    cash_flows: list[dict] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.income_statements or self.balance_sheets or self.cash_flows)


def is_valid_symbol(symbol: str | None) -> bool:
    """Format check: letters, digits, '.' and '-', 1 to 20 characters."""
    return isinstance(symbol, str) and _SYMBOL_PATTERN.fullmatch(symbol) is not None


def normalize_symbol(symbol: str | None) -> str:
    """Uppercase a symbol after validating it."""
    symbol = (symbol or "").strip()
    if not is_valid_symbol(symbol):
        raise InvalidSymbolError(f"Invalid symbol: {symbol!r}")
    return symbol.upper()


def normalize_market_state(state: str | None) -> MarketState:
    """Map provider session names onto PRE/REGULAR/POST/CLOSED."""
    return _MARKET_STATES.get((state or "").upper(), MarketState.CLOSED)


def _parse_date(value: Any) -> date | None:
    """Parse YYYY-MM-DD strings; empty values become None."""
    if not value:
        return None
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def _safe_float(value: Any) -> float | None:
    """Safely convert to float, returning None for invalid values."""
    if value is None:
        return None
    try:
        result = float(value)
    except (ValueError, TypeError):
        return None
    return None if pd.isna(result) else result


def _safe_int(value: Any) -> int | None:
    """Safely convert to int, returning None for invalid values."""
    result = _safe_float(value)
    return int(result) if result is not None else None


def _first_block(blocks: Any) -> dict | None:
    """First entry of a chart indicator list; None when the shape is wrong."""
    blocks = blocks or [{}]
    if not isinstance(blocks, list) or not isinstance(blocks[0], dict):
        return None
    return blocks[0]


def _is_records(items: Any) -> bool:
    return isinstance(items, list) and all(isinstance(item, dict) for item in items)

class _HttpProvider:
    """Shared JSON-over-HTTP plumbing for the providers."""

    name = "provider"

    def __init__(self, timeout: float, user_agent: str, http_client: httpx.Client | None = None):
        self._client = http_client or httpx.Client(
            timeout=timeout,
            headers={"User-Agent": user_agent, "Accept": "application/json"},
        )

    def _get_json(self, url: str, params: dict | None = None) -> Any:
        try:
            response = self._client.get(url, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"⚠️ {self.name} request failed: {e}")
            raise MarketDataError(f"{self.name} request failed: {e}") from e

        if response.status_code != 200:
            logger.warning(f"⚠️ {self.name} returned HTTP {response.status_code}")
            raise MarketDataError(f"{self.name} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"⚠️ {self.name} returned malformed JSON")
            raise MarketDataError(f"{self.name} returned malformed JSON") from e

    def _malformed(self, symbol: str) -> MarketDataError:
        logger.warning(f"⚠️ {self.name} returned an unexpected payload shape for {symbol}")
        return MarketDataError(f"{self.name}: {symbol}: malformed payload")

    def close(self) -> None:
        self._client.close()


class YahooFinanceProvider(_HttpProvider):
    """
    Keyless provider for quotes, search, daily history and dividend dates.

    The dividend `date` in the chart payload is stored as the ex-date; Yahoo
    does not say which date it is, so payment and record dates stay empty.
    """

    name = YAHOO

    def __init__(self, settings: MarketDataConfig | None = None, http_client: httpx.Client | None = None):
        self.settings = settings or config.market_data
        super().__init__(self.settings.yahoo_timeout, self.settings.user_agent, http_client)

    def _chart(self, symbol: str, params: dict) -> dict:
        url = f"{self.settings.yahoo_base_url}/v8/finance/chart/{symbol}"
        payload = self._get_json(url, params)

        if not isinstance(payload or {}, dict):
            raise self._malformed(symbol)
        chart = (payload or {}).get("chart") or {}
        if not isinstance(chart, dict):
            raise self._malformed(symbol)

        results = chart.get("result") or []
        if not results:
            error = chart.get("error") or {}
            message = (error.get("description") if isinstance(error, dict) else None) or "no chart data"
            raise MarketDataError(f"{self.name}: {symbol}: {message}")
        if not isinstance(results, list) or not isinstance(results[0], dict):
            raise self._malformed(symbol)
        return results[0]

    def get_quote(self, symbol: str) -> QuoteSnapshot:
        """Fetch and normalize the current quote."""
        result = self._chart(symbol, {"interval": "1d", "range": "1d"})
        meta = result.get("meta") or {}
        if not isinstance(meta, dict):
            raise self._malformed(symbol)

        price = _safe_float(meta.get("regularMarketPrice"))
        if price is None:
            raise MarketDataError(f"{self.name}: {symbol}: quote has no price")

        previous = _safe_float(meta.get("previousClose"))
        if previous is None:
            previous = _safe_float(meta.get("chartPreviousClose"))

        change = price - previous if previous is not None else 0.0
        change_percent = (change / previous * 100) if previous and previous > 0 else 0.0

        return QuoteSnapshot(
            symbol=symbol.upper(),
            current_price=price,
            previous_close=previous,
            change_amount=change,
            change_percent=change_percent,
            volume=_safe_int(meta.get("regularMarketVolume")),
            market_cap=_safe_int(meta.get("marketCap")),
            open_price=_safe_float(meta.get("regularMarketOpen")),
            day_high=_safe_float(meta.get("regularMarketDayHigh")),
            day_low=_safe_float(meta.get("regularMarketDayLow")),
            week_52_high=_safe_float(meta.get("fiftyTwoWeekHigh")),
            week_52_low=_safe_float(meta.get("fiftyTwoWeekLow")),
            market_state=normalize_market_state(meta.get("marketState")),
            currency=meta.get("currency"),
            exchange=meta.get("exchangeName"),
            name=meta.get("longName") or meta.get("shortName"),
            quote_type=meta.get("instrumentType"),
        )

    def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        """Search symbols by ticker or company name."""
        url = f"{self.settings.yahoo_base_url}/v1/finance/search"
        payload = self._get_json(url, {"q": query, "quotesCount": limit, "newsCount": 0})
        quotes = (payload or {}).get("quotes") or [] if isinstance(payload or {}, dict) else None
        if not _is_records(quotes):
            raise self._malformed(query)

        results = []
        for item in quotes:
            symbol = item.get("symbol")
            if not symbol:
                continue
            results.append(SearchResult(
                symbol=symbol,
                name=item.get("shortname") or item.get("longname"),
                exchange=item.get("exchange"),
                quote_type=item.get("quoteType"),
            ))
        return results[:limit]

    def get_price_history(self, symbol: str, start: date, end: date) -> list[PriceBarRecord]:
        """
        Daily bars between start and end (inclusive).

        Days without a close or a volume are dropped.
        """
        result = self._chart(symbol, {
            "period1": _epoch(start),
            "period2": _epoch(end + timedelta(days=1)),
            "interval": "1d",
        })

        timestamps = result.get("timestamp") or []
        if not timestamps:
            return []

        indicators = result.get("indicators") or {}
        meta = result.get("meta") or {}
        if not isinstance(timestamps, list) or not isinstance(indicators, dict) or not isinstance(meta, dict):
            raise self._malformed(symbol)
        quote = _first_block(indicators.get("quote"))
        adjclose = _first_block(indicators.get("adjclose"))
        if quote is None or adjclose is None:
            raise self._malformed(symbol)

        columns = {
            "open": quote.get("open"),
            "high": quote.get("high"),
            "low": quote.get("low"),
            "close": quote.get("close"),
            "adjusted_close": adjclose.get("adjclose"),
            "volume": quote.get("volume"),
        }
        # every series present must line up with the timestamps
        for values in columns.values():
            if values is not None and (not isinstance(values, list) or len(values) != len(timestamps)):
                raise self._malformed(symbol)

        gmtoffset = meta.get("gmtoffset") or 0
        try:
            index = pd.to_datetime([ts + gmtoffset for ts in timestamps], unit="s")
        except (TypeError, ValueError) as e:
            raise self._malformed(symbol) from e

        df = pd.DataFrame(columns, index=index)
        df = df.apply(pd.to_numeric, errors="coerce").dropna(subset=["close", "volume"])

        records = []
        for ts, row in df.iterrows():
            trade_date = ts.date()
            if trade_date < start or trade_date > end:
                continue
            records.append(PriceBarRecord(
                trade_date=trade_date,
                open=_safe_float(row["open"]),
                high=_safe_float(row["high"]),
                low=_safe_float(row["low"]),
                close=float(row["close"]),
                adjusted_close=_safe_float(row["adjusted_close"]),
                volume=int(row["volume"]),
            ))
        return records

    def get_dividends(self, symbol: str, start: date | None = None, end: date | None = None) -> list[DividendRecord]:
        """Dividend events from the chart `events=div` payload, newest first."""
        end = end or date.today()
        start = start or end - timedelta(days=365 * 10)

        result = self._chart(symbol, {
            "period1": _epoch(start),
            "period2": _epoch(end + timedelta(days=1)),
            "interval": "1d",
            "events": "div",
        })
        meta = result.get("meta") or {}
        events = result.get("events") or {}
        if not isinstance(meta, dict) or not isinstance(events, dict):
            raise self._malformed(symbol)
        dividends = events.get("dividends") or {}
        if not isinstance(dividends, dict) or not all(isinstance(e, dict) for e in dividends.values()):
            raise self._malformed(symbol)
        currency = meta.get("currency") or "USD"

        records = []
        for event in dividends.values():
            amount = _safe_float(event.get("amount"))
            timestamp = event.get("date")
            if amount is None or amount <= 0 or timestamp is None:
                continue
            try:
                ex_date = datetime.fromtimestamp(timestamp, tz=timezone.utc).date()
            except (TypeError, ValueError, OverflowError, OSError) as e:
                raise self._malformed(symbol) from e
            records.append(DividendRecord(
                symbol=symbol.upper(),
                ex_date=ex_date,
                amount=amount,
                currency=currency,
                source=self.name,
            ))

        records.sort(key=lambda r: r.ex_date, reverse=True)
        return records

    def get_company_profile(self, symbol: str) -> dict[str, Any]:
        """Company metadata from yfinance Ticker.info."""
        try:
            info = yf.Ticker(symbol).info or {}
        except Exception as e:
            raise MarketDataError(f"{self.name}: {symbol}: profile lookup failed: {e}") from e

        return {
            "name": info.get("longName") or info.get("shortName"),
            "sector": info.get("sector"),
            "industry": info.get("industry"),
            "exchange": info.get("exchange"),
            "country": info.get("country"),
            "currency": info.get("currency"),
            "quote_type": info.get("quoteType"),
            "market_cap": _safe_int(info.get("marketCap")),
        }


class FinancialModelingPrepProvider(_HttpProvider):
    """
    Keyed provider for dividend details, financial statements and the
    dividend calendar.

    Every request is counted against the daily quota; requests are refused
    once the quota is spent or when no key is configured.
    """

    name = FMP

    def __init__(
        self,
        settings: MarketDataConfig | None = None,
        quota: "ApiQuota | None" = None,
        http_client: httpx.Client | None = None,
    ):
        self.settings = settings or config.market_data
        self.quota = quota
        super().__init__(self.settings.fmp_timeout, self.settings.user_agent, http_client)

    @property
    def is_available(self) -> bool:
        """Key configured and quota not exhausted."""
        if not self.settings.fmp_api_key:
            return False
        return self.quota is None or self.quota.can_request()

    def _request(self, path: str, params: dict | None = None) -> Any:
        if not self.settings.fmp_api_key:
            raise ProviderUnavailableError(f"{self.name}: no API key configured")
        if self.quota is not None and not self.quota.can_request():
            raise ProviderUnavailableError(f"{self.name}: daily quota exhausted")

        query = dict(params or {})
        query["apikey"] = self.settings.fmp_api_key
        try:
            return self._get_json(f"{self.settings.fmp_base_url}{path}", query)
        finally:
            if self.quota is not None:
                self.quota.record()

    def get_dividends(self, symbol: str, start: date | None = None, end: date | None = None) -> list[DividendRecord]:
        """Dividend history; `date` in the payload is the ex-date."""
        payload = self._request(f"/historical-price-full/stock_dividend/{symbol}")
        historical = payload.get("historical") or [] if isinstance(payload, dict) else []
        if not _is_records(historical):
            raise self._malformed(symbol)

        records = []
        for item in historical:
            ex_date = _parse_date(item.get("date"))
            amount = _safe_float(item.get("adjDividend"))
            if amount is None:
                amount = _safe_float(item.get("dividend"))
            if ex_date is None or amount is None or amount <= 0:
                continue
            if (start and ex_date < start) or (end and ex_date > end):
                continue
            records.append(DividendRecord(
                symbol=symbol.upper(),
                ex_date=ex_date,
                amount=amount,
                record_date=_parse_date(item.get("recordDate")),
                payment_date=_parse_date(item.get("paymentDate")),
                declaration_date=_parse_date(item.get("declarationDate")),
                source=self.name,
            ))

        records.sort(key=lambda r: r.ex_date, reverse=True)
        return records

    def _statements(self, kind: str, symbol: str, years: int) -> list[dict]:
        payload = self._request(f"/{kind}/{symbol}", {"period": "annual", "limit": years})
        if not isinstance(payload, list):
            return []
        if not _is_records(payload):
            raise self._malformed(symbol)
        return sorted(payload, key=lambda s: str(s.get("date") or ""), reverse=True)

    def get_financial_statements(self, symbol: str, years: int = 5) -> FinancialStatements:
        """Annual income statement, balance sheet and cash flow, newest first."""
        return FinancialStatements(
            symbol=symbol.upper(),
            income_statements=self._statements("income-statement", symbol, years),
            balance_sheets=self._statements("balance-sheet-statement", symbol, years),
            cash_flows=self._statements("cash-flow-statement", symbol, years),
        )

    def get_dividend_calendar(self, start: date, end: date) -> list[DividendRecord]:
        """Upcoming and recent dividends across all symbols."""
        payload = self._request(
            "/stock_dividend_calendar",
            {"from": start.isoformat(), "to": end.isoformat()},
        )
        if not isinstance(payload, list):
            return []
        if not _is_records(payload):
            raise self._malformed("dividend calendar")

        records = []
        for item in payload:
            symbol = item.get("symbol")
            ex_date = _parse_date(item.get("date"))
            amount = _safe_float(item.get("adjDividend"))
            if amount is None:
                amount = _safe_float(item.get("dividend"))
            if not is_valid_symbol(symbol) or ex_date is None or amount is None or amount <= 0:
                continue
            records.append(DividendRecord(
                symbol=symbol.upper(),
                ex_date=ex_date,
                amount=amount,
                record_date=_parse_date(item.get("recordDate")),
                payment_date=_parse_date(item.get("paymentDate")),
                declaration_date=_parse_date(item.get("declarationDate")),
                source=self.name,
            ))
        return records


class MarketDataClient:
    """
    Facade over the two providers.

    Usage:
        client = build_market_data_client(db=db)
        quote = client.get_quote("KO")
    """

    def __init__(
        self,
        settings: MarketDataConfig | None = None,
        yahoo: YahooFinanceProvider | None = None,
        fmp: FinancialModelingPrepProvider | None = None,
    ):
        self.settings = settings or config.market_data
        self.yahoo = yahoo or YahooFinanceProvider(self.settings)
        self.fmp = fmp or FinancialModelingPrepProvider(self.settings)

    def _provider(self, name: str | None):
        return {YAHOO: self.yahoo, FMP: self.fmp}.get(name) if name else None

    @property
    def financials_available(self) -> bool:
        return self.fmp.is_available

    def get_quote(self, symbol: str) -> QuoteSnapshot:
        """Current quote for a symbol."""
        return self.yahoo.get_quote(normalize_symbol(symbol))

    def get_quotes(self, symbols: list[str]) -> dict[str, QuoteSnapshot]:
        """Quotes for several symbols; failures are logged and left out."""
        quotes = {}
        for symbol in symbols:
            try:
                quotes[symbol.upper()] = self.get_quote(symbol)
            except (MarketDataError, InvalidSymbolError) as e:
                logger.warning(f"⚠️ Quote unavailable for {symbol}: {e}")
        return quotes

    def search(self, query: str, limit: int = 10) -> list[SearchResult]:
        """Symbol search."""
        query = (query or "").strip()
        if not query:
            return []
        return self.yahoo.search(query, limit)

    def get_price_history(self, symbol: str, start: date, end: date) -> list[PriceBarRecord]:
        """Daily bars for [start, end]."""
        return self.yahoo.get_price_history(normalize_symbol(symbol), start, end)

    def get_dividends(self, symbol: str, start: date | None = None, end: date | None = None) -> list[DividendRecord]:
        """
        Dividend events from the primary provider, or the fallback when the
        primary returns nothing or fails.
        """
        symbol = normalize_symbol(symbol)
        primary = self._provider(self.settings.dividend_primary_provider)
        fallback = self._provider(self.settings.dividend_fallback_provider)

        records: list[DividendRecord] = []
        primary_error: MarketDataError | None = None
        try:
            records = primary.get_dividends(symbol, start, end)
        except MarketDataError as e:
            primary_error = e
            logger.warning(f"⚠️ {primary.name} dividends failed for {symbol}: {e}")

        if records or fallback is None or fallback is primary:
            if not records and primary_error is not None:
                raise primary_error
            return records

        try:
            records = fallback.get_dividends(symbol, start, end)
        except ProviderUnavailableError as e:
            logger.info(f"⏭️ Dividend fallback skipped for {symbol}: {e}")
            if primary_error is not None:
                raise primary_error
            return []

        if records:
            logger.info(f"✅ {len(records)} dividends for {symbol} from fallback {fallback.name}")
        return records

    def get_company_profile(self, symbol: str) -> dict[str, Any]:
        """Company metadata (name, sector, industry, ...)."""
        return self.yahoo.get_company_profile(normalize_symbol(symbol))

    def get_financial_statements(self, symbol: str, years: int = 5) -> FinancialStatements:
        """Annual financial statements; raises ProviderUnavailableError without FMP access."""
        return self.fmp.get_financial_statements(normalize_symbol(symbol), years)

    def get_dividend_calendar(self, start: date, end: date) -> list[DividendRecord]:
        """Dividend calendar between two dates."""
        return self.fmp.get_dividend_calendar(start, end)


def _epoch(day: date) -> int:
    """UTC midnight of a date as a Unix timestamp."""
    return int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())


class ApiQuota:
    """
    Daily request quota for a keyed provider, persisted in `api_usage`.

    The count restarts on each new UTC day.
    """

    def __init__(
        self,
        db,
        provider: str = FMP,
        daily_limit: int | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.provider = provider
        self.daily_limit = daily_limit if daily_limit is not None else config.market_data.fmp_daily_limit
        self._now = now

    def used_today(self) -> int:
        with self.db.session() as session:
            usage = ApiUsageRepository(session).get_for_day(self.provider, self._now().date())
            return usage.request_count if usage else 0

    def can_request(self) -> bool:
        return self.used_today() < self.daily_limit

    def record(self) -> None:
        at = self._now()
        with self.db.session() as session:
            ApiUsageRepository(session).increment(self.provider, at.date(), at)

    def usage_stats(self) -> dict[str, Any]:
        """Daily limit, usage today, remaining requests and last use."""
        used = self.used_today()
        with self.db.session() as session:
            last_used = ApiUsageRepository(session).get_last_used(self.provider)

        return {
            "provider": self.provider,
            "daily_limit": self.daily_limit,
            "usage_today": used,
            "remaining": max(0, self.daily_limit - used),
            "percentage_used": round(used / self.daily_limit * 100, 1) if self.daily_limit else 100.0,
            "last_used": last_used,
        }


def build_market_data_client(settings: MarketDataConfig | None = None, db=None):
    """
    Select the data source once, at the boundary.

    Returns the live MarketDataClient, or SyntheticMarketDataClient when the
    configured source is "synthetic".
    """
    settings = settings or config.market_data
    if settings.source == "synthetic":
        from data.synthetic import SyntheticMarketDataClient

        logger.info("🧪 Using synthetic market data")
        return SyntheticMarketDataClient()

    quota = ApiQuota(db, FMP, settings.fmp_daily_limit) if db is not None else None
    return MarketDataClient(
        settings=settings,
        yahoo=YahooFinanceProvider(settings),
        fmp=FinancialModelingPrepProvider(settings, quota=quota),
    )
