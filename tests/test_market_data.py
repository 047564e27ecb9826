"""Tests for the market data client and its providers."""

from datetime import date, datetime, timezone

import httpx
import pytest

from config import MarketDataConfig
from data.market_data import (
    ApiQuota,
    DividendRecord,
    FinancialModelingPrepProvider,
    InvalidSymbolError,
    MarketDataClient,
    MarketDataError,
    ProviderUnavailableError,
    YahooFinanceProvider,
    build_market_data_client,
    is_valid_symbol,
    normalize_market_state,
    normalize_symbol,
)
from data.synthetic import SAMPLE_QUOTES, SyntheticMarketDataClient
from db.models import MarketState


def _ts(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


class Router:
    """httpx mock transport answering by URL path."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404)
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


def _yahoo(routes: dict) -> tuple[YahooFinanceProvider, Router]:
    router = Router(routes)
    return YahooFinanceProvider(MarketDataConfig(), http_client=router.client()), router


def _fmp(routes: dict, api_key: str | None = "test-key", quota=None) -> tuple[FinancialModelingPrepProvider, Router]:
    router = Router(routes)
    settings = MarketDataConfig(fmp_api_key=api_key)
    return FinancialModelingPrepProvider(settings, quota=quota, http_client=router.client()), router


def _chart(**result) -> dict:
    return {"chart": {"result": [result], "error": None}}


CHART = "/v8/finance/chart/KO"
FMP_DIVIDENDS = "/api/v3/historical-price-full/stock_dividend/KO"


class TestSymbols:
    """Tests for symbol validation and session mapping."""

    @pytest.mark.parametrize("symbol,valid", [
        ("KO", True),
        ("brk-b", True),
        ("BRK.B", True),
        ("A" * 20, True),
        ("A" * 21, False),
        ("", False),
        (None, False),
        ("KO US", False),
        ("$KO", False),
        ("KO\n", False),
        (42, False),
    ])
    def test_is_valid_symbol(self, symbol, valid):
        assert is_valid_symbol(symbol) is valid

    def test_normalize_symbol(self):
        assert normalize_symbol(" brk-b ") == "BRK-B"
        with pytest.raises(InvalidSymbolError):
            normalize_symbol("KO;DROP")

    @pytest.mark.parametrize("raw,state", [
        ("PRE", MarketState.PRE),
        ("prepre", MarketState.PRE),
        ("REGULAR", MarketState.REGULAR),
        ("POSTPOST", MarketState.POST),
        ("CLOSED", MarketState.CLOSED),
        (None, MarketState.CLOSED),
        ("HOLIDAY", MarketState.CLOSED),
    ])
    def test_normalize_market_state(self, raw, state):
        assert normalize_market_state(raw) is state


class TestYahooProvider:
    """Tests for Yahoo payload normalization."""

    def test_quote(self):
        provider, _ = _yahoo({CHART: _chart(meta={
            "regularMarketPrice": 60.5,
            "previousClose": 60.0,
            "regularMarketVolume": 12_000_000,
            "marketState": "REGULAR",
            "currency": "USD",
            "exchangeName": "NYQ",
            "longName": "The Coca-Cola Company",
            "instrumentType": "EQUITY",
        })})

        quote = provider.get_quote("KO")

        assert quote.symbol == "KO"
        assert quote.current_price == 60.5
        assert quote.change_amount == pytest.approx(0.5)
        assert quote.change_percent == pytest.approx(0.8333, abs=1e-4)
        assert quote.market_state is MarketState.REGULAR
        assert quote.name == "The Coca-Cola Company"
        assert quote.volume == 12_000_000

    def test_quote_falls_back_to_chart_previous_close(self):
        provider, _ = _yahoo({CHART: _chart(meta={"regularMarketPrice": 50.0, "chartPreviousClose": 40.0})})
        quote = provider.get_quote("KO")
        assert quote.previous_close == 40.0
        assert quote.change_percent == pytest.approx(25.0)

    def test_quote_without_price(self):
        provider, _ = _yahoo({CHART: _chart(meta={"previousClose": 60.0})})
        with pytest.raises(MarketDataError, match="no price"):
            provider.get_quote("KO")

    def test_chart_error(self):
        provider, _ = _yahoo({CHART: {"chart": {"result": None, "error": {"description": "No data found"}}}})
        with pytest.raises(MarketDataError, match="No data found"):
            provider.get_quote("KO")

    def test_http_error_status(self):
        provider, _ = _yahoo({CHART: lambda request: httpx.Response(500)})
        with pytest.raises(MarketDataError, match="HTTP 500"):
            provider.get_quote("KO")

    def test_transport_error(self):
        def fail(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        provider, _ = _yahoo({CHART: fail})
        with pytest.raises(MarketDataError, match="request failed"):
            provider.get_quote("KO")

    def test_malformed_json(self):
        provider, _ = _yahoo({CHART: lambda request: httpx.Response(200, content=b"<html>")})
        with pytest.raises(MarketDataError, match="malformed"):
            provider.get_quote("KO")

    @pytest.mark.parametrize("payload", [
        {"chart": {"result": [None]}},
        {"chart": {"result": ["KO"]}},
        {"chart": "unavailable"},
        ["chart"],
        _chart(meta=[60.5]),
    ])
    def test_quote_malformed_payload(self, payload):
        """Valid JSON in the wrong shape is a provider failure, not a crash."""
        provider, _ = _yahoo({CHART: payload})
        with pytest.raises(MarketDataError, match="malformed payload"):
            provider.get_quote("KO")

    def test_search_malformed_payload(self):
        provider, _ = _yahoo({"/v1/finance/search": {"quotes": ["KO", "KOF"]}})
        with pytest.raises(MarketDataError, match="malformed payload"):
            provider.search("coca")

    def test_search(self):
        provider, router = _yahoo({"/v1/finance/search": {"quotes": [
            {"symbol": "KO", "shortname": "Coca-Cola", "exchange": "NYQ", "quoteType": "EQUITY"},
            {"shortname": "no symbol"},
            {"symbol": "KOF", "longname": "Coca-Cola FEMSA", "exchange": "NYQ", "quoteType": "EQUITY"},
        ]}})

        results = provider.search("coca", limit=5)

        assert [r.symbol for r in results] == ["KO", "KOF"]
        assert results[1].name == "Coca-Cola FEMSA"
        assert router.requests[0].url.params["q"] == "coca"

    def test_price_history(self):
        """Bars are dated in exchange time; rows without a close are dropped."""
        provider, router = _yahoo({CHART: _chart(
            meta={"gmtoffset": -18000},
            timestamp=[_ts(2024, 1, 2, 14, 30), _ts(2024, 1, 3, 14, 30), _ts(2024, 1, 4, 14, 30)],
            indicators={
                "quote": [{
                    "open": [59.0, 59.5, None],
                    "high": [60.0, 60.5, None],
                    "low": [58.5, 59.0, None],
                    "close": [59.8, 60.2, None],
                    "volume": [1000, 2000, None],
                }],
                "adjclose": [{"adjclose": [58.1, 58.5, None]}],
            },
        )})

        bars = provider.get_price_history("KO", date(2024, 1, 2), date(2024, 1, 4))

        assert [b.trade_date for b in bars] == [date(2024, 1, 2), date(2024, 1, 3)]
        assert bars[1].close == 60.2
        assert bars[1].adjusted_close == 58.5
        assert bars[1].volume == 2000
        params = router.requests[0].url.params
        assert int(params["period1"]) == _ts(2024, 1, 2)
        assert int(params["period2"]) == _ts(2024, 1, 5)

    def test_price_history_empty(self):
        provider, _ = _yahoo({CHART: _chart(meta={})})
        assert provider.get_price_history("KO", date(2024, 1, 2), date(2024, 1, 4)) == []

    @pytest.mark.parametrize("indicators", [
        {"quote": [{"close": [59.8], "volume": [1000, 2000]}]},
        {"quote": [{"close": [59.8, 60.2], "volume": [1000, 2000]}], "adjclose": [{"adjclose": [58.1]}]},
        {"quote": [{"close": "59.8,60.2", "volume": [1000, 2000]}]},
        {"quote": [None]},
        {"quote": {"close": [59.8, 60.2]}},
    ])
    def test_price_history_malformed_payload(self, indicators):
        """Series that do not line up with the timestamps are rejected."""
        provider, _ = _yahoo({CHART: _chart(
            meta={"gmtoffset": -18000},
            timestamp=[_ts(2024, 1, 2, 14, 30), _ts(2024, 1, 3, 14, 30)],
            indicators=indicators,
        )})
        with pytest.raises(MarketDataError, match="malformed payload"):
            provider.get_price_history("KO", date(2024, 1, 2), date(2024, 1, 4))

    def test_dividends(self):
        """The event date is used as the ex-date; newest first."""
        march, june, bad = _ts(2024, 3, 14, 13, 30), _ts(2024, 6, 14, 13, 30), _ts(2024, 5, 1, 13, 30)
        provider, _ = _yahoo({CHART: _chart(
            meta={"currency": "USD"},
            events={"dividends": {
                str(march): {"amount": 0.485, "date": march},
                str(june): {"amount": 0.485, "date": june},
                str(bad): {"amount": 0, "date": bad},
            }},
        )})

        records = provider.get_dividends("KO", date(2024, 1, 1), date(2024, 6, 30))

        assert [r.ex_date for r in records] == [date(2024, 6, 14), date(2024, 3, 14)]
        assert records[0].payment_date is None
        assert records[0].source == "yahoo_finance"

    @pytest.mark.parametrize("events", [
        {"dividends": {"1710423000": 0.485}},
        {"dividends": [{"amount": 0.485, "date": 1710423000}]},
        {"dividends": {"1710423000": {"amount": 0.485, "date": "2024-03-14"}}},
        ["dividends"],
    ])
    def test_dividends_malformed_payload(self, events):
        provider, _ = _yahoo({CHART: _chart(meta={"currency": "USD"}, events=events)})
        with pytest.raises(MarketDataError, match="malformed payload"):
            provider.get_dividends("KO", date(2024, 1, 1), date(2024, 6, 30))


class TestFinancialModelingPrep:
    """Tests for the keyed provider."""

    def test_no_api_key(self):
        provider, router = _fmp({}, api_key=None)

        assert not provider.is_available
        with pytest.raises(ProviderUnavailableError, match="no API key"):
            provider.get_dividends("KO")
        assert router.requests == []

    def test_dividends(self):
        provider, router = _fmp({FMP_DIVIDENDS: {"symbol": "KO", "historical": [
            {"date": "2024-03-14", "adjDividend": 0.485, "dividend": 0.485,
             "recordDate": "2024-03-15", "paymentDate": "2024-04-01", "declarationDate": "2024-02-15"},
            {"date": "2024-06-13", "dividend": 0.485, "recordDate": "", "paymentDate": None},
            {"date": "2023-11-30", "adjDividend": 0},
        ]}})

        records = provider.get_dividends("KO")

        assert [r.ex_date for r in records] == [date(2024, 6, 13), date(2024, 3, 14)]
        assert records[0].payment_date is None
        assert records[1].payment_date == date(2024, 4, 1)
        assert records[1].declaration_date == date(2024, 2, 15)
        assert router.requests[0].url.params["apikey"] == "test-key"

    def test_statements_newest_first(self):
        income = [{"date": "2022-12-31", "eps": 2.19}, {"date": "2023-12-31", "eps": 2.47}]
        provider, router = _fmp({
            "/api/v3/income-statement/KO": income,
            "/api/v3/balance-sheet-statement/KO": [],
            "/api/v3/cash-flow-statement/KO": {"Error Message": "Limit Reach"},
        })

        statements = provider.get_financial_statements("KO", years=5)

        assert [s["date"] for s in statements.income_statements] == ["2023-12-31", "2022-12-31"]
        assert statements.cash_flows == []
        assert router.requests[0].url.params["limit"] == "5"

    def test_quota_refuses_when_spent(self, db, clock):
        """Failed requests count too; the quota restarts the next UTC day."""
        quota = ApiQuota(db, daily_limit=2, now=clock)
        provider, router = _fmp({FMP_DIVIDENDS: lambda request: httpx.Response(503)}, quota=quota)

        for _ in range(2):
            with pytest.raises(MarketDataError):
                provider.get_dividends("KO")
        with pytest.raises(ProviderUnavailableError, match="quota"):
            provider.get_dividends("KO")

        assert len(router.requests) == 2
        stats = quota.usage_stats()
        assert stats["usage_today"] == 2
        assert stats["remaining"] == 0
        assert stats["last_used"] == clock.now

        clock.advance(days=1)
        assert quota.can_request()

    def test_dividend_calendar(self):
        provider, _ = _fmp({"/api/v3/stock_dividend_calendar": [
            {"symbol": "KO", "date": "2024-06-14", "dividend": 0.485, "paymentDate": "2024-07-01"},
            {"symbol": "BAD SYMBOL", "date": "2024-06-14", "dividend": 1.0},
        ]})

        records = provider.get_dividend_calendar(date(2024, 6, 1), date(2024, 6, 30))
        assert [(r.symbol, r.payment_date) for r in records] == [("KO", date(2024, 7, 1))]

    @pytest.mark.parametrize("path,payload,fetch", [
        (FMP_DIVIDENDS, {"historical": ["2024-03-14"]}, lambda p: p.get_dividends("KO")),
        (FMP_DIVIDENDS, {"historical": {"date": "2024-03-14"}}, lambda p: p.get_dividends("KO")),
        ("/api/v3/income-statement/KO", [None], lambda p: p.get_financial_statements("KO")),
        ("/api/v3/stock_dividend_calendar", [["KO", "2024-06-14", 0.485]],
         lambda p: p.get_dividend_calendar(date(2024, 6, 1), date(2024, 6, 30))),
    ])
    def test_malformed_payload(self, path, payload, fetch):
        provider, _ = _fmp({path: payload})
        with pytest.raises(MarketDataError, match="malformed payload"):
            fetch(provider)

    def test_calendar_skips_non_string_symbols(self):
        provider, _ = _fmp({"/api/v3/stock_dividend_calendar": [
            {"symbol": 1234, "date": "2024-06-14", "dividend": 1.0},
            {"symbol": "KO\n", "date": "2024-06-14", "dividend": 0.485},
        ]})
        assert provider.get_dividend_calendar(date(2024, 6, 1), date(2024, 6, 30)) == []


class StubProvider:
    def __init__(self, name, records=None, error=None):
        self.name = name
        self.records = records or []
        self.error = error
        self.calls = 0

    def get_dividends(self, symbol, start=None, end=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records)


class TestDividendFallback:
    """Tests for primary/fallback dividend provider selection."""

    record = DividendRecord("KO", date(2024, 6, 14), 0.485)

    def _client(self, yahoo, fmp) -> MarketDataClient:
        return MarketDataClient(MarketDataConfig(), yahoo=yahoo, fmp=fmp)

    def test_primary_records_skip_fallback(self):
        yahoo = StubProvider("yahoo_finance", [self.record])
        fmp = StubProvider("financial_modeling_prep", [self.record])

        assert self._client(yahoo, fmp).get_dividends("KO") == [self.record]
        assert fmp.calls == 0

    def test_empty_primary_uses_fallback(self):
        yahoo = StubProvider("yahoo_finance")
        fmp = StubProvider("financial_modeling_prep", [self.record])

        assert self._client(yahoo, fmp).get_dividends("KO") == [self.record]

    def test_failed_primary_uses_fallback(self):
        yahoo = StubProvider("yahoo_finance", error=MarketDataError("down"))
        fmp = StubProvider("financial_modeling_prep", [self.record])

        assert self._client(yahoo, fmp).get_dividends("KO") == [self.record]

    def test_unavailable_fallback_reraises_primary_error(self):
        yahoo = StubProvider("yahoo_finance", error=MarketDataError("down"))
        fmp = StubProvider("financial_modeling_prep", error=ProviderUnavailableError("no key"))

        with pytest.raises(MarketDataError, match="down"):
            self._client(yahoo, fmp).get_dividends("KO")

    def test_unavailable_fallback_after_empty_primary(self):
        yahoo = StubProvider("yahoo_finance")
        fmp = StubProvider("financial_modeling_prep", error=ProviderUnavailableError("no key"))

        assert self._client(yahoo, fmp).get_dividends("KO") == []

    def test_invalid_symbol_rejected_before_any_request(self):
        yahoo = StubProvider("yahoo_finance")
        with pytest.raises(InvalidSymbolError):
            self._client(yahoo, StubProvider("financial_modeling_prep")).get_dividends("K O")
        assert yahoo.calls == 0


class TestDataSourceSelection:
    """Tests for the live/synthetic switch and the synthetic source."""

    def test_build_live_client(self):
        client = build_market_data_client(MarketDataConfig())
        assert isinstance(client, MarketDataClient)
        assert not client.financials_available

    def test_build_synthetic_client(self):
        client = build_market_data_client(MarketDataConfig(source="synthetic"))
        assert isinstance(client, SyntheticMarketDataClient)

    def test_synthetic_quotes(self):
        client = SyntheticMarketDataClient()

        quote = client.get_quote("aapl")
        assert quote.current_price == SAMPLE_QUOTES["AAPL"][1]
        assert client.search("micro")[0].symbol == "MSFT"
        with pytest.raises(MarketDataError):
            client.get_quote("KO")

    def test_synthetic_history_is_deterministic(self):
        client = SyntheticMarketDataClient()

        first = client.get_price_history("MSFT", date(2024, 1, 1), date(2024, 1, 31))
        second = client.get_price_history("MSFT", date(2024, 1, 1), date(2024, 1, 31))

        assert first == second
        assert len(first) == 23
        assert first[-1].close == SAMPLE_QUOTES["MSFT"][1]

    def test_synthetic_has_no_financials(self):
        with pytest.raises(ProviderUnavailableError):
            SyntheticMarketDataClient().get_financial_statements("AAPL")
