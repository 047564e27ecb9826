"""Tests for dividend safety scoring and its cache."""

from datetime import date, timedelta

import pytest

from analytics.dividend_safety import (
    DividendSafetyScorer,
    build_warnings,
    calculate_debt_to_equity,
    calculate_earnings_stability,
    calculate_fcf_coverage,
    calculate_growth_consistency,
    calculate_payout_ratio,
    combine_scores,
    grade_for,
    risk_bucket,
    round_half_up,
    score_debt_ratio,
    score_fcf_coverage,
    score_payout_ratio,
)
from config import SafetyConfig
from data.market_data import FinancialStatements, ProviderUnavailableError
from db import SafetyStatus
from db.repositories import SafetyCacheRepository, StockRepository
from services.dividend_store import DividendStore


def _yearly(amounts_by_year: dict[int, list[float]]) -> list[tuple[date, float]]:
    months = (2, 5, 8, 11)
    return [
        (date(year, months[i], 15), amount)
        for year, amounts in amounts_by_year.items()
        for i, amount in enumerate(amounts)
    ]


def _ko_statements() -> FinancialStatements:
    return FinancialStatements(
        symbol="KO",
        income_statements=[
            {"date": "2023-12-31", "eps": 2.47, "netIncome": 10.7e9},
            {"date": "2022-12-31", "eps": 2.19, "netIncome": 9.5e9},
            {"date": "2021-12-31", "eps": 2.25, "netIncome": 9.8e9},
        ],
        balance_sheets=[{"date": "2023-12-31", "totalDebt": 42e9, "totalStockholdersEquity": 26e9}],
        cash_flows=[{"date": "2023-12-31", "freeCashFlow": 9.7e9, "dividendsPaid": -7.95e9}],
    )


def _statement_calls(market_data) -> int:
    return sum(1 for call in market_data.calls if call[0] == "get_financial_statements")


@pytest.fixture
def scorer(db, market_data, clock):
    return DividendSafetyScorer(db, market_data, SafetyConfig(), now=clock)


@pytest.fixture
def ko_data(market_data, make_dividends):
    """Eight quarterly KO dividends and three years of statements."""
    market_data.dividends["KO"] = make_dividends("KO", date(2024, 5, 31), [0.485] * 4 + [0.46] * 4)
    market_data.statements["KO"] = _ko_statements()


class TestFactorCalculations:
    """Tests for the individual factor formulas."""

    def test_payout_ratio(self):
        assert calculate_payout_ratio(2.0, 4.0) == pytest.approx(0.5)
        assert calculate_payout_ratio(2.0, 0.0) == 999
        assert calculate_payout_ratio(2.0, -1.5) == 999
        assert calculate_payout_ratio(0.0, 4.0) == 0
        assert calculate_payout_ratio(2.0, None) == 0

    @pytest.mark.parametrize("ratio,expected", [
        (0.0, 100), (0.4, 100), (0.41, 80), (0.6, 80), (0.8, 60), (1.0, 40), (1.01, 20), (999, 20),
    ])
    def test_payout_bands(self, ratio, expected):
        assert score_payout_ratio(ratio) == expected

    def test_fcf_coverage(self):
        assert calculate_fcf_coverage({"freeCashFlow": 200, "dividendsPaid": -100}) == pytest.approx(2.0)
        assert calculate_fcf_coverage({"freeCashFlow": 200, "dividendsPaid": 0}) == 0
        assert calculate_fcf_coverage({"dividendsPaid": -100}) == 0
        assert calculate_fcf_coverage(None) == 0

    @pytest.mark.parametrize("coverage,expected", [
        (2.5, 100), (2.0, 100), (1.5, 80), (1.2, 60), (1.0, 40), (0.99, 20), (0.0, 20),
    ])
    def test_fcf_bands(self, coverage, expected):
        assert score_fcf_coverage(coverage) == expected

    def test_debt_to_equity(self):
        assert calculate_debt_to_equity({"totalDebt": 30, "totalStockholdersEquity": 100}) == pytest.approx(0.3)
        assert calculate_debt_to_equity({"totalDebt": 30, "totalStockholdersEquity": 0}) == 999
        assert calculate_debt_to_equity({"totalDebt": 30, "totalStockholdersEquity": -5}) == 999
        assert calculate_debt_to_equity(None) == 0

    @pytest.mark.parametrize("ratio,expected", [
        (0.3, 100), (0.5, 80), (0.7, 60), (1.0, 40), (1.5, 20), (999, 20),
    ])
    def test_debt_bands(self, ratio, expected):
        assert score_debt_ratio(ratio) == expected

    def test_growth_needs_eight_records(self):
        """Fewer than eight dividends give no growth signal."""
        assert calculate_growth_consistency(_yearly({2023: [0.5] * 4, 2024: [0.5] * 3})) == 0

    def test_steady_growth(self):
        """Identical growth rates are perfectly consistent."""
        dividends = _yearly({2022: [0.25] * 4, 2023: [0.275] * 4, 2024: [0.3025] * 4})
        assert calculate_growth_consistency(dividends) == pytest.approx(1.0)

    def test_uneven_growth(self):
        """Growth of 20% then 0% has std 0.1, so consistency 0.8."""
        dividends = _yearly({2022: [0.25] * 4, 2023: [0.25] * 4, 2024: [0.3] * 4})
        assert calculate_growth_consistency(dividends) == pytest.approx(0.8)

    def test_earnings_stability(self):
        stable = [{"netIncome": 100}, {"netIncome": 100}, {"netIncome": 100}]
        assert calculate_earnings_stability(stable) == pytest.approx(1.0)

        # positive years 100 and 50: mean 75, std 25, CV 1/3
        mixed = [{"netIncome": 100}, {"netIncome": 50}, {"netIncome": -10}]
        assert calculate_earnings_stability(mixed) == pytest.approx(1 - 1 / 6)

    def test_earnings_stability_needs_history(self):
        assert calculate_earnings_stability([{"netIncome": 100}, {"netIncome": 100}]) == 0
        one_profitable = [{"netIncome": 100}, {"netIncome": -5}, {"netIncome": 0}]
        assert calculate_earnings_stability(one_profitable) == 0


class TestCombination:
    """Tests for weighting, rounding, grading and warnings."""

    def test_round_half_up(self):
        assert round_half_up(98.5) == 99
        assert round_half_up(48.55) == 49
        assert round_half_up(70.49) == 70

    def test_weighted_average(self):
        scores = {
            "payout_ratio": 100,
            "fcf_coverage": 100,
            "debt_ratio": 100,
            "growth_consistency": 90,
            "earnings_stability": 100,
        }
        # 98.5 rounds up, unlike banker's rounding
        assert combine_scores(scores) == 99

    def test_score_stays_in_range(self):
        assert combine_scores({key: 0 for key in ("payout_ratio", "fcf_coverage")}) == 0
        assert combine_scores({key: 100 for key in ("payout_ratio", "debt_ratio")}) == 100

    @pytest.mark.parametrize("score,grade", [
        (100, "A+"), (90, "A+"), (89, "A"), (80, "A"), (79, "B"), (70, "B"),
        (69, "C"), (60, "C"), (59, "D"), (50, "D"), (49, "F"), (0, "F"),
    ])
    def test_grades(self, score, grade):
        assert grade_for(score) == grade

    @pytest.mark.parametrize("score,bucket", [
        (70, "safe"), (69, "moderate"), (50, "moderate"), (49, "risky"), (30, "risky"), (29, "dangerous"),
    ])
    def test_risk_buckets(self, score, bucket):
        assert risk_bucket(score) == bucket

    def test_warnings_below_forty(self):
        warnings = build_warnings({"fcf_coverage": 20, "debt_ratio": 40, "payout_ratio": 39})
        assert warnings == [
            "Poor Free cash flow coverage of dividends - fcf_coverage score: 20",
            "Poor Percentage of earnings paid as dividends - payout_ratio score: 39",
        ]


class TestScorer:
    """Tests for DividendSafetyScorer.score."""

    def test_scores_company(self, scorer, ko_data):
        """End to end score from stored dividends and statements."""
        result = scorer.score("ko")

        assert result.status == SafetyStatus.SCORED
        assert result.factor_scores == {
            "payout_ratio": 60,        # 1.94 / 2.47 = 0.785
            "fcf_coverage": 60,        # 9.7 / 7.95 = 1.22
            "debt_ratio": 20,          # 42 / 26 = 1.62
            "growth_consistency": 0,   # partial years swing the yearly totals
            "earnings_stability": 97,
        }
        assert result.score == 49
        assert result.grade == "F"
        assert len(result.warnings) == 2
        assert not result.is_cached
        assert len(result.dividend_history) == 8

    def test_cache_window(self, scorer, market_data, clock, ko_data):
        """Entries younger than 24 hours are served verbatim."""
        first = scorer.score("KO")
        assert _statement_calls(market_data) == 1

        clock.advance(hours=23, minutes=59)
        cached = scorer.score("KO")
        assert cached.is_cached
        assert cached.score == first.score
        assert cached.factor_scores == first.factor_scores
        assert cached.last_updated == first.last_updated
        assert _statement_calls(market_data) == 1

        clock.advance(minutes=2)
        recomputed = scorer.score("KO")
        assert not recomputed.is_cached
        assert recomputed.last_updated == clock.now
        assert _statement_calls(market_data) == 2

    def test_force_bypasses_cache(self, scorer, market_data, ko_data):
        scorer.score("KO")
        scorer.score("KO", force=True)
        assert _statement_calls(market_data) == 2

    def test_stale_entry_when_provider_unavailable(self, scorer, market_data, clock, ko_data):
        """A stale entry beats no answer, and is flagged."""
        first = scorer.score("KO")
        clock.advance(hours=30)
        market_data.statement_error = ProviderUnavailableError("quota exhausted")

        result = scorer.score("KO")
        assert result.is_stale
        assert result.is_cached
        assert result.score == first.score

    def test_unavailable_without_cache(self, db, scorer, market_data, ko_data):
        """No cache and no provider gives insufficient data, not a fake score."""
        market_data.statement_error = ProviderUnavailableError("no API key")

        result = scorer.score("KO")
        assert result.status == SafetyStatus.INSUFFICIENT_DATA
        assert result.score is None
        assert "no API key" in result.reason
        with db.session() as session:
            assert SafetyCacheRepository(session).get("KO") is None

    @pytest.mark.parametrize("symbol", ["SCHD", "VFIAX"])
    def test_funds_are_excluded(self, scorer, market_data, symbol):
        """ETFs and mutual funds get a reason, never a score."""
        result = scorer.score(symbol)

        assert result.status == SafetyStatus.EXCLUDED
        assert result.score is None
        assert result.grade_label == "N/A"
        assert _statement_calls(market_data) == 0

    def test_stored_quote_type_excludes(self, db, scorer):
        with db.session() as session:
            StockRepository(session).get_or_create("ABCD", quote_type="ETF")

        assert scorer.score("ABCD").status == SafetyStatus.EXCLUDED

    def test_no_dividend_history(self, scorer, market_data):
        market_data.statements["MSFT"] = _ko_statements()

        result = scorer.score("MSFT")
        assert result.status == SafetyStatus.INSUFFICIENT_DATA
        assert result.reason == "No dividend history"

    def test_no_statements(self, scorer, market_data, make_dividends):
        market_data.dividends["KO"] = make_dividends("KO", date(2024, 5, 31), [0.485] * 4)

        result = scorer.score("KO")
        assert result.status == SafetyStatus.INSUFFICIENT_DATA
        assert result.reason == "No financial statements available"
        assert result.score is None


class TestPortfolioSafety:
    """Tests for the value-weighted portfolio rollup."""

    @pytest.fixture
    def seeded(self, db, clock, buy, make_dividends):
        buy("KO", 100, 50.0)     # value 5000
        buy("JNJ", 10, 150.0)    # value 1500
        buy("SCHD", 20, 75.0)    # excluded

        store = DividendStore(db)
        store.upsert_dividends("KO", make_dividends("KO", date(2024, 5, 31), [0.5] * 4))
        store.upsert_dividends("JNJ", make_dividends("JNJ", date(2024, 5, 31), [1.2] * 4))

        with db.session() as session:
            repo = SafetyCacheRepository(session)
            repo.upsert("KO", status=SafetyStatus.SCORED, safety_score=80, safety_grade="A",
                        warnings=[], last_updated=clock.now)
            repo.upsert("JNJ", status=SafetyStatus.SCORED, safety_score=40, safety_grade="F",
                        warnings=[], last_updated=clock.now)
            repo.upsert("SCHD", status=SafetyStatus.EXCLUDED, reason="ETF",
                        warnings=[], last_updated=clock.now)

    def test_rollup(self, scorer, portfolio, market_data, seeded):
        analysis = scorer.score_portfolio(portfolio.id)

        # (80 * 5000 + 40 * 1500) / 6500 = 70.77
        assert analysis.overall_score == 71
        assert analysis.overall_grade == "B"
        assert [h.symbol for h in analysis.holdings] == ["JNJ", "KO"]
        assert [h.symbol for h in analysis.excluded] == ["SCHD"]
        assert analysis.risk_distribution == {"safe": 1, "moderate": 0, "risky": 1, "dangerous": 0}
        assert analysis.total_dividend_income == pytest.approx(248.0)
        assert analysis.safe_dividend_income == pytest.approx(200.0)
        assert analysis.at_risk_dividend_income == pytest.approx(48.0)
        assert [h.symbol for h in analysis.top_risks] == ["JNJ"]
        assert "Review top risk holdings: JNJ" in analysis.recommendations
        assert "Consider reducing exposure to high-risk dividend stocks" not in analysis.recommendations
        assert _statement_calls(market_data) == 0

    def test_empty_portfolio(self, scorer, portfolio):
        analysis = scorer.score_portfolio(portfolio.id)
        assert analysis.overall_score is None
        assert analysis.holdings == []


class TestCacheMaintenance:
    """Tests for bulk refresh, stats and cleanup."""

    def test_symbols_needing_update(self, db, scorer, clock):
        with db.session() as session:
            repo = SafetyCacheRepository(session)
            repo.upsert("KO", status=SafetyStatus.SCORED, safety_score=80, warnings=[], last_updated=clock.now)
            repo.upsert("PEP", status=SafetyStatus.SCORED, safety_score=70, warnings=[],
                        last_updated=clock.now - timedelta(hours=25))

        assert sorted(scorer.symbols_needing_update(["KO", "PEP", "JNJ"])) == ["JNJ", "PEP"]

    def test_bulk_refresh_stops_when_provider_unavailable(self, scorer, market_data, ko_data, make_dividends):
        market_data.dividends["PEP"] = make_dividends("PEP", date(2024, 5, 31), [1.35] * 8)
        market_data.statement_error = ProviderUnavailableError("quota exhausted")

        results = scorer.bulk_refresh(["KO", "PEP"])
        assert results["total"] == 2
        assert results["failed"] == 2
        assert results["updated"] == 0
        assert _statement_calls(market_data) == 1

    def test_bulk_refresh_isolates_unexpected_errors(self, db, scorer, market_data, make_dividends):
        """A bug-class error on one symbol is recorded and the rest are still scored."""
        for symbol in ("JNJ", "KO", "PEP"):
            market_data.dividends[symbol] = make_dividends(symbol, date(2024, 5, 31), [1.0] * 8)
            market_data.statements[symbol] = _ko_statements()
        market_data.errors["KO"] = ZeroDivisionError("float division by zero")

        results = scorer.bulk_refresh(["KO", "PEP", "JNJ"], force=True)

        assert results["total"] == 3
        assert results["updated"] == 2
        assert results["failed"] == 1
        assert results["errors"] == ["KO: float division by zero"]
        with db.session() as session:
            repo = SafetyCacheRepository(session)
            assert repo.get("KO") is None
            assert repo.get("JNJ").status == SafetyStatus.SCORED
            assert repo.get("PEP").status == SafetyStatus.SCORED

    def test_stats_and_cleanup(self, db, scorer, clock):
        with db.session() as session:
            repo = SafetyCacheRepository(session)
            repo.upsert("KO", status=SafetyStatus.SCORED, safety_score=80, safety_grade="A",
                        warnings=[], last_updated=clock.now)
            repo.upsert("PEP", status=SafetyStatus.SCORED, safety_score=70, safety_grade="B",
                        warnings=[], last_updated=clock.now - timedelta(days=40))
            repo.upsert("SCHD", status=SafetyStatus.EXCLUDED, reason="ETF",
                        warnings=[], last_updated=clock.now)

        stats = scorer.cache_stats()
        assert stats["total_entries"] == 3
        assert stats["fresh_entries"] == 2
        assert stats["stale_entries"] == 1
        assert stats["scored"] == 2
        assert stats["excluded"] == 1
        assert stats["average_score"] == 75.0
        assert stats["grade_distribution"] == {"A": 1, "B": 1}

        assert scorer.cleanup() == 1
        assert scorer.cache_stats()["total_entries"] == 2
