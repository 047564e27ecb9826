"""
Dividend safety scoring.

Scores how sustainable a company's dividend is on a 0-100 scale from five
weighted factors:

    payout ratio          25%   annual dividend per share / latest EPS
    FCF coverage          25%   free cash flow / dividends paid
    debt to equity        20%   total debt / stockholders' equity
    growth consistency    15%   1 - 2 * std(yearly dividend growth)
    earnings stability    15%   1 - CV(positive net income) / 2

Results are cached per symbol for 24 hours. Securities without corporate
financials (ETFs, mutual funds) are excluded from analysis rather than
scored, and missing data yields an explicit insufficient-data result.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Sequence

import numpy as np
import pandas as pd

from config import SafetyConfig, config
from data.market_data import FinancialStatements, MarketDataError, ProviderUnavailableError
from db import DatabaseManager, DividendSafetyCache, SafetyStatus, get_db, utcnow
from db.repositories import (
    HoldingRepository,
    PortfolioRepository,
    SafetyCacheRepository,
    StockRepository,
)
from services.dividend_store import DividendStore
from services.exceptions import NotFoundError


logger = logging.getLogger(__name__)

# key -> (weight, description)
FACTORS: dict[str, tuple[int, str]] = {
    "payout_ratio": (25, "Percentage of earnings paid as dividends"),
    "fcf_coverage": (25, "Free cash flow coverage of dividends"),
    "debt_ratio": (20, "Company leverage impact on dividend sustainability"),
    "growth_consistency": (15, "Historical dividend growth stability"),
    "earnings_stability": (15, "Consistency of earnings over time"),
}

# Stored raw value column per factor
_VALUE_COLUMNS = {
    "payout_ratio": "payout_ratio",
    "fcf_coverage": "fcf_coverage",
    "debt_ratio": "debt_to_equity",
    "growth_consistency": "growth_consistency",
    "earnings_stability": "earnings_stability",
}

NO_EARNINGS_RATIO = 999.0
MIN_DIVIDEND_RECORDS = 8
MIN_INCOME_STATEMENTS = 3
WARNING_THRESHOLD = 40
NON_CORPORATE_QUOTE_TYPES = {"ETF", "MUTUALFUND"}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ----------------------------------------------------------------------
# Factor calculations
# ----------------------------------------------------------------------

def calculate_payout_ratio(annual_dividend_per_share: float, eps: float | None) -> float:
    """Dividend per share over EPS; no earnings means maximum risk."""
    if eps is None:
        return 0.0
    if eps <= 0:
        return NO_EARNINGS_RATIO
    return annual_dividend_per_share / eps if annual_dividend_per_share > 0 else 0.0


def score_payout_ratio(ratio: float) -> int:
    if ratio <= 0.4:
        return 100
    if ratio <= 0.6:
        return 80
    if ratio <= 0.8:
        return 60
    if ratio <= 1.0:
        return 40
    return 20


def calculate_fcf_coverage(cash_flow: dict | None) -> float:
    """Free cash flow divided by the absolute dividends paid (0 when none paid)."""
    if not cash_flow or cash_flow.get("freeCashFlow") is None:
        return 0.0
    free_cash_flow = float(cash_flow["freeCashFlow"])
    dividends_paid = abs(float(cash_flow.get("dividendsPaid") or 0))
    return free_cash_flow / dividends_paid if dividends_paid > 0 else 0.0


def score_fcf_coverage(coverage: float) -> int:
    if coverage >= 2.0:
        return 100
    if coverage >= 1.5:
        return 80
    if coverage >= 1.2:
        return 60
    if coverage >= 1.0:
        return 40
    return 20


def calculate_debt_to_equity(balance_sheet: dict | None) -> float:
    """Total debt over equity; non-positive equity means maximum risk."""
    if not balance_sheet:
        return 0.0
    total_debt = float(balance_sheet.get("totalDebt") or 0)
    equity = float(balance_sheet.get("totalStockholdersEquity") or 0)
    return total_debt / equity if equity > 0 else NO_EARNINGS_RATIO


def score_debt_ratio(ratio: float) -> int:
    if ratio <= 0.3:
        return 100
    if ratio <= 0.5:
        return 80
    if ratio <= 0.7:
        return 60
    if ratio <= 1.0:
        return 40
    return 20


def calculate_growth_consistency(dividends: Sequence[tuple[date, float]]) -> float:
    """
    Stability of year-over-year growth in total dividends.

    Needs at least 8 dividend records (two years of quarterly payments).
    Years are compared newest to oldest; a zero prior year is skipped.

    Returns:
        Value in [0, 1]; 1 means perfectly steady growth.
    """
    if len(dividends) < MIN_DIVIDEND_RECORDS:
        return 0.0

    df = pd.DataFrame(dividends, columns=["ex_date", "amount"])
    df["year"] = pd.to_datetime(df["ex_date"]).dt.year
    totals = df.groupby("year")["amount"].sum().sort_index(ascending=False).tolist()

    growth_rates = [
        (current - previous) / previous
        for current, previous in zip(totals, totals[1:])
        if previous > 0
    ]
    if not growth_rates:
        return 0.0

    std_dev = float(np.std(growth_rates))
    return max(0.0, min(1.0, 1 - std_dev * 2))


def calculate_earnings_stability(income_statements: Sequence[dict]) -> float:
    """
    Stability of positive net income across years.

    Needs at least 3 statements with 2 or more profitable years.

    Returns:
        Value in [0, 1]; 1 means identical earnings every year.
    """
    if len(income_statements) < MIN_INCOME_STATEMENTS:
        return 0.0

    earnings = [float(s.get("netIncome") or 0) for s in income_statements]
    positive = np.array([e for e in earnings if e > 0])
    if len(positive) < 2:
        return 0.0

    mean = positive.mean()
    cv = positive.std() / mean if mean > 0 else NO_EARNINGS_RATIO
    return max(0.0, min(1.0, 1 - cv / 2))


def score_fraction(value: float) -> int:
    """Score a 0-1 factor value."""
    return round_half_up(value * 100)


def combine_scores(factor_scores: dict[str, int]) -> int:
    """Weighted average of factor scores, rounded half up."""
    total_weight = sum(FACTORS[key][0] for key in factor_scores)
    if total_weight == 0:
        return 0
    weighted = sum(score * FACTORS[key][0] for key, score in factor_scores.items())
    return round_half_up(weighted / total_weight)


def grade_for(score: int) -> str:
    """Letter grade for a 0-100 score."""
    if score >= 90:
        return "A+"
    if score >= 80:
        return "A"
    if score >= 70:
        return "B"
    if score >= 60:
        return "C"
    if score >= 50:
        return "D"
    return "F"


def build_warnings(factor_scores: dict[str, int]) -> list[str]:
    """One warning per factor scoring below 40."""
    return [
        f"Poor {FACTORS[key][1]} - {key} score: {score}"
        for key, score in factor_scores.items()
        if score < WARNING_THRESHOLD
    ]


def risk_bucket(score: int) -> str:
    if score >= 70:
        return "safe"
    if score >= 50:
        return "moderate"
    if score >= 30:
        return "risky"
    return "dangerous"


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class SafetyResult:
    """Dividend safety analysis of one symbol."""
    symbol: str
    status: SafetyStatus
    score: int | None = None
    grade: str | None = None
    factor_scores: dict[str, int] = field(default_factory=dict)
    factor_values: dict[str, float] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    reason: str | None = None
    last_updated: datetime | None = None
    is_cached: bool = False
    is_stale: bool = False
    dividend_history: list[dict] = field(default_factory=list)

    @property
    def is_scored(self) -> bool:
        return self.status == SafetyStatus.SCORED and self.score is not None

    @property
    def grade_label(self) -> str:
        return self.grade or "N/A"


@dataclass
class HoldingSafety:
    """Safety of one holding inside a portfolio rollup."""
    symbol: str
    status: SafetyStatus
    score: int | None
    grade: str | None
    holding_value: float
    annual_dividend: float
    warnings: list[str] = field(default_factory=list)
    reason: str | None = None


@dataclass
class PortfolioSafety:
    """Value-weighted dividend safety of a portfolio."""
    portfolio_id: int
    overall_score: int | None = None
    overall_grade: str = "N/A"
    total_dividend_income: float = 0.0
    safe_dividend_income: float = 0.0
    at_risk_dividend_income: float = 0.0
    risk_distribution: dict[str, int] = field(
        default_factory=lambda: {"safe": 0, "moderate": 0, "risky": 0, "dangerous": 0}
    )
    income_distribution: dict[str, float] = field(
        default_factory=lambda: {"safe": 0.0, "moderate": 0.0, "risky": 0.0, "dangerous": 0.0}
    )
    holdings: list[HoldingSafety] = field(default_factory=list)
    excluded: list[HoldingSafety] = field(default_factory=list)
    top_risks: list[HoldingSafety] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


# ----------------------------------------------------------------------
# Scorer
# ----------------------------------------------------------------------

class DividendSafetyScorer:
    """
    Cache-first dividend safety scoring.

    Usage:
        scorer = DividendSafetyScorer(db, client)
        result = scorer.score("KO")
        print(result.score, result.grade)
    """

    def __init__(
        self,
        db: DatabaseManager | None = None,
        client=None,
        settings: SafetyConfig | None = None,
        dividend_store: DividendStore | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db or get_db()
        if client is None:
            from data.market_data import build_market_data_client

            client = build_market_data_client(db=self.db)
        self.client = client
        self.settings = settings or config.safety
        self.dividends = dividend_store or DividendStore(self.db)
        self._now = now

    @property
    def cache_window(self) -> timedelta:
        return timedelta(hours=self.settings.cache_hours)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _from_cache(self, entry: DividendSafetyCache, stale: bool = False) -> SafetyResult:
        factor_scores = {
            key: getattr(entry, f"{key}_score")
            for key in FACTORS
            if getattr(entry, f"{key}_score") is not None
        }
        factor_values = {
            key: getattr(entry, column)
            for key, column in _VALUE_COLUMNS.items()
            if getattr(entry, column) is not None
        }
        return SafetyResult(
            symbol=entry.symbol,
            status=entry.status,
            score=entry.safety_score,
            grade=entry.safety_grade,
            factor_scores=factor_scores,
            factor_values=factor_values,
            warnings=list(entry.warnings or []),
            reason=entry.reason,
            last_updated=entry.last_updated,
            is_cached=True,
            is_stale=stale,
        )

    def _store(self, result: SafetyResult) -> None:
        fields: dict[str, Any] = {
            "status": result.status,
            "safety_score": result.score,
            "safety_grade": result.grade,
            "warnings": list(result.warnings),
            "reason": result.reason,
            "last_updated": result.last_updated,
        }
        for key in FACTORS:
            fields[f"{key}_score"] = result.factor_scores.get(key)
        for key, column in _VALUE_COLUMNS.items():
            fields[column] = result.factor_values.get(key)

        with self.db.session() as session:
            SafetyCacheRepository(session).upsert(result.symbol, **fields)

    def is_fresh(self, entry: DividendSafetyCache | None, at: datetime | None = None) -> bool:
        """Entry younger than the cache window."""
        if entry is None:
            return False
        at = at or self._now()
        return at - entry.last_updated < self.cache_window

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def exclusion_reason(self, symbol: str) -> str | None:
        """Why a symbol is not scored, or None for corporate equities."""
        symbol = symbol.upper()
        if symbol in self.settings.etf_symbols:
            return f"{symbol} is an ETF; dividend safety applies to individual companies"

        with self.db.session() as session:
            stock = StockRepository(session).get_by_symbol(symbol)
            quote_type = (stock.quote_type or "").upper() if stock else ""
        if quote_type in NON_CORPORATE_QUOTE_TYPES:
            return f"{symbol} is a {quote_type}; no corporate financial statements"

        # five-letter symbols ending in X are US mutual funds
        if len(symbol) == 5 and symbol.endswith("X") and symbol.isalpha():
            return f"{symbol} looks like a mutual fund; no corporate financial statements"
        return None

    def score(self, symbol: str, force: bool = False) -> SafetyResult:
        """
        Safety analysis for a symbol, served from cache when fresh.

        A cache entry younger than 24 hours is returned unchanged. Otherwise
        the analysis is recomputed and the cache overwritten. When the
        financial data provider is unavailable, a stale entry is returned
        (flagged) instead of nothing.
        """
        symbol = symbol.upper()
        now = self._now()

        with self.db.session() as session:
            entry = SafetyCacheRepository(session).get(symbol)

        if not force and self.is_fresh(entry, now):
            result = self._from_cache(entry)
            result.dividend_history = self.dividends.get_dividend_history(symbol, self.settings.history_limit)
            return result

        try:
            result = self.compute(symbol, now)
        except MarketDataError as e:
            if entry is not None:
                logger.warning(f"⚠️ Serving stale safety score for {symbol}: {e}")
                result = self._from_cache(entry, stale=True)
                result.dividend_history = self.dividends.get_dividend_history(symbol, self.settings.history_limit)
                return result
            logger.warning(f"⚠️ Cannot score {symbol}: {e}")
            return SafetyResult(
                symbol=symbol,
                status=SafetyStatus.INSUFFICIENT_DATA,
                reason=f"Financial data unavailable: {e}",
                last_updated=now,
            )

        self._store(result)
        return result

    def _load_dividends(self, symbol: str, now: datetime) -> list:
        events = self.dividends.get_dividends(symbol, limit=self.settings.history_limit)
        if events:
            return events

        try:
            records = self.client.get_dividends(symbol)
        except MarketDataError as e:
            logger.warning(f"⚠️ Dividend history unavailable for {symbol}: {e}")
            return []

        self.dividends.upsert_dividends(symbol, records)
        self.dividends.mark_fetched(symbol, now)
        return self.dividends.get_dividends(symbol, limit=self.settings.history_limit)

    def compute(self, symbol: str, now: datetime | None = None) -> SafetyResult:
        """
        Recompute the analysis without touching the cache.

        Raises:
            MarketDataError: the financial statement provider failed.
        """
        symbol = symbol.upper()
        now = now or self._now()

        reason = self.exclusion_reason(symbol)
        if reason:
            return SafetyResult(symbol=symbol, status=SafetyStatus.EXCLUDED, reason=reason, last_updated=now)

        events = self._load_dividends(symbol, now)
        history = self.dividends.get_dividend_history(symbol, self.settings.history_limit)
        if not events:
            return SafetyResult(
                symbol=symbol,
                status=SafetyStatus.INSUFFICIENT_DATA,
                reason="No dividend history",
                warnings=["Insufficient data for analysis: no dividend history"],
                last_updated=now,
            )

        statements: FinancialStatements = self.client.get_financial_statements(
            symbol, self.settings.statement_years
        )
        if statements.is_empty:
            return SafetyResult(
                symbol=symbol,
                status=SafetyStatus.INSUFFICIENT_DATA,
                reason="No financial statements available",
                warnings=["Insufficient data for analysis: no financial statements"],
                last_updated=now,
                dividend_history=history,
            )

        annual_dps = self.dividends.annual_dividend_per_share(symbol, now.date())
        income = statements.income_statements
        eps = income[0].get("eps") if income else None

        values = {
            "payout_ratio": calculate_payout_ratio(annual_dps, float(eps) if eps is not None else None),
            "fcf_coverage": calculate_fcf_coverage(statements.cash_flows[0] if statements.cash_flows else None),
            "debt_ratio": calculate_debt_to_equity(statements.balance_sheets[0] if statements.balance_sheets else None),
            "growth_consistency": calculate_growth_consistency([(e.ex_date, e.amount) for e in events]),
            "earnings_stability": calculate_earnings_stability(income),
        }
        scores = {
            "payout_ratio": score_payout_ratio(values["payout_ratio"]),
            "fcf_coverage": score_fcf_coverage(values["fcf_coverage"]),
            "debt_ratio": score_debt_ratio(values["debt_ratio"]),
            "growth_consistency": score_fraction(values["growth_consistency"]),
            "earnings_stability": score_fraction(values["earnings_stability"]),
        }
        final = combine_scores(scores)

        logger.info(f"📊 Dividend safety for {symbol}: {final} ({grade_for(final)})")
        return SafetyResult(
            symbol=symbol,
            status=SafetyStatus.SCORED,
            score=final,
            grade=grade_for(final),
            factor_scores=scores,
            factor_values=values,
            warnings=build_warnings(scores),
            last_updated=now,
            dividend_history=history,
        )

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def symbols_needing_update(self, symbols: Sequence[str]) -> list[str]:
        """Symbols with no cache entry or one older than the cache window."""
        fresh_after = self._now() - self.cache_window
        with self.db.session() as session:
            return SafetyCacheRepository(session).get_symbols_needing_update(symbols, fresh_after)

    def bulk_refresh(self, symbols: Sequence[str], force: bool = False) -> dict[str, Any]:
        """
        Recompute stale or missing entries in one pass.

        Returns:
            Dict with total, updated, failed and errors.
        """
        targets = sorted({s.upper() for s in symbols}) if force else self.symbols_needing_update(symbols)
        results: dict[str, Any] = {"total": len(targets), "updated": 0, "failed": 0, "errors": []}

        for index, symbol in enumerate(targets):
            try:
                self._store(self.compute(symbol))
            except ProviderUnavailableError as e:
                # every remaining symbol would fail the same way
                logger.error(f"❌ Safety refresh stopped at {symbol}: {e}")
                for rest in targets[index:]:
                    results["failed"] += 1
                    results["errors"].append(f"{rest}: {e}")
                break
            except Exception as e:
                results["failed"] += 1
                results["errors"].append(f"{symbol}: {e}")
                logger.error(f"❌ Safety refresh failed for {symbol}: {e}")
                continue
            results["updated"] += 1

        return results

    def score_portfolio(self, portfolio_id: int) -> PortfolioSafety:
        """
        Value-weighted safety of a portfolio's holdings.

        Stale entries are refreshed in bulk first. Holding value is
        quantity * average cost. Excluded and unscored symbols are listed
        but left out of the weighted score and the risk buckets.
        """
        with self.db.session() as session:
            portfolio = PortfolioRepository(session).get_by_id(portfolio_id)
            if portfolio is None or not portfolio.is_active:
                raise NotFoundError(f"Portfolio {portfolio_id} not found")
            holdings = [
                (h.symbol, h.quantity, h.avg_cost_basis)
                for h in HoldingRepository(session).get_for_portfolio(portfolio_id)
            ]

        analysis = PortfolioSafety(portfolio_id=portfolio_id)
        if not holdings:
            return analysis

        self.bulk_refresh([symbol for symbol, _, _ in holdings])

        today = self._now().date()
        weighted_score = 0.0
        total_value = 0.0

        for symbol, quantity, avg_cost in holdings:
            result = self.score(symbol)
            holding_value = quantity * avg_cost
            annual_dividend = self.dividends.annual_dividend_per_share(symbol, today) * quantity

            item = HoldingSafety(
                symbol=symbol,
                status=result.status,
                score=result.score,
                grade=result.grade,
                holding_value=holding_value,
                annual_dividend=annual_dividend,
                warnings=result.warnings,
                reason=result.reason,
            )

            if not result.is_scored:
                analysis.excluded.append(item)
                continue

            analysis.holdings.append(item)
            weighted_score += result.score * holding_value
            total_value += holding_value

            bucket = risk_bucket(result.score)
            analysis.risk_distribution[bucket] += 1
            analysis.income_distribution[bucket] += annual_dividend
            analysis.total_dividend_income += annual_dividend
            if bucket == "safe":
                analysis.safe_dividend_income += annual_dividend
            elif bucket in ("risky", "dangerous"):
                analysis.at_risk_dividend_income += annual_dividend

            if result.score < 50:
                analysis.top_risks.append(item)

        if analysis.holdings:
            if total_value > 0:
                analysis.overall_score = round_half_up(weighted_score / total_value)
            else:
                analysis.overall_score = round_half_up(
                    sum(h.score for h in analysis.holdings) / len(analysis.holdings)
                )
            analysis.overall_grade = grade_for(analysis.overall_score)

        analysis.top_risks.sort(key=lambda h: h.annual_dividend, reverse=True)
        analysis.recommendations = self._recommendations(analysis)
        return analysis

    @staticmethod
    def _recommendations(analysis: PortfolioSafety) -> list[str]:
        recommendations = []
        if analysis.overall_score is not None and analysis.overall_score < 60:
            recommendations.append("Consider reducing exposure to high-risk dividend stocks")
        if analysis.at_risk_dividend_income > analysis.total_dividend_income * 0.3:
            recommendations.append("More than 30% of dividend income is at risk - consider diversification")
        if analysis.top_risks:
            symbols = ", ".join(h.symbol for h in analysis.top_risks[:3])
            recommendations.append(f"Review top risk holdings: {symbols}")
        if analysis.excluded:
            symbols = ", ".join(h.symbol for h in analysis.excluded)
            recommendations.append(f"Not scored (excluded or insufficient data): {symbols}")
        return recommendations

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cache_stats(self) -> dict[str, Any]:
        """Size, freshness and grade distribution of the cache."""
        now = self._now()
        with self.db.session() as session:
            entries = SafetyCacheRepository(session).get_all()

        scored = [e for e in entries if e.status == SafetyStatus.SCORED and e.safety_score is not None]
        fresh = sum(1 for e in entries if self.is_fresh(e, now))
        grades: dict[str, int] = {}
        for e in scored:
            grades[e.safety_grade] = grades.get(e.safety_grade, 0) + 1

        return {
            "total_entries": len(entries),
            "fresh_entries": fresh,
            "stale_entries": len(entries) - fresh,
            "scored": len(scored),
            "excluded": sum(1 for e in entries if e.status == SafetyStatus.EXCLUDED),
            "insufficient_data": sum(1 for e in entries if e.status == SafetyStatus.INSUFFICIENT_DATA),
            "average_score": round(float(np.mean([e.safety_score for e in scored])), 1) if scored else None,
            "grade_distribution": dict(sorted(grades.items())),
            "oldest_entry": min((e.last_updated for e in entries), default=None),
            "newest_entry": max((e.last_updated for e in entries), default=None),
        }

    def cleanup(self, older_than_days: int | None = None) -> int:
        """Delete entries not updated for the given number of days (30 by default)."""
        days = older_than_days if older_than_days is not None else self.settings.cleanup_days
        cutoff = self._now() - timedelta(days=days)
        with self.db.session() as session:
            deleted = SafetyCacheRepository(session).delete_older_than(cutoff)
        logger.info(f"🧹 Removed {deleted} dividend safety cache entries older than {days} days")
        return deleted
