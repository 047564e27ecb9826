"""
Portfolio Service - portfolio management and valuation.

Covers creating, renaming and soft-deleting portfolios, the current value
summary of a portfolio's holdings, and its historical value series.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

import pandas as pd

from db import DatabaseManager, PaymentType, Portfolio, PortfolioType, get_db
from db.repositories import (
    DividendPaymentRepository,
    HoldingRepository,
    PortfolioRepository,
    PriceBarRepository,
    QuoteRepository,
    TransactionRepository,
)
from services.exceptions import NotFoundError, ValidationError
from services.holdings_ledger import replay_transactions


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100


@dataclass
class HoldingValuation:
    """Current valuation of one holding."""
    symbol: str
    quantity: float
    avg_cost_basis: float
    cost_basis: float
    current_price: float
    market_value: float
    gain_loss: float
    gain_loss_percent: float
    weight: float = 0.0
    price_is_stale: bool = False  # no quote stored; valued at cost


@dataclass
class PortfolioSummary:
    """Totals and per-holding valuations of a portfolio."""
    portfolio_id: int
    name: str
    currency: str
    total_value: float
    total_cost_basis: float
    total_gain_loss: float
    total_gain_loss_percent: float
    holdings: list[HoldingValuation] = field(default_factory=list)


def _validate_fields(data: dict[str, Any], partial: bool = False) -> dict[str, Any]:
    errors = []
    cleaned: dict[str, Any] = {}

    if "name" in data or not partial:
        name = (data.get("name") or "").strip()
        if not name:
            errors.append("Portfolio name is required")
        elif len(name) > MAX_NAME_LENGTH:
            errors.append(f"Portfolio name must be at most {MAX_NAME_LENGTH} characters")
        cleaned["name"] = name

    if "portfolio_type" in data:
        try:
            cleaned["portfolio_type"] = PortfolioType(str(data["portfolio_type"]).lower())
        except ValueError:
            allowed = ", ".join(t.value for t in PortfolioType)
            errors.append(f"Portfolio type must be one of: {allowed}")

    if "currency" in data:
        currency = (data.get("currency") or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            errors.append("Currency must be a 3-letter code")
        cleaned["currency"] = currency

    if "description" in data:
        cleaned["description"] = data.get("description")

    if errors:
        raise ValidationError("; ".join(errors), errors)
    return cleaned


class PortfolioService:
    """Portfolio CRUD plus valuation."""

    def __init__(self, db: DatabaseManager | None = None):
        self.db = db or get_db()

    def create_portfolio(
        self,
        user_id: int,
        name: str,
        portfolio_type: str = PortfolioType.PERSONAL.value,
        currency: str = "USD",
        description: str | None = None,
    ) -> Portfolio:
        """
        Create a portfolio.

        Raises:
            ValidationError: bad fields or an active portfolio with the same name.
        """
        fields = _validate_fields({
            "name": name,
            "portfolio_type": portfolio_type,
            "currency": currency,
            "description": description,
        })

        with self.db.session() as session:
            repo = PortfolioRepository(session)
            if repo.find_active_by_name(user_id, fields["name"]):
                raise ValidationError(f"A portfolio named {fields['name']!r} already exists")
            portfolio = repo.create(user_id=user_id, **fields)

        logger.info(f"✅ Created portfolio #{portfolio.id} {portfolio.name!r}")
        return portfolio

    def get_portfolio(self, portfolio_id: int, user_id: int | None = None) -> Portfolio:
        """Active portfolio by ID, optionally checking ownership."""
        with self.db.session() as session:
            portfolio = PortfolioRepository(session).get_by_id(portfolio_id)
        if portfolio is None or not portfolio.is_active:
            raise NotFoundError(f"Portfolio {portfolio_id} not found")
        if user_id is not None and portfolio.user_id != user_id:
            raise NotFoundError(f"Portfolio {portfolio_id} not found")
        return portfolio

    def list_portfolios(self, user_id: int, include_inactive: bool = False) -> list[Portfolio]:
        """Portfolios of a user ordered by name."""
        with self.db.session() as session:
            return list(PortfolioRepository(session).get_for_user(user_id, include_inactive))

    def update_portfolio(self, portfolio_id: int, user_id: int, **changes) -> Portfolio:
        """Change name, type, currency or description."""
        fields = _validate_fields(changes, partial=True)

        with self.db.session() as session:
            repo = PortfolioRepository(session)
            portfolio = repo.get_by_id(portfolio_id)
            if portfolio is None or not portfolio.is_active or portfolio.user_id != user_id:
                raise NotFoundError(f"Portfolio {portfolio_id} not found")
            if "name" in fields and repo.find_active_by_name(user_id, fields["name"], exclude_id=portfolio_id):
                raise ValidationError(f"A portfolio named {fields['name']!r} already exists")

            for key, value in fields.items():
                setattr(portfolio, key, value)
            session.flush()

        return portfolio

    def delete_portfolio(self, portfolio_id: int, user_id: int) -> bool:
        """Soft delete: the portfolio is deactivated, never removed."""
        with self.db.session() as session:
            portfolio = PortfolioRepository(session).get_by_id(portfolio_id)
            if portfolio is None or not portfolio.is_active or portfolio.user_id != user_id:
                raise NotFoundError(f"Portfolio {portfolio_id} not found")
            portfolio.is_active = False

        logger.info(f"Deactivated portfolio #{portfolio_id}")
        return True

    def get_portfolio_summary(self, portfolio_id: int) -> PortfolioSummary:
        """
        Value every holding at the stored quote.

        Holdings without a quote are valued at cost and flagged.
        """
        with self.db.session() as session:
            portfolio = PortfolioRepository(session).get_by_id(portfolio_id)
            if portfolio is None:
                raise NotFoundError(f"Portfolio {portfolio_id} not found")

            quotes = QuoteRepository(session)
            valuations = []
            for holding in HoldingRepository(session).get_for_portfolio(portfolio_id):
                price = quotes.get_current_price(holding.symbol)
                stale = price is None
                if stale:
                    price = holding.avg_cost_basis

                cost = holding.quantity * holding.avg_cost_basis
                value = holding.quantity * price
                valuations.append(HoldingValuation(
                    symbol=holding.symbol,
                    quantity=holding.quantity,
                    avg_cost_basis=holding.avg_cost_basis,
                    cost_basis=cost,
                    current_price=price,
                    market_value=value,
                    gain_loss=value - cost,
                    gain_loss_percent=(value - cost) / cost * 100 if cost > 0 else 0.0,
                    price_is_stale=stale,
                ))

        total_value = sum(v.market_value for v in valuations)
        total_cost = sum(v.cost_basis for v in valuations)
        for v in valuations:
            v.weight = v.market_value / total_value if total_value > 0 else 0.0

        return PortfolioSummary(
            portfolio_id=portfolio.id,
            name=portfolio.name,
            currency=portfolio.currency,
            total_value=total_value,
            total_cost_basis=total_cost,
            total_gain_loss=total_value - total_cost,
            total_gain_loss_percent=(total_value - total_cost) / total_cost * 100 if total_cost > 0 else 0.0,
            holdings=sorted(valuations, key=lambda v: v.market_value, reverse=True),
        )

    def get_historical_performance(
        self,
        portfolio_id: int,
        start: date | None = None,
        end: date | None = None,
    ) -> pd.DataFrame:
        """
        Daily portfolio value over business days.

        Quantities come from replaying the ledger up to each day; prices
        are the stored closes carried forward over gaps.

        Returns:
            DataFrame indexed by date with value, cost_basis and gain_loss
            columns (empty when nothing can be valued).
        """
        end = end or date.today()
        start = start or end - timedelta(days=365)
        days = pd.bdate_range(start, end)
        if len(days) == 0:
            return pd.DataFrame(columns=["value", "cost_basis", "gain_loss"])

        with self.db.session() as session:
            txn_repo = TransactionRepository(session)
            symbols = txn_repo.get_symbols(portfolio_id)
            ledgers = {s: list(txn_repo.get_for_symbol(portfolio_id, s, until=end)) for s in symbols}
            payments = DividendPaymentRepository(session).get_for_portfolio(portfolio_id)
            amounts = {p.id: p.total_amount for p in payments}
            drip_ids = {p.id for p in payments if p.payment_type == PaymentType.DRIP}
            bars = PriceBarRepository(session).get_history(symbols, end=end)
            closes = [(pd.Timestamp(b.trade_date), b.symbol, b.close) for b in bars]

        if not closes:
            return pd.DataFrame(columns=["value", "cost_basis", "gain_loss"])

        prices = (
            pd.DataFrame(closes, columns=["date", "symbol", "close"])
            .pivot(index="date", columns="symbol", values="close")
            .sort_index()
        )
        # carry the last known close over missing days, including days before start
        prices = prices.reindex(prices.index.union(days)).sort_index().ffill().reindex(days)

        quantities = pd.DataFrame(0.0, index=days, columns=symbols)
        costs = pd.DataFrame(0.0, index=days, columns=symbols)
        for symbol, txns in ledgers.items():
            # ledger state after the last transaction of each date
            states = {}
            for i, txn in enumerate(txns):
                state = replay_transactions(txns[: i + 1], amounts, drip_ids)
                states[pd.Timestamp(txn.transaction_date)] = (
                    (state.quantity, state.total_cost) if state.is_open else (0.0, 0.0)
                )
            if not states:
                continue

            series = pd.DataFrame.from_dict(states, orient="index", columns=["quantity", "cost"])
            series = series.reindex(series.index.union(days)).sort_index().ffill().fillna(0.0).reindex(days)
            quantities[symbol] = series["quantity"]
            costs[symbol] = series["cost"]

        values = (quantities * prices.reindex(columns=symbols)).fillna(0.0).sum(axis=1)
        cost_basis = costs.sum(axis=1)

        return pd.DataFrame({
            "value": values,
            "cost_basis": cost_basis,
            "gain_loss": values - cost_basis,
        })
