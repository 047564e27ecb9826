"""
Repository pattern for data access operations.

Every read that may find nothing returns an Optional value, so callers
handle the "not there" case explicitly instead of walking relationships.
"""

from datetime import date, datetime
from typing import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from db.models import (
    ApiUsage,
    DividendEvent,
    DividendPayment,
    DividendSafetyCache,
    Holding,
    Portfolio,
    PriceBar,
    Quote,
    Stock,
    Transaction,
)


class StockRepository:
    """Repository for Stock records."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_symbol(self, symbol: str) -> Stock | None:
        """Get stock by ticker symbol."""
        stmt = select(Stock).where(Stock.symbol == symbol.upper())
        return self.session.scalar(stmt)

    def get_all(self, active_only: bool = True) -> Sequence[Stock]:
        """Get all stocks ordered by symbol."""
        stmt = select(Stock).order_by(Stock.symbol)
        if active_only:
            stmt = stmt.where(Stock.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get_or_create(self, symbol: str, **kwargs) -> tuple[Stock, bool]:
        """
        Get existing stock or create a new one.

        Returns:
            Tuple of (stock, created) where created is True if new.
        """
        existing = self.get_by_symbol(symbol)
        if existing:
            return existing, False

        stock = Stock(symbol=symbol.upper(), **kwargs)
        self.session.add(stock)
        self.session.flush()
        return stock, True

    def fill_missing(self, stock: Stock, **fields) -> Stock:
        """Set profile fields that are still empty on the stock."""
        for key, value in fields.items():
            if value is not None and getattr(stock, key, None) in (None, ""):
                setattr(stock, key, value)
        self.session.flush()
        return stock

    def mark_dividends_fetched(self, symbol: str, at: datetime) -> None:
        """Record when the dividend history of a symbol was last pulled."""
        stock, _ = self.get_or_create(symbol)
        stock.dividends_fetched_at = at
        self.session.flush()


class QuoteRepository:
    """Repository for the latest quote per symbol."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, symbol: str) -> Quote | None:
        """Get the stored quote for a symbol."""
        return self.session.get(Quote, symbol.upper())

    def get_current_price(self, symbol: str) -> float | None:
        """Latest price for a symbol, or None when no quote is stored."""
        quote = self.get(symbol)
        return quote.current_price if quote else None

    def get_many(self, symbols: Sequence[str]) -> dict[str, Quote]:
        """Get stored quotes keyed by symbol."""
        if not symbols:
            return {}
        stmt = select(Quote).where(Quote.symbol.in_([s.upper() for s in symbols]))
        return {q.symbol: q for q in self.session.scalars(stmt).all()}

    def upsert(self, symbol: str, **fields) -> Quote:
        """Insert or overwrite the quote for a symbol."""
        quote = self.get(symbol)
        if quote is None:
            quote = Quote(symbol=symbol.upper())
            self.session.add(quote)

        for key, value in fields.items():
            setattr(quote, key, value)

        self.session.flush()
        return quote


class PriceBarRepository:
    """Repository for daily price bars."""

    def __init__(self, session: Session):
        self.session = session

    def get_existing_dates(self, symbol: str, start: date, end: date) -> set[date]:
        """Trade dates already stored for a symbol within [start, end]."""
        stmt = select(PriceBar.trade_date).where(
            PriceBar.symbol == symbol.upper(),
            PriceBar.trade_date >= start,
            PriceBar.trade_date <= end,
        )
        return set(self.session.scalars(stmt).all())

    def get_latest_date(self, symbol: str) -> date | None:
        """Most recent stored trade date for a symbol."""
        stmt = select(func.max(PriceBar.trade_date)).where(PriceBar.symbol == symbol.upper())
        return self.session.scalar(stmt)

    def get_history(
        self,
        symbols: Sequence[str],
        start: date | None = None,
        end: date | None = None,
    ) -> Sequence[PriceBar]:
        """Bars for the given symbols ordered by symbol and date."""
        stmt = select(PriceBar).where(PriceBar.symbol.in_([s.upper() for s in symbols]))
        if start:
            stmt = stmt.where(PriceBar.trade_date >= start)
        if end:
            stmt = stmt.where(PriceBar.trade_date <= end)
        stmt = stmt.order_by(PriceBar.symbol, PriceBar.trade_date)
        return self.session.scalars(stmt).all()

    def bulk_insert_bars(self, symbol: str, records: list[dict]) -> int:
        """
        Insert bars whose date is not stored yet (existing bars are never touched).

        Args:
            symbol: Ticker symbol.
            records: List of dicts with trade_date, open, high, low, close, etc.

        Returns:
            Number of records inserted.
        """
        if not records:
            return 0

        symbol = symbol.upper()
        dates = [r["trade_date"] for r in records]
        existing = self.get_existing_dates(symbol, min(dates), max(dates))

        count = 0
        for record in records:
            if record["trade_date"] in existing:
                continue
            self.session.add(PriceBar(
                symbol=symbol,
                trade_date=record["trade_date"],
                open=record.get("open"),
                high=record.get("high"),
                low=record.get("low"),
                close=record["close"],
                adjusted_close=record.get("adjusted_close"),
                volume=record["volume"],
            ))
            existing.add(record["trade_date"])
            count += 1

        self.session.flush()
        return count


class DividendRepository:
    """Repository for dividend events keyed by (symbol, ex_date)."""

    _FILLABLE_DATES = ("record_date", "payment_date", "declaration_date")

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, dividend_id: int) -> DividendEvent | None:
        """Get dividend event by ID."""
        return self.session.get(DividendEvent, dividend_id)

    def get_by_key(self, symbol: str, ex_date: date) -> DividendEvent | None:
        """Get dividend event by its natural key."""
        stmt = select(DividendEvent).where(
            DividendEvent.symbol == symbol.upper(),
            DividendEvent.ex_date == ex_date,
        )
        return self.session.scalar(stmt)

    def upsert(self, symbol: str, ex_date: date, **fields) -> tuple[DividendEvent, bool, bool]:
        """
        Insert a dividend event or merge new details into the stored one.

        Dates that are already set are kept; empty ones are filled.

        Returns:
            Tuple of (event, created, changed).
        """
        existing = self.get_by_key(symbol, ex_date)
        if existing is None:
            event = DividendEvent(symbol=symbol.upper(), ex_date=ex_date, **fields)
            self.session.add(event)
            self.session.flush()
            return event, True, False

        changed = False
        for key, value in fields.items():
            if value is None:
                continue
            current = getattr(existing, key)
            if key in self._FILLABLE_DATES and current is not None:
                continue
            if current != value:
                setattr(existing, key, value)
                changed = True

        self.session.flush()
        return existing, False, changed

    def get_for_symbol(
        self,
        symbol: str,
        since: date | None = None,
        limit: int | None = None,
    ) -> Sequence[DividendEvent]:
        """Dividend events for a symbol, newest ex-date first."""
        stmt = select(DividendEvent).where(DividendEvent.symbol == symbol.upper())
        if since:
            stmt = stmt.where(DividendEvent.ex_date >= since)
        stmt = stmt.order_by(DividendEvent.ex_date.desc())
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def count_for_symbol(self, symbol: str) -> int:
        """Number of stored dividend events for a symbol."""
        stmt = select(func.count(DividendEvent.id)).where(DividendEvent.symbol == symbol.upper())
        return self.session.scalar(stmt) or 0

    def get_paid_between(
        self,
        symbols: Sequence[str],
        start: date,
        end: date,
    ) -> Sequence[DividendEvent]:
        """Events for the symbols whose payment date falls within [start, end]."""
        if not symbols:
            return []
        stmt = (
            select(DividendEvent)
            .where(
                DividendEvent.symbol.in_([s.upper() for s in symbols]),
                DividendEvent.payment_date >= start,
                DividendEvent.payment_date <= end,
            )
            .order_by(DividendEvent.payment_date, DividendEvent.symbol)
        )
        return self.session.scalars(stmt).all()


class PortfolioRepository:
    """Repository for portfolios."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, portfolio_id: int) -> Portfolio | None:
        """Get portfolio by ID."""
        return self.session.get(Portfolio, portfolio_id)

    def get_for_user(self, user_id: int, include_inactive: bool = False) -> Sequence[Portfolio]:
        """Portfolios owned by a user."""
        stmt = select(Portfolio).where(Portfolio.user_id == user_id)
        if not include_inactive:
            stmt = stmt.where(Portfolio.is_active.is_(True))
        return self.session.scalars(stmt.order_by(Portfolio.name)).all()

    def find_active_by_name(
        self,
        user_id: int,
        name: str,
        exclude_id: int | None = None,
    ) -> Portfolio | None:
        """Active portfolio of a user with the given name."""
        stmt = select(Portfolio).where(
            Portfolio.user_id == user_id,
            Portfolio.name == name,
            Portfolio.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(Portfolio.id != exclude_id)
        return self.session.scalar(stmt)

    def create(self, **fields) -> Portfolio:
        """Create a new portfolio."""
        portfolio = Portfolio(**fields)
        self.session.add(portfolio)
        self.session.flush()
        return portfolio


class TransactionRepository:
    """Repository for the transaction ledger."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, **fields) -> Transaction:
        """Append a transaction to the ledger."""
        txn = Transaction(**fields)
        self.session.add(txn)
        self.session.flush()
        return txn

    def get_by_id(self, transaction_id: int) -> Transaction | None:
        """Get transaction by ID."""
        return self.session.get(Transaction, transaction_id)

    def get_for_symbol(
        self,
        portfolio_id: int,
        symbol: str,
        until: date | None = None,
    ) -> Sequence[Transaction]:
        """Transactions of one (portfolio, symbol) pair in replay order."""
        stmt = select(Transaction).where(
            Transaction.portfolio_id == portfolio_id,
            Transaction.symbol == symbol.upper(),
        )
        if until:
            stmt = stmt.where(Transaction.transaction_date <= until)
        stmt = stmt.order_by(Transaction.transaction_date, Transaction.id)
        return self.session.scalars(stmt).all()

    def get_for_portfolio(
        self,
        portfolio_id: int,
        limit: int | None = None,
    ) -> Sequence[Transaction]:
        """Transactions of a portfolio, newest first."""
        stmt = (
            select(Transaction)
            .where(Transaction.portfolio_id == portfolio_id)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def get_symbols(self, portfolio_id: int) -> list[str]:
        """Distinct symbols that appear in a portfolio's ledger."""
        stmt = (
            select(Transaction.symbol)
            .where(Transaction.portfolio_id == portfolio_id)
            .distinct()
            .order_by(Transaction.symbol)
        )
        return list(self.session.scalars(stmt).all())

    def delete(self, transaction_id: int) -> bool:
        """Delete a transaction; returns False when it does not exist."""
        txn = self.get_by_id(transaction_id)
        if not txn:
            return False
        self.session.delete(txn)
        self.session.flush()
        return True


class HoldingRepository:
    """Repository for derived holdings."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, portfolio_id: int, symbol: str) -> Holding | None:
        """Holding of a symbol in a portfolio."""
        stmt = select(Holding).where(
            Holding.portfolio_id == portfolio_id,
            Holding.symbol == symbol.upper(),
        )
        return self.session.scalar(stmt)

    def get_for_portfolio(self, portfolio_id: int) -> Sequence[Holding]:
        """All holdings of a portfolio ordered by symbol."""
        stmt = (
            select(Holding)
            .where(Holding.portfolio_id == portfolio_id)
            .order_by(Holding.symbol)
        )
        return self.session.scalars(stmt).all()

    def get_active_symbols(self) -> list[str]:
        """Distinct symbols held with positive quantity in active portfolios."""
        stmt = (
            select(Holding.symbol)
            .join(Portfolio, Portfolio.id == Holding.portfolio_id)
            .where(Portfolio.is_active.is_(True), Holding.quantity > 0)
            .distinct()
            .order_by(Holding.symbol)
        )
        return sorted({s.upper() for s in self.session.scalars(stmt).all()})

    def upsert(self, portfolio_id: int, symbol: str, **fields) -> Holding:
        """Write the derived state of a holding."""
        holding = self.get(portfolio_id, symbol)
        if holding is None:
            holding = Holding(portfolio_id=portfolio_id, symbol=symbol.upper())
            self.session.add(holding)

        for key, value in fields.items():
            setattr(holding, key, value)

        self.session.flush()
        return holding

    def delete(self, portfolio_id: int, symbol: str) -> bool:
        """Remove a holding; returns False when none existed."""
        holding = self.get(portfolio_id, symbol)
        if not holding:
            return False
        self.session.delete(holding)
        self.session.flush()
        return True


class DividendPaymentRepository:
    """Repository for recorded dividend payments."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, payment_id: int) -> DividendPayment | None:
        """Get payment by ID."""
        return self.session.get(DividendPayment, payment_id)

    def exists(self, portfolio_id: int, dividend_id: int) -> bool:
        """Whether a payment was already recorded for the pair."""
        stmt = select(func.count(DividendPayment.id)).where(
            DividendPayment.portfolio_id == portfolio_id,
            DividendPayment.dividend_id == dividend_id,
        )
        return (self.session.scalar(stmt) or 0) > 0

    def get_recorded_dividend_ids(self, portfolio_id: int) -> set[int]:
        """IDs of dividend events already recorded for a portfolio."""
        stmt = select(DividendPayment.dividend_id).where(
            DividendPayment.portfolio_id == portfolio_id
        )
        return set(self.session.scalars(stmt).all())

    def get_for_portfolio(self, portfolio_id: int) -> Sequence[DividendPayment]:
        """Payments of a portfolio, newest first."""
        stmt = (
            select(DividendPayment)
            .where(DividendPayment.portfolio_id == portfolio_id)
            .order_by(DividendPayment.payment_date.desc(), DividendPayment.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get_amounts_by_id(self, payment_ids: Sequence[int]) -> dict[int, float]:
        """Total amounts keyed by payment ID."""
        if not payment_ids:
            return {}
        stmt = select(DividendPayment.id, DividendPayment.total_amount).where(
            DividendPayment.id.in_(list(payment_ids))
        )
        return {row.id: row.total_amount for row in self.session.execute(stmt)}

    def create(self, **fields) -> DividendPayment:
        """Insert a payment."""
        payment = DividendPayment(**fields)
        self.session.add(payment)
        self.session.flush()
        return payment


class SafetyCacheRepository:
    """Repository for cached dividend safety analyses."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, symbol: str) -> DividendSafetyCache | None:
        """Cached analysis for a symbol."""
        return self.session.get(DividendSafetyCache, symbol.upper())

    def get_all(self) -> Sequence[DividendSafetyCache]:
        """All cache entries ordered by symbol."""
        stmt = select(DividendSafetyCache).order_by(DividendSafetyCache.symbol)
        return self.session.scalars(stmt).all()

    def upsert(self, symbol: str, **fields) -> DividendSafetyCache:
        """Overwrite the cached analysis for a symbol."""
        entry = self.get(symbol)
        if entry is None:
            entry = DividendSafetyCache(symbol=symbol.upper())
            self.session.add(entry)

        for key, value in fields.items():
            setattr(entry, key, value)

        self.session.flush()
        return entry

    def get_symbols_needing_update(self, symbols: Sequence[str], fresh_after: datetime) -> list[str]:
        """Symbols with no entry or an entry last updated at or before `fresh_after`."""
        symbols = sorted({s.upper() for s in symbols})
        if not symbols:
            return []
        stmt = select(DividendSafetyCache.symbol).where(
            DividendSafetyCache.symbol.in_(symbols),
            DividendSafetyCache.last_updated > fresh_after,
        )
        fresh = set(self.session.scalars(stmt).all())
        return [s for s in symbols if s not in fresh]

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete entries last updated before the cutoff."""
        result = self.session.execute(
            delete(DividendSafetyCache).where(DividendSafetyCache.last_updated < cutoff)
        )
        return result.rowcount or 0


class ApiUsageRepository:
    """Repository for per-provider daily request counts."""

    def __init__(self, session: Session):
        self.session = session

    def get_for_day(self, provider: str, day: date) -> ApiUsage | None:
        """Usage row for a provider on a given day."""
        stmt = select(ApiUsage).where(ApiUsage.provider == provider, ApiUsage.usage_date == day)
        return self.session.scalar(stmt)

    def get_last_used(self, provider: str) -> datetime | None:
        """Timestamp of the most recent request to a provider."""
        stmt = select(func.max(ApiUsage.last_used_at)).where(ApiUsage.provider == provider)
        return self.session.scalar(stmt)

    def increment(self, provider: str, day: date, at: datetime) -> ApiUsage:
        """Count one request for a provider on a day."""
        usage = self.get_for_day(provider, day)
        if usage is None:
            usage = ApiUsage(provider=provider, usage_date=day, request_count=0)
            self.session.add(usage)
        usage.request_count += 1
        usage.last_used_at = at
        self.session.flush()
        return usage
