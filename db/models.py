"""
SQLAlchemy ORM Models for the Dividend Portfolio Tracker.

Defines all database entities:
- Stocks, current quotes and daily price bars
- Dividend events keyed by (symbol, ex-date)
- Portfolios, the transaction ledger and derived holdings
- Recorded dividend payments (cash or DRIP)
- Dividend safety cache and provider API usage
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class MarketState(str, Enum):
    """Normalized trading session state of a quote."""
    PRE = "PRE"
    REGULAR = "REGULAR"
    POST = "POST"
    CLOSED = "CLOSED"


class DividendType(str, Enum):
    """Kind of dividend distribution."""
    REGULAR = "regular"
    SPECIAL = "special"


class PortfolioType(str, Enum):
    """Portfolio account type."""
    PERSONAL = "personal"
    RETIREMENT = "retirement"
    TRADING = "trading"
    SAVINGS = "savings"
    OTHER = "other"


class TransactionType(str, Enum):
    """Ledger transaction type."""
    BUY = "buy"
    SELL = "sell"
    DIVIDEND = "dividend"
    SPLIT = "split"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"


class PaymentType(str, Enum):
    """How a dividend payment was received."""
    CASH = "cash"
    DRIP = "drip"


class SafetyStatus(str, Enum):
    """Outcome of a dividend safety analysis."""
    SCORED = "scored"
    EXCLUDED = "excluded"
    INSUFFICIENT_DATA = "insufficient_data"


class Stock(Base):
    """
    Tradable security known to the system.

    Created the first time a symbol is seen (quote refresh or transaction).
    """
    __tablename__ = "stocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    exchange: Mapped[Optional[str]] = mapped_column(String(50))
    sector: Mapped[Optional[str]] = mapped_column(String(100))
    industry: Mapped[Optional[str]] = mapped_column(String(100))
    market_cap: Mapped[Optional[int]] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    country: Mapped[Optional[str]] = mapped_column(String(50))
    quote_type: Mapped[Optional[str]] = mapped_column(String(20))  # EQUITY, ETF, MUTUALFUND
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    dividends_fetched_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Stock(id={self.id}, symbol={self.symbol!r}, name={self.name!r})>"


class Quote(Base):
    """
    Latest quote per symbol.

    Overwritten in place on every refresh; no quote history is kept.
    """
    __tablename__ = "stock_quotes"

    symbol: Mapped[str] = mapped_column(String(20), primary_key=True)
    current_price: Mapped[Optional[float]] = mapped_column(Float)
    change_amount: Mapped[Optional[float]] = mapped_column(Float)
    change_percent: Mapped[Optional[float]] = mapped_column(Float)
    previous_close: Mapped[Optional[float]] = mapped_column(Float)
    open_price: Mapped[Optional[float]] = mapped_column(Float)
    day_high: Mapped[Optional[float]] = mapped_column(Float)
    day_low: Mapped[Optional[float]] = mapped_column(Float)
    volume: Mapped[Optional[int]] = mapped_column(BigInteger)
    market_cap: Mapped[Optional[int]] = mapped_column(BigInteger)
    week_52_high: Mapped[Optional[float]] = mapped_column(Float)
    week_52_low: Mapped[Optional[float]] = mapped_column(Float)
    market_state: Mapped[MarketState] = mapped_column(
        SQLEnum(MarketState, native_enum=False, length=10),
        nullable=False,
        default=MarketState.CLOSED,
    )
    currency: Mapped[Optional[str]] = mapped_column(String(10))
    exchange: Mapped[Optional[str]] = mapped_column(String(50))
    quote_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<Quote(symbol={self.symbol!r}, price={self.current_price}, at={self.quote_time})>"


class PriceBar(Base):
    """
    End-of-day price bar for a symbol.

    Immutable once written: refreshes only insert dates not yet stored.
    """
    __tablename__ = "price_bars"

    symbol: Mapped[str] = mapped_column(String(20), primary_key=True)
    trade_date: Mapped[date] = mapped_column(Date, primary_key=True)
    open: Mapped[Optional[float]] = mapped_column(Float)
    high: Mapped[Optional[float]] = mapped_column(Float)
    low: Mapped[Optional[float]] = mapped_column(Float)
    close: Mapped[float] = mapped_column(Float, nullable=False)
    adjusted_close: Mapped[Optional[float]] = mapped_column(Float)
    volume: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_price_bars_symbol_date", "symbol", "trade_date"),
    )

    def __repr__(self) -> str:
        return f"<PriceBar(symbol={self.symbol!r}, date={self.trade_date}, close={self.close})>"


class DividendEvent(Base):
    """
    Declared dividend for a symbol, keyed by ex-date.

    Later fetches may fill in record/payment/declaration dates that an
    earlier provider left empty.
    """
    __tablename__ = "dividends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    ex_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    record_date: Mapped[Optional[date]] = mapped_column(Date)
    payment_date: Mapped[Optional[date]] = mapped_column(Date)
    declaration_date: Mapped[Optional[date]] = mapped_column(Date)
    currency: Mapped[str] = mapped_column(String(10), default="USD")
    dividend_type: Mapped[DividendType] = mapped_column(
        SQLEnum(DividendType, native_enum=False, length=10),
        nullable=False,
        default=DividendType.REGULAR,
    )
    source: Mapped[Optional[str]] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("symbol", "ex_date", name="uq_dividends_symbol_ex_date"),
        Index("idx_dividends_payment_date", "payment_date"),
    )

    def __repr__(self) -> str:
        return f"<DividendEvent(symbol={self.symbol!r}, ex_date={self.ex_date}, amount={self.amount})>"


class Portfolio(Base):
    """
    User portfolio.

    Never hard-deleted: `is_active` is cleared instead.
    """
    __tablename__ = "portfolios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    portfolio_type: Mapped[PortfolioType] = mapped_column(
        SQLEnum(PortfolioType, native_enum=False, length=20),
        nullable=False,
        default=PortfolioType.PERSONAL,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="portfolio", cascade="all, delete-orphan"
    )
    holdings: Mapped[list["Holding"]] = relationship(
        "Holding", back_populates="portfolio", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Portfolio(id={self.id}, name={self.name!r}, active={self.is_active})>"


class Transaction(Base):
    """
    Ledger entry: the source of truth for holdings.

    Replay order is (transaction_date, id).
    """
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(TransactionType, native_enum=False, length=20),
        nullable=False,
    )
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    fees: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    dividend_payment_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("dividend_payments.id", ondelete="CASCADE"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    portfolio: Mapped["Portfolio"] = relationship("Portfolio", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_transaction_quantity_positive"),
        CheckConstraint("price >= 0", name="check_transaction_price_non_negative"),
        Index("idx_transactions_portfolio_symbol", "portfolio_id", "symbol", "transaction_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, {self.transaction_type.value} {self.quantity} "
            f"{self.symbol} @ {self.price} on {self.transaction_date})>"
        )


class Holding(Base):
    """
    Current position in a portfolio, derived from its transactions.

    Rows only exist while quantity is positive.
    """
    __tablename__ = "holdings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    avg_cost_basis: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    first_purchase_date: Mapped[Optional[date]] = mapped_column(Date)
    last_transaction_date: Mapped[Optional[date]] = mapped_column(Date)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    portfolio: Mapped["Portfolio"] = relationship("Portfolio", back_populates="holdings")

    __table_args__ = (
        UniqueConstraint("portfolio_id", "symbol", name="uq_holdings_portfolio_symbol"),
        CheckConstraint("quantity > 0", name="check_holding_quantity_positive"),
    )

    @property
    def cost_basis(self) -> float:
        """Total cost basis of the holding."""
        return self.quantity * self.avg_cost_basis

    def __repr__(self) -> str:
        return (
            f"<Holding(portfolio_id={self.portfolio_id}, symbol={self.symbol!r}, "
            f"qty={self.quantity}, avg={self.avg_cost_basis:.2f})>"
        )


class DividendPayment(Base):
    """
    Dividend actually received by a portfolio.

    At most one per (portfolio, dividend event).
    """
    __tablename__ = "dividend_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("portfolios.id", ondelete="CASCADE"), nullable=False
    )
    dividend_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("dividends.id", ondelete="CASCADE"), nullable=False
    )
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    shares_owned: Mapped[float] = mapped_column(Float, nullable=False)
    dividend_per_share: Mapped[float] = mapped_column(Float, nullable=False)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(
        SQLEnum(PaymentType, native_enum=False, length=10),
        nullable=False,
        default=PaymentType.CASH,
    )
    drip_shares_purchased: Mapped[Optional[float]] = mapped_column(Float)
    drip_price_per_share: Mapped[Optional[float]] = mapped_column(Float)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("portfolio_id", "dividend_id", name="uq_dividend_payments_portfolio_dividend"),
    )

    def __repr__(self) -> str:
        return (
            f"<DividendPayment(portfolio_id={self.portfolio_id}, dividend_id={self.dividend_id}, "
            f"{self.payment_type.value} {self.total_amount:.2f})>"
        )


class DividendSafetyCache(Base):
    """
    Last computed dividend safety analysis per symbol.

    `last_updated` is the freshness gate for reuse.
    """
    __tablename__ = "dividend_safety_cache"

    symbol: Mapped[str] = mapped_column(String(20), primary_key=True)
    status: Mapped[SafetyStatus] = mapped_column(
        SQLEnum(SafetyStatus, native_enum=False, length=20),
        nullable=False,
        default=SafetyStatus.SCORED,
    )
    safety_score: Mapped[Optional[int]] = mapped_column(Integer)
    safety_grade: Mapped[Optional[str]] = mapped_column(String(3))

    # Factor scores (0-100)
    payout_ratio_score: Mapped[Optional[int]] = mapped_column(Integer)
    fcf_coverage_score: Mapped[Optional[int]] = mapped_column(Integer)
    debt_ratio_score: Mapped[Optional[int]] = mapped_column(Integer)
    growth_consistency_score: Mapped[Optional[int]] = mapped_column(Integer)
    earnings_stability_score: Mapped[Optional[int]] = mapped_column(Integer)

    # Raw factor values
    payout_ratio: Mapped[Optional[float]] = mapped_column(Float)
    fcf_coverage: Mapped[Optional[float]] = mapped_column(Float)
    debt_to_equity: Mapped[Optional[float]] = mapped_column(Float)
    growth_consistency: Mapped[Optional[float]] = mapped_column(Float)
    earnings_stability: Mapped[Optional[float]] = mapped_column(Float)

    warnings: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255))
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<DividendSafetyCache(symbol={self.symbol!r}, status={self.status.value}, "
            f"score={self.safety_score}, updated={self.last_updated})>"
        )


class ApiUsage(Base):
    """Daily request count per keyed data provider."""
    __tablename__ = "api_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("provider", "usage_date", name="uq_api_usage_provider_date"),
    )

    def __repr__(self) -> str:
        return f"<ApiUsage(provider={self.provider!r}, date={self.usage_date}, count={self.request_count})>"
