"""
Database package initialization.

Exports commonly used components for convenient imports:
    from db import get_db, Holding, Transaction, etc.
"""

from db.models import (
    ApiUsage,
    Base,
    DividendEvent,
    DividendPayment,
    DividendSafetyCache,
    DividendType,
    Holding,
    MarketState,
    PaymentType,
    Portfolio,
    PortfolioType,
    PriceBar,
    Quote,
    SafetyStatus,
    Stock,
    Transaction,  # Ledger entry (source of truth for holdings)
    TransactionType,
    utcnow,
)
from db.session import (
    DatabaseManager,
    get_db,
    init_db,
)

__all__ = [
    # Models
    "ApiUsage",
    "Base",
    "DividendEvent",
    "DividendPayment",
    "DividendSafetyCache",
    "DividendType",
    "Holding",
    "MarketState",
    "PaymentType",
    "Portfolio",
    "PortfolioType",
    "PriceBar",
    "Quote",
    "SafetyStatus",
    "Stock",
    "Transaction",
    "TransactionType",
    "utcnow",
    # Session management
    "DatabaseManager",
    "get_db",
    "init_db",
]
