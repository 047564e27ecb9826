"""
Services layer for business logic orchestration.

Provides reusable services consumed by the CLI and the scheduled jobs.
"""

from services.exceptions import (
    DuplicatePaymentError,
    NotFoundError,
    ValidationError,
)
from services.price_cache import (
    DateRange,
    PriceCache,
    compute_missing_ranges,
)
from services.dividend_store import (
    DividendStore,
    UpsertResult,
)
from services.holdings_ledger import (
    HoldingsLedger,
    LedgerState,
    PaymentResult,
    PendingDividend,
    TransactionResult,
    replay_transactions,
    validate_transaction,
)
from services.portfolio_service import (
    HoldingValuation,
    PortfolioService,
    PortfolioSummary,
)

__all__ = [
    # Errors
    "DuplicatePaymentError",
    "NotFoundError",
    "ValidationError",
    # Price cache
    "DateRange",
    "PriceCache",
    "compute_missing_ranges",
    # Dividend store
    "DividendStore",
    "UpsertResult",
    # Holdings ledger
    "HoldingsLedger",
    "LedgerState",
    "PaymentResult",
    "PendingDividend",
    "TransactionResult",
    "replay_transactions",
    "validate_transaction",
    # Portfolio service
    "HoldingValuation",
    "PortfolioService",
    "PortfolioSummary",
]
