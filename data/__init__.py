"""
Data package initialization.

Exports the market data client, its records and the data source selector.
"""

from data.market_data import (
    ApiQuota,
    DividendRecord,
    FinancialModelingPrepProvider,
    FinancialStatements,
    InvalidSymbolError,
    MarketDataClient,
    MarketDataError,
    PriceBarRecord,
    ProviderUnavailableError,
    QuoteSnapshot,
    SearchResult,
    YahooFinanceProvider,
    build_market_data_client,
    is_valid_symbol,
    normalize_market_state,
    normalize_symbol,
)

__all__ = [
    # Client and providers
    "ApiQuota",
    "FinancialModelingPrepProvider",
    "MarketDataClient",
    "YahooFinanceProvider",
    "build_market_data_client",
    # Records
    "DividendRecord",
    "FinancialStatements",
    "PriceBarRecord",
    "QuoteSnapshot",
    "SearchResult",
    # Errors
    "InvalidSymbolError",
    "MarketDataError",
    "ProviderUnavailableError",
    # Helpers
    "is_valid_symbol",
    "normalize_market_state",
    "normalize_symbol",
]
