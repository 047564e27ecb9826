"""
Freshness Scheduler.

Keeps market data for held symbols fresh:
1. Quotes refreshed when older than the market-hours / after-hours window
2. Daily bars backfilled over the lookback window, gaps only
3. Dividend history refetched when missing or older than 7 days

Every step isolates failures per symbol: one bad symbol is logged and
counted, the rest of the batch continues.
"""

import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from config import SchedulerConfig, config
from data.market_data import MarketDataError, build_market_data_client
from db import DatabaseManager, get_db, init_db, utcnow
from db.repositories import HoldingRepository, StockRepository
from services.dividend_store import DividendStore
from services.price_cache import DateRange, PriceCache


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Counts from one pass over the active symbols."""
    total_symbols: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def fail(self, symbol: str, error: Exception) -> None:
        self.failed += 1
        self.errors.append(f"{symbol}: {error}")


class FreshnessScheduler:
    """
    Refresh coordinator for quotes, daily bars and dividends.

    Usage:
        scheduler = FreshnessScheduler()
        scheduler.run_full_refresh()
    """

    def __init__(
        self,
        db: DatabaseManager | None = None,
        client=None,
        settings: SchedulerConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db or get_db()
        self.client = client or build_market_data_client(db=self.db)
        self.settings = settings or config.scheduler
        self.price_cache = PriceCache(self.db, self.settings)
        self.dividends = DividendStore(self.db, self.settings)
        self._sleep = sleep
        self._now = now

    def get_active_symbols(self) -> list[str]:
        """Symbols held with a positive quantity in an active portfolio."""
        with self.db.session() as session:
            return HoldingRepository(session).get_active_symbols()

    def _pause(self, seconds: float, index: int, total: int) -> None:
        if seconds > 0 and index < total - 1:
            self._sleep(seconds)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def _ensure_stock(self, symbol: str, snapshot) -> bool:
        """Create the stock row on first sight; returns True when created."""
        with self.db.session() as session:
            repo = StockRepository(session)
            stock, created = repo.get_or_create(
                symbol,
                name=snapshot.name,
                exchange=snapshot.exchange,
                currency=snapshot.currency or "USD",
                quote_type=snapshot.quote_type,
            )
            if not created:
                return False

        try:
            profile = self.client.get_company_profile(symbol)
        except Exception as e:
            logger.warning(f"⚠️ No company profile for {symbol}: {e}")
            return True

        with self.db.session() as session:
            repo = StockRepository(session)
            stock = repo.get_by_symbol(symbol)
            repo.fill_missing(stock, **profile)
        return True

    def _initial_load(self, symbol: str) -> None:
        logger.info(f"🆕 New symbol {symbol}: loading history and dividends")
        steps = (
            ("history", lambda: self._backfill_symbol(symbol, self.settings.historical_days, force=False)),
            ("dividends", lambda: self._refresh_symbol_dividends(symbol, force=True)),
        )
        for name, step in steps:
            try:
                step()
            except Exception as e:
                # quote is stored; the regular passes retry the rest
                logger.warning(f"⚠️ Initial {name} load failed for {symbol}: {e}")

    def refresh_quotes(self, force: bool = False) -> BatchResult:
        """
        Refresh stale quotes of all active symbols.

        A symbol seen for the first time also gets its company profile,
        an initial history backfill and its dividend history.
        """
        symbols = self.get_active_symbols()
        result = BatchResult(total_symbols=len(symbols))
        if not symbols:
            logger.info("⏭️ No active holdings, nothing to refresh")
            return result

        now = self._now()
        stale = set(symbols if force else self.price_cache.get_stale_symbols(symbols, now))
        logger.info(f"📥 Refreshing quotes: {len(stale)} of {len(symbols)} symbols stale")

        for i, symbol in enumerate(symbols):
            if symbol not in stale:
                result.skipped += 1
                continue

            try:
                snapshot = self.client.get_quote(symbol)
                new_symbol = self._ensure_stock(symbol, snapshot)
                self.price_cache.save_quote(snapshot)
                result.updated += 1
                logger.info(f"✅ {symbol}: {snapshot.current_price:.2f} ({snapshot.change_percent:+.2f}%)")
            except Exception as e:
                result.fail(symbol, e)
                logger.error(f"❌ Quote refresh failed for {symbol}: {e}")
            else:
                if new_symbol:
                    self._initial_load(symbol)

            self._pause(self.settings.quote_delay, i, len(symbols))

        return result

    # ------------------------------------------------------------------
    # Daily bars
    # ------------------------------------------------------------------

    def _backfill_symbol(self, symbol: str, days: int, force: bool) -> int | None:
        """
        Fetch missing bars of one symbol.

        Returns:
            Number of bars inserted, or None when nothing was missing.

        Raises:
            MarketDataError: only when every range failed.
        """
        end = self._now().date()
        start = end - timedelta(days=days)
        ranges = [DateRange(start, end)] if force else self.price_cache.missing_ranges(symbol, start, end)
        if not ranges:
            return None

        inserted = 0
        last_error: MarketDataError | None = None
        failures = 0
        for gap in ranges:
            try:
                bars = self.client.get_price_history(symbol, gap.start, gap.end)
            except MarketDataError as e:
                failures += 1
                last_error = e
                logger.warning(f"⚠️ {symbol} {gap.start} -> {gap.end}: {e}")
                continue
            inserted += self.price_cache.save_bars(symbol, bars)

        if failures == len(ranges) and last_error is not None:
            raise last_error

        logger.info(f"📈 {symbol}: {inserted} bars stored from {len(ranges)} range(s)")
        return inserted

    def backfill_history(self, days: int | None = None, force: bool = False) -> BatchResult:
        """Fill gaps in the daily bars of all active symbols."""
        days = days or self.settings.historical_days
        symbols = self.get_active_symbols()
        result = BatchResult(total_symbols=len(symbols))
        logger.info(f"📈 Backfilling {days} days of history for {len(symbols)} symbols")

        for i, symbol in enumerate(symbols):
            try:
                inserted = self._backfill_symbol(symbol, days, force)
            except Exception as e:
                result.fail(symbol, e)
                logger.error(f"❌ History backfill failed for {symbol}: {e}")
            else:
                if inserted is None:
                    result.skipped += 1
                else:
                    result.updated += 1
            self._pause(self.settings.batch_delay, i, len(symbols))

        return result

    # ------------------------------------------------------------------
    # Dividends
    # ------------------------------------------------------------------

    def _refresh_symbol_dividends(self, symbol: str, force: bool) -> bool:
        """Refetch when due; returns True when a fetch happened."""
        now = self._now()
        if not force and not self.dividends.needs_refresh(symbol, now):
            return False

        records = self.client.get_dividends(symbol)
        upserted = self.dividends.upsert_dividends(symbol, records)
        self.dividends.mark_fetched(symbol, now)
        logger.info(
            f"💰 {symbol}: {upserted.inserted} new, {upserted.updated} updated dividend records"
        )
        return True

    def refresh_dividends(self, force: bool = False) -> BatchResult:
        """Refetch dividend history of symbols that are due."""
        symbols = self.get_active_symbols()
        result = BatchResult(total_symbols=len(symbols))
        logger.info(f"💰 Checking dividends for {len(symbols)} symbols")

        for i, symbol in enumerate(symbols):
            try:
                fetched = self._refresh_symbol_dividends(symbol, force)
            except Exception as e:
                result.fail(symbol, e)
                logger.error(f"❌ Dividend refresh failed for {symbol}: {e}")
                continue

            if fetched:
                result.updated += 1
                self._pause(self.settings.batch_delay, i, len(symbols))
            else:
                result.skipped += 1

        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_freshness_stats(self) -> dict:
        """Quote freshness across the active symbols."""
        return self.price_cache.freshness_stats(self.get_active_symbols(), self._now())

    def run_full_refresh(self, force: bool = False) -> dict[str, BatchResult]:
        """Quotes, then history, then dividends."""
        logger.info("🚀 Starting full refresh")
        results = {
            "quotes": self.refresh_quotes(force),
            "history": self.backfill_history(force=force),
            "dividends": self.refresh_dividends(force),
        }

        logger.info("=" * 50)
        logger.info("📊 REFRESH SUMMARY")
        for name, r in results.items():
            logger.info(
                f"   {name:<10} {r.updated} updated, {r.skipped} skipped, "
                f"{r.failed} failed of {r.total_symbols}"
            )
            for error in r.errors[:5]:
                logger.warning(f"   ⚠️ {error}")
        logger.info("=" * 50)
        return results


def run_refresh(force: bool = False) -> int:
    """
    Run the full refresh.

    Returns:
        Exit code (0 for success, 1 when any symbol failed).
    """
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"❌ Configuration: {error}")
        return 1

    init_db()
    results = FreshnessScheduler().run_full_refresh(force)
    return 0 if all(r.success for r in results.values()) else 1


if __name__ == "__main__":
    sys.exit(run_refresh(force="--force" in sys.argv[1:]))
