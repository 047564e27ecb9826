"""
Dividend Store - persisted dividend events keyed by (symbol, ex-date).

Fetched events are merged into what is already stored: new ex-dates are
inserted, known ones get missing record/payment/declaration dates filled.
A symbol's history is refetched when it has none, or when the last fetch
is older than the refresh window.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Sequence

from config import SchedulerConfig, config
from data.market_data import DividendRecord
from db import DatabaseManager, DividendEvent, DividendType, get_db, utcnow
from db.repositories import DividendRepository, StockRepository


logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    """Outcome of merging fetched dividends."""
    symbol: str
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.unchanged


def _dividend_type(value: str | None) -> DividendType:
    try:
        return DividendType((value or "regular").lower())
    except ValueError:
        return DividendType.REGULAR


class DividendStore:
    """
    Dividend history per symbol.

    Usage:
        store = DividendStore(db)
        if store.needs_refresh("KO"):
            store.upsert_dividends("KO", client.get_dividends("KO"))
            store.mark_fetched("KO")
    """

    def __init__(self, db: DatabaseManager | None = None, settings: SchedulerConfig | None = None):
        self.db = db or get_db()
        self.settings = settings or config.scheduler

    def upsert_dividends(self, symbol: str, records: Sequence[DividendRecord]) -> UpsertResult:
        """Merge fetched events into the store by (symbol, ex_date)."""
        result = UpsertResult(symbol=symbol.upper())

        with self.db.session() as session:
            repo = DividendRepository(session)
            for record in records:
                _, created, changed = repo.upsert(
                    symbol,
                    record.ex_date,
                    amount=record.amount,
                    record_date=record.record_date,
                    payment_date=record.payment_date,
                    declaration_date=record.declaration_date,
                    currency=record.currency,
                    dividend_type=_dividend_type(record.dividend_type),
                    source=record.source,
                )
                if created:
                    result.inserted += 1
                elif changed:
                    result.updated += 1
                else:
                    result.unchanged += 1

        logger.debug(
            f"Dividends for {result.symbol}: {result.inserted} new, "
            f"{result.updated} updated, {result.unchanged} unchanged"
        )
        return result

    def mark_fetched(self, symbol: str, at: datetime | None = None) -> None:
        """Remember when the history of a symbol was last pulled."""
        with self.db.session() as session:
            StockRepository(session).mark_dividends_fetched(symbol, at or utcnow())

    def needs_refresh(self, symbol: str, at: datetime | None = None) -> bool:
        """
        True when no events are stored, or the last fetch is missing or
        older than the refresh window (7 days by default).
        """
        at = at or utcnow()
        with self.db.session() as session:
            if DividendRepository(session).count_for_symbol(symbol) == 0:
                return True
            stock = StockRepository(session).get_by_symbol(symbol)
            fetched_at = stock.dividends_fetched_at if stock else None

        if fetched_at is None:
            return True
        return at - fetched_at > timedelta(days=self.settings.dividend_refresh_days)

    def get_dividends(
        self,
        symbol: str,
        since: date | None = None,
        limit: int | None = None,
    ) -> list[DividendEvent]:
        """Stored events, newest ex-date first."""
        with self.db.session() as session:
            return list(DividendRepository(session).get_for_symbol(symbol, since, limit))

    def get_dividend_history(self, symbol: str, limit: int = 20) -> list[dict]:
        """Recent events as plain dicts (ex-date descending)."""
        return [
            {
                "ex_date": d.ex_date,
                "payment_date": d.payment_date,
                "record_date": d.record_date,
                "amount": d.amount,
                "dividend_type": d.dividend_type.value,
            }
            for d in self.get_dividends(symbol, limit=limit)
        ]

    def annual_dividend_per_share(self, symbol: str, as_of: date | None = None) -> float:
        """Sum of dividends with an ex-date in the last 365 days."""
        as_of = as_of or date.today()
        since = as_of - timedelta(days=365)
        return sum(
            d.amount for d in self.get_dividends(symbol, since=since)
            if d.ex_date <= as_of
        )

    def import_calendar(self, records: Sequence[DividendRecord], symbols: Sequence[str]) -> int:
        """
        Store calendar entries for the given symbols only.

        Returns:
            Number of events inserted or updated.
        """
        wanted = {s.upper() for s in symbols}
        by_symbol: dict[str, list[DividendRecord]] = {}
        for record in records:
            if record.symbol.upper() in wanted:
                by_symbol.setdefault(record.symbol.upper(), []).append(record)

        touched = 0
        for symbol, items in by_symbol.items():
            result = self.upsert_dividends(symbol, items)
            touched += result.inserted + result.updated
        return touched
