"""
Holdings Ledger - derives holdings from the transaction ledger.

The transaction ledger is the source of truth. After every add, edit or
delete the affected (portfolio, symbol) pair is replayed from scratch in
(transaction_date, id) order and the Holding row is rewritten, or deleted
when the replayed quantity is not positive.

Replay rules (average cost method):
- buy: quantity += q, cost += q * price + fees
- buy created by a DRIP payment: quantity += q at no extra cost
- sell: quantity -= q, cost reduced at the running average
- dividend created by a recorded payment: cost -= payment amount
- split, transfer_in, transfer_out, manual dividend entries: no effect
- average cost = max(0, cost / quantity)
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Sequence

from data.market_data import is_valid_symbol
from db import (
    DatabaseManager,
    DividendPayment,
    PaymentType,
    Transaction,
    TransactionType,
    get_db,
)
from db.repositories import (
    DividendPaymentRepository,
    DividendRepository,
    HoldingRepository,
    PortfolioRepository,
    QuoteRepository,
    TransactionRepository,
)
from services.exceptions import DuplicatePaymentError, NotFoundError, ValidationError


logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("symbol", "transaction_type", "quantity", "price", "transaction_date")

# Pending dividend window around today
PENDING_LOOKBACK_DAYS = 90
PENDING_LOOKAHEAD_DAYS = 30


@dataclass
class LedgerState:
    """Result of replaying one (portfolio, symbol) ledger."""
    quantity: float = 0.0
    total_cost: float = 0.0
    first_purchase_date: date | None = None
    last_transaction_date: date | None = None

    @property
    def avg_cost_basis(self) -> float:
        if self.quantity <= 0:
            return 0.0
        return max(0.0, self.total_cost / self.quantity)

    @property
    def is_open(self) -> bool:
        return self.quantity > 0


@dataclass
class TransactionResult:
    """Outcome of a ledger mutation."""
    transaction: Transaction | None
    symbol: str
    quantity: float
    avg_cost_basis: float
    holding_deleted: bool = False
    message: str = ""


@dataclass
class PendingDividend:
    """Dividend a portfolio is entitled to but has not recorded yet."""
    dividend_id: int
    symbol: str
    ex_date: date
    payment_date: date | None
    dividend_per_share: float
    shares_owned: float
    total_amount: float
    current_price: float | None


@dataclass
class PaymentResult:
    """Outcome of recording a dividend payment."""
    payment: DividendPayment
    quantity: float
    avg_cost_basis: float
    transactions: list[int] = field(default_factory=list)


def replay_transactions(
    transactions: Sequence[Transaction],
    payment_amounts: dict[int, float] | None = None,
    drip_payment_ids: set[int] | None = None,
) -> LedgerState:
    """
    Replay transactions (already in date, id order) into quantity and cost.

    Args:
        transactions: Ledger entries of a single (portfolio, symbol) pair.
        payment_amounts: Dividend payment totals keyed by payment ID.
        drip_payment_ids: Payment IDs received as DRIP.

    Returns:
        LedgerState with quantity and total cost.
    """
    payment_amounts = payment_amounts or {}
    drip_payment_ids = drip_payment_ids or set()
    state = LedgerState()

    for txn in transactions:
        txn_type = TransactionType(txn.transaction_type)
        payment_id = txn.dividend_payment_id

        if txn_type == TransactionType.BUY:
            state.quantity += txn.quantity
            if payment_id not in drip_payment_ids:
                state.total_cost += txn.quantity * txn.price + (txn.fees or 0.0)
            if state.first_purchase_date is None:
                state.first_purchase_date = txn.transaction_date

        elif txn_type == TransactionType.SELL:
            if state.quantity > 0:
                sold = min(txn.quantity, state.quantity)
                state.total_cost -= state.total_cost * (sold / state.quantity)
            state.quantity -= txn.quantity
            if state.quantity <= 0:
                state.total_cost = 0.0
                state.first_purchase_date = None

        elif txn_type == TransactionType.DIVIDEND and payment_id is not None:
            # paid after a full exit: no open lot left to reduce
            if state.quantity > 0:
                state.total_cost -= payment_amounts.get(payment_id, 0.0)

        state.last_transaction_date = txn.transaction_date

    return state


def validate_transaction(data: dict[str, Any]) -> dict[str, Any]:
    """
    Check and normalize transaction fields.

    Raises:
        ValidationError: listing every problem found.

    Returns:
        Normalized copy (uppercase symbol, enum type, floats, date).
    """
    errors = [f"{name} is required" for name in REQUIRED_FIELDS if data.get(name) in (None, "")]
    if errors:
        raise ValidationError("; ".join(errors), errors)

    normalized = dict(data)
    symbol = str(data["symbol"]).strip()
    if not is_valid_symbol(symbol):
        errors.append(f"Invalid symbol: {symbol!r}")
    normalized["symbol"] = symbol.upper()

    try:
        normalized["transaction_type"] = TransactionType(str(data["transaction_type"]).lower())
    except ValueError:
        allowed = ", ".join(t.value for t in TransactionType)
        errors.append(f"transaction_type must be one of: {allowed}")

    for name in ("quantity", "price", "fees"):
        if data.get(name) is None:
            continue
        try:
            normalized[name] = float(data[name])
        except (TypeError, ValueError):
            errors.append(f"{name} must be a number")

    if isinstance(normalized.get("quantity"), float) and normalized["quantity"] <= 0:
        errors.append("quantity must be greater than 0")
    if isinstance(normalized.get("price"), float) and normalized["price"] < 0:
        errors.append("price must be 0 or greater")
    if isinstance(normalized.get("fees"), float) and normalized["fees"] < 0:
        errors.append("fees must be 0 or greater")
    normalized.setdefault("fees", 0.0)
    if normalized["fees"] is None:
        normalized["fees"] = 0.0

    txn_date = data["transaction_date"]
    if isinstance(txn_date, datetime):
        normalized["transaction_date"] = txn_date.date()
    elif isinstance(txn_date, date):
        normalized["transaction_date"] = txn_date
    else:
        try:
            normalized["transaction_date"] = datetime.strptime(str(txn_date), "%Y-%m-%d").date()
        except ValueError:
            errors.append("transaction_date must be YYYY-MM-DD")

    if errors:
        raise ValidationError("; ".join(errors), errors)
    return normalized


class HoldingsLedger:
    """
    Transaction ledger with derived holdings.

    Usage:
        ledger = HoldingsLedger(db)
        ledger.add_transaction(portfolio_id, {
            "symbol": "KO", "transaction_type": "buy",
            "quantity": 10, "price": 60.0, "transaction_date": "2024-03-01",
        })
    """

    def __init__(self, db: DatabaseManager | None = None):
        self.db = db or get_db()

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def _replay(self, session, portfolio_id: int, symbol: str, until: date | None = None) -> LedgerState:
        transactions = TransactionRepository(session).get_for_symbol(portfolio_id, symbol, until)
        payment_ids = [t.dividend_payment_id for t in transactions if t.dividend_payment_id]

        payment_repo = DividendPaymentRepository(session)
        amounts = payment_repo.get_amounts_by_id(payment_ids)
        drip_ids = {
            pid for pid in payment_ids
            if (p := payment_repo.get_by_id(pid)) is not None and p.payment_type == PaymentType.DRIP
        }
        return replay_transactions(transactions, amounts, drip_ids)

    def _shares_entitled(self, session, portfolio_id: int, symbol: str, ex_date: date) -> float:
        """Shares held at the close before the ex-date."""
        return self._replay(session, portfolio_id, symbol, until=ex_date - timedelta(days=1)).quantity

    def _recalculate(self, session, portfolio_id: int, symbol: str) -> LedgerState:
        state = self._replay(session, portfolio_id, symbol)
        holdings = HoldingRepository(session)

        if not state.is_open:
            if holdings.delete(portfolio_id, symbol):
                logger.info(f"Closed holding {symbol} in portfolio {portfolio_id}")
            return state

        holdings.upsert(
            portfolio_id,
            symbol,
            quantity=state.quantity,
            avg_cost_basis=state.avg_cost_basis,
            first_purchase_date=state.first_purchase_date,
            last_transaction_date=state.last_transaction_date,
        )
        return state

    def recalculate_holding(self, portfolio_id: int, symbol: str) -> LedgerState:
        """Replay one (portfolio, symbol) pair and rewrite its holding."""
        with self.db.session() as session:
            return self._recalculate(session, portfolio_id, symbol.upper())

    def recalculate_portfolio(self, portfolio_id: int) -> dict[str, LedgerState]:
        """Replay every symbol that appears in a portfolio's ledger."""
        with self.db.session() as session:
            return {
                symbol: self._recalculate(session, portfolio_id, symbol)
                for symbol in TransactionRepository(session).get_symbols(portfolio_id)
            }

    def quantity_as_of(self, portfolio_id: int, symbol: str, on: date) -> float:
        """Shares held at the end of a given day."""
        with self.db.session() as session:
            return max(0.0, self._replay(session, portfolio_id, symbol.upper(), until=on).quantity)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _require_portfolio(self, session, portfolio_id: int):
        portfolio = PortfolioRepository(session).get_by_id(portfolio_id)
        if portfolio is None or not portfolio.is_active:
            raise NotFoundError(f"Portfolio {portfolio_id} not found")
        return portfolio

    def add_transaction(self, portfolio_id: int, data: dict[str, Any]) -> TransactionResult:
        """Validate, append and replay."""
        fields = validate_transaction(data)

        with self.db.session() as session:
            self._require_portfolio(session, portfolio_id)
            txn = TransactionRepository(session).create(
                portfolio_id=portfolio_id,
                symbol=fields["symbol"],
                transaction_type=fields["transaction_type"],
                quantity=fields["quantity"],
                price=fields["price"],
                fees=fields["fees"],
                transaction_date=fields["transaction_date"],
                notes=fields.get("notes"),
            )
            state = self._recalculate(session, portfolio_id, txn.symbol)

        logger.info(
            f"✅ {txn.transaction_type.value.upper()} {txn.quantity:g} {txn.symbol} "
            f"@ ${txn.price:,.2f} in portfolio {portfolio_id}"
        )
        return TransactionResult(
            transaction=txn,
            symbol=txn.symbol,
            quantity=state.quantity if state.is_open else 0.0,
            avg_cost_basis=state.avg_cost_basis,
            holding_deleted=not state.is_open,
            message=f"Recorded {txn.transaction_type.value} of {txn.quantity:g} {txn.symbol}",
        )

    def update_transaction(self, transaction_id: int, changes: dict[str, Any]) -> TransactionResult:
        """Apply changes to a transaction and replay the affected symbols."""
        with self.db.session() as session:
            txn = TransactionRepository(session).get_by_id(transaction_id)
            if txn is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if txn.dividend_payment_id is not None:
                raise ValidationError("Transactions created by a dividend payment cannot be edited")

            merged = {
                "symbol": txn.symbol,
                "transaction_type": txn.transaction_type.value,
                "quantity": txn.quantity,
                "price": txn.price,
                "fees": txn.fees,
                "transaction_date": txn.transaction_date,
                "notes": txn.notes,
            }
            merged.update({k: v for k, v in changes.items() if k in merged})
            fields = validate_transaction(merged)

            old_symbol = txn.symbol
            for key, value in fields.items():
                setattr(txn, key, value)
            session.flush()

            if old_symbol != txn.symbol:
                self._recalculate(session, txn.portfolio_id, old_symbol)
            state = self._recalculate(session, txn.portfolio_id, txn.symbol)

        logger.info(f"Updated transaction #{transaction_id} ({txn.symbol})")
        return TransactionResult(
            transaction=txn,
            symbol=txn.symbol,
            quantity=state.quantity if state.is_open else 0.0,
            avg_cost_basis=state.avg_cost_basis,
            holding_deleted=not state.is_open,
            message=f"Updated transaction #{transaction_id}",
        )

    def delete_transaction(self, transaction_id: int) -> TransactionResult:
        """Remove a transaction and replay its symbol."""
        with self.db.session() as session:
            repo = TransactionRepository(session)
            txn = repo.get_by_id(transaction_id)
            if txn is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if txn.dividend_payment_id is not None:
                raise ValidationError("Transactions created by a dividend payment cannot be deleted")

            portfolio_id, symbol = txn.portfolio_id, txn.symbol
            repo.delete(transaction_id)
            state = self._recalculate(session, portfolio_id, symbol)

        logger.info(f"Deleted transaction #{transaction_id} ({symbol})")
        return TransactionResult(
            transaction=None,
            symbol=symbol,
            quantity=state.quantity if state.is_open else 0.0,
            avg_cost_basis=state.avg_cost_basis,
            holding_deleted=not state.is_open,
            message=f"Deleted transaction #{transaction_id}",
        )

    def get_transactions(self, portfolio_id: int, limit: int | None = None) -> list[Transaction]:
        """Ledger of a portfolio, newest first."""
        with self.db.session() as session:
            return list(TransactionRepository(session).get_for_portfolio(portfolio_id, limit))

    # ------------------------------------------------------------------
    # Dividend payments
    # ------------------------------------------------------------------

    def record_dividend_payment(
        self,
        portfolio_id: int,
        dividend_id: int,
        payment_type: PaymentType | str = PaymentType.CASH,
        total_amount: float | None = None,
        drip_shares: float | None = None,
        drip_price: float | None = None,
        payment_date: date | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        """
        Record a received dividend and adjust the holding.

        Cash lowers the cost basis by the amount received. DRIP also adds
        the reinvested shares without adding cost, and appends a synthetic
        buy. A dividend transaction is always appended.

        Raises:
            DuplicatePaymentError: payment already recorded for the pair.
            ValidationError: bad DRIP details or no shares owned at ex-date.
            NotFoundError: unknown portfolio or dividend.
        """
        try:
            payment_type = PaymentType(payment_type)
        except ValueError:
            raise ValidationError(f"payment_type must be 'cash' or 'drip', got {payment_type!r}") from None

        if payment_type == PaymentType.DRIP:
            if not drip_shares or drip_shares <= 0 or drip_price is None or drip_price <= 0:
                raise ValidationError("DRIP payments need positive drip_shares and drip_price")

        with self.db.session() as session:
            self._require_portfolio(session, portfolio_id)
            payments = DividendPaymentRepository(session)
            if payments.exists(portfolio_id, dividend_id):
                raise DuplicatePaymentError(
                    f"Dividend {dividend_id} is already recorded for portfolio {portfolio_id}"
                )

            dividend = DividendRepository(session).get_by_id(dividend_id)
            if dividend is None:
                raise NotFoundError(f"Dividend {dividend_id} not found")

            shares_owned = max(0.0, self._shares_entitled(session, portfolio_id, dividend.symbol, dividend.ex_date))
            if shares_owned <= 0:
                raise ValidationError(f"No {dividend.symbol} shares held on ex-date {dividend.ex_date}")

            amount = total_amount if total_amount is not None else shares_owned * dividend.amount
            if amount <= 0:
                raise ValidationError("total_amount must be greater than 0")
            paid_on = payment_date or dividend.payment_date or date.today()

            payment = payments.create(
                portfolio_id=portfolio_id,
                dividend_id=dividend_id,
                symbol=dividend.symbol,
                shares_owned=shares_owned,
                dividend_per_share=dividend.amount,
                total_amount=amount,
                payment_type=payment_type,
                drip_shares_purchased=drip_shares if payment_type == PaymentType.DRIP else None,
                drip_price_per_share=drip_price if payment_type == PaymentType.DRIP else None,
                payment_date=paid_on,
                notes=notes,
            )

            txns = TransactionRepository(session)
            created = []
            if payment_type == PaymentType.DRIP:
                created.append(txns.create(
                    portfolio_id=portfolio_id,
                    symbol=dividend.symbol,
                    transaction_type=TransactionType.BUY,
                    quantity=drip_shares,
                    price=drip_price,
                    fees=0.0,
                    transaction_date=paid_on,
                    notes=f"DRIP purchase from dividend payment (ID: {payment.id})",
                    dividend_payment_id=payment.id,
                ))
            created.append(txns.create(
                portfolio_id=portfolio_id,
                symbol=dividend.symbol,
                transaction_type=TransactionType.DIVIDEND,
                quantity=shares_owned,
                price=dividend.amount,
                fees=0.0,
                transaction_date=paid_on,
                notes=notes or f"Dividend payment (ID: {payment.id})",
                dividend_payment_id=payment.id,
            ))

            state = self._recalculate(session, portfolio_id, dividend.symbol)

        logger.info(
            f"💰 Recorded {payment_type.value} dividend of ${amount:,.2f} "
            f"for {dividend.symbol} in portfolio {portfolio_id}"
        )
        return PaymentResult(
            payment=payment,
            quantity=state.quantity,
            avg_cost_basis=state.avg_cost_basis,
            transactions=[t.id for t in created],
        )

    def get_dividend_payments(self, portfolio_id: int) -> list[DividendPayment]:
        """Recorded payments, newest first."""
        with self.db.session() as session:
            return list(DividendPaymentRepository(session).get_for_portfolio(portfolio_id))

    def get_pending_dividend_payments(self, portfolio_id: int, today: date | None = None) -> list[PendingDividend]:
        """
        Dividends paid within the last 90 or next 30 days on held symbols
        that are not recorded yet and had shares owned at the ex-date.
        """
        today = today or date.today()
        with self.db.session() as session:
            symbols = [h.symbol for h in HoldingRepository(session).get_for_portfolio(portfolio_id)]
            recorded = DividendPaymentRepository(session).get_recorded_dividend_ids(portfolio_id)
            events = DividendRepository(session).get_paid_between(
                symbols,
                today - timedelta(days=PENDING_LOOKBACK_DAYS),
                today + timedelta(days=PENDING_LOOKAHEAD_DAYS),
            )
            quotes = QuoteRepository(session)

            pending = []
            for event in events:
                if event.id in recorded:
                    continue
                shares = self._shares_entitled(session, portfolio_id, event.symbol, event.ex_date)
                if shares <= 0:
                    continue
                pending.append(PendingDividend(
                    dividend_id=event.id,
                    symbol=event.symbol,
                    ex_date=event.ex_date,
                    payment_date=event.payment_date,
                    dividend_per_share=event.amount,
                    shares_owned=shares,
                    total_amount=shares * event.amount,
                    current_price=quotes.get_current_price(event.symbol),
                ))
        return pending
