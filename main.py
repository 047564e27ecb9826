"""
Dividend Portfolio Tracker - Main Entry Point.

A local-first tracker for personal investment portfolios: a transaction
ledger with derived holdings, cached market data, dividend history and
dividend safety scores.

Usage:
    # Initialize database
    python main.py init

    # Portfolios
    python main.py portfolio create "Retirement" --type retirement
    python main.py portfolio list

    # Ledger
    python main.py buy KO --portfolio 1 --shares 100 --price 50.00 --date 2024-01-15
    python main.py sell KO --portfolio 1 --shares 20 --price 61.00
    python main.py txn list --portfolio 1
    python main.py txn delete 7

    # Holdings and valuation
    python main.py holdings --portfolio 1
    python main.py summary --portfolio 1

    # Market data
    python main.py quote KO
    python main.py search coca
    python main.py refresh                       # quotes, history and dividends
    python main.py refresh --history --days 730
    python main.py freshness

    # Dividends
    python main.py dividends KO
    python main.py pending-dividends --portfolio 1
    python main.py record-dividend --portfolio 1 --dividend 42 --type drip --drip-shares 1 --drip-price 120

    # Dividend safety
    python main.py safety KO
    python main.py safety-portfolio --portfolio 1
    python main.py safety-cache stats
    python main.py api-usage
"""

import argparse
import sys
from datetime import date, datetime

from config import config
from data.market_data import InvalidSymbolError, MarketDataError, build_market_data_client
from db import PaymentType, PortfolioType, TransactionType, init_db
from services.exceptions import NotFoundError, ValidationError
from services.holdings_ledger import HoldingsLedger, TransactionResult
from services.portfolio_service import PortfolioService


DEFAULT_USER_ID = 1


def _print_config_errors() -> bool:
    errors = config.validate()
    for error in errors:
        print(f"❌ Configuration: {error}")
    return bool(errors)


def print_transaction_result(result: TransactionResult) -> None:
    """Print the outcome of a ledger change."""
    print(f"\n✅ {result.message}")
    if result.holding_deleted:
        print(f"   📭 {result.symbol} position closed")
    else:
        print(f"   📍 {result.symbol}: {result.quantity:,.4f} shares @ avg ${result.avg_cost_basis:,.2f}")


# ----------------------------------------------------------------------
# Setup
# ----------------------------------------------------------------------

def cmd_init(args):
    """Initialize the database."""
    db = init_db(args.db_url, if_drop=args.if_drop)
    if args.if_drop:
        print("⚠️ Existing tables dropped.")
    print("✅ Database initialized successfully")
    print(f"   Location: {db.db_url}")


# ----------------------------------------------------------------------
# Portfolios
# ----------------------------------------------------------------------

def cmd_portfolio(args):
    """Create, list or delete portfolios."""
    service = PortfolioService(init_db())

    if args.portfolio_command == "create":
        portfolio = service.create_portfolio(
            user_id=args.user,
            name=args.name,
            portfolio_type=args.type,
            currency=args.currency,
            description=args.description,
        )
        print(f"\n✅ Created portfolio #{portfolio.id}: {portfolio.name} ({portfolio.portfolio_type.value}, {portfolio.currency})")

    elif args.portfolio_command == "list":
        portfolios = service.list_portfolios(args.user, include_inactive=args.all)
        if not portfolios:
            print("No portfolios yet.")
            return

        print("\n📋 Portfolios")
        print("-" * 60)
        print(f"{'ID':>4}  {'Name':<28} {'Type':<12} {'Cur':<4} {'Active':<6}")
        print("-" * 60)
        for p in portfolios:
            name = p.name if len(p.name) <= 28 else p.name[:25] + "..."
            print(f"{p.id:>4}  {name:<28} {p.portfolio_type.value:<12} {p.currency:<4} {'yes' if p.is_active else 'no':<6}")

    elif args.portfolio_command == "delete":
        service.delete_portfolio(args.portfolio_id, args.user)
        print(f"\n✅ Portfolio #{args.portfolio_id} deactivated")


# ----------------------------------------------------------------------
# Ledger
# ----------------------------------------------------------------------

def _trade(args, transaction_type: TransactionType):
    ledger = HoldingsLedger(init_db())
    result = ledger.add_transaction(args.portfolio, {
        "symbol": args.symbol,
        "transaction_type": transaction_type.value,
        "quantity": args.shares,
        "price": args.price,
        "fees": args.fees,
        "transaction_date": args.date or date.today(),
        "notes": args.notes,
    })
    print_transaction_result(result)


def cmd_buy(args):
    """Buy shares."""
    _trade(args, TransactionType.BUY)


def cmd_sell(args):
    """Sell shares."""
    _trade(args, TransactionType.SELL)


def cmd_txn(args):
    """Add, list or delete ledger transactions."""
    ledger = HoldingsLedger(init_db())

    if args.txn_command == "add":
        result = ledger.add_transaction(args.portfolio, {
            "symbol": args.symbol,
            "transaction_type": args.type,
            "quantity": args.quantity,
            "price": args.price,
            "fees": args.fees,
            "transaction_date": args.date or date.today(),
            "notes": args.notes,
        })
        print_transaction_result(result)

    elif args.txn_command == "list":
        transactions = ledger.get_transactions(args.portfolio, limit=args.limit)
        if not transactions:
            print("No transactions found.")
            return

        print(f"\n💼 Transactions (last {len(transactions)})")
        print("-" * 80)
        print(f"{'ID':>5} {'Date':<12} {'Symbol':<8} {'Type':<12} {'Quantity':>12} {'Price':>10} {'Fees':>8}")
        print("-" * 80)
        for t in transactions:
            print(
                f"{t.id:>5} {t.transaction_date!s:<12} {t.symbol:<8} {t.transaction_type.value:<12} "
                f"{t.quantity:>12,.4f} ${t.price:>9,.2f} ${t.fees:>7,.2f}"
            )

    elif args.txn_command == "delete":
        print_transaction_result(ledger.delete_transaction(args.transaction_id))


def cmd_holdings(args):
    """List the holdings of a portfolio."""
    summary = PortfolioService(init_db()).get_portfolio_summary(args.portfolio)
    if not summary.holdings:
        print("No holdings.")
        return

    print(f"\n📍 Holdings - {summary.name}")
    print("-" * 72)
    print(f"{'Symbol':<8} {'Shares':>12} {'Avg Cost':>10} {'Price':>10} {'Value':>14} {'Weight':>8}")
    print("-" * 72)
    for h in summary.holdings:
        stale = " *" if h.price_is_stale else ""
        print(
            f"{h.symbol:<8} {h.quantity:>12,.4f} ${h.avg_cost_basis:>9,.2f} ${h.current_price:>9,.2f} "
            f"${h.market_value:>13,.2f} {h.weight:>7.1%}{stale}"
        )
    if any(h.price_is_stale for h in summary.holdings):
        print("\n   * no quote stored, valued at cost")


def cmd_summary(args):
    """Show portfolio summary."""
    summary = PortfolioService(init_db()).get_portfolio_summary(args.portfolio)

    print("\n" + "=" * 50)
    print(f"📊 PORTFOLIO SUMMARY - {summary.name}")
    print("=" * 50)

    print(f"\n💰 Value ({summary.currency})")
    print(f"   Market Value:    ${summary.total_value:>12,.2f}")
    print(f"   Cost Basis:      ${summary.total_cost_basis:>12,.2f}")
    print(f"   Gain/Loss:       ${summary.total_gain_loss:>+12,.2f} ({summary.total_gain_loss_percent:+.2f}%)")

    print(f"\n📍 Positions ({len(summary.holdings)})")
    for h in summary.holdings:
        print(
            f"   {h.symbol:<6} {h.quantity:>10,.2f} @ ${h.current_price:>8,.2f} | "
            f"{h.weight:>6.1%} G/L:{h.gain_loss:>+11,.2f}"
        )
    print("\n" + "=" * 50)


# ----------------------------------------------------------------------
# Market data
# ----------------------------------------------------------------------

def cmd_quote(args):
    """Show a quote, fetching it when stale."""
    from services.price_cache import PriceCache

    db = init_db()
    cache = PriceCache(db)
    symbol = args.symbol.upper()

    if args.refresh or cache.is_quote_stale(symbol):
        snapshot = build_market_data_client(db=db).get_quote(symbol)
        cache.save_quote(snapshot)

    q = cache.get_quote(symbol)
    print(f"\n📈 {q.symbol}  ${q.current_price:,.2f}  {q.change_amount or 0:+,.2f} ({q.change_percent or 0:+.2f}%)")
    if q.previous_close is not None:
        print(f"   Previous close:  ${q.previous_close:,.2f}")
    if q.day_low is not None and q.day_high is not None:
        print(f"   Day range:       ${q.day_low:,.2f} - ${q.day_high:,.2f}")
    if q.week_52_low is not None and q.week_52_high is not None:
        print(f"   52-week range:   ${q.week_52_low:,.2f} - ${q.week_52_high:,.2f}")
    if q.volume is not None:
        print(f"   Volume:          {q.volume:,}")
    print(f"   Market state:    {q.market_state.value}")
    print(f"   As of:           {q.quote_time:%Y-%m-%d %H:%M:%S} UTC")


def cmd_search(args):
    """Search symbols."""
    results = build_market_data_client().search(args.query, limit=args.limit)
    if not results:
        print("No matches.")
        return

    print(f"\n🔎 Results for {args.query!r}")
    print("-" * 70)
    for r in results:
        name = (r.name or "")[:36]
        print(f"   {r.symbol:<10} {name:<38} {r.exchange or '':<8} {r.quote_type or ''}")


def cmd_refresh(args):
    """Refresh quotes, daily history and dividends for held symbols."""
    from jobs.freshness import FreshnessScheduler

    if _print_config_errors():
        return 1

    scheduler = FreshnessScheduler(init_db())
    if not (args.quotes or args.history or args.dividends):
        results = scheduler.run_full_refresh(force=args.force)
    else:
        results = {}
        if args.quotes:
            results["quotes"] = scheduler.refresh_quotes(force=args.force)
        if args.history:
            results["history"] = scheduler.backfill_history(days=args.days, force=args.force)
        if args.dividends:
            results["dividends"] = scheduler.refresh_dividends(force=args.force)

    print("\n🔄 Refresh")
    print("-" * 50)
    for name, r in results.items():
        print(f"   {name:<10} ✅ {r.updated:>3}  ⏭️ {r.skipped:>3}  ❌ {r.failed:>3}  of {r.total_symbols}")
        for error in r.errors:
            print(f"      ⚠️ {error}")
    return 0 if all(r.success for r in results.values()) else 1


def cmd_freshness(args):
    """Show quote freshness of held symbols."""
    from jobs.freshness import FreshnessScheduler

    stats = FreshnessScheduler(init_db()).get_freshness_stats()
    print("\n🕒 Quote Freshness")
    print("-" * 50)
    print(f"   Symbols:         {stats['total_symbols']}")
    print(f"   Fresh:           {stats['fresh']}")
    print(f"   Stale:           {stats['stale']}")
    print(f"   Missing:         {stats['missing']}")
    print(f"   Oldest quote:    {stats['oldest_quote'] or 'N/A'}")
    print(f"   Newest quote:    {stats['newest_quote'] or 'N/A'}")
    print(f"   Market hours:    {'yes' if stats['market_hours'] else 'no'}")
    print(f"   Max age:         {stats['max_age_minutes']} min")


# ----------------------------------------------------------------------
# Dividends
# ----------------------------------------------------------------------

def cmd_dividends(args):
    """Show dividend history, fetching it when due."""
    from services.dividend_store import DividendStore

    db = init_db()
    store = DividendStore(db)
    symbol = args.symbol.upper()

    if args.fetch or store.needs_refresh(symbol):
        records = build_market_data_client(db=db).get_dividends(symbol)
        result = store.upsert_dividends(symbol, records)
        store.mark_fetched(symbol)
        print(f"📥 {symbol}: {result.inserted} new, {result.updated} updated")

    events = store.get_dividends(symbol, limit=args.limit)
    if not events:
        print(f"No dividends recorded for {symbol}.")
        return

    print(f"\n💰 Dividends - {symbol}")
    print("-" * 62)
    print(f"{'ID':>6} {'Ex-Date':<12} {'Pay Date':<12} {'Amount':>10} {'Type':<8} Source")
    print("-" * 62)
    for d in events:
        print(
            f"{d.id:>6} {d.ex_date!s:<12} {d.payment_date or '-'!s:<12} ${d.amount:>9,.4f} "
            f"{d.dividend_type.value:<8} {d.source or ''}"
        )
    print(f"\n   Trailing 12 months: ${store.annual_dividend_per_share(symbol):,.4f} per share")


def cmd_pending_dividends(args):
    """List dividends owed to a portfolio but not recorded yet."""
    pending = HoldingsLedger(init_db()).get_pending_dividend_payments(args.portfolio)
    if not pending:
        print("No pending dividends.")
        return

    print("\n⏳ Pending Dividends")
    print("-" * 76)
    print(f"{'ID':>6} {'Symbol':<8} {'Ex-Date':<12} {'Pay Date':<12} {'Per Share':>10} {'Shares':>10} {'Total':>10}")
    print("-" * 76)
    for p in pending:
        print(
            f"{p.dividend_id:>6} {p.symbol:<8} {p.ex_date!s:<12} {p.payment_date or '-'!s:<12} "
            f"${p.dividend_per_share:>9,.4f} {p.shares_owned:>10,.2f} ${p.total_amount:>9,.2f}"
        )


def cmd_record_dividend(args):
    """Record a received dividend (cash or DRIP)."""
    result = HoldingsLedger(init_db()).record_dividend_payment(
        portfolio_id=args.portfolio,
        dividend_id=args.dividend,
        payment_type=args.type,
        total_amount=args.amount,
        drip_shares=args.drip_shares,
        drip_price=args.drip_price,
        payment_date=args.date,
        notes=args.notes,
    )
    p = result.payment
    print(f"\n💰 Recorded {p.payment_type.value} dividend for {p.symbol}: ${p.total_amount:,.2f}")
    print(f"   Shares owned at ex-date: {p.shares_owned:,.4f}")
    if p.payment_type == PaymentType.DRIP:
        print(f"   Reinvested: {p.drip_shares_purchased:,.4f} shares @ ${p.drip_price_per_share:,.2f}")
    print(f"   📍 {p.symbol}: {result.quantity:,.4f} shares @ avg ${result.avg_cost_basis:,.2f}")


# ----------------------------------------------------------------------
# Dividend safety
# ----------------------------------------------------------------------

def cmd_safety(args):
    """Show the dividend safety analysis of a symbol."""
    from analytics.dividend_safety import FACTORS, DividendSafetyScorer

    db = init_db()
    result = DividendSafetyScorer(db, build_market_data_client(db=db)).score(args.symbol, force=args.force)

    print(f"\n🛡️ Dividend Safety - {result.symbol}")
    print("-" * 50)
    if not result.is_scored:
        print(f"   Status: {result.status.value}")
        print(f"   Reason: {result.reason}")
        return

    flags = []
    if result.is_cached:
        flags.append("cached")
    if result.is_stale:
        flags.append("STALE")
    print(f"   Score: {result.score}/100  Grade: {result.grade}  {' '.join(flags)}")
    print(f"   Updated: {result.last_updated:%Y-%m-%d %H:%M}")
    print("\n   Factors")
    for key, (weight, description) in FACTORS.items():
        score = result.factor_scores.get(key)
        value = result.factor_values.get(key)
        shown = f"{value:,.3f}" if value is not None else "-"
        print(f"   {key:<20} {weight:>3}%  {score if score is not None else '-':>4}  ({shown})")
    for warning in result.warnings:
        print(f"   ⚠️ {warning}")


def cmd_safety_portfolio(args):
    """Show value-weighted dividend safety of a portfolio."""
    from analytics.dividend_safety import DividendSafetyScorer

    db = init_db()
    analysis = DividendSafetyScorer(db, build_market_data_client(db=db)).score_portfolio(args.portfolio)

    print("\n" + "=" * 50)
    print("🛡️ PORTFOLIO DIVIDEND SAFETY")
    print("=" * 50)
    score = analysis.overall_score if analysis.overall_score is not None else "N/A"
    print(f"\n   Overall: {score}  Grade: {analysis.overall_grade}")
    print(f"\n💰 Annual Dividend Income")
    print(f"   Total:    ${analysis.total_dividend_income:>12,.2f}")
    print(f"   Safe:     ${analysis.safe_dividend_income:>12,.2f}")
    print(f"   At risk:  ${analysis.at_risk_dividend_income:>12,.2f}")

    print(f"\n📊 Risk Distribution")
    for bucket, count in analysis.risk_distribution.items():
        print(f"   {bucket:<10} {count:>3} holdings  ${analysis.income_distribution[bucket]:>10,.2f}")

    if analysis.holdings:
        print(f"\n📍 Holdings")
        for h in analysis.holdings:
            print(f"   {h.symbol:<6} {h.score:>3} {h.grade:<3} value ${h.holding_value:>11,.2f}  income ${h.annual_dividend:>9,.2f}")
    if analysis.excluded:
        print(f"\n⏭️ Not scored")
        for h in analysis.excluded:
            print(f"   {h.symbol:<6} {h.status.value}: {h.reason}")
    if analysis.recommendations:
        print(f"\n🧠 Recommendations")
        for r in analysis.recommendations:
            print(f"   - {r}")
    print("\n" + "=" * 50)


def cmd_safety_cache(args):
    """Maintain the dividend safety cache."""
    from analytics.dividend_safety import DividendSafetyScorer
    from jobs.safety_cache import run_cleanup, run_stats, run_update

    if _print_config_errors():
        return 1

    db = init_db()
    scorer = DividendSafetyScorer(db, build_market_data_client(db=db))
    if args.action == "stats":
        return run_stats(scorer)
    if args.action == "cleanup":
        return run_cleanup(scorer, args.days)
    return run_update(scorer, force=args.action == "refresh")


def cmd_api_usage(args):
    """Show today's Financial Modeling Prep request usage."""
    from data.market_data import ApiQuota

    stats = ApiQuota(init_db()).usage_stats()
    print("\n📡 API Usage")
    print("-" * 50)
    print(f"   Provider:        {stats['provider']}")
    print(f"   Daily limit:     {stats['daily_limit']}")
    print(f"   Used today:      {stats['usage_today']} ({stats['percentage_used']}%)")
    print(f"   Remaining:       {stats['remaining']}")
    print(f"   Last used:       {stats['last_used'] or 'never'}")
    print(f"   API key set:     {'yes' if config.market_data.fmp_api_key else 'no'}")


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from None


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Dividend Portfolio Tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init command
    init = subparsers.add_parser("init", help="Initialize database")
    init.add_argument("--db-url", help="Custom database URL", default=None)
    init.add_argument("--if-drop", action="store_true", help="Drop existing tables before creating")

    # portfolio commands
    portfolio = subparsers.add_parser("portfolio", help="Manage portfolios")
    portfolio.add_argument("--user", type=int, default=DEFAULT_USER_ID, help="Owner user ID")
    portfolio_sub = portfolio.add_subparsers(dest="portfolio_command", required=True)
    p_create = portfolio_sub.add_parser("create", help="Create a portfolio")
    p_create.add_argument("name", help="Portfolio name")
    p_create.add_argument("--type", choices=[t.value for t in PortfolioType], default=PortfolioType.PERSONAL.value)
    p_create.add_argument("--currency", default="USD", help="3-letter currency code")
    p_create.add_argument("--description", help="Description")
    p_list = portfolio_sub.add_parser("list", help="List portfolios")
    p_list.add_argument("--all", action="store_true", help="Include deactivated portfolios")
    p_delete = portfolio_sub.add_parser("delete", help="Deactivate a portfolio")
    p_delete.add_argument("portfolio_id", type=int)

    # buy / sell commands
    for name, help_text in (("buy", "Buy shares"), ("sell", "Sell shares")):
        trade = subparsers.add_parser(name, help=help_text)
        trade.add_argument("symbol", help="Stock ticker symbol")
        trade.add_argument("--portfolio", type=int, required=True, help="Portfolio ID")
        trade.add_argument("--shares", type=float, required=True, help="Number of shares")
        trade.add_argument("--price", type=float, required=True, help="Price per share")
        trade.add_argument("--date", type=_parse_date, help="Trade date (YYYY-MM-DD, default: today)")
        trade.add_argument("--fees", type=float, default=0.0, help="Trading fees")
        trade.add_argument("--notes", help="Notes")

    # txn commands
    txn = subparsers.add_parser("txn", help="Ledger transactions")
    txn_sub = txn.add_subparsers(dest="txn_command", required=True)
    t_add = txn_sub.add_parser("add", help="Add any transaction type")
    t_add.add_argument("--portfolio", type=int, required=True, help="Portfolio ID")
    t_add.add_argument("--symbol", required=True)
    t_add.add_argument("--type", choices=[t.value for t in TransactionType], required=True)
    t_add.add_argument("--quantity", type=float, required=True)
    t_add.add_argument("--price", type=float, required=True)
    t_add.add_argument("--fees", type=float, default=0.0)
    t_add.add_argument("--date", type=_parse_date, help="Transaction date (YYYY-MM-DD, default: today)")
    t_add.add_argument("--notes")
    t_list = txn_sub.add_parser("list", help="List transactions")
    t_list.add_argument("--portfolio", type=int, required=True, help="Portfolio ID")
    t_list.add_argument("--limit", type=int, default=20, help="Max number of transactions")
    t_delete = txn_sub.add_parser("delete", help="Delete a transaction")
    t_delete.add_argument("transaction_id", type=int)

    # holdings / summary commands
    holdings = subparsers.add_parser("holdings", help="List holdings")
    holdings.add_argument("--portfolio", type=int, required=True, help="Portfolio ID")
    summary = subparsers.add_parser("summary", help="Show portfolio summary")
    summary.add_argument("--portfolio", type=int, required=True, help="Portfolio ID")

    # market data commands
    quote = subparsers.add_parser("quote", help="Show a quote")
    quote.add_argument("symbol")
    quote.add_argument("--refresh", action="store_true", help="Fetch even when fresh")
    search = subparsers.add_parser("search", help="Search symbols")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=10)
    refresh = subparsers.add_parser("refresh", help="Refresh market data for held symbols")
    refresh.add_argument("--quotes", action="store_true", help="Refresh stale quotes")
    refresh.add_argument("--history", action="store_true", help="Backfill daily bars")
    refresh.add_argument("--dividends", action="store_true", help="Refresh dividend history")
    refresh.add_argument("--days", type=int, default=None, help="History lookback in days")
    refresh.add_argument("--force", action="store_true", help="Ignore freshness checks")
    subparsers.add_parser("freshness", help="Show quote freshness")

    # dividend commands
    dividends = subparsers.add_parser("dividends", help="Show dividend history")
    dividends.add_argument("symbol")
    dividends.add_argument("--limit", type=int, default=20)
    dividends.add_argument("--fetch", action="store_true", help="Fetch even when recent")
    pending = subparsers.add_parser("pending-dividends", help="List unrecorded dividends")
    pending.add_argument("--portfolio", type=int, required=True, help="Portfolio ID")
    record = subparsers.add_parser("record-dividend", help="Record a received dividend")
    record.add_argument("--portfolio", type=int, required=True, help="Portfolio ID")
    record.add_argument("--dividend", type=int, required=True, help="Dividend ID")
    record.add_argument("--type", choices=[t.value for t in PaymentType], default=PaymentType.CASH.value)
    record.add_argument("--amount", type=float, help="Total received (default: shares * dividend)")
    record.add_argument("--drip-shares", type=float, help="Shares bought by the DRIP")
    record.add_argument("--drip-price", type=float, help="DRIP price per share")
    record.add_argument("--date", type=_parse_date, help="Payment date (YYYY-MM-DD)")
    record.add_argument("--notes")

    # safety commands
    safety = subparsers.add_parser("safety", help="Dividend safety of a symbol")
    safety.add_argument("symbol")
    safety.add_argument("--force", action="store_true", help="Ignore the cache")
    safety_portfolio = subparsers.add_parser("safety-portfolio", help="Dividend safety of a portfolio")
    safety_portfolio.add_argument("--portfolio", type=int, required=True, help="Portfolio ID")
    safety_cache = subparsers.add_parser("safety-cache", help="Maintain the safety cache")
    safety_cache.add_argument("action", choices=["update", "refresh", "stats", "cleanup"])
    safety_cache.add_argument("--days", type=int, default=None, help="Cleanup age in days")
    subparsers.add_parser("api-usage", help="Show API usage")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "init": cmd_init,
        "portfolio": cmd_portfolio,
        "buy": cmd_buy,
        "sell": cmd_sell,
        "txn": cmd_txn,
        "holdings": cmd_holdings,
        "summary": cmd_summary,
        "quote": cmd_quote,
        "search": cmd_search,
        "refresh": cmd_refresh,
        "freshness": cmd_freshness,
        "dividends": cmd_dividends,
        "pending-dividends": cmd_pending_dividends,
        "record-dividend": cmd_record_dividend,
        "safety": cmd_safety,
        "safety-portfolio": cmd_safety_portfolio,
        "safety-cache": cmd_safety_cache,
        "api-usage": cmd_api_usage,
    }

    try:
        return commands[args.command](args)
    except (ValidationError, InvalidSymbolError, NotFoundError) as e:
        print(f"❌ {e}")
    except MarketDataError as e:
        print(f"⚠️ Market data unavailable: {e}")
    return 1


if __name__ == "__main__":
    sys.exit(main() or 0)
