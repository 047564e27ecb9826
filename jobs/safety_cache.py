"""
Dividend Safety Cache Job.

Maintains the per-symbol dividend safety cache:
    update   recompute entries for held symbols that are missing or older than 24h
    refresh  recompute every held symbol regardless of age
    stats    print cache size, freshness and grade distribution
    cleanup  delete entries not updated for N days (30 by default)

Usage:
    python -m jobs.safety_cache [update|refresh|stats|cleanup] [days]
"""

import logging
import sys

from analytics.dividend_safety import DividendSafetyScorer
from config import config
from db import init_db
from db.repositories import HoldingRepository


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _held_symbols(scorer: DividendSafetyScorer) -> list[str]:
    with scorer.db.session() as session:
        return HoldingRepository(session).get_active_symbols()


def run_update(scorer: DividendSafetyScorer | None = None, force: bool = False) -> int:
    """Recompute stale (or, with force, all) entries for held symbols."""
    scorer = scorer or DividendSafetyScorer()
    symbols = _held_symbols(scorer)
    if not symbols:
        logger.info("⏭️ No held symbols, nothing to score")
        return 0

    if not scorer.client.financials_available:
        logger.warning("⚠️ Financial statements provider not configured (set FMP_API_KEY)")

    logger.info(f"🚀 Updating dividend safety for {len(symbols)} held symbols (force={force})")
    results = scorer.bulk_refresh(symbols, force=force)

    logger.info(
        f"📊 Safety cache: {results['updated']} updated, {results['failed']} failed "
        f"of {results['total']} due"
    )
    for error in results["errors"][:10]:
        logger.warning(f"   ⚠️ {error}")
    return 0 if results["failed"] == 0 else 1


def run_stats(scorer: DividendSafetyScorer | None = None) -> int:
    """Print cache statistics."""
    scorer = scorer or DividendSafetyScorer()
    stats = scorer.cache_stats()

    print("\n📊 Dividend Safety Cache")
    print("=" * 50)
    print(f"  Entries:            {stats['total_entries']}")
    print(f"  Fresh (< {scorer.settings.cache_hours}h):      {stats['fresh_entries']}")
    print(f"  Stale:              {stats['stale_entries']}")
    print(f"  Scored:             {stats['scored']}")
    print(f"  Excluded:           {stats['excluded']}")
    print(f"  Insufficient data:  {stats['insufficient_data']}")
    average = stats["average_score"]
    print(f"  Average score:      {average if average is not None else 'N/A'}")
    if stats["grade_distribution"]:
        print("  Grades:")
        for grade, count in stats["grade_distribution"].items():
            print(f"    {grade:<3} {count}")
    print(f"  Oldest entry:       {stats['oldest_entry'] or 'N/A'}")
    print(f"  Newest entry:       {stats['newest_entry'] or 'N/A'}")
    print("=" * 50)
    return 0


def run_cleanup(scorer: DividendSafetyScorer | None = None, days: int | None = None) -> int:
    """Delete entries older than the given number of days."""
    scorer = scorer or DividendSafetyScorer()
    deleted = scorer.cleanup(days)
    print(f"🧹 Deleted {deleted} cache entries")
    return 0


def main(argv: list[str]) -> int:
    command = argv[0].lower() if argv else "update"
    if command not in ("update", "refresh", "stats", "cleanup"):
        print(f"Unknown command: {command}")
        print("Usage: python -m jobs.safety_cache [update|refresh|stats|cleanup] [days]")
        return 1

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"❌ Configuration: {error}")
        return 1

    init_db()
    if command == "stats":
        return run_stats()
    if command == "cleanup":
        days = int(argv[1]) if len(argv) > 1 else None
        return run_cleanup(days=days)
    return run_update(force=command == "refresh")


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
