"""
Analytics package initialization.

Exports dividend safety scoring for convenient imports:
    from analytics import DividendSafetyScorer, grade_for, etc.
"""

from analytics.dividend_safety import (
    FACTORS,
    DividendSafetyScorer,
    HoldingSafety,
    PortfolioSafety,
    SafetyResult,
    calculate_debt_to_equity,
    calculate_earnings_stability,
    calculate_fcf_coverage,
    calculate_growth_consistency,
    calculate_payout_ratio,
    combine_scores,
    grade_for,
    risk_bucket,
)

__all__ = [
    # Scorer
    "DividendSafetyScorer",
    "HoldingSafety",
    "PortfolioSafety",
    "SafetyResult",
    # Factors
    "FACTORS",
    "calculate_debt_to_equity",
    "calculate_earnings_stability",
    "calculate_fcf_coverage",
    "calculate_growth_consistency",
    "calculate_payout_ratio",
    "combine_scores",
    "grade_for",
    "risk_bucket",
]
