# Application Progress Package
from .aggregator import (
    MasteryPolicy,
    aggregate,
    apply_pending,
    check_invariants,
    review_stats,
    validate_progress,
)

__all__ = [
    "MasteryPolicy",
    "aggregate",
    "apply_pending",
    "check_invariants",
    "review_stats",
    "validate_progress",
]
