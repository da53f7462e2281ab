"""
Cadence Platform - subscription lifecycle and proration billing engine.

This package provides:
- Plan catalog with immutable, supersedable plans
- Subscription lifecycle with optimistic concurrency control
- Proration calculations for plan changes, cancellations and trial conversions
- Invoice assembly with tax and coupon collaborators
- Renewal, trial conversion and payment retry orchestration
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get platform version."""
    return __version__
