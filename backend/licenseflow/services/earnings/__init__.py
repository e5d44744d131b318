"""
Contractual earnings accrual.
"""

from .types import AccrualOutcome, CycleResult, LicenseAccrualResult, ProcessorStats, ProcessorStatus
from .license_repository import LicenseRepository
from .processor import EarningsAccrualProcessor, split_accumulated

__all__ = [
    "AccrualOutcome",
    "CycleResult",
    "LicenseAccrualResult",
    "ProcessorStats",
    "ProcessorStatus",
    "LicenseRepository",
    "EarningsAccrualProcessor",
    "split_accumulated",
]
