"""
Types for earnings processing.
"""

from datetime import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class ProcessorStatus(Enum):
    """Status of the earnings processor."""
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


class AccrualOutcome(Enum):
    """What happened to one license in one invocation."""
    ACCRUED = "accrued"
    COMPLETED = "completed"  # limit already reached, no earning emitted
    TOO_EARLY = "too_early"
    FUTURE_DATE = "future_date"
    DUPLICATE = "duplicate"
    INACTIVE = "inactive"
    CONCURRENT_UPDATE = "concurrent_update"
    DISABLED = "disabled"


@dataclass
class LicenseAccrualResult:
    """Result of processing a single license."""
    license_id: str
    outcome: AccrualOutcome
    day_index: Optional[int] = None
    earning_date: Optional[str] = None
    amount: Optional[Decimal] = None
    applied_to_balance: Optional[bool] = None
    completed: bool = False

    @property
    def accrued(self) -> bool:
        return self.outcome == AccrualOutcome.ACCRUED


@dataclass
class CycleResult:
    """Summary returned by one daily cycle."""
    processed: int = 0
    completed: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "completed": self.completed, "total": self.total}


@dataclass
class ProcessorStats:
    """Statistics for processor operations."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_licenses: int = 0
    processed: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    total_processing_time: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        attempted = self.processed + self.failed
        if attempted == 0:
            return 0.0
        return self.processed / attempted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "total_licenses": self.total_licenses,
            "processed": self.processed,
            "completed": self.completed,
            "skipped": self.skipped,
            "failed": self.failed,
            "total_processing_time": self.total_processing_time,
            "errors": list(self.errors),
        }
