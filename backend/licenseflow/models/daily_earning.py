"""
Daily earning records - one row per license per earning day.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Integer, Boolean, Numeric, Date, DateTime, ForeignKey, Index,
    UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, generate_id
from licenseflow.utils.timeutils import utcnow


class DailyEarning(BaseModel):
    """
    Immutable record of one day of earnings for a license.

    The (license_id, earning_date) unique constraint is the idempotency key
    that stops duplicate scheduler firings from paying a day twice.
    """

    __tablename__ = "license_daily_earnings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)

    license_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("user_licenses.id", ondelete="RESTRICT"),
        comment="License that earned"
    )

    day_index: Mapped[int] = mapped_column(
        Integer,
        comment="1-based contiguous day number"
    )

    earning_date: Mapped[date] = mapped_column(
        Date,
        comment="Calendar day (UTC) the earning belongs to"
    )

    cashback_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        default=Decimal("0"),
        comment="Part of the day's earning counted as cashback"
    )

    potential_amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        default=Decimal("0"),
        comment="Part of the day's earning counted as potential"
    )

    applied_to_balance: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        comment="False when the license potential was paused"
    )

    applied_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="When the earning was credited to balance"
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    license: Mapped["License"] = relationship("License", back_populates="daily_earnings")

    __table_args__ = (
        UniqueConstraint("license_id", "earning_date", name="uq_daily_earning_license_date"),
        UniqueConstraint("license_id", "day_index", name="uq_daily_earning_license_day"),
        Index("idx_daily_earning_date", "earning_date"),
    )

    def __repr__(self) -> str:
        return f"<DailyEarning(license={self.license_id}, day={self.day_index}, date={self.earning_date})>"

    @property
    def amount(self) -> Decimal:
        return Decimal(self.cashback_amount or 0) + Decimal(self.potential_amount or 0)
