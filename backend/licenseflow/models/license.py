"""
License model - a purchased contract that accrues daily earnings.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Integer, Boolean, Numeric, DateTime, ForeignKey, Index,
    CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin, generate_id


class LicenseStatus(str, Enum):
    """Lifecycle status of a license. Pausing is a separate flag."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"


class License(BaseModel, TimestampMixin):
    """A purchased, accruing contract created when its order is confirmed."""

    __tablename__ = "user_licenses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        comment="Owner of the license"
    )

    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("order_deposits.id", ondelete="RESTRICT"),
        unique=True,
        comment="Order that produced this license (one license per order)"
    )

    product_id: Mapped[str] = mapped_column(String(36), comment="Purchased product")
    product_name: Mapped[str] = mapped_column(String(100), default="", comment="Product name at purchase time")

    # Contract terms, snapshotted when the license is created
    principal_usdt: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        comment="Principal paid for the license"
    )

    daily_rate: Mapped[Decimal] = mapped_column(
        Numeric(10, 6),
        comment="Fraction of principal earned per day"
    )

    max_days: Mapped[int] = mapped_column(
        Integer,
        comment="Maximum number of earning days"
    )

    cap_fraction: Mapped[Decimal] = mapped_column(
        Numeric(10, 4),
        comment="Earning cap as a multiple of principal"
    )

    # Accrual counters, written only by the earnings processor
    days_generated: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Number of earning days already generated"
    )

    cashback_accum: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        default=Decimal("0"),
        comment="Accumulated cashback-phase earnings"
    )

    potential_accum: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        default=Decimal("0"),
        comment="Accumulated potential-phase earnings"
    )

    total_earned: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        default=Decimal("0"),
        comment="cashback_accum + potential_accum"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=LicenseStatus.ACTIVE.value,
        comment="active, completed or canceled"
    )

    pause_potential: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="When set, earnings are recorded but not credited to balance"
    )

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        comment="When the license started accruing"
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        comment="When the license reached its cap or max days"
    )

    daily_earnings: Mapped[List["DailyEarning"]] = relationship(
        "DailyEarning",
        back_populates="license",
        order_by="DailyEarning.day_index"
    )

    __table_args__ = (
        CheckConstraint("days_generated >= 0", name="ck_license_days_non_negative"),
        CheckConstraint("days_generated <= max_days", name="ck_license_days_within_max"),
        Index("idx_license_status", "status"),
        Index("idx_license_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<License(id={self.id}, status={self.status}, days={self.days_generated}/{self.max_days})>"

    @property
    def daily_amount(self) -> Decimal:
        """Earning for one day: principal x daily rate."""
        return Decimal(self.principal_usdt) * Decimal(self.daily_rate)

    @property
    def cap_amount(self) -> Decimal:
        """Maximum total earnings: principal x cap fraction."""
        return Decimal(self.principal_usdt) * Decimal(self.cap_fraction)

    @property
    def has_reached_limit(self) -> bool:
        """True once max days or the earning cap has been reached."""
        return (
            self.days_generated >= self.max_days
            or Decimal(self.total_earned or 0) >= self.cap_amount
        )
