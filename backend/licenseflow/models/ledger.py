"""
Append-only ledger of balance-affecting entries.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import String, Numeric, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, generate_id
from licenseflow.utils.timeutils import utcnow


class LedgerDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class LedgerRefType(str, Enum):
    EARNING = "earning"
    ORDER = "order"


class LedgerEntry(BaseModel):
    """One credit or debit against a user's balance. Never updated."""

    __tablename__ = "ledger_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        comment="Account the entry belongs to"
    )

    direction: Mapped[str] = mapped_column(String(10), comment="credit or debit")

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), comment="Positive amount in USDT")

    ref_type: Mapped[str] = mapped_column(String(20), comment="earning, order, ...")
    ref_id: Mapped[str] = mapped_column(String(36), comment="Referenced entity id")

    meta: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_ledger_user_time", "user_id", "created_at"),
        Index("idx_ledger_ref", "ref_type", "ref_id"),
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry(user={self.user_id}, {self.direction} {self.amount}, ref={self.ref_type}:{self.ref_id})>"

    @property
    def signed_amount(self) -> Decimal:
        amount = Decimal(self.amount)
        return amount if self.direction == LedgerDirection.CREDIT.value else -amount
