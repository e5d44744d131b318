"""
Order deposit model - a payment intent awaiting an on-chain USDT transfer.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import String, Numeric, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_id


class OrderStatus(str, Enum):
    """Order status. Transitions only move forward: pending -> paid -> confirmed, pending -> expired."""
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELED = "canceled"


class OrderDeposit(BaseModel, TimestampMixin):
    """A user's intent to buy a license, paid by a USDT transfer."""

    __tablename__ = "order_deposits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        comment="Buyer"
    )

    product_id: Mapped[str] = mapped_column(String(36), comment="Product being purchased")
    product_name: Mapped[str] = mapped_column(String(100), default="", comment="Product name at order time")

    amount_usdt: Mapped[Decimal] = mapped_column(Numeric(18, 6), comment="Amount due")

    deposit_address: Mapped[Optional[str]] = mapped_column(
        String(42),
        comment="Reserved wallet the user must pay into"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=OrderStatus.PENDING.value,
        comment="pending, paid, confirmed, expired, canceled"
    )

    tx_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        unique=True,
        comment="Transaction hash submitted by the user; one on-chain payment pays one order"
    )

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), comment="Payment deadline")
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    raw_chain_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        comment="Validation outcome and manual-review annotations"
    )

    __table_args__ = (
        Index("idx_order_status_created", "status", "created_at"),
        Index("idx_order_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<OrderDeposit(id={self.id}, status={self.status}, amount={self.amount_usdt})>"

    @property
    def requires_manual_review(self) -> bool:
        return bool((self.raw_chain_payload or {}).get("requires_manual_review"))

    @property
    def requires_manual_confirmation(self) -> bool:
        return bool((self.raw_chain_payload or {}).get("requires_manual_confirmation"))
