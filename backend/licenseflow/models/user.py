"""
User model - the account that owns orders, licenses and ledger entries.
"""

from typing import Optional

from sqlalchemy import String, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, generate_id


class User(BaseModel, TimestampMixin):
    """Platform user."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        comment="Login email"
    )

    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))

    telegram_chat_id: Mapped[Optional[str]] = mapped_column(
        String(32),
        comment="Linked Telegram chat for direct notifications"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("idx_users_telegram_chat", "telegram_chat_id"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"
