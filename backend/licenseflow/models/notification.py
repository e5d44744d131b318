"""
In-app notifications shown in the user's notification center.
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import String, Text, Boolean, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, generate_id
from licenseflow.utils.timeutils import utcnow


class UserNotification(BaseModel):
    """A notification delivered to one user."""

    __tablename__ = "user_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))

    type: Mapped[str] = mapped_column(String(32), comment="earning, order, system, ...")
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(16), default="info")
    meta: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_notification_user_unread", "user_id", "is_read"),
    )

    def __repr__(self) -> str:
        return f"<UserNotification(user={self.user_id}, type={self.type}, title={self.title!r})>"
