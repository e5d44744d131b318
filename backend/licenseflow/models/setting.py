"""
Key/value system settings edited from the admin panel.
"""

from typing import Any

from sqlalchemy import String, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class SystemSetting(BaseModel, TimestampMixin):
    """One settings document, e.g. key='admin_system_settings'."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON)

    def __repr__(self) -> str:
        return f"<SystemSetting(key={self.key})>"
