"""
Database models for the LicenseFlow backend.

Licenses, their daily earnings, the ledger, order deposits and the
supporting audit/settings/notification tables.
"""

from .base import Base, BaseModel, TimestampMixin
from .user import User
from .order import OrderDeposit, OrderStatus
from .license import License, LicenseStatus
from .daily_earning import DailyEarning
from .ledger import LedgerEntry, LedgerDirection, LedgerRefType
from .audit import AuditLog
from .setting import SystemSetting
from .notification import UserNotification

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "User",
    "OrderDeposit",
    "OrderStatus",
    "License",
    "LicenseStatus",
    "DailyEarning",
    "LedgerEntry",
    "LedgerDirection",
    "LedgerRefType",
    "AuditLog",
    "SystemSetting",
    "UserNotification",
]
