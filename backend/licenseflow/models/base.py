"""
Declarative base and shared mixins for all models.
"""

import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from licenseflow.utils.timeutils import utcnow


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


def generate_id() -> str:
    return str(uuid.uuid4())


class BaseModel(Base):
    """Abstract base with a dictionary view for logging and audit payloads."""

    __abstract__ = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            column.name: getattr(self, column.key, None)
            for column in self.__table__.columns
        }


class TimestampMixin:
    """Adds created_at / updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        comment="Row creation time"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        comment="Last update time"
    )
