"""
Audit log - who changed what, written in the same transaction as the change.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import String, DateTime, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, generate_id
from licenseflow.utils.timeutils import utcnow


class AuditLog(BaseModel):
    """Audit trail row. actor_user_id is None for system actions."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)

    actor_user_id: Mapped[Optional[str]] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(64))
    entity: Mapped[str] = mapped_column(String(32))
    entity_id: Mapped[str] = mapped_column(String(36))

    old_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    new_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    diff: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_audit_entity", "entity", "entity_id"),
        Index("idx_audit_action_time", "action", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(action={self.action}, entity={self.entity}:{self.entity_id})>"

    @classmethod
    def system(
        cls,
        action: str,
        entity: str,
        entity_id: str,
        source: str,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        diff: Optional[Dict[str, Any]] = None,
    ) -> "AuditLog":
        """Build an audit row for an automated (job) action."""
        return cls(
            actor_user_id=None,
            action=action,
            entity=entity,
            entity_id=entity_id,
            old_values=old_values or {},
            new_values=new_values or {},
            diff=diff or {},
            ip_address="system",
            user_agent=source,
        )
