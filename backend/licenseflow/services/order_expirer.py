"""
Order expiry job: pending orders past their payment deadline become expired.
"""

from datetime import datetime
from typing import List, Optional

import structlog

from licenseflow.core.database import Database
from licenseflow.core.exceptions import ConcurrentUpdateError
from licenseflow.models.audit import AuditLog
from licenseflow.models.order import OrderStatus
from licenseflow.services.validation.order_repository import OrderRepository
from licenseflow.utils.timeutils import utcnow, ensure_utc


logger = structlog.get_logger(__name__)


class OrderExpirer:
    """Expires unpaid orders."""

    def __init__(self, database: Database):
        self.database = database
        self.repository = OrderRepository(database)
        self.logger = logger.bind(service="order_expirer")

    async def expire_order(self, order_id: str, now: Optional[datetime] = None) -> bool:
        """
        Expire one order if it is still pending and past its deadline.

        Returns:
            bool: True if the order was expired by this call
        """
        now = ensure_utc(now) if now is not None else utcnow()

        try:
            async with self.database.session() as session:
                order = await self.repository.get_order(session, order_id)
                if order is None or order.status != OrderStatus.PENDING.value:
                    self.logger.debug("Order not pending, nothing to expire", order_id=order_id)
                    return False

                if ensure_utc(order.expires_at) > now:
                    self.logger.debug("Order not due yet", order_id=order_id, expires_at=order.expires_at.isoformat())
                    return False

                await self.repository.transition_status(
                    session,
                    order_id,
                    OrderStatus.PENDING,
                    OrderStatus.EXPIRED,
                    updated_at=now
                )
                session.add(AuditLog.system(
                    action="order_expired",
                    entity="order",
                    entity_id=order_id,
                    source="order_expirer_job",
                    old_values={"status": OrderStatus.PENDING.value},
                    new_values={"status": OrderStatus.EXPIRED.value, "reason": "Automatic expiration"},
                ))

        except ConcurrentUpdateError:
            # Paid or canceled in the meantime
            self.logger.info("Order changed before expiry, skipping", order_id=order_id)
            return False

        self.logger.info("Order expired successfully", order_id=order_id)
        return True

    async def find_due_orders(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        now = ensure_utc(now) if now is not None else utcnow()
        return await self.repository.find_expired_pending_ids(now, limit)
