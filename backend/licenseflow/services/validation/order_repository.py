"""
Repository for order deposit operations used by the validation and expiry jobs.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from licenseflow.core.database import Database
from licenseflow.core.exceptions import ConcurrentUpdateError
from licenseflow.models.order import OrderDeposit, OrderStatus


logger = structlog.get_logger(__name__)


class OrderRepository:
    """
    Repository for order-related database operations.

    Status changes are conditional updates on the expected current status,
    so two workers racing on one order cannot both win.
    """

    def __init__(self, database: Database):
        self.database = database
        self.logger = logger.bind(service="order_repository")

    async def get_order(self, session: AsyncSession, order_id: str) -> Optional[OrderDeposit]:
        return await session.get(OrderDeposit, order_id)

    async def transition_status(
        self,
        session: AsyncSession,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        **values: Any
    ) -> None:
        """
        Move an order from one status to the next.

        Raises:
            ConcurrentUpdateError: the order was no longer in ``from_status``
        """
        result = await session.execute(
            update(OrderDeposit)
            .where(OrderDeposit.id == order_id, OrderDeposit.status == from_status.value)
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError("order", order_id)

    @staticmethod
    def merge_payload(order: OrderDeposit, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Merge annotations into raw_chain_payload (assigns a new dict so the change is tracked)."""
        payload = dict(order.raw_chain_payload or {})
        payload.update(updates)
        order.raw_chain_payload = payload
        return payload

    async def find_confirmed_order_with_tx_hash(
        self,
        session: AsyncSession,
        tx_hash: str,
        exclude_order_id: str
    ) -> Optional[str]:
        """Id of another confirmed order paid by the same transaction (hash compared case-insensitively)."""
        result = await session.execute(
            select(OrderDeposit.id)
            .where(
                func.lower(OrderDeposit.tx_hash) == tx_hash.lower(),
                OrderDeposit.id != exclude_order_id,
                OrderDeposit.status == OrderStatus.CONFIRMED.value
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_pending_validation_ids(self, limit: int = 50) -> List[str]:
        """
        Paid orders with a tx hash that still need a validation run, oldest first.

        Orders already routed to a human (manual review or manual
        confirmation) are left alone.
        """
        needs_review = OrderDeposit.raw_chain_payload["requires_manual_review"].as_boolean()
        needs_confirmation = OrderDeposit.raw_chain_payload["requires_manual_confirmation"].as_boolean()

        async with self.database.session() as session:
            result = await session.execute(
                select(OrderDeposit.id)
                .where(
                    OrderDeposit.status == OrderStatus.PAID.value,
                    OrderDeposit.tx_hash.is_not(None),
                    or_(needs_review.is_(None), needs_review.is_(False)),
                    or_(needs_confirmation.is_(None), needs_confirmation.is_(False))
                )
                .order_by(OrderDeposit.created_at, OrderDeposit.id)
                .limit(limit)
            )
            order_ids = list(result.scalars().all())

        self.logger.info("Found orders to validate", count=len(order_ids))
        return order_ids

    async def find_expired_pending_ids(self, now: datetime, limit: int = 100) -> List[str]:
        """Pending orders whose payment deadline has passed."""
        async with self.database.session() as session:
            result = await session.execute(
                select(OrderDeposit.id)
                .where(
                    OrderDeposit.status == OrderStatus.PENDING.value,
                    OrderDeposit.expires_at < now
                )
                .order_by(OrderDeposit.expires_at)
                .limit(limit)
            )
            return list(result.scalars().all())
