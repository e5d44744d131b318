"""
Repository for license accrual operations.

Session-scoped methods take the caller's session so the daily earning,
counter update, completion and ledger credit share one transaction.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import select, update, exists
from sqlalchemy.ext.asyncio import AsyncSession

from licenseflow.core.database import Database
from licenseflow.core.exceptions import ConcurrentUpdateError
from licenseflow.models.daily_earning import DailyEarning
from licenseflow.models.license import License, LicenseStatus


logger = structlog.get_logger(__name__)


class LicenseRepository:
    """
    Repository for license-related database operations.
    """

    def __init__(self, database: Database):
        self.database = database
        self.logger = logger.bind(service="license_repository")

    async def get_active_license_ids(self) -> List[str]:
        """Get ids of all active licenses, oldest first."""
        async with self.database.session() as session:
            result = await session.execute(
                select(License.id)
                .where(License.status == LicenseStatus.ACTIVE.value)
                .order_by(License.started_at, License.id)
            )
            license_ids = list(result.scalars().all())

        self.logger.info("Retrieved active licenses", count=len(license_ids))
        return license_ids

    async def get_license(self, session: AsyncSession, license_id: str) -> Optional[License]:
        return await session.get(License, license_id)

    async def earning_exists(self, session: AsyncSession, license_id: str, earning_date: date) -> bool:
        result = await session.execute(
            select(
                exists().where(
                    DailyEarning.license_id == license_id,
                    DailyEarning.earning_date == earning_date
                )
            )
        )
        return bool(result.scalar())

    async def apply_accrual(
        self,
        session: AsyncSession,
        license_id: str,
        expected_days: int,
        days_generated: int,
        cashback_accum: Decimal,
        potential_accum: Decimal,
        completed_at: Optional[datetime],
        now: datetime
    ) -> None:
        """
        Write the new counters, guarded on the day count the caller read.

        Raises:
            ConcurrentUpdateError: another writer advanced or completed the license
        """
        values = {
            "days_generated": days_generated,
            "cashback_accum": cashback_accum,
            "potential_accum": potential_accum,
            "total_earned": cashback_accum + potential_accum,
            "updated_at": now,
        }
        if completed_at is not None:
            values["status"] = LicenseStatus.COMPLETED.value
            values["completed_at"] = completed_at

        result = await session.execute(
            update(License)
            .where(
                License.id == license_id,
                License.days_generated == expected_days,
                License.status == LicenseStatus.ACTIVE.value
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdateError("license", license_id)

    async def mark_completed(self, session: AsyncSession, license_id: str, now: datetime) -> bool:
        """
        Move an active license to completed.

        Returns:
            bool: True only for the call that performed the transition
        """
        result = await session.execute(
            update(License)
            .where(License.id == license_id, License.status == LicenseStatus.ACTIVE.value)
            .values(status=LicenseStatus.COMPLETED.value, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
