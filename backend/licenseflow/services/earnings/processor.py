"""
Contractual earnings accrual processor.

Each cycle walks the active licenses and, for every license independently,
emits at most one DailyEarning: the next contiguous day, once that day has
arrived and a further 24h have passed since the previous day fell due.
"""

from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError

from licenseflow.core.database import Database
from licenseflow.core.exceptions import (
    ConcurrentUpdateError,
    LicenseNotFoundError,
    SchedulerError
)
from licenseflow.models.audit import AuditLog
from licenseflow.models.daily_earning import DailyEarning
from licenseflow.models.ledger import LedgerEntry, LedgerDirection, LedgerRefType
from licenseflow.models.license import License, LicenseStatus
from licenseflow.services.notification_service import Notifier, UserNotice
from licenseflow.services.settings_provider import SettingsProvider, SystemSettings
from licenseflow.utils.timeutils import utcnow, ensure_utc, midnight, add_days
from .license_repository import LicenseRepository
from .types import (
    AccrualOutcome,
    CycleResult,
    LicenseAccrualResult,
    ProcessorStats,
    ProcessorStatus
)


logger = structlog.get_logger(__name__)

USDT_QUANTUM = Decimal("0.000001")
ACCRUAL_PERIOD = timedelta(hours=24)


def split_accumulated(days: int, daily_amount: Decimal, cashback_phase_days: int):
    """
    Split ``days`` worth of earnings into (cashback, potential).

    The first ``cashback_phase_days`` days count as cashback, the rest as
    potential. The two parts always sum to ``days * daily_amount``.
    """
    cashback_days = min(days, cashback_phase_days)
    potential_days = max(0, days - cashback_phase_days)
    return daily_amount * cashback_days, daily_amount * potential_days


class EarningsAccrualProcessor:
    """
    Daily earnings processor.

    Flow per license:
    1. Complete (once) and skip when max days or the cap is reached
    2. Skip until (day + 1) x 24h after started_at and until the next earning date arrives
    3. Skip if the earning for that date already exists
    4. In one transaction: daily earning row, guarded counter update,
       completion, ledger credit (unless potential is paused)
    5. Notify after commit
    """

    def __init__(
        self,
        database: Database,
        settings_provider: SettingsProvider,
        notifier: Notifier,
        cashback_phase_days: int,
        clock: Callable[[], datetime] = utcnow
    ):
        self.database = database
        self.settings_provider = settings_provider
        self.notifier = notifier
        self.cashback_phase_days = cashback_phase_days
        self.clock = clock
        self.repository = LicenseRepository(database)
        self.logger = logger.bind(service="earnings_processor")

        self.status = ProcessorStatus.IDLE
        self.stats = ProcessorStats()

    async def run_daily_earnings_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """
        Run one accrual cycle over all active licenses.

        Returns:
            CycleResult with processed/completed/total counts; all zero when
            maintenance mode is on or automatic processing is disabled
        """
        if self.status == ProcessorStatus.RUNNING:
            raise SchedulerError("Earnings cycle is already running")

        system_settings = await self.settings_provider.get_settings()
        if not system_settings.earnings_enabled:
            self.logger.info(
                "Daily earnings processing disabled, skipping cycle",
                maintenance_mode=system_settings.maintenance_mode,
                automatic_processing=system_settings.automatic_daily_earnings_processing
            )
            return CycleResult()

        now = ensure_utc(now) if now is not None else self.clock()
        self.status = ProcessorStatus.RUNNING
        self.stats = ProcessorStats(start_time=utcnow())
        result = CycleResult()

        try:
            license_ids = await self.repository.get_active_license_ids()
            result.total = len(license_ids)
            self.stats.total_licenses = result.total

            self.logger.info("Starting daily earnings cycle", active_licenses=result.total, now=now.isoformat())

            for license_id in license_ids:
                try:
                    outcome = await self.process_license(license_id, now=now)
                except Exception as e:
                    self.stats.failed += 1
                    self.stats.errors.append(f"{license_id}: {e}")
                    self.logger.error("Error processing license", license_id=license_id, error=str(e))
                    continue

                if outcome.accrued:
                    result.processed += 1
                else:
                    self.stats.skipped += 1
                if outcome.completed:
                    result.completed += 1

            self.stats.processed = result.processed
            self.stats.completed = result.completed
            self.status = ProcessorStatus.COMPLETED
            return result

        except Exception as e:
            self.status = ProcessorStatus.FAILED
            self.logger.error("Daily earnings cycle failed", error=str(e))
            raise

        finally:
            self.stats.end_time = utcnow()
            self.stats.total_processing_time = (self.stats.end_time - self.stats.start_time).total_seconds()
            self.logger.info(
                "Daily earnings cycle finished",
                **result.to_dict(),
                skipped=self.stats.skipped,
                failed=self.stats.failed,
                total_time=f"{self.stats.total_processing_time:.2f}s"
            )
            self.status = ProcessorStatus.IDLE

    async def process_single_license(self, license_id: str, now: Optional[datetime] = None) -> LicenseAccrualResult:
        """
        Admin-triggered accrual for one license, same rules as the cycle.

        Maintenance mode still blocks it; the automatic-processing switch does not.
        """
        system_settings: SystemSettings = await self.settings_provider.get_settings()
        if system_settings.maintenance_mode:
            self.logger.warning("Maintenance mode enabled, single license accrual skipped", license_id=license_id)
            return LicenseAccrualResult(license_id=license_id, outcome=AccrualOutcome.DISABLED)

        self.logger.info("Manual single license accrual requested", license_id=license_id)
        return await self.process_license(license_id, now=now)

    async def process_license(self, license_id: str, now: Optional[datetime] = None) -> LicenseAccrualResult:
        """
        Decide and, when due, emit the next day's earning for one license.

        Raises:
            LicenseNotFoundError: unknown license id
        """
        now = ensure_utc(now) if now is not None else self.clock()

        try:
            async with self.database.session() as session:
                license = await self.repository.get_license(session, license_id)
                if license is None:
                    raise LicenseNotFoundError(license_id)

                if license.status != LicenseStatus.ACTIVE.value:
                    return LicenseAccrualResult(license_id=license_id, outcome=AccrualOutcome.INACTIVE)

                if license.has_reached_limit:
                    completed = await self.repository.mark_completed(session, license_id, now)
                    result = LicenseAccrualResult(
                        license_id=license_id,
                        outcome=AccrualOutcome.COMPLETED,
                        completed=completed
                    )
                    snapshot = self._snapshot(license)
                    self.logger.info(
                        "License reached its limit",
                        license_id=license_id,
                        days=license.days_generated,
                        total_earned=str(license.total_earned),
                        cap=str(license.cap_amount)
                    )
                else:
                    result, snapshot = await self._accrue(session, license, now)

        except IntegrityError:
            # A concurrent cycle inserted the same (license, date) first
            self.logger.info("Earning already recorded by a concurrent run", license_id=license_id)
            return LicenseAccrualResult(license_id=license_id, outcome=AccrualOutcome.DUPLICATE)

        except ConcurrentUpdateError:
            self.logger.warning("License changed during accrual, skipping", license_id=license_id)
            return LicenseAccrualResult(license_id=license_id, outcome=AccrualOutcome.CONCURRENT_UPDATE)

        await self._notify(snapshot, result)
        return result

    async def _accrue(self, session, license: License, now: datetime):
        started_at = ensure_utc(license.started_at)
        # Day k is due once k full periods have passed since the start
        if now - started_at < ACCRUAL_PERIOD * (license.days_generated + 1):
            return LicenseAccrualResult(license_id=license.id, outcome=AccrualOutcome.TOO_EARLY), None

        earning_date = add_days(midnight(started_at).date(), license.days_generated)
        if earning_date > now.date():
            return LicenseAccrualResult(
                license_id=license.id,
                outcome=AccrualOutcome.FUTURE_DATE,
                earning_date=earning_date.isoformat()
            ), None

        if await self.repository.earning_exists(session, license.id, earning_date):
            self.logger.info(
                "Earning already processed for date, skipping",
                license_id=license.id,
                earning_date=earning_date.isoformat()
            )
            return LicenseAccrualResult(
                license_id=license.id,
                outcome=AccrualOutcome.DUPLICATE,
                earning_date=earning_date.isoformat()
            ), None

        daily_amount = license.daily_amount.quantize(USDT_QUANTUM, rounding=ROUND_DOWN)
        day_index = license.days_generated + 1
        applied_to_balance = not license.pause_potential
        in_cashback_phase = day_index <= self.cashback_phase_days

        cashback_accum, potential_accum = split_accumulated(day_index, daily_amount, self.cashback_phase_days)
        total_earned = cashback_accum + potential_accum
        completes = day_index >= license.max_days or total_earned >= license.cap_amount

        session.add(DailyEarning(
            license_id=license.id,
            day_index=day_index,
            earning_date=earning_date,
            cashback_amount=daily_amount if in_cashback_phase else Decimal("0"),
            potential_amount=Decimal("0") if in_cashback_phase else daily_amount,
            applied_to_balance=applied_to_balance,
            applied_at=now if applied_to_balance else None,
        ))
        await session.flush()

        await self.repository.apply_accrual(
            session,
            license_id=license.id,
            expected_days=license.days_generated,
            days_generated=day_index,
            cashback_accum=cashback_accum,
            potential_accum=potential_accum,
            completed_at=now if completes else None,
            now=now
        )

        if applied_to_balance:
            session.add(LedgerEntry(
                user_id=license.user_id,
                direction=LedgerDirection.CREDIT.value,
                amount=daily_amount,
                ref_type=LedgerRefType.EARNING.value,
                ref_id=license.id,
                meta={
                    "description": f"Daily earning from {license.product_name} (Day {day_index})",
                    "license_id": license.id,
                    "product_name": license.product_name,
                    "day_index": day_index,
                    "earning_date": earning_date.isoformat(),
                },
            ))

        self.logger.info(
            "Processed daily earning for license",
            license_id=license.id,
            day=day_index,
            daily_amount=str(daily_amount),
            applied_to_balance=applied_to_balance,
            completed=completes
        )

        snapshot = self._snapshot(license)
        snapshot["total_earned"] = total_earned
        snapshot["days_generated"] = day_index

        return LicenseAccrualResult(
            license_id=license.id,
            outcome=AccrualOutcome.ACCRUED,
            day_index=day_index,
            earning_date=earning_date.isoformat(),
            amount=daily_amount,
            applied_to_balance=applied_to_balance,
            completed=completes
        ), snapshot

    @staticmethod
    def _snapshot(license: License) -> Dict[str, Any]:
        return {
            "user_id": license.user_id,
            "product_name": license.product_name,
            "total_earned": Decimal(license.total_earned or 0),
            "days_generated": license.days_generated,
            "pause_potential": license.pause_potential,
        }

    async def _notify(self, snapshot: Optional[Dict[str, Any]], result: LicenseAccrualResult) -> None:
        """Post-commit notifications. Failures are logged by the notifier."""
        if snapshot is None:
            return

        user_id = snapshot["user_id"]
        product_name = snapshot["product_name"]

        if result.accrued:
            await self.notifier.user(user_id, UserNotice(
                type="earning",
                title="Daily earning processed",
                message=f"Your daily earning of ${result.amount} USDT for {product_name} has been processed",
                severity="success",
                metadata={
                    "license_id": result.license_id,
                    "product_name": product_name,
                    "day": result.day_index,
                    "daily_amount": str(result.amount),
                    "applied_to_balance": result.applied_to_balance,
                    "is_paused": snapshot["pause_potential"],
                },
            ))

        if result.completed:
            await self.notifier.user(user_id, UserNotice(
                type="earning",
                title="License completed",
                message=(
                    f"Your license {product_name} has been completed. "
                    f"Total earned: ${snapshot['total_earned']} USDT"
                ),
                severity="success",
                metadata={
                    "license_id": result.license_id,
                    "product_name": product_name,
                    "total_earned": str(snapshot["total_earned"]),
                    "days_completed": snapshot["days_generated"],
                },
            ))

        if result.accrued and snapshot["pause_potential"]:
            await self.notifier.user(user_id, UserNotice(
                type="earning",
                title="License paused",
                message=f"Your license {product_name} has been paused by an administrator",
                severity="warning",
                metadata={
                    "license_id": result.license_id,
                    "product_name": product_name,
                    "reason": "License potential paused by admin",
                    "daily_amount": str(result.amount),
                },
            ))

    async def toggle_pause_potential(
        self,
        license_id: str,
        paused: Optional[bool] = None,
        actor_user_id: Optional[str] = None
    ) -> bool:
        """
        Set or flip the license's pause_potential flag.

        Args:
            license_id: License to change
            paused: New value; None flips the current one
            actor_user_id: Admin performing the change, None for system

        Returns:
            bool: The new flag value
        """
        async with self.database.session() as session:
            license = await self.repository.get_license(session, license_id)
            if license is None:
                raise LicenseNotFoundError(license_id)

            old_value = bool(license.pause_potential)
            new_value = (not old_value) if paused is None else bool(paused)
            license.pause_potential = new_value

            audit = AuditLog.system(
                action="license.pause_potential",
                entity="license",
                entity_id=license_id,
                source="admin",
                old_values={"pause_potential": old_value},
                new_values={"pause_potential": new_value},
                diff={"pause_potential": [old_value, new_value]} if old_value != new_value else {},
            )
            audit.actor_user_id = actor_user_id
            session.add(audit)

        self.logger.info(
            "License pause_potential updated",
            license_id=license_id,
            paused=new_value,
            actor_user_id=actor_user_id
        )
        return new_value

    def get_status(self) -> Dict[str, Any]:
        """Get current processor status and statistics."""
        return {
            "status": self.status.value,
            "stats": self.stats.to_dict(),
            "config": {
                "cashback_phase_days": self.cashback_phase_days,
            }
        }
