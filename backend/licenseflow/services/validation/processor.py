"""
Transaction validation processor.

Decides whether the tx hash a user submitted for a paid order is a genuine,
correctly addressed, correctly sized and sufficiently confirmed USDT
transfer, and then confirms the order (creating its license) or routes it
to a human.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import structlog

from licenseflow.core.database import Database
from licenseflow.core.exceptions import (
    DuplicatePaymentError,
    OrderNotFoundError,
    RetryableValidationError
)
from licenseflow.models.audit import AuditLog
from licenseflow.models.ledger import LedgerEntry, LedgerDirection, LedgerRefType
from licenseflow.models.license import License, LicenseStatus
from licenseflow.models.order import OrderDeposit, OrderStatus
from licenseflow.models.user import User
from licenseflow.services.blockchain_client import BlockchainClient, ValidationResult
from licenseflow.services.notification_service import Notifier, UserNotice
from licenseflow.services.settings_provider import SettingsProvider, SystemSettings
from licenseflow.utils.timeutils import utcnow
from .order_repository import OrderRepository


logger = structlog.get_logger(__name__)

AUDIT_SOURCE = "blockchain_validation_job"


class ValidationOutcome(str, Enum):
    """Terminal result of one validation run."""
    SKIPPED = "skipped"
    CONFIRMED = "confirmed"
    MANUAL_CONFIRMATION = "manual_confirmation"
    MANUAL_REVIEW = "manual_review"


class TransactionValidationProcessor:
    """
    Validation job body.

    Retry contract with the queue: raising asks for another attempt,
    returning ends the job. ``retry_count`` is the number of attempts
    already made for this job.
    """

    def __init__(
        self,
        database: Database,
        chain_client: BlockchainClient,
        settings_provider: SettingsProvider,
        notifier: Notifier,
        max_retries: int = 3
    ):
        self.database = database
        self.chain_client = chain_client
        self.settings_provider = settings_provider
        self.notifier = notifier
        self.max_retries = max_retries
        self.repository = OrderRepository(database)
        self.logger = logger.bind(service="transaction_validation")

    async def validate_order(self, order_id: str, retry_count: int = 0) -> ValidationOutcome:
        """
        Validate one order's payment.

        Raises:
            RetryableValidationError: transient chain failure, retry budget left
            Exception: unexpected failure while retry budget is left
        """
        self.logger.info("Processing transaction validation", order_id=order_id, retry_count=retry_count)

        try:
            loaded = await self._load_order(order_id)
            if loaded is None:
                return ValidationOutcome.SKIPPED
            order, user_email = loaded

            system_settings = await self.settings_provider.get_settings()
            result = await self.chain_client.validate_transfer(
                order.tx_hash,
                order.deposit_address,
                order.amount_usdt,
                system_settings.validation_tolerance_percent
            )

            if result.is_valid:
                return await self._handle_valid(order, user_email, result, system_settings)

            self.logger.warning(
                "Transaction validation failed",
                order_id=order_id,
                error=result.error,
                retryable=result.is_retryable
            )

            if retry_count < self.max_retries and result.is_retryable:
                self.logger.info("Scheduling validation retry", order_id=order_id, attempt=retry_count + 1)
                raise RetryableValidationError(order_id, result.error, retry_count + 1)

            reason = result.error or "Unknown validation error"
            await self.mark_for_manual_review(order_id, reason)
            await self.notifier.admin("validation_failed", {
                **self._alert_payload(order, user_email),
                "error": reason,
            })
            return ValidationOutcome.MANUAL_REVIEW

        except Exception as e:
            self.logger.error(
                "Transaction validation job failed",
                order_id=order_id,
                retry_count=retry_count,
                error=str(e)
            )
            if retry_count < self.max_retries:
                raise

            await self.mark_for_manual_review(
                order_id,
                f"Validation job failed after {retry_count + 1} attempts: {e}"
            )
            return ValidationOutcome.MANUAL_REVIEW

    async def _load_order(self, order_id: str) -> Optional[Tuple[OrderDeposit, Optional[str]]]:
        """Load the order and check the preconditions for a chain lookup."""
        async with self.database.session() as session:
            order = await self.repository.get_order(session, order_id)
            if order is None:
                self.logger.error("Order not found", order_id=order_id)
                return None

            if order.status != OrderStatus.PAID.value:
                self.logger.info("Order is not in paid status, skipping validation", order_id=order_id, status=order.status)
                return None

            if not order.tx_hash:
                self.logger.error("Order has no transaction hash", order_id=order_id)
                return None

            if not order.deposit_address:
                self.logger.error("Order has no deposit address", order_id=order_id)
                return None

            user = await session.get(User, order.user_id)
            return order, (user.email if user is not None else None)

    async def _handle_valid(
        self,
        order: OrderDeposit,
        user_email: Optional[str],
        result: ValidationResult,
        system_settings: SystemSettings
    ) -> ValidationOutcome:
        alert_payload = {
            **self._alert_payload(order, user_email),
            "validation_result": result.to_payload(),
        }

        if system_settings.automatic_order_processing:
            try:
                license = await self.auto_confirm_order(order.id, result, system_settings)
            except DuplicatePaymentError as e:
                self.logger.warning("Transaction already paid for another order", order_id=order.id, error=e.message)
                await self.mark_for_manual_review(order.id, e.message)
                await self.notifier.admin("validation_failed", {**alert_payload, "error": e.message})
                return ValidationOutcome.MANUAL_REVIEW

            self.logger.info("Order auto-confirmed after blockchain validation", order_id=order.id, license_id=license.id)

            await self.notifier.admin("auto_confirmed", alert_payload)
            await self.notifier.user(order.user_id, UserNotice(
                type="order",
                title="Order confirmed",
                message=f"Your payment for {order.product_name} was confirmed and your license is now active",
                severity="success",
                metadata={
                    "order_id": order.id,
                    "license_id": license.id,
                    "product_name": order.product_name,
                    "amount": str(order.amount_usdt),
                },
            ))
            return ValidationOutcome.CONFIRMED

        self.logger.info(
            "Order validated but requires manual confirmation (auto-processing disabled)",
            order_id=order.id
        )
        async with self.database.session() as session:
            current = await self.repository.get_order(session, order.id)
            if current is None or current.status != OrderStatus.PAID.value:
                self.logger.info(
                    "Order left paid status during validation, skipping",
                    order_id=order.id,
                    status=current.status if current is not None else None
                )
                return ValidationOutcome.SKIPPED

            self.repository.merge_payload(current, {
                "blockchain_validated": True,
                "validated_at": utcnow().isoformat(),
                "validation_result": result.to_payload(),
                "requires_manual_confirmation": True,
                "auto_processing_disabled": True,
            })

        await self.notifier.admin("manual_confirmation_required", alert_payload)
        return ValidationOutcome.MANUAL_CONFIRMATION

    async def auto_confirm_order(
        self,
        order_id: str,
        result: ValidationResult,
        system_settings: SystemSettings
    ) -> License:
        """
        Confirm a validated order in one transaction.

        Order paid -> confirmed, new active license with terms taken from the
        current settings, purchase debit in the ledger and an audit record.

        Raises:
            DuplicatePaymentError: the tx hash already confirmed another order
            ConcurrentUpdateError: the order left paid status meanwhile
        """
        now = utcnow()

        async with self.database.session() as session:
            order = await self.repository.get_order(session, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)

            paid_order_id = await self.repository.find_confirmed_order_with_tx_hash(
                session,
                order.tx_hash,
                exclude_order_id=order.id
            )
            if paid_order_id is not None:
                raise DuplicatePaymentError(order.id, order.tx_hash, paid_order_id)

            payload = dict(order.raw_chain_payload or {})
            payload.update({
                "auto_validated": True,
                "validated_at": now.isoformat(),
                "validation_method": "blockchain_client",
                "validation_result": result.to_payload(),
            })

            await self.repository.transition_status(
                session,
                order_id,
                OrderStatus.PAID,
                OrderStatus.CONFIRMED,
                confirmed_at=now,
                raw_chain_payload=payload,
                updated_at=now
            )

            license = License(
                user_id=order.user_id,
                order_id=order.id,
                product_id=order.product_id,
                product_name=order.product_name,
                principal_usdt=order.amount_usdt,
                daily_rate=system_settings.daily_earning_rate,
                max_days=system_settings.max_earning_days,
                cap_fraction=system_settings.earning_cap_fraction,
                days_generated=0,
                status=LicenseStatus.ACTIVE.value,
                started_at=now,
            )
            session.add(license)
            await session.flush()

            session.add(LedgerEntry(
                user_id=order.user_id,
                direction=LedgerDirection.DEBIT.value,
                amount=order.amount_usdt,
                ref_type=LedgerRefType.ORDER.value,
                ref_id=order.id,
                meta={
                    "description": f"License purchase - {order.product_name} (Auto-validated)",
                    "order_id": order.id,
                    "license_id": license.id,
                    "product_name": order.product_name,
                },
            ))

            session.add(AuditLog.system(
                action="auto_confirm_order",
                entity="order",
                entity_id=order.id,
                source=AUDIT_SOURCE,
                old_values={"status": OrderStatus.PAID.value},
                new_values={"status": OrderStatus.CONFIRMED.value},
                diff={"status": {"from": OrderStatus.PAID.value, "to": OrderStatus.CONFIRMED.value}},
            ))

        return license

    async def mark_for_manual_review(self, order_id: str, reason: str) -> bool:
        """
        Flag an order for manual review with the failure reason.

        Re-flagging an already flagged order only refreshes the reason.

        Returns:
            bool: True when the order was newly flagged
        """
        async with self.database.session() as session:
            order = await self.repository.get_order(session, order_id)
            if order is None:
                self.logger.error("Cannot flag missing order for manual review", order_id=order_id)
                return False

            newly_flagged = not order.requires_manual_review
            self.repository.merge_payload(order, {
                "validation_failed": True,
                "validation_error": reason,
                "marked_for_review_at": utcnow().isoformat(),
                "requires_manual_review": True,
            })

            if newly_flagged:
                session.add(AuditLog.system(
                    action="mark_for_manual_review",
                    entity="order",
                    entity_id=order_id,
                    source=AUDIT_SOURCE,
                    new_values={"requires_manual_review": True},
                    diff={"validation_error": reason},
                ))

        self.logger.warning("Order marked for manual review", order_id=order_id, reason=reason)
        return newly_flagged

    async def find_pending_validations(self, limit: int = 50) -> List[str]:
        return await self.repository.find_pending_validation_ids(limit)

    @staticmethod
    def _alert_payload(order: OrderDeposit, user_email: Optional[str]) -> Dict[str, Any]:
        return {
            "id": order.id,
            "user_email": user_email,
            "amount": str(order.amount_usdt),
            "tx_hash": order.tx_hash,
            "product_name": order.product_name,
        }
