"""
Test the transaction validation processor.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError

from licenseflow.core.exceptions import ConcurrentUpdateError, RetryableValidationError
from licenseflow.models import AuditLog, LedgerEntry, License, OrderDeposit, OrderStatus
from licenseflow.services.blockchain_client import ValidationResult
from licenseflow.services.settings_provider import StaticSettingsProvider
from licenseflow.services.validation import TransactionValidationProcessor, ValidationOutcome

from conftest import DEPOSIT_ADDRESS, TX_HASH, count_rows, fetch, fetch_all


VALID = ValidationResult(is_valid=True, amount_usdt=Decimal("500"))
TIMEOUT = ValidationResult(is_valid=False, error="Failed to fetch transaction: Request timeout after 10.0s")
MISMATCH = ValidationResult(
    is_valid=False,
    error=f"Recipient mismatch. Expected: {DEPOSIT_ADDRESS}, Got: 0x3333333333333333333333333333333333333333"
)
UNCONFIRMED = ValidationResult(
    is_valid=False,
    error="Insufficient confirmations. Required: 3, Got: 1",
    retryable=True
)


@pytest.fixture
def chain_client():
    client = AsyncMock()
    client.validate_transfer.return_value = VALID
    return client


@pytest.fixture
def processor(database, chain_client, settings_provider, notifier):
    return TransactionValidationProcessor(database, chain_client, settings_provider, notifier, max_retries=3)


@pytest.mark.asyncio
async def test_valid_payment_is_auto_confirmed(database, processor, chain_client, make_order, sink):
    order = await make_order(amount="500")

    outcome = await processor.validate_order(order.id)

    assert outcome == ValidationOutcome.CONFIRMED
    chain_client.validate_transfer.assert_awaited_once_with(order.tx_hash, DEPOSIT_ADDRESS, Decimal("500"), Decimal("1"))

    updated = await fetch(database, OrderDeposit, order.id)
    assert updated.status == OrderStatus.CONFIRMED.value
    assert updated.confirmed_at is not None
    assert updated.raw_chain_payload["auto_validated"] is True
    assert updated.raw_chain_payload["validation_result"]["isValid"] is True

    licenses = await fetch_all(database, License, License.order_id == order.id)
    assert len(licenses) == 1
    assert licenses[0].status == "active"
    assert licenses[0].principal_usdt == Decimal("500")
    assert licenses[0].daily_rate == Decimal("0.08")
    assert licenses[0].max_days == 25
    assert licenses[0].days_generated == 0

    debits = await fetch_all(database, LedgerEntry, LedgerEntry.ref_id == order.id)
    assert len(debits) == 1
    assert debits[0].direction == "debit"
    assert debits[0].amount == Decimal("500")
    assert debits[0].meta["license_id"] == licenses[0].id

    audits = await fetch_all(database, AuditLog, AuditLog.entity_id == order.id)
    assert [a.action for a in audits] == ["auto_confirm_order"]
    assert audits[0].actor_user_id is None

    assert sink.alert_kinds() == ["auto_confirmed"]
    assert sink.titles_for(order.user_id) == ["Order confirmed"]


@pytest.mark.asyncio
async def test_license_terms_come_from_settings(database, chain_client, notifier, make_order):
    provider = StaticSettingsProvider(daily_earning_rate=Decimal("0.05"), max_earning_days=40)
    processor = TransactionValidationProcessor(database, chain_client, provider, notifier)
    order = await make_order()

    await processor.validate_order(order.id)

    license = (await fetch_all(database, License, License.order_id == order.id))[0]
    assert license.daily_rate == Decimal("0.05")
    assert license.max_days == 40


@pytest.mark.asyncio
async def test_valid_payment_without_auto_processing_needs_manual_confirmation(
    database, chain_client, notifier, make_order, sink
):
    processor = TransactionValidationProcessor(
        database,
        chain_client,
        StaticSettingsProvider(automatic_order_processing=False),
        notifier
    )
    order = await make_order()

    outcome = await processor.validate_order(order.id)

    assert outcome == ValidationOutcome.MANUAL_CONFIRMATION
    updated = await fetch(database, OrderDeposit, order.id)
    assert updated.status == OrderStatus.PAID.value
    assert updated.requires_manual_confirmation
    assert updated.raw_chain_payload["blockchain_validated"] is True
    assert await count_rows(database, License) == 0
    assert sink.alert_kinds() == ["manual_confirmation_required"]


@pytest.mark.asyncio
@pytest.mark.parametrize("result", [TIMEOUT, UNCONFIRMED])
async def test_transient_failure_is_retried_then_reviewed(database, processor, chain_client, make_order, sink, result):
    """Attempts 1-3 ask for a retry; the fourth and last routes the order to a human."""
    chain_client.validate_transfer.return_value = result
    order = await make_order()

    for retry_count in range(3):
        with pytest.raises(RetryableValidationError) as exc_info:
            await processor.validate_order(order.id, retry_count=retry_count)
        assert exc_info.value.details["attempt"] == retry_count + 1

    assert not (await fetch(database, OrderDeposit, order.id)).requires_manual_review

    outcome = await processor.validate_order(order.id, retry_count=3)

    assert outcome == ValidationOutcome.MANUAL_REVIEW
    updated = await fetch(database, OrderDeposit, order.id)
    assert updated.status == OrderStatus.PAID.value
    assert updated.requires_manual_review
    assert updated.raw_chain_payload["validation_error"] == result.error
    assert sink.alert_kinds() == ["validation_failed"]


@pytest.mark.asyncio
async def test_terminal_failure_goes_to_review_immediately(database, processor, chain_client, make_order, sink):
    chain_client.validate_transfer.return_value = MISMATCH
    order = await make_order()

    outcome = await processor.validate_order(order.id, retry_count=0)

    assert outcome == ValidationOutcome.MANUAL_REVIEW
    updated = await fetch(database, OrderDeposit, order.id)
    assert updated.requires_manual_review
    assert updated.raw_chain_payload["validation_error"].startswith("Recipient mismatch")
    assert await count_rows(database, License) == 0

    kind, payload = sink.admin_alerts[0]
    assert kind == "validation_failed"
    assert payload["id"] == order.id
    assert payload["tx_hash"] == order.tx_hash


@pytest.mark.asyncio
async def test_unexpected_error_is_rethrown_until_last_attempt(database, processor, chain_client, make_order):
    chain_client.validate_transfer.side_effect = RuntimeError("boom")
    order = await make_order()

    with pytest.raises(RuntimeError):
        await processor.validate_order(order.id, retry_count=0)

    outcome = await processor.validate_order(order.id, retry_count=3)

    assert outcome == ValidationOutcome.MANUAL_REVIEW
    updated = await fetch(database, OrderDeposit, order.id)
    assert updated.raw_chain_payload["validation_error"] == "Validation job failed after 4 attempts: boom"


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"status": OrderStatus.PENDING.value},
    {"status": OrderStatus.CONFIRMED.value},
    {"tx_hash": None},
    {"deposit_address": None},
])
async def test_preconditions_skip_without_chain_lookup(processor, chain_client, make_order, overrides):
    order = await make_order(**overrides)

    outcome = await processor.validate_order(order.id)

    assert outcome == ValidationOutcome.SKIPPED
    chain_client.validate_transfer.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_order_is_skipped(processor, chain_client):
    assert await processor.validate_order("missing") == ValidationOutcome.SKIPPED
    chain_client.validate_transfer.assert_not_awaited()


@pytest.mark.asyncio
async def test_order_is_confirmed_at_most_once(database, processor, make_order):
    order = await make_order()

    assert await processor.validate_order(order.id) == ValidationOutcome.CONFIRMED
    assert await processor.validate_order(order.id) == ValidationOutcome.SKIPPED

    with pytest.raises(ConcurrentUpdateError):
        await processor.auto_confirm_order(order.id, VALID, await processor.settings_provider.get_settings())

    assert await count_rows(database, License, License.order_id == order.id) == 1
    assert await count_rows(database, LedgerEntry, LedgerEntry.ref_id == order.id) == 1


@pytest.mark.asyncio
async def test_manual_review_flag_is_idempotent(database, processor, make_order):
    order = await make_order()

    assert await processor.mark_for_manual_review(order.id, "first") is True
    assert await processor.mark_for_manual_review(order.id, "second") is False

    updated = await fetch(database, OrderDeposit, order.id)
    assert updated.raw_chain_payload["validation_error"] == "second"
    assert await count_rows(database, AuditLog, AuditLog.action == "mark_for_manual_review") == 1


@pytest.mark.asyncio
async def test_find_pending_validations(processor, make_order):
    ready = await make_order()
    await make_order(raw_chain_payload={"requires_manual_review": True})
    await make_order(raw_chain_payload={"requires_manual_confirmation": True})
    await make_order(status=OrderStatus.PENDING.value)
    await make_order(tx_hash=None)
    await make_order(status=OrderStatus.CONFIRMED.value)

    assert await processor.find_pending_validations() == [ready.id]


@pytest.mark.asyncio
async def test_find_pending_validations_limit_and_cleared_flags(processor, make_order):
    cleared = await make_order(raw_chain_payload={"requires_manual_review": False, "validation_failed": True})
    others = [await make_order() for _ in range(3)]
    await make_order(raw_chain_payload={"requires_manual_review": True})

    found = await processor.find_pending_validations(limit=2)

    assert len(found) == 2
    assert set(found) <= {cleared.id, *(order.id for order in others)}
    assert set(await processor.find_pending_validations()) == {cleared.id, *(order.id for order in others)}


@pytest.mark.asyncio
async def test_transaction_reused_for_second_order_goes_to_review(database, processor, make_order, sink):
    """One on-chain payment confirms one order, even if the hash is resubmitted in another letter case."""
    first = await make_order(tx_hash=TX_HASH)
    second = await make_order(tx_hash=TX_HASH.upper().replace("0X", "0x"))

    assert await processor.validate_order(first.id) == ValidationOutcome.CONFIRMED
    assert await processor.validate_order(second.id) == ValidationOutcome.MANUAL_REVIEW

    assert await count_rows(database, License) == 1
    assert await count_rows(database, LedgerEntry, LedgerEntry.ref_id == second.id) == 0

    updated = await fetch(database, OrderDeposit, second.id)
    assert updated.status == OrderStatus.PAID.value
    assert updated.requires_manual_review
    assert updated.raw_chain_payload["validation_error"] == (
        f"Transaction {second.tx_hash} already confirmed order {first.id}"
    )
    assert sink.alert_kinds() == ["auto_confirmed", "validation_failed"]


@pytest.mark.asyncio
async def test_same_tx_hash_cannot_be_stored_twice(make_order):
    await make_order(tx_hash=TX_HASH)

    with pytest.raises(IntegrityError):
        await make_order(tx_hash=TX_HASH)


@pytest.mark.asyncio
async def test_manual_confirmation_skips_order_that_left_paid(database, chain_client, notifier, make_order, sink):
    processor = TransactionValidationProcessor(
        database,
        chain_client,
        StaticSettingsProvider(automatic_order_processing=False),
        notifier
    )
    order = await make_order()

    async def canceled_during_lookup(*args):
        async with database.session() as session:
            row = await session.get(OrderDeposit, order.id)
            row.status = OrderStatus.CANCELED.value
        return VALID

    chain_client.validate_transfer.side_effect = canceled_during_lookup

    assert await processor.validate_order(order.id) == ValidationOutcome.SKIPPED

    updated = await fetch(database, OrderDeposit, order.id)
    assert updated.status == OrderStatus.CANCELED.value
    assert not updated.requires_manual_confirmation
    assert sink.alert_kinds() == []
