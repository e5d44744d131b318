"""
Test the BSC explorer client and transfer validation.
"""

import asyncio
from decimal import Decimal

import pytest

from licenseflow.core.config import ChainConfig
from licenseflow.core.exceptions import BlockchainError
from licenseflow.services.blockchain_client import (
    TRANSFER_EVENT_TOPIC,
    BlockchainClient,
    is_retryable_error,
)
from licenseflow.utils.validation import ChainValidator, from_base_units

from conftest import DEPOSIT_ADDRESS, TX_HASH


USDT = ChainConfig.NETWORKS["testnet"]["usdt_contract"]
SENDER = "0x2222222222222222222222222222222222222222"
OTHER = "0x3333333333333333333333333333333333333333"


def units(amount):
    return int(Decimal(amount) * 10 ** 18)


def transfer_log(to, amount, contract=USDT, sender=SENDER, log_index=0):
    return {
        "address": contract,
        "topics": [
            TRANSFER_EVENT_TOPIC,
            "0x" + "0" * 24 + sender[2:],
            "0x" + "0" * 24 + to[2:],
        ],
        "data": hex(units(amount)),
        "logIndex": hex(log_index),
    }


def make_receipt(logs, block=100, status="0x1"):
    return {
        "transactionHash": TX_HASH,
        "blockNumber": hex(block),
        "status": status,
        "logs": logs,
    }


class FakeExplorer:
    """Answers explorer proxy calls from canned data."""

    def __init__(self, receipt, current_block=102, error=None):
        self.receipt = receipt
        self.current_block = current_block
        self.error = error
        self.calls = []

    async def __call__(self, params):
        self.calls.append(params["action"])
        if self.error is not None:
            raise self.error
        if params["action"] == "eth_getTransactionReceipt":
            return self.receipt
        if params["action"] == "eth_getTransactionByHash":
            return {"hash": TX_HASH, "from": SENDER, "to": USDT, "value": "0x0"}
        if params["action"] == "eth_blockNumber":
            return hex(self.current_block)
        raise AssertionError(f"unexpected action {params['action']}")


class FakeResponse:
    def __init__(self, status=200, payload=None):
        self.status = status
        self.payload = payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type=None):
        return self.payload


class FakeSession:
    closed = False

    def __init__(self, response=None, raises=None):
        self.response = response
        self.raises = raises
        self.params = []

    def get(self, url, params=None, timeout=None):
        self.params.append(params)
        if self.raises is not None:
            raise self.raises
        return self.response


@pytest.fixture
def client(settings):
    return BlockchainClient(settings)


def use_explorer(monkeypatch, client, explorer):
    monkeypatch.setattr(client, "_request", explorer)
    return explorer


@pytest.mark.asyncio
@pytest.mark.parametrize("paid", ["500", "495", "505", "500.000001"])
async def test_amount_within_tolerance_is_valid(monkeypatch, client, paid):
    """Tolerance bounds are inclusive: 1% of 500 allows 495..505."""
    use_explorer(monkeypatch, client, FakeExplorer(make_receipt([transfer_log(DEPOSIT_ADDRESS, paid)])))

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500", 1)

    assert result.is_valid
    assert result.amount_usdt == Decimal(paid)
    assert result.transaction.confirmations == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("paid", ["494.9", "505.1", "0.5"])
async def test_amount_outside_tolerance_is_rejected(monkeypatch, client, paid):
    use_explorer(monkeypatch, client, FakeExplorer(make_receipt([transfer_log(DEPOSIT_ADDRESS, paid)])))

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500", 1)

    assert not result.is_valid
    assert result.error.startswith("Amount mismatch")
    assert not result.is_retryable


@pytest.mark.asyncio
async def test_recipient_mismatch(monkeypatch, client):
    use_explorer(monkeypatch, client, FakeExplorer(make_receipt([transfer_log(OTHER, "500")])))

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500")

    assert not result.is_valid
    assert result.error == f"Recipient mismatch. Expected: {DEPOSIT_ADDRESS}, Got: {OTHER}"
    assert not result.is_retryable


@pytest.mark.asyncio
async def test_recipient_compared_case_insensitively(monkeypatch, client):
    checksummed = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
    use_explorer(monkeypatch, client, FakeExplorer(make_receipt([transfer_log(checksummed.lower(), "500")])))

    result = await client.validate_transfer(TX_HASH, checksummed, "500")

    assert result.is_valid


@pytest.mark.asyncio
async def test_prefers_transfer_to_expected_recipient(monkeypatch, client):
    receipt = make_receipt([
        transfer_log(OTHER, "1", log_index=0),
        transfer_log(DEPOSIT_ADDRESS, "500", log_index=1),
    ])
    use_explorer(monkeypatch, client, FakeExplorer(receipt))

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500")

    assert result.is_valid
    assert result.transaction.log_index == 1


@pytest.mark.asyncio
async def test_transfers_of_other_tokens_are_ignored(monkeypatch, client):
    receipt = make_receipt([transfer_log(DEPOSIT_ADDRESS, "500", contract=OTHER)])
    use_explorer(monkeypatch, client, FakeExplorer(receipt))

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500")

    assert not result.is_valid
    assert result.error == "No USDT transfer found in transaction"


@pytest.mark.asyncio
async def test_get_token_transfer_found(monkeypatch, client):
    receipt = make_receipt([
        transfer_log(OTHER, "1", log_index=0),
        transfer_log(DEPOSIT_ADDRESS, "500", log_index=1),
    ])
    explorer = use_explorer(monkeypatch, client, FakeExplorer(receipt))

    first = await client.get_token_transfer(TX_HASH, USDT)
    preferred = await client.get_token_transfer(TX_HASH, USDT, recipient=DEPOSIT_ADDRESS)

    assert first.is_valid
    assert first.transaction.log_index == 0
    assert ChainValidator.same_address(first.transaction.to_address, OTHER)
    assert preferred.transaction.log_index == 1
    assert client.parse_usdt_amount(preferred.transaction.value) == Decimal("500")
    assert explorer.calls == ["eth_getTransactionReceipt"] * 2


@pytest.mark.asyncio
async def test_get_token_transfer_not_found(monkeypatch, client):
    receipt = make_receipt([transfer_log(DEPOSIT_ADDRESS, "500", contract=OTHER)])
    use_explorer(monkeypatch, client, FakeExplorer(receipt))

    result = await client.get_token_transfer(TX_HASH, USDT)

    assert not result.is_valid
    assert result.transaction is None
    assert result.error == "Token transfer not found for this transaction"


@pytest.mark.asyncio
async def test_get_token_transfer_fetch_failure(monkeypatch, client):
    use_explorer(monkeypatch, client, FakeExplorer(None, error=BlockchainError("HTTP 503: Service Unavailable")))

    result = await client.get_token_transfer(TX_HASH, USDT)

    assert not result.is_valid
    assert result.error == "Failed to fetch token transfer: HTTP 503: Service Unavailable"
    assert result.is_retryable


@pytest.mark.asyncio
async def test_get_token_transfer_reuses_given_receipt(monkeypatch, client):
    explorer = use_explorer(monkeypatch, client, FakeExplorer(None))

    result = await client.get_token_transfer(TX_HASH, USDT, receipt=make_receipt([transfer_log(DEPOSIT_ADDRESS, "5")]))

    assert result.is_valid
    assert explorer.calls == []


@pytest.mark.asyncio
async def test_insufficient_confirmations_is_retryable(monkeypatch, client):
    receipt = make_receipt([transfer_log(DEPOSIT_ADDRESS, "500")], block=100)
    use_explorer(monkeypatch, client, FakeExplorer(receipt, current_block=100))

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500")

    assert not result.is_valid
    assert result.error == "Insufficient confirmations. Required: 3, Got: 1"
    assert result.is_retryable


@pytest.mark.asyncio
async def test_pending_transaction_is_retryable(monkeypatch, client):
    use_explorer(monkeypatch, client, FakeExplorer(None))

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500")

    assert not result.is_valid
    assert "Got: 0" in result.error
    assert result.is_retryable


@pytest.mark.asyncio
async def test_reverted_transaction_is_rejected(monkeypatch, client):
    receipt = make_receipt([transfer_log(DEPOSIT_ADDRESS, "500")], status="0x0")
    use_explorer(monkeypatch, client, FakeExplorer(receipt))

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500")

    assert not result.is_valid
    assert result.error == "Transaction failed on chain"
    assert not result.is_retryable


@pytest.mark.asyncio
async def test_explorer_failure_becomes_retryable_result(monkeypatch, client):
    explorer = FakeExplorer(None, error=BlockchainError("Request timeout after 10.0s"))
    use_explorer(monkeypatch, client, explorer)

    result = await client.validate_transfer(TX_HASH, DEPOSIT_ADDRESS, "500")

    assert not result.is_valid
    assert result.error == "Failed to fetch transaction: Request timeout after 10.0s"
    assert result.is_retryable


@pytest.mark.asyncio
async def test_request_timeout_message(settings):
    client = BlockchainClient(settings, session=FakeSession(raises=asyncio.TimeoutError()))

    with pytest.raises(BlockchainError) as exc_info:
        await client.get_block_number()

    assert "timeout" in exc_info.value.message.lower()


@pytest.mark.asyncio
@pytest.mark.parametrize("status, message", [
    (429, "Rate limit exceeded"),
    (503, "Service unavailable"),
    (500, "Internal server error"),
])
async def test_http_errors_keep_transient_keywords(settings, status, message):
    client = BlockchainClient(settings, session=FakeSession(FakeResponse(status)))

    with pytest.raises(BlockchainError) as exc_info:
        await client.get_block_number()

    assert message in exc_info.value.message
    assert is_retryable_error(exc_info.value.message)


@pytest.mark.asyncio
async def test_request_sends_api_key_and_returns_result(settings):
    session = FakeSession(FakeResponse(200, {"jsonrpc": "2.0", "id": 1, "result": "0x10"}))
    client = BlockchainClient(settings, session=session)

    assert await client.get_block_number() == 16
    assert session.params[0]["apikey"] == "test-key"
    assert session.params[0]["action"] == "eth_blockNumber"


@pytest.mark.asyncio
async def test_explorer_notok_raises(settings):
    payload = {"status": "0", "message": "NOTOK", "result": "Invalid API Key"}
    client = BlockchainClient(settings, session=FakeSession(FakeResponse(200, payload)))

    with pytest.raises(BlockchainError) as exc_info:
        await client.get_block_number()

    assert exc_info.value.message == "Invalid API Key"


def test_is_retryable_error():
    assert is_retryable_error("Request timeout after 10s")
    assert is_retryable_error("Network error: connection reset")
    assert is_retryable_error("Rate limit exceeded (HTTP 429)")
    assert is_retryable_error("Invalid API Key")
    assert is_retryable_error("Service Unavailable")
    assert not is_retryable_error("Recipient mismatch. Expected: a, Got: b")
    assert not is_retryable_error("Transaction not found")
    assert not is_retryable_error(None)
    assert not is_retryable_error("")


def test_from_base_units_is_exact():
    assert from_base_units(units("500"), 18) == Decimal("500")
    assert from_base_units(hex(units("494.9")), 18) == Decimal("494.9")
    assert from_base_units(1, 18) == Decimal("0.000000000000000001")
    assert from_base_units(1234567, 6) == Decimal("1.234567")
    assert from_base_units(0, 18) == Decimal("0")


def test_address_validation(client):
    assert client.is_valid_address(DEPOSIT_ADDRESS)
    assert not client.is_valid_address("0x123")
    assert not client.is_valid_address("")
    assert ChainValidator.is_valid_tx_hash(TX_HASH)
    assert client.get_network_config()["network"] == "testnet"
