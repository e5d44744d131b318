"""
BSC explorer client for verifying USDT (BEP20) payments.

Provides:
- Transaction, receipt and block-height lookups through the explorer proxy API
- Token Transfer event extraction from the transaction receipt
- Payment validation (recipient, amount tolerance, confirmations)

All token amounts are integer-scaled on the wire and converted with exact
integer arithmetic; floats never take part in a comparison.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import aiohttp
import structlog

from licenseflow.core.config import Settings, ChainConfig
from licenseflow.core.exceptions import BlockchainError
from licenseflow.utils.validation import ChainValidator, from_base_units, to_decimal


logger = structlog.get_logger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

RETRYABLE_ERROR_PATTERNS = (
    "timeout",
    "network",
    "connection",
    "rate limit",
    "api key",
    "service unavailable",
    "internal server error",
)


def is_retryable_error(error: Optional[str]) -> bool:
    """Check if an error message describes a transient condition."""
    if not error:
        return False
    error_lower = error.lower()
    return any(pattern in error_lower for pattern in RETRYABLE_ERROR_PATTERNS)


@dataclass
class TransactionDetails:
    """Transaction or token transfer as seen on chain."""
    hash: str
    from_address: str
    to_address: str
    value: int  # base units
    block_number: int
    confirmations: int = 0
    success: bool = True
    contract_address: Optional[str] = None
    log_index: Optional[int] = None


@dataclass
class ValidationResult:
    """Outcome of one chain check."""
    is_valid: bool
    transaction: Optional[TransactionDetails] = None
    error: Optional[str] = None
    amount_usdt: Optional[Decimal] = None
    retryable: bool = False

    @property
    def is_retryable(self) -> bool:
        """Explicitly transient (e.g. not enough confirmations) or a transient error message."""
        return self.retryable or is_retryable_error(self.error)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "error": self.error,
            "amountUSDT": str(self.amount_usdt) if self.amount_usdt is not None else None,
        }


class BlockchainClient:
    """
    Async client for a BscScan-compatible explorer API.

    The network (mainnet/testnet) comes from settings; business code never
    branches on the environment.
    """

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None):
        self.config = ChainConfig.get_network_config(settings)
        self.api_key = settings.bscscan_api_key or "YourApiKeyToken"
        self.min_confirmations = settings.min_confirmations
        self.decimals = settings.token_decimals
        self.timeout = aiohttp.ClientTimeout(total=settings.chain_request_timeout)
        self._session = session
        self._owns_session = session is None
        self.logger = logger.bind(service="blockchain_client", network=self.config["network"])

        if not settings.bscscan_api_key:
            self.logger.warning("BSCSCAN_API_KEY not set, using default key (limited rate)")

    @property
    def usdt_contract(self) -> str:
        return self.config["usdt_contract"]

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _request(self, params: Dict[str, Any]) -> Any:
        """
        Call the explorer API and return the ``result`` field.

        Raises BlockchainError with a message that keeps the transient
        keywords (timeout, network, rate limit, ...) so callers can classify it.
        """
        query = {**params, "apikey": self.api_key}
        try:
            session = self._get_session()
            async with session.get(self.config["explorer_url"], params=query, timeout=self.timeout) as response:
                if response.status == 429:
                    raise BlockchainError("Rate limit exceeded (HTTP 429)")
                if response.status == 503:
                    raise BlockchainError("Service unavailable (HTTP 503)")
                if response.status >= 500:
                    raise BlockchainError(f"Internal server error (HTTP {response.status})")
                if response.status != 200:
                    raise BlockchainError(f"Explorer returned HTTP {response.status}")
                data = await response.json(content_type=None)

        except asyncio.TimeoutError as e:
            raise BlockchainError(
                f"Request timeout after {self.timeout.total}s",
                {"action": params.get("action")}
            ) from e
        except aiohttp.ClientError as e:
            raise BlockchainError(f"Network error: {e}", {"action": params.get("action")}) from e

        if not isinstance(data, dict):
            raise BlockchainError("Malformed explorer response")

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise BlockchainError(message or "Explorer RPC error")

        # Explorer-level failure, e.g. {"status": "0", "message": "NOTOK", "result": "Invalid API Key"}
        if data.get("status") == "0" and data.get("message", "").upper().startswith("NOTOK"):
            raise BlockchainError(str(data.get("result") or data.get("message")))

        return data.get("result")

    async def get_block_number(self) -> int:
        result = await self._request({"module": "proxy", "action": "eth_blockNumber"})
        return int(result, 16)

    async def _get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._request({
            "module": "proxy",
            "action": "eth_getTransactionReceipt",
            "txhash": tx_hash,
        })

    async def get_transaction_details(
        self,
        tx_hash: str,
        receipt: Optional[Dict[str, Any]] = None
    ) -> ValidationResult:
        """Fetch a transaction, its receipt and its confirmation count."""
        try:
            tx = await self._request({
                "module": "proxy",
                "action": "eth_getTransactionByHash",
                "txhash": tx_hash,
            })
            if not tx:
                return ValidationResult(is_valid=False, error="Transaction not found")

            if receipt is None:
                receipt = await self._get_receipt(tx_hash)
            if not receipt or not receipt.get("blockNumber"):
                # Known but not mined yet: zero confirmations, worth another look
                return ValidationResult(
                    is_valid=False,
                    error=f"Insufficient confirmations. Required: {self.min_confirmations}, Got: 0 (pending)",
                    retryable=True,
                )

            current_block = await self.get_block_number()
            tx_block = int(receipt["blockNumber"], 16)

            transaction = TransactionDetails(
                hash=tx.get("hash", tx_hash),
                from_address=tx.get("from", ""),
                to_address=tx.get("to") or "",
                value=int(tx.get("value") or "0x0", 16),
                block_number=tx_block,
                confirmations=current_block - tx_block + 1,
                success=receipt.get("status") == "0x1",
            )
            return ValidationResult(is_valid=True, transaction=transaction)

        except BlockchainError as e:
            self.logger.error("Error fetching transaction details", tx_hash=tx_hash, error=e.message)
            return ValidationResult(is_valid=False, error=f"Failed to fetch transaction: {e.message}")

    def _extract_transfers(self, receipt: Dict[str, Any], contract_address: str) -> List[TransactionDetails]:
        """Decode Transfer(address,address,uint256) logs emitted by the token contract."""
        transfers = []
        block_number = int(receipt.get("blockNumber") or "0x0", 16)
        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            if len(topics) < 3 or topics[0].lower() != TRANSFER_EVENT_TOPIC:
                continue
            if not ChainValidator.same_address(log.get("address", ""), contract_address):
                continue
            transfers.append(TransactionDetails(
                hash=receipt.get("transactionHash", ""),
                from_address="0x" + topics[1][-40:],
                to_address="0x" + topics[2][-40:],
                value=int(log.get("data") or "0x0", 16),
                block_number=block_number,
                contract_address=log.get("address"),
                log_index=int(log["logIndex"], 16) if log.get("logIndex") else None,
            ))
        return transfers

    async def get_token_transfer(
        self,
        tx_hash: str,
        contract_address: str,
        receipt: Optional[Dict[str, Any]] = None,
        recipient: Optional[str] = None
    ) -> ValidationResult:
        """
        Find the token Transfer event for a transaction.

        When the transaction moves tokens more than once, the transfer paying
        ``recipient`` wins, otherwise the first one.
        """
        try:
            if receipt is None:
                receipt = await self._get_receipt(tx_hash)
        except BlockchainError as e:
            self.logger.error("Error fetching token transfer", tx_hash=tx_hash, error=e.message)
            return ValidationResult(is_valid=False, error=f"Failed to fetch token transfer: {e.message}")

        transfers = self._extract_transfers(receipt or {}, contract_address)
        if not transfers:
            return ValidationResult(is_valid=False, error="Token transfer not found for this transaction")

        transfer = transfers[0]
        if recipient:
            transfer = next(
                (t for t in transfers if ChainValidator.same_address(t.to_address, recipient)),
                transfer
            )
        return ValidationResult(is_valid=True, transaction=transfer)

    def parse_usdt_amount(self, value: Union[int, str]) -> Decimal:
        """Convert base units to USDT."""
        return from_base_units(value, self.decimals)

    async def validate_transfer(
        self,
        tx_hash: str,
        expected_address: str,
        expected_amount: Union[Decimal, str, int, float],
        tolerance_percent: Union[Decimal, str, int, float] = 1
    ) -> ValidationResult:
        """
        Validate a transaction hash as a USDT payment.

        Args:
            tx_hash: Transaction hash to validate
            expected_address: Expected recipient address
            expected_amount: Expected amount in USDT
            tolerance_percent: Allowed deviation, bounds inclusive

        Returns:
            ValidationResult; terminal failures have ``is_retryable == False``
        """
        self.logger.info("Validating transaction", tx_hash=tx_hash)

        try:
            receipt = await self._get_receipt(tx_hash)
        except BlockchainError as e:
            self.logger.error("Error fetching receipt", tx_hash=tx_hash, error=e.message)
            return ValidationResult(is_valid=False, error=f"Failed to fetch transaction: {e.message}")

        details = await self.get_transaction_details(tx_hash, receipt=receipt)
        if not details.is_valid or details.transaction is None:
            return ValidationResult(
                is_valid=False,
                error=details.error or "Transaction validation failed",
                retryable=details.retryable,
            )

        tx = details.transaction
        if not tx.success:
            return ValidationResult(is_valid=False, transaction=tx, error="Transaction failed on chain")

        token = await self.get_token_transfer(
            tx_hash,
            self.usdt_contract,
            receipt=receipt,
            recipient=expected_address
        )
        if not token.is_valid or token.transaction is None:
            return ValidationResult(is_valid=False, transaction=tx, error="No USDT transfer found in transaction")

        transfer = token.transaction
        transfer.confirmations = tx.confirmations

        if not ChainValidator.same_address(transfer.to_address, expected_address):
            return ValidationResult(
                is_valid=False,
                transaction=transfer,
                error=f"Recipient mismatch. Expected: {expected_address}, Got: {transfer.to_address}"
            )

        expected = to_decimal(expected_amount)
        tolerance_pct = to_decimal(tolerance_percent)
        actual_amount = self.parse_usdt_amount(transfer.value)
        tolerance = expected * tolerance_pct / Decimal(100)
        min_amount = expected - tolerance
        max_amount = expected + tolerance

        if actual_amount < min_amount or actual_amount > max_amount:
            return ValidationResult(
                is_valid=False,
                transaction=transfer,
                amount_usdt=actual_amount,
                error=(
                    f"Amount mismatch. Expected: {expected} USDT (±{tolerance_pct}%), "
                    f"Got: {actual_amount.normalize()} USDT"
                )
            )

        if tx.confirmations < self.min_confirmations:
            return ValidationResult(
                is_valid=False,
                transaction=transfer,
                amount_usdt=actual_amount,
                error=f"Insufficient confirmations. Required: {self.min_confirmations}, Got: {tx.confirmations}",
                retryable=True,
            )

        self.logger.info("Transaction validated successfully", tx_hash=tx_hash, amount=str(actual_amount))
        return ValidationResult(is_valid=True, transaction=transfer, amount_usdt=actual_amount)

    def is_valid_address(self, address: str) -> bool:
        return ChainValidator.is_valid_address(address)

    def get_network_config(self) -> Dict[str, Any]:
        return dict(self.config)
