# services/chain_adapter.py

"""Common contract for per-blockchain transaction verifiers.

An adapter resolves a transaction hash on its chain and turns the on-chain
facts into the seven named verification checks. Transport failures are retried
with a per-call timeout and finally surface as ``ChainUnavailable``; definitive
contradictions are reported as failed checks, never raised from ``verify``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

import config
from services.errors import ChainMismatch, ChainUnavailable, DuplicateTransaction, ValidationError
from services.payment_models import CHECK_NAMES, Chain, empty_checks
from services.price_service import PriceService
from utils.retry_helper import TRANSIENT_ERRORS, call_with_retry
from utils.validators import normalize_address

logger = logging.getLogger(__name__)


class ExplorerResponseError(aiohttp.ClientError):
    """Explorer answered, but with an error envelope (rate limit, NOTOK, HTTP 5xx)."""


@dataclass
class AdapterSettings:
    timeout_seconds: float = 10.0
    retries: int = 2
    backoff_seconds: float = 1.0
    tolerance_percent: Decimal = Decimal("5")
    tolerance_absolute_usd: Decimal = Decimal("2")
    tx_max_age: timedelta = timedelta(hours=168)
    clock_skew: timedelta = timedelta(minutes=15)

    @classmethod
    def from_config(cls) -> "AdapterSettings":
        return cls(
            timeout_seconds=config.CHAIN_CALL_TIMEOUT_SECONDS,
            retries=config.CHAIN_CALL_RETRIES,
            backoff_seconds=config.CHAIN_RETRY_BACKOFF_SECONDS,
            tolerance_percent=Decimal(str(config.AMOUNT_TOLERANCE_PERCENT)),
            tolerance_absolute_usd=Decimal(str(config.AMOUNT_TOLERANCE_ABSOLUTE_USD)),
            tx_max_age=timedelta(hours=config.TX_MAX_AGE_HOURS),
            clock_skew=timedelta(minutes=config.TX_CLOCK_SKEW_MINUTES),
        )


@dataclass
class ChainTransaction:
    """On-chain facts about one transfer, as reported by an explorer."""

    tx_hash: str
    found: bool
    succeeded: bool = False
    sender: str = ""
    recipient: str = ""
    raw_amount: int = 0
    decimals: int = 18
    is_stablecoin: bool = False
    token_contract: Optional[str] = None
    block_number: Optional[int] = None
    confirmations: int = 0
    timestamp: Optional[datetime] = None
    # False for an unmined contract call: recipient and amount are not settled yet.
    transfer_final: bool = True

    @property
    def token_amount(self) -> Decimal:
        return Decimal(self.raw_amount) / (Decimal(10) ** self.decimals)


@dataclass
class ChainVerification:
    """Outcome of ``ChainAdapter.verify``.

    *mismatches* holds only definitive contradictions (check name -> reason);
    *errors* holds every human-readable failure reason in check order.
    """

    checks: Dict[str, bool] = field(default_factory=empty_checks)
    raw_data: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)
    mismatches: Dict[str, str] = field(default_factory=dict)

    @property
    def all_passed(self) -> bool:
        return all(self.checks.get(name) for name in CHECK_NAMES)

    def fail(self, check: str, reason: str, definitive: bool = True) -> None:
        self.checks[check] = False
        self.errors.append(reason)
        if definitive:
            self.mismatches[check] = reason

    def raise_for_mismatch(self) -> None:
        """Raise the first definitive finding as DuplicateTransaction / ChainMismatch."""
        if not self.mismatches:
            return
        if "no_duplicates" in self.mismatches:
            owner = (self.raw_data or {}).get("claimed_by", "another payment")
            raise DuplicateTransaction((self.raw_data or {}).get("hash", ""), owner)
        check = next(name for name in CHECK_NAMES if name in self.mismatches)
        raise ChainMismatch(check, self.mismatches[check])


class ChainAdapter(ABC):
    """Base class for one blockchain. Subclasses implement ``fetch_transaction``."""

    chain: Chain

    def __init__(self, settings: Optional[AdapterSettings] = None, store=None,
                 price_service: Optional[PriceService] = None, concurrency: Optional[int] = None):
        self.settings = settings or AdapterSettings.from_config()
        self.store = store
        self.price_service = price_service or PriceService()
        limit = concurrency or config.CHAIN_CONCURRENCY.get(self.chain.value, 4)
        # Caps simultaneous explorer calls for this chain (third-party rate limits).
        self._semaphore = asyncio.Semaphore(limit)

    @abstractmethod
    async def fetch_transaction(self, tx_hash: str, recipient: str) -> ChainTransaction:
        """Resolve *tx_hash*. Transport problems raise one of ``TRANSIENT_ERRORS``."""

    async def _call(self, func, *args):
        async with self._semaphore:
            return await call_with_retry(
                func, *args,
                retries=self.settings.retries,
                delay=self.settings.backoff_seconds,
                timeout=self.settings.timeout_seconds,
            )

    async def verify(
        self,
        tx_hash: str,
        amount_usd: Decimal,
        sender: Optional[str],
        recipient: str,
        min_confirmations: int,
        payment_id: str,
        created_at: datetime,
    ) -> ChainVerification:
        """Cross-check a submitted payment against the chain.

        Raises ChainUnavailable when the explorer (or price feed) cannot be
        reached within the retry budget.
        """
        started = time.monotonic()
        outcome = ChainVerification()
        chain = self.chain.value

        if not tx_hash:
            raise ValidationError("Cannot verify a payment without a transaction hash")

        # Duplicates are judged against the store, not the chain.
        owner = self.store.exists_hash(chain, tx_hash) if self.store is not None else None
        if owner is not None and owner != payment_id:
            outcome.fail("no_duplicates", f"Transaction hash already used by payment {owner}")
        else:
            outcome.checks["no_duplicates"] = True

        try:
            tx = await self._call(self.fetch_transaction, tx_hash, recipient)
        except TRANSIENT_ERRORS as e:
            self._log_verification(tx_hash, "unavailable", amount_usd, started)
            raise ChainUnavailable(chain, f"explorer unreachable: {type(e).__name__}: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Unexpected {chain} explorer payload for {tx_hash}: {e}")
            self._log_verification(tx_hash, "malformed_response", amount_usd, started)
            raise ChainUnavailable(chain, f"unexpected explorer response: {e}") from e

        outcome.raw_data = self._raw_data(tx)
        if owner is not None and owner != payment_id:
            outcome.raw_data["claimed_by"] = owner

        if not tx.found:
            outcome.fail("transaction_exists", f"Transaction not found on {chain}")
            self._log_verification(tx_hash, "not_found", amount_usd, started)
            return outcome
        if not tx.succeeded:
            outcome.fail("transaction_exists", f"Transaction failed on-chain on {chain}")
            self._log_verification(tx_hash, "reverted", amount_usd, started)
            return outcome
        outcome.checks["transaction_exists"] = True

        self._check_sender(outcome, tx, sender)
        self._check_recipient(outcome, tx, recipient)
        await self._check_amount(outcome, tx, amount_usd)
        self._check_confirmations(outcome, tx, min_confirmations)
        self._check_time(outcome, tx, created_at)

        self._log_verification(tx_hash, "verified" if outcome.all_passed else "mismatch", amount_usd, started)
        return outcome

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def _check_sender(self, outcome: ChainVerification, tx: ChainTransaction, sender: Optional[str]):
        if not sender:
            outcome.fail("sender_verified", "No sender wallet address to compare", definitive=False)
            return
        actual = normalize_address(tx.sender, self.chain)
        claimed = normalize_address(sender, self.chain)
        if actual == claimed:
            outcome.checks["sender_verified"] = True
        else:
            outcome.fail("sender_verified", f"Sender wallet mismatch: actual {tx.sender}, claimed {sender}")

    def _check_recipient(self, outcome: ChainVerification, tx: ChainTransaction, recipient: str):
        actual = normalize_address(tx.recipient, self.chain)
        expected = normalize_address(recipient, self.chain)
        if expected and actual == expected:
            outcome.checks["recipient_verified"] = True
        else:
            outcome.fail("recipient_verified",
                         f"Recipient wallet mismatch: actual {tx.recipient}, expected {recipient}"
                         + ("" if tx.transfer_final else " (transfer not mined yet)"),
                         definitive=tx.transfer_final)

    async def _check_amount(self, outcome: ChainVerification, tx: ChainTransaction, amount_usd: Decimal):
        if tx.is_stablecoin:
            actual_usd = tx.token_amount
        else:
            try:
                price = await self._call(self.price_service.get_native_price_usd, self.chain.value)
            except (ValueError,) + TRANSIENT_ERRORS as e:
                raise ChainUnavailable(self.chain.value, f"price feed unavailable: {e}") from e
            actual_usd = (tx.token_amount * price).quantize(Decimal("0.01"))
        outcome.raw_data["amount_usd"] = str(actual_usd)

        claimed = Decimal(str(amount_usd))
        if amount_within_tolerance(actual_usd, claimed, self.settings.tolerance_percent,
                                   self.settings.tolerance_absolute_usd):
            outcome.checks["amount_verified"] = True
        else:
            outcome.fail("amount_verified",
                         f"Amount mismatch: actual ${actual_usd}, claimed ${claimed} "
                         f"(tolerance {self.settings.tolerance_percent}% / ${self.settings.tolerance_absolute_usd})"
                         + ("" if tx.transfer_final else " (transfer not mined yet)"),
                         definitive=tx.transfer_final)

    def _check_confirmations(self, outcome: ChainVerification, tx: ChainTransaction, min_confirmations: int):
        if tx.confirmations >= min_confirmations:
            outcome.checks["confirmed"] = True
        else:
            outcome.fail("confirmed",
                         f"Insufficient confirmations: {tx.confirmations} (need {min_confirmations})",
                         definitive=False)

    def _check_time(self, outcome: ChainVerification, tx: ChainTransaction, created_at: datetime):
        if tx.timestamp is None:
            outcome.fail("time_valid", "Transaction timestamp not available yet", definitive=False)
            return
        earliest = created_at - self.settings.tx_max_age
        latest = created_at + self.settings.clock_skew
        if earliest <= tx.timestamp <= latest:
            outcome.checks["time_valid"] = True
        elif tx.timestamp < earliest:
            outcome.fail("time_valid", f"Transaction is older than {self.settings.tx_max_age} before submission")
        else:
            outcome.fail("time_valid", "Transaction timestamp is after the payment was submitted")

    def _raw_data(self, tx: ChainTransaction) -> Dict[str, Any]:
        return {
            "chain": self.chain.value,
            "hash": tx.tx_hash,
            "found": tx.found,
            "status": "success" if tx.succeeded else ("failed" if tx.found else "not_found"),
            "from": tx.sender,
            "to": tx.recipient,
            "value": str(tx.raw_amount),
            "decimals": tx.decimals,
            "token_contract": tx.token_contract,
            "is_stablecoin": tx.is_stablecoin,
            "block_number": tx.block_number,
            "confirmations": tx.confirmations,
            "timestamp": tx.timestamp.isoformat() if tx.timestamp else None,
            "transfer_final": tx.transfer_final,
        }

    def _log_verification(self, tx_hash: str, status: str, amount_usd, started: float) -> None:
        log_entry = {
            "tx_hash": tx_hash,
            "chain": self.chain.value,
            "status": status,
            "claimed_amount_usd": str(amount_usd),
            "elapsed_ms": int((time.monotonic() - started) * 1000),
        }
        logger.info(f"Payment verification: {log_entry}")


def amount_within_tolerance(actual: Decimal, claimed: Decimal, tolerance_percent: Decimal,
                            tolerance_absolute: Decimal) -> bool:
    """True if |actual - claimed| <= max(absolute band, percent of claimed)."""
    band = max(Decimal(tolerance_absolute), claimed * Decimal(tolerance_percent) / Decimal(100))
    return abs(actual - claimed) <= band


class AdapterRegistry:
    """Capability table: one adapter per supported chain."""

    def __init__(self):
        self._adapters: Dict[Chain, ChainAdapter] = {}

    def register(self, adapter: ChainAdapter) -> None:
        self._adapters[adapter.chain] = adapter

    def get(self, chain: Chain) -> ChainAdapter:
        adapter = self._adapters.get(Chain.parse(chain))
        if adapter is None:
            raise ValidationError(f"No chain adapter registered for {chain}")
        return adapter

    def supports(self, chain: Chain) -> bool:
        return Chain.parse(chain) in self._adapters

    @property
    def chains(self):
        return tuple(self._adapters)


def build_default_registry(store=None, settings: Optional[AdapterSettings] = None,
                           price_service: Optional[PriceService] = None) -> AdapterRegistry:
    """Registry with the explorer-backed adapters for every supported chain."""
    from services.evm_scan_service import EvmScanAdapter
    from services.tronscan_service import TronScanAdapter

    settings = settings or AdapterSettings.from_config()
    price_service = price_service or PriceService()
    registry = AdapterRegistry()
    for chain in (Chain.ETHEREUM, Chain.BSC, Chain.POLYGON):
        registry.register(EvmScanAdapter(chain, settings=settings, store=store, price_service=price_service))
    registry.register(TronScanAdapter(settings=settings, store=store, price_service=price_service))
    return registry
