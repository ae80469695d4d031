# services/verification_orchestrator.py

"""State machine driving a manual payment from submission to a decision.

    pending -> auto_approved | manual_review_required | blockchain_failed
            -> approved | rejected          (admin action)
    pending | manual_review_required [| blockchain_failed] -> expired

Every write goes through ``VerificationStore.save`` as a conditional update on
the status read just before; a lost race is retried with a fresh read. Within
one process, work on a single payment_id is additionally serialized by a
keyed lock so two adapter calls never race to write contradictory checks.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Dict, FrozenSet, Optional, Tuple

import config
from database.verification_store import VerificationStore
from services.chain_adapter import AdapterRegistry, ChainVerification
from services.errors import (
    ChainMismatch,
    ChainUnavailable,
    ConcurrentModification,
    DuplicateTransaction,
    ExpiredPayment,
    InvalidTransition,
    ValidationError,
)
from services.payment_models import (
    CHECK_NAMES,
    AdminDecision,
    Chain,
    ManualPayment,
    VerificationResult,
    VerificationStatus,
    empty_checks,
    parse_amount,
    utc_now,
)
from services.scoring import meets_threshold, score_payment
from utils.locks import KeyedLock
from utils.validators import normalize_tx_hash

logger = logging.getLogger(__name__)

Notifier = Callable[[ManualPayment, VerificationResult], Awaitable[None]]


@dataclass
class EngineSettings:
    auto_approval_threshold: int = 80
    scoring_max_amount_usd: Decimal = Decimal("50000")
    max_payment_amount_usd: Decimal = Decimal("1000000")
    review_window: timedelta = timedelta(hours=72)
    min_confirmations: Dict[str, int] = field(default_factory=dict)
    receiving_wallets: Dict[str, str] = field(default_factory=dict)
    store_write_retries: int = 3
    expire_blockchain_failed: bool = False

    @classmethod
    def from_config(cls) -> "EngineSettings":
        return cls(
            auto_approval_threshold=config.AUTO_APPROVAL_THRESHOLD,
            scoring_max_amount_usd=Decimal(str(config.SCORING_MAX_AMOUNT_USD)),
            max_payment_amount_usd=Decimal(str(config.MAX_PAYMENT_AMOUNT_USD)),
            review_window=timedelta(hours=config.REVIEW_WINDOW_HOURS),
            min_confirmations=dict(config.MIN_CONFIRMATIONS),
            receiving_wallets=dict(config.RECEIVING_WALLETS),
            store_write_retries=config.STORE_WRITE_RETRIES,
            expire_blockchain_failed=config.EXPIRE_BLOCKCHAIN_FAILED,
        )

    @property
    def expirable_statuses(self) -> FrozenSet[VerificationStatus]:
        statuses = {VerificationStatus.PENDING, VerificationStatus.MANUAL_REVIEW_REQUIRED}
        if self.expire_blockchain_failed:
            statuses.add(VerificationStatus.BLOCKCHAIN_FAILED)
        return frozenset(statuses)


def new_payment_id() -> str:
    return "MP_" + uuid.uuid4().hex[:13].upper()


def derive_confidence(score: int, outcome: Optional[ChainVerification]) -> int:
    """Scoring confidence, capped by the share of on-chain checks that passed.

    A fully verified transaction is 100; with no chain data the score stands.
    """
    if outcome is None:
        return score
    if outcome.all_passed:
        return 100
    passed = sum(1 for name in CHECK_NAMES if outcome.checks.get(name))
    return min(score, int(100 * passed / len(CHECK_NAMES)))


class VerificationOrchestrator:
    def __init__(self, store: VerificationStore, adapters: AdapterRegistry,
                 settings: Optional[EngineSettings] = None, notifier: Optional[Notifier] = None):
        self.store = store
        self.adapters = adapters
        self.settings = settings or EngineSettings.from_config()
        self.notifier = notifier
        # Set by VerificationQueue so low-score cross-checks run off the submit path.
        self.background_submit: Optional[Callable[[str], object]] = None
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_payment(
        self,
        user_id: int,
        amount_usd,
        chain,
        sender_name: str,
        sender_wallet_address: Optional[str] = None,
        transaction_hash: Optional[str] = None,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Tuple[ManualPayment, VerificationResult]:
        """Record a new payment, score it and run (or schedule) the chain cross-check."""
        amount = parse_amount(amount_usd)
        if amount > self.settings.max_payment_amount_usd:
            raise ValidationError(f"Payment amount exceeds maximum of ${self.settings.max_payment_amount_usd:,.2f}")
        if not sender_name or not str(sender_name).strip():
            raise ValidationError("sender_name is required")

        created_at = now or utc_now()
        payment = ManualPayment(
            payment_id=new_payment_id(),
            user_id=int(user_id),
            amount_usd=amount,
            chain=Chain.parse(chain),
            sender_name=str(sender_name).strip(),
            created_at=created_at,
            expires_at=created_at + self.settings.review_window,
            sender_wallet_address=(sender_wallet_address or "").strip() or None,
            transaction_hash=normalize_tx_hash(transaction_hash),
            notes=notes or "",
        )

        score, reasons = score_payment(payment, self.settings.scoring_max_amount_usd)
        initial = VerificationResult(score=score, verification_confidence=score, verification_errors=list(reasons))
        self.store.create_payment(payment, initial)
        logger.info(f"Payment {payment.payment_id} submitted by user {payment.user_id}: "
                    f"{payment.amount_usd} USD on {payment.chain.value}, score {score}")

        if not meets_threshold(score, self.settings.auto_approval_threshold):
            result = replace(initial, verification_status=VerificationStatus.MANUAL_REVIEW_REQUIRED)
            self.store.save(payment.payment_id, result, VerificationStatus.PENDING)
            logger.info(f"Payment {payment.payment_id} routed to manual review (score {score} "
                        f"< {self.settings.auto_approval_threshold})")
            await self._notify(payment, result, VerificationStatus.PENDING)
            if payment.transaction_hash:
                if self.background_submit is not None:
                    self.background_submit(payment.payment_id)
                else:
                    result = await self.verify_payment(payment.payment_id, now=now)
            return payment, result

        result = await self.verify_payment(payment.payment_id, now=now)
        return payment, result

    # ------------------------------------------------------------------
    # Verification / re-verification
    # ------------------------------------------------------------------

    async def verify_payment(self, payment_id: str, now: Optional[datetime] = None) -> VerificationResult:
        """Run scoring and the chain cross-check, then persist the resulting status.

        Safe to call repeatedly: approved/rejected records are returned as-is,
        expired records raise ExpiredPayment.
        """
        async with self._locks.hold(payment_id):
            payment, current = self._load_actionable(payment_id, now or utc_now())
            if current.verification_status in (VerificationStatus.APPROVED, VerificationStatus.REJECTED):
                logger.info(f"Payment {payment_id} already {current.verification_status.value}; verification skipped")
                return current

            score, reasons = score_payment(payment, self.settings.scoring_max_amount_usd)
            outcome, unavailable = await self._cross_check(payment)

            for attempt in range(self.settings.store_write_retries + 1):
                # Only a transfer that otherwise checks out may take ownership of its hash.
                if outcome is not None and not outcome.mismatches:
                    self._claim_hash(payment, outcome)
                result = self._evaluate(payment, current, score, reasons, outcome, unavailable)
                try:
                    saved = self.store.save(payment_id, result, current.verification_status, note=result.reason)
                except ConcurrentModification:
                    if attempt >= self.settings.store_write_retries:
                        raise
                    logger.warning(f"Concurrent update on payment {payment_id}, retrying with fresh read "
                                   f"({attempt + 1}/{self.settings.store_write_retries})")
                    payment, current = self._load_actionable(payment_id, now or utc_now())
                    if current.verification_status in (VerificationStatus.APPROVED, VerificationStatus.REJECTED):
                        return current
                    continue
                self._log_transition(payment_id, current.verification_status, saved)
                await self._notify(payment, saved, current.verification_status)
                return saved

    async def _cross_check(self, payment: ManualPayment) -> Tuple[Optional[ChainVerification], Optional[str]]:
        """Return ``(outcome, unavailable_reason)``; exactly one may be set, or neither without a hash."""
        if not payment.transaction_hash:
            return None, None
        chain = payment.chain.value
        try:
            adapter = self.adapters.get(payment.chain)
            outcome = await adapter.verify(
                payment.transaction_hash,
                payment.amount_usd,
                payment.sender_wallet_address,
                self.settings.receiving_wallets.get(chain, ""),
                self.settings.min_confirmations.get(chain, 1),
                payment_id=payment.payment_id,
                created_at=payment.created_at,
            )
        except ChainUnavailable as e:
            logger.warning(f"Chain check for payment {payment.payment_id} could not complete: {e}")
            return None, f"Blockchain verification unavailable ({e}); manual review required"
        except ValidationError as e:
            logger.error(f"Chain check for payment {payment.payment_id} not possible: {e}")
            return None, str(e)
        return outcome, None

    def _claim_hash(self, payment: ManualPayment, outcome: ChainVerification) -> None:
        """Attribute the hash to this payment; a losing claim turns no_duplicates false."""
        owner = self.store.claim_hash(payment.chain.value, payment.transaction_hash, payment.payment_id)
        if owner != payment.payment_id:
            outcome.fail("no_duplicates", str(DuplicateTransaction(payment.transaction_hash, owner)))
            if outcome.raw_data is not None:
                outcome.raw_data["claimed_by"] = owner

    def _evaluate(self, payment: ManualPayment, current: VerificationResult, score: int, reasons,
                  outcome: Optional[ChainVerification], unavailable: Optional[str]) -> VerificationResult:
        errors = list(reasons)
        if unavailable:
            errors.append(unavailable)

        if outcome is None:
            status = current.verification_status
            if status in (VerificationStatus.AUTO_APPROVED, VerificationStatus.BLOCKCHAIN_FAILED):
                # Unverifiable is not new evidence; keep the status and record why, once.
                notes = [e for e in errors if e not in current.verification_errors]
                return replace(current, verification_errors=list(current.verification_errors) + notes)
            return VerificationResult(
                verification_status=VerificationStatus.MANUAL_REVIEW_REQUIRED,
                verification_confidence=score,
                verification_checks=empty_checks(),
                verification_errors=errors,
                score=score,
            )

        errors.extend(outcome.errors)
        verified = outcome.all_passed
        status = self._classify(payment, current, score, outcome)
        return VerificationResult(
            verification_status=status,
            blockchain_verified=verified,
            verification_confidence=derive_confidence(score, outcome),
            verification_checks=dict(outcome.checks),
            verification_errors=errors,
            blockchain_data=outcome.raw_data,
            score=score,
        )

    def _classify(self, payment: ManualPayment, current: VerificationResult, score: int,
                  outcome: ChainVerification) -> VerificationStatus:
        try:
            outcome.raise_for_mismatch()
        except ChainMismatch as e:
            logger.warning(f"Payment {payment.payment_id} failed definitive check {e.check}: {e}")
            return VerificationStatus.BLOCKCHAIN_FAILED
        if current.verification_status is VerificationStatus.BLOCKCHAIN_FAILED:
            return VerificationStatus.BLOCKCHAIN_FAILED
        if outcome.all_passed and meets_threshold(score, self.settings.auto_approval_threshold):
            return VerificationStatus.AUTO_APPROVED
        return VerificationStatus.MANUAL_REVIEW_REQUIRED

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    async def approve(self, payment_id: str, admin_id, notes: str = "") -> VerificationResult:
        return await self.decide(payment_id, AdminDecision.APPROVE, admin_id, notes)

    async def reject(self, payment_id: str, admin_id, notes: str = "") -> VerificationResult:
        return await self.decide(payment_id, AdminDecision.REJECT, admin_id, notes)

    async def decide(self, payment_id: str, decision: AdminDecision, admin_id, notes: str = "",
                     now: Optional[datetime] = None) -> VerificationResult:
        """Apply an admin decision. Re-issuing the same decision is a no-op."""
        target = decision.target_status
        async with self._locks.hold(payment_id):
            for attempt in range(self.settings.store_write_retries + 1):
                _, current = self._load_actionable(payment_id, now or utc_now(), target=target)
                status = current.verification_status
                if status is target:
                    logger.info(f"Payment {payment_id} already {status.value}; {decision.value} by {admin_id} ignored")
                    return current
                if not status.awaits_admin:
                    raise InvalidTransition(payment_id, status, target)

                result = replace(current, verification_status=target)
                try:
                    saved = self.store.save(payment_id, result, status, changed_by=str(admin_id),
                                            event_type=f"admin_{decision.value}", note=notes or None)
                except ConcurrentModification:
                    if attempt >= self.settings.store_write_retries:
                        raise
                    continue
                logger.info(f"Payment {payment_id} {target.value} by admin {admin_id} (was {status.value})")
                return saved

    async def override_confidence(self, payment_id: str, confidence: int, admin_id, note: str = "") -> VerificationResult:
        """Admin override of verification_confidence, recorded as its own audit event."""
        if not isinstance(confidence, int) or not 0 <= confidence <= 100:
            raise ValidationError(f"Confidence must be an integer between 0 and 100, got {confidence!r}")
        async with self._locks.hold(payment_id):
            for attempt in range(self.settings.store_write_retries + 1):
                _, current = self.store.get(payment_id)
                if current.verification_status is VerificationStatus.EXPIRED:
                    raise ExpiredPayment(payment_id)
                old = current.verification_confidence
                result = replace(current, verification_confidence=confidence)
                audit_note = f"confidence {old} -> {confidence}" + (f": {note}" if note else "")
                try:
                    saved = self.store.save(payment_id, result, current.verification_status,
                                            changed_by=str(admin_id), event_type="confidence_override",
                                            note=audit_note)
                except ConcurrentModification:
                    if attempt >= self.settings.store_write_retries:
                        raise
                    continue
                logger.info(f"Payment {payment_id} confidence overridden by admin {admin_id}: {audit_note}")
                return saved

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def expire_due(self, now: Optional[datetime] = None) -> int:
        """Move every expirable record past its window to ``expired``; return how many moved."""
        now = now or utc_now()
        count = 0
        for payment_id, status in self.store.find_expirable(now, self.settings.expirable_statuses):
            try:
                if self._expire(payment_id, status):
                    count += 1
            except ConcurrentModification:
                logger.info(f"Payment {payment_id} changed during expiry sweep; left for the next run")
        return count

    def _expire(self, payment_id: str, expected_status: VerificationStatus) -> bool:
        _, current = self.store.get(payment_id)
        if current.verification_status is not expected_status:
            return False
        result = replace(
            current,
            verification_status=VerificationStatus.EXPIRED,
            verification_errors=list(current.verification_errors) + ["Review window elapsed before a decision"],
        )
        self.store.save(payment_id, result, expected_status, changed_by="expiry_monitor", event_type="expired")
        logger.info(f"Payment {payment_id} expired (was {expected_status.value})")
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def get(self, payment_id: str) -> Tuple[ManualPayment, VerificationResult]:
        payment, result = self.store.get(payment_id)
        return payment, result or VerificationResult()

    def _load_actionable(self, payment_id: str, now: datetime,
                         target: Optional[VerificationStatus] = None) -> Tuple[ManualPayment, VerificationResult]:
        """Read the record, expiring it first if its window has passed.

        Raises ExpiredPayment for expired records. A terminal record whose status
        equals *target* is returned untouched so callers can treat it as a no-op.
        """
        payment, current = self.get(payment_id)
        status = current.verification_status
        if status is VerificationStatus.EXPIRED:
            raise ExpiredPayment(payment_id)
        if status.is_terminal:
            if target is not None and status is not target:
                raise InvalidTransition(payment_id, status, target)
            return payment, current
        if payment.is_past_window(now) and status in self.settings.expirable_statuses:
            try:
                self._expire(payment_id, status)
            except ConcurrentModification:
                return self._load_actionable(payment_id, now, target)
            raise ExpiredPayment(payment_id)
        return payment, current

    def _log_transition(self, payment_id: str, old: VerificationStatus, result: VerificationResult) -> None:
        if old is result.verification_status:
            logger.info(f"Payment {payment_id} re-verified, status unchanged ({old.value}, "
                        f"confidence {result.verification_confidence})")
        else:
            logger.info(f"Payment {payment_id}: {old.value} -> {result.verification_status.value} "
                        f"(confidence {result.verification_confidence}, verified {result.blockchain_verified})")

    async def _notify(self, payment: ManualPayment, result: VerificationResult, old: VerificationStatus) -> None:
        if self.notifier is None or not result.verification_status.awaits_admin:
            return
        if old is result.verification_status:
            return
        try:
            await self.notifier(payment, result)
        except Exception as e:
            logger.error(f"Failed to notify reviewers about payment {payment.payment_id}: {e}", exc_info=True)
