"""Domain types shared by the scoring rules, chain adapters and the orchestrator."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from services.errors import ValidationError

CHECK_NAMES = (
    "no_duplicates",
    "transaction_exists",
    "sender_verified",
    "recipient_verified",
    "amount_verified",
    "confirmed",
    "time_valid",
)

# A failure of any of these is a terminal negative finding. "confirmed" is not
# listed: too few confirmations only means the transfer is not final yet.
DEFINITIVE_CHECKS = frozenset(CHECK_NAMES) - {"confirmed"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Serialize a datetime so that string order equals time order in SQLite."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Chain(str, Enum):
    ETHEREUM = "ethereum"
    BSC = "bsc"
    POLYGON = "polygon"
    TRON = "tron"

    @property
    def is_evm(self) -> bool:
        return self is not Chain.TRON

    @classmethod
    def parse(cls, value) -> "Chain":
        if isinstance(value, Chain):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unsupported blockchain network: {value!r}") from None


class VerificationStatus(str, Enum):
    PENDING = "pending"
    AUTO_APPROVED = "auto_approved"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"
    BLOCKCHAIN_FAILED = "blockchain_failed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (VerificationStatus.APPROVED, VerificationStatus.REJECTED, VerificationStatus.EXPIRED)

    @property
    def awaits_admin(self) -> bool:
        return self in (VerificationStatus.MANUAL_REVIEW_REQUIRED, VerificationStatus.BLOCKCHAIN_FAILED)


class AdminDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def target_status(self) -> VerificationStatus:
        if self is AdminDecision.APPROVE:
            return VerificationStatus.APPROVED
        return VerificationStatus.REJECTED


def parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid payment amount: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Payment amount must be positive, got {value!r}")
    return amount


@dataclass(frozen=True)
class ManualPayment:
    """A user-submitted crypto payment. Never mutated by the engine."""

    payment_id: str
    user_id: int
    amount_usd: Decimal
    chain: Chain
    sender_name: str
    created_at: datetime
    expires_at: datetime
    sender_wallet_address: Optional[str] = None
    transaction_hash: Optional[str] = None
    notes: str = ""

    def __post_init__(self):
        if self.amount_usd <= 0:
            raise ValidationError(f"Payment {self.payment_id}: amount_usd must be positive")
        if self.expires_at <= self.created_at:
            raise ValidationError(f"Payment {self.payment_id}: expires_at must be after created_at")

    def is_past_window(self, now: datetime) -> bool:
        return now > self.expires_at

    @classmethod
    def from_row(cls, row) -> "ManualPayment":
        return cls(
            payment_id=row["payment_id"],
            user_id=row["user_id"],
            amount_usd=Decimal(str(row["amount_usd"])),
            chain=Chain.parse(row["chain"]),
            sender_name=row["sender_name"] or "",
            created_at=from_db_time(row["created_at"]),
            expires_at=from_db_time(row["expires_at"]),
            sender_wallet_address=row["sender_wallet_address"] or None,
            transaction_hash=row["transaction_hash"] or None,
            notes=row["notes"] or "",
        )


def empty_checks() -> Dict[str, bool]:
    return {name: False for name in CHECK_NAMES}


@dataclass
class VerificationResult:
    """Latest verification outcome for one payment. Only the engine writes it."""

    verification_status: VerificationStatus = VerificationStatus.PENDING
    blockchain_verified: bool = False
    verification_confidence: int = 0
    verification_checks: Dict[str, bool] = field(default_factory=empty_checks)
    verification_errors: List[str] = field(default_factory=list)
    blockchain_data: Optional[Dict[str, Any]] = None
    score: int = 0
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.blockchain_verified and not all(self.verification_checks.get(name) for name in CHECK_NAMES):
            raise ValueError("blockchain_verified requires every verification check to pass")
        if not 0 <= self.verification_confidence <= 100:
            raise ValueError(f"verification_confidence out of range: {self.verification_confidence}")

    @property
    def auto_approved(self) -> bool:
        return self.verification_status is VerificationStatus.AUTO_APPROVED

    @property
    def reason(self) -> str:
        if self.verification_status is VerificationStatus.AUTO_APPROVED:
            return "Automatic verification successful"
        if self.verification_errors:
            return self.verification_errors[0]
        return self.verification_status.value.replace("_", " ").capitalize()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verification_status": self.verification_status.value,
            "blockchain_verified": self.blockchain_verified,
            "verification_confidence": self.verification_confidence,
            "verification_checks": dict(self.verification_checks),
            "verification_errors": list(self.verification_errors),
            "blockchain_data": self.blockchain_data,
            "score": self.score,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_row(cls, row) -> "VerificationResult":
        checks = empty_checks()
        checks.update(json.loads(row["verification_checks"] or "{}"))
        raw = row["blockchain_data"]
        return cls(
            verification_status=VerificationStatus(row["verification_status"]),
            blockchain_verified=bool(row["blockchain_verified"]),
            verification_confidence=int(row["verification_confidence"]),
            verification_checks=checks,
            verification_errors=json.loads(row["verification_errors"] or "[]"),
            blockchain_data=json.loads(raw) if raw else None,
            score=int(row["score"] or 0),
            updated_at=from_db_time(row["updated_at"]),
        )
