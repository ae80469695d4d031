# services/verification_dashboard.py

"""Read-only views consumed by the admin dashboards and the review bot."""

from typing import Any, Dict, List, Optional

from database.verification_store import VerificationStore
from services.payment_models import ManualPayment, VerificationResult, VerificationStatus

RECENT_PAYMENTS_LIMIT = 10


def listing_row(payment: ManualPayment, result: VerificationResult) -> Dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "amount_usd": float(payment.amount_usd),
        "chain": payment.chain.value,
        "status": result.verification_status.value,
        "auto_approved": result.auto_approved,
        "confidence": result.verification_confidence,
        "created_at": payment.created_at.isoformat(),
        "reason": result.reason,
    }


def payment_detail(payment: ManualPayment, result: VerificationResult,
                   history: Optional[List[Dict]] = None) -> Dict[str, Any]:
    detail = {
        "payment_id": payment.payment_id,
        "user_id": payment.user_id,
        "amount_usd": float(payment.amount_usd),
        "chain": payment.chain.value,
        "sender_name": payment.sender_name,
        "sender_wallet_address": payment.sender_wallet_address,
        "transaction_hash": payment.transaction_hash,
        "notes": payment.notes,
        "created_at": payment.created_at.isoformat(),
        "expires_at": payment.expires_at.isoformat(),
        "verification": result.to_dict(),
        "reason": result.reason,
    }
    if history is not None:
        detail["history"] = history
    return detail


class VerificationDashboard:
    def __init__(self, store: VerificationStore):
        self.store = store

    def list_payments(self, status: Optional[VerificationStatus] = None, limit: int = 50,
                      offset: int = 0) -> List[Dict[str, Any]]:
        return [listing_row(p, r) for p, r in self.store.list_results(status=status, limit=limit, offset=offset)]

    def get_payment(self, payment_id: str, include_history: bool = True) -> Dict[str, Any]:
        payment, result = self.store.get(payment_id)
        history = self.store.get_history(payment_id) if include_history else None
        return payment_detail(payment, result or VerificationResult(), history)

    def stats(self) -> Dict[str, Any]:
        counts = self.store.stats()
        total = int(counts["total_payments"])
        auto_approved = int(counts["auto_approved"])
        return {
            "total_payments": total,
            "auto_approved": auto_approved,
            "manual_review": int(counts["manual_review"]),
            "blockchain_failed": int(counts["blockchain_failed"]),
            "expired": int(counts["expired"]),
            "approved": int(counts["approved"]),
            "rejected": int(counts["rejected"]),
            "pending": int(counts["pending"]),
            "auto_approval_rate": round(auto_approved / total * 100, 1) if total else 0.0,
            "avg_confidence": round(float(counts["avg_confidence"]), 1),
            "recent_payments": self.list_payments(limit=RECENT_PAYMENTS_LIMIT),
        }
