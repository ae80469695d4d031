"""Persistence boundary for manual payments and their verification results.

Every write to ``verification_results`` is a conditional update against the
status the writer last read, so a dashboard-triggered re-check can never
silently overwrite the background auto-check (or vice versa).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from database.models import Database
from services.errors import ConcurrentModification, PaymentNotFound, ValidationError
from services.payment_models import (
    ManualPayment,
    VerificationResult,
    VerificationStatus,
    to_db_time,
    utc_now,
)

logger = logging.getLogger(__name__)

_RESULT_COLUMNS = (
    "r.verification_status, r.blockchain_verified, r.verification_confidence, "
    "r.verification_checks, r.verification_errors, r.blockchain_data, r.score, r.updated_at"
)


class VerificationStore:
    """Single source of truth for payment records, results, hash claims and audit events."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or Database.get_instance()

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def create_payment(self, payment: ManualPayment, result: VerificationResult) -> None:
        """Insert a new payment together with its initial result and a submission audit event."""
        now = to_db_time(utc_now())
        try:
            with self.db.transaction():
                self.db.execute(
                    """
                    INSERT INTO manual_payments
                    (payment_id, user_id, amount_usd, chain, sender_name, sender_wallet_address,
                     transaction_hash, notes, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        payment.payment_id, payment.user_id, str(payment.amount_usd), payment.chain.value,
                        payment.sender_name, payment.sender_wallet_address, payment.transaction_hash,
                        payment.notes, to_db_time(payment.created_at), to_db_time(payment.expires_at),
                    ),
                )
                self.db.execute(
                    """
                    INSERT INTO verification_results
                    (payment_id, verification_status, blockchain_verified, verification_confidence,
                     verification_checks, verification_errors, blockchain_data, score, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (payment.payment_id,) + self._result_values(result, now),
                )
                self._insert_event(payment.payment_id, "payment_submitted", None,
                                   result.verification_status.value, str(payment.user_id),
                                   f"{payment.amount_usd} USD on {payment.chain.value}", now)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Payment {payment.payment_id} already exists") from e

    def get(self, payment_id: str) -> Tuple[ManualPayment, Optional[VerificationResult]]:
        self.db.execute(
            f"""
            SELECT p.*, {_RESULT_COLUMNS}
            FROM manual_payments p
            LEFT JOIN verification_results r ON r.payment_id = p.payment_id
            WHERE p.payment_id = ?
            """,
            (payment_id,),
        )
        row = self.db.fetchone()
        if not row:
            raise PaymentNotFound(payment_id)
        payment = ManualPayment.from_row(row)
        result = VerificationResult.from_row(row) if row["verification_status"] else None
        return payment, result

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def save(
        self,
        payment_id: str,
        result: VerificationResult,
        expected_prior_status: VerificationStatus,
        changed_by: str = "engine",
        event_type: str = "status_change",
        note: Optional[str] = None,
    ) -> VerificationResult:
        """Write *result* only if the stored status still equals *expected_prior_status*.

        A status change (or an explicit non-default *event_type*) is appended to
        the audit trail in the same transaction. Raises ConcurrentModification
        when the stored status moved on since the caller read it.
        """
        now = utc_now()
        with self.db.transaction():
            self.db.execute(
                """
                UPDATE verification_results
                SET verification_status = ?, blockchain_verified = ?, verification_confidence = ?,
                    verification_checks = ?, verification_errors = ?, blockchain_data = ?,
                    score = ?, updated_at = ?
                WHERE payment_id = ? AND verification_status = ?
                """,
                self._result_values(result, to_db_time(now)) + (payment_id, expected_prior_status.value),
            )
            if self.db.rowcount == 0:
                raise ConcurrentModification(payment_id, expected_prior_status.value)
            if result.verification_status is not expected_prior_status or event_type != "status_change":
                self._insert_event(payment_id, event_type, expected_prior_status.value,
                                   result.verification_status.value, changed_by, note, to_db_time(now))
        result.updated_at = now
        return result

    # ------------------------------------------------------------------
    # Duplicate detection
    # ------------------------------------------------------------------

    def exists_hash(self, chain: str, tx_hash: str) -> Optional[str]:
        """Return the payment_id a hash is attributed to on *chain*, if any."""
        self.db.execute(
            "SELECT payment_id FROM transaction_claims WHERE chain = ? AND transaction_hash = ?",
            (chain, tx_hash.lower()),
        )
        row = self.db.fetchone()
        return row["payment_id"] if row else None

    def claim_hash(self, chain: str, tx_hash: str, payment_id: str) -> str:
        """Atomically attribute *tx_hash* to *payment_id* unless already attributed.

        Returns the owning payment_id; equal to *payment_id* when the claim held.
        """
        with self.db.transaction():
            self.db.execute(
                """
                INSERT OR IGNORE INTO transaction_claims (chain, transaction_hash, payment_id, claimed_at)
                VALUES (?, ?, ?, ?)
                """,
                (chain, tx_hash.lower(), payment_id, to_db_time(utc_now())),
            )
            self.db.execute(
                "SELECT payment_id FROM transaction_claims WHERE chain = ? AND transaction_hash = ?",
                (chain, tx_hash.lower()),
            )
            owner = self.db.fetchone()["payment_id"]
        if owner != payment_id:
            logger.warning(f"Hash {tx_hash} on {chain} already claimed by {owner}; {payment_id} rejected as duplicate")
        return owner

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def record_event(self, payment_id: str, event_type: str, old_status: Optional[str] = None,
                     new_status: Optional[str] = None, changed_by: str = "engine",
                     note: Optional[str] = None) -> None:
        with self.db.transaction():
            self._insert_event(payment_id, event_type, old_status, new_status, changed_by, note,
                               to_db_time(utc_now()))

    def get_history(self, payment_id: str) -> List[Dict]:
        self.db.execute(
            "SELECT * FROM payment_status_history WHERE payment_id = ? ORDER BY id",
            (payment_id,),
        )
        return [dict(r) for r in self.db.fetchall()]

    def _insert_event(self, payment_id, event_type, old_status, new_status, changed_by, note, created_at):
        self.db.execute(
            """
            INSERT INTO payment_status_history
            (payment_id, event_type, old_status, new_status, changed_by, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (payment_id, event_type, old_status, new_status, changed_by, note, created_at),
        )

    # ------------------------------------------------------------------
    # Queries for the expiry sweep and the dashboards
    # ------------------------------------------------------------------

    def find_expirable(self, now: datetime, statuses: Iterable[VerificationStatus]) -> List[Tuple[str, VerificationStatus]]:
        statuses = [s.value for s in statuses]
        if not statuses:
            return []
        placeholders = ",".join("?" for _ in statuses)
        self.db.execute(
            f"""
            SELECT p.payment_id, r.verification_status
            FROM manual_payments p
            JOIN verification_results r ON r.payment_id = p.payment_id
            WHERE p.expires_at < ? AND r.verification_status IN ({placeholders})
            ORDER BY p.expires_at
            """,
            (to_db_time(now), *statuses),
        )
        return [(row["payment_id"], VerificationStatus(row["verification_status"])) for row in self.db.fetchall()]

    def list_results(self, status: Optional[VerificationStatus] = None, limit: int = 50,
                     offset: int = 0) -> List[Tuple[ManualPayment, VerificationResult]]:
        query = f"""
            SELECT p.*, {_RESULT_COLUMNS}
            FROM manual_payments p
            JOIN verification_results r ON r.payment_id = p.payment_id
        """
        params: list = []
        if status is not None:
            query += " WHERE r.verification_status = ?"
            params.append(status.value)
        query += " ORDER BY p.created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        self.db.execute(query, tuple(params))
        return [(ManualPayment.from_row(row), VerificationResult.from_row(row)) for row in self.db.fetchall()]

    def stats(self) -> Dict:
        self.db.execute(
            """
            SELECT
                COUNT(*) AS total_payments,
                SUM(CASE WHEN verification_status = 'auto_approved' THEN 1 ELSE 0 END) AS auto_approved,
                SUM(CASE WHEN verification_status = 'manual_review_required' THEN 1 ELSE 0 END) AS manual_review,
                SUM(CASE WHEN verification_status = 'blockchain_failed' THEN 1 ELSE 0 END) AS blockchain_failed,
                SUM(CASE WHEN verification_status = 'expired' THEN 1 ELSE 0 END) AS expired,
                SUM(CASE WHEN verification_status = 'approved' THEN 1 ELSE 0 END) AS approved,
                SUM(CASE WHEN verification_status = 'rejected' THEN 1 ELSE 0 END) AS rejected,
                SUM(CASE WHEN verification_status = 'pending' THEN 1 ELSE 0 END) AS pending,
                AVG(verification_confidence) AS avg_confidence
            FROM verification_results
            """
        )
        row = dict(self.db.fetchone())
        return {key: (value or 0) for key, value in row.items()}

    @staticmethod
    def _result_values(result: VerificationResult, updated_at: str) -> tuple:
        return (
            result.verification_status.value,
            1 if result.blockchain_verified else 0,
            int(result.verification_confidence),
            json.dumps(result.verification_checks, sort_keys=True),
            json.dumps(result.verification_errors),
            json.dumps(result.blockchain_data, default=str) if result.blockchain_data is not None else None,
            int(result.score),
            updated_at,
        )
