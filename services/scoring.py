# services/scoring.py

"""Confidence scoring for submitted manual payments.

Points are awarded independently:

    transaction hash present and well formed for the chain   30
    sender wallet address present                            20
    sender wallet address well formed for the chain          25
    amount at or below the scoring ceiling                   25

The function is pure: no I/O, no clock, no database.
"""

from decimal import Decimal
from typing import List, Tuple

from services.payment_models import ManualPayment
from utils.validators import is_valid_tx_hash, is_valid_wallet_address

HASH_POINTS = 30
SENDER_PRESENT_POINTS = 20
SENDER_FORMAT_POINTS = 25
AMOUNT_POINTS = 25

DEFAULT_MAX_AMOUNT_USD = Decimal("50000")


def score_payment(payment: ManualPayment, max_amount_usd=DEFAULT_MAX_AMOUNT_USD) -> Tuple[int, List[str]]:
    """Return ``(score, reasons)`` where *reasons* lists every condition that failed."""
    score = 0
    reasons: List[str] = []
    chain = payment.chain.value

    if not payment.transaction_hash:
        reasons.append("No transaction hash provided")
    elif not is_valid_tx_hash(payment.transaction_hash, chain):
        reasons.append(f"Transaction hash format is invalid for {chain}")
    else:
        score += HASH_POINTS

    if not payment.sender_wallet_address:
        reasons.append("No sender wallet address provided")
    else:
        score += SENDER_PRESENT_POINTS
        if is_valid_wallet_address(payment.sender_wallet_address, chain):
            score += SENDER_FORMAT_POINTS
        else:
            reasons.append(f"Sender wallet address format is invalid for {chain}")

    max_amount = Decimal(str(max_amount_usd))
    if payment.amount_usd <= max_amount:
        score += AMOUNT_POINTS
    else:
        reasons.append(f"Amount ${payment.amount_usd:,.2f} exceeds auto-approval limit of ${max_amount:,.2f}")

    return score, reasons


def meets_threshold(score: int, threshold: int) -> bool:
    """Inclusive: a score equal to the threshold qualifies."""
    return score >= threshold
