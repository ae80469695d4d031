from datetime import timedelta
from decimal import Decimal

import pytest

from services.payment_models import Chain, ManualPayment, utc_now
from services.scoring import meets_threshold, score_payment

EVM_HASH = "0x" + "ab" * 32
EVM_SENDER = "0x" + "12" * 20
TRON_HASH = "cd" * 32
TRON_SENDER = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"


def _payment(amount="1000", chain=Chain.BSC, tx_hash=EVM_HASH, sender=EVM_SENDER):
    now = utc_now()
    return ManualPayment(
        payment_id="MP_TEST",
        user_id=1,
        amount_usd=Decimal(amount),
        chain=chain,
        sender_name="Alice",
        created_at=now,
        expires_at=now + timedelta(hours=72),
        sender_wallet_address=sender,
        transaction_hash=tx_hash,
    )


def test_complete_payment_scores_100():
    score, reasons = score_payment(_payment())
    assert score == 100
    assert reasons == []


def test_tron_payment_scores_100():
    score, _ = score_payment(_payment(chain=Chain.TRON, tx_hash=TRON_HASH, sender=TRON_SENDER))
    assert score == 100


@pytest.mark.parametrize("amount, expected", [("1000", 25), ("75000", 0)])
def test_missing_hash_and_sender(amount, expected):
    score, reasons = score_payment(_payment(amount=amount, tx_hash=None, sender=None))
    assert score == expected
    assert "No transaction hash provided" in reasons
    assert "No sender wallet address provided" in reasons


def test_malformed_sender_keeps_presence_points():
    score, reasons = score_payment(_payment(sender="not-an-address"))
    assert score == 30 + 20 + 25
    assert reasons == ["Sender wallet address format is invalid for bsc"]


def test_hash_format_is_chain_specific():
    # A bare 64-hex Tron hash is not a valid EVM hash
    score, reasons = score_payment(_payment(tx_hash=TRON_HASH))
    assert score == 70
    assert reasons == ["Transaction hash format is invalid for bsc"]


def test_amount_ceiling_is_inclusive():
    score, _ = score_payment(_payment(amount="50000"))
    assert score == 100
    score, reasons = score_payment(_payment(amount="50000.01"))
    assert score == 75
    assert "exceeds auto-approval limit" in reasons[0]


def test_threshold_is_inclusive():
    assert meets_threshold(80, 80)
    assert not meets_threshold(79, 80)
