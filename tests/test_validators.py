import pytest

from services.payment_models import Chain
from utils.validators import (
    is_valid_tx_hash,
    is_valid_wallet_address,
    mask_wallet_address,
    normalize_address,
    normalize_tx_hash,
)

USDT_TRC20 = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"


@pytest.mark.parametrize("tx_hash, chain, expected", [
    ("0x" + "a" * 64, "ethereum", True),
    ("0x" + "A" * 64, Chain.POLYGON, True),
    ("0x" + "a" * 63, "bsc", False),
    ("a" * 64, "bsc", False),
    ("a" * 64, "tron", True),
    ("0x" + "a" * 64, "tron", False),
    ("", "tron", False),
    (None, "ethereum", False),
])
def test_tx_hash_format(tx_hash, chain, expected):
    assert is_valid_tx_hash(tx_hash, chain) is expected


def test_evm_address_format():
    assert is_valid_wallet_address("0x" + "1f" * 20, "bsc")
    assert not is_valid_wallet_address("0x" + "1f" * 19, "bsc")
    assert not is_valid_wallet_address(USDT_TRC20, "ethereum")


def test_tron_address_checks_checksum():
    assert is_valid_wallet_address(USDT_TRC20, Chain.TRON)
    # Same shape, last character changed: checksum no longer matches
    assert not is_valid_wallet_address(USDT_TRC20[:-1] + "u", Chain.TRON)
    assert not is_valid_wallet_address("0x" + "1f" * 20, Chain.TRON)


def test_normalization():
    assert normalize_address(" 0xABcd ", "ethereum") == "0xabcd"
    assert normalize_address(USDT_TRC20, "tron") == USDT_TRC20
    assert normalize_tx_hash("  0xABC ") == "0xabc"
    assert normalize_tx_hash("   ") is None
    assert mask_wallet_address("0x1234567890abcdef") == "0x1234…cdef"
