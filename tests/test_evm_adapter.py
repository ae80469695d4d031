import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

import config
from services.chain_adapter import AdapterSettings, AdapterRegistry
from services.errors import ChainUnavailable, ValidationError
from services.evm_scan_service import TRANSFER_TOPIC, EvmScanAdapter
from services.payment_models import CHECK_NAMES, Chain, utc_now

SENDER = "0x" + "ab" * 20
RECIPIENT = "0x" + "cd" * 20
TX_HASH = "0x" + "12" * 32
USDT_BSC = config.STABLECOIN_CONTRACTS["bsc"][0]
FAST = AdapterSettings(retries=0, backoff_seconds=0, timeout_seconds=5)


def _topic(address):
    return "0x" + "0" * 24 + address[2:]


def _explorer(created_at, tx=None, receipt=None, latest=120):
    """Fake Etherscan proxy keyed by action."""
    tx = tx if tx is not None else {
        "from": SENDER, "to": USDT_BSC.lower(), "value": "0x0", "blockNumber": hex(100),
    }
    receipt = receipt if receipt is not None else {
        "status": "0x1",
        "logs": [{
            "address": USDT_BSC,
            "topics": [TRANSFER_TOPIC, _topic(SENDER), _topic(RECIPIENT)],
            "data": hex(1000 * 10 ** 18),
        }],
    }
    block_ts = int((created_at - timedelta(minutes=3)).timestamp())
    results = {
        "eth_getTransactionByHash": tx,
        "eth_getTransactionReceipt": receipt,
        "eth_blockNumber": hex(latest),
        "eth_getBlockByNumber": {"timestamp": hex(block_ts)},
    }

    async def fake_fetch(params):
        assert params["module"] == "proxy"
        return {"jsonrpc": "2.0", "id": 1, "result": results[params["action"]]}

    return fake_fetch


def _adapter(fetch, price=Decimal("500")):
    price_service = MagicMock()
    price_service.get_native_price_usd = AsyncMock(return_value=price)
    adapter = EvmScanAdapter(Chain.BSC, settings=FAST, price_service=price_service,
                             api_url="https://bscscan.test/api", api_key="test")
    adapter._fetch_json = AsyncMock(side_effect=fetch)
    return adapter


def _verify(adapter, created_at, amount="1000"):
    return asyncio.run(adapter.verify(TX_HASH, Decimal(amount), SENDER.upper().replace("0X", "0x"), RECIPIENT, 15,
                                      payment_id="MP_1", created_at=created_at))


def test_usdt_transfer_log_verifies():
    created_at = utc_now()
    adapter = _adapter(_explorer(created_at))

    outcome = _verify(adapter, created_at)

    assert outcome.checks == {name: True for name in CHECK_NAMES}
    assert outcome.raw_data["confirmations"] == 21
    assert outcome.raw_data["to"] == RECIPIENT
    assert outcome.raw_data["token_contract"] == USDT_BSC.lower()
    adapter.price_service.get_native_price_usd.assert_not_awaited()


def test_native_transfer_uses_price_feed():
    created_at = utc_now()
    tx = {"from": SENDER, "to": RECIPIENT, "value": hex(2 * 10 ** 18), "blockNumber": hex(100)}
    adapter = _adapter(_explorer(created_at, tx=tx, receipt={"status": "0x1", "logs": []}))

    outcome = _verify(adapter, created_at, amount="1000")

    assert outcome.all_passed
    assert outcome.raw_data["amount_usd"] == "1000.00"


def test_transfer_to_another_wallet_fails_recipient():
    created_at = utc_now()
    tx = {"from": SENDER, "to": "0x" + "ee" * 20, "value": hex(2 * 10 ** 18), "blockNumber": hex(100)}
    adapter = _adapter(_explorer(created_at, tx=tx, receipt={"status": "0x1", "logs": []}))

    outcome = _verify(adapter, created_at)

    assert outcome.checks["recipient_verified"] is False
    assert "recipient_verified" in outcome.mismatches


def test_reverted_receipt():
    created_at = utc_now()
    adapter = _adapter(_explorer(created_at, receipt={"status": "0x0", "logs": []}))
    outcome = _verify(adapter, created_at)
    assert outcome.checks["transaction_exists"] is False
    assert outcome.errors == ["Transaction failed on-chain on bsc"]


def test_pending_transaction_is_not_a_mismatch():
    created_at = utc_now()
    tx = {"from": SENDER, "to": RECIPIENT, "value": hex(2 * 10 ** 18), "blockNumber": None}
    adapter = _adapter(_explorer(created_at, tx=tx))
    outcome = _verify(adapter, created_at)
    assert outcome.checks["confirmed"] is False
    assert outcome.checks["time_valid"] is False
    assert outcome.mismatches == {}


def _transfer_input(to, raw_amount):
    return "0xa9059cbb" + "0" * 24 + to[2:] + format(raw_amount, "064x")


@pytest.mark.parametrize("tx_extra, receipt", [
    ({"blockNumber": None}, None),
    ({"blockNumber": hex(100)}, {}),
])
def test_unmined_usdt_call_is_not_a_mismatch(tx_extra, receipt):
    created_at = utc_now()
    tx = {"from": SENDER, "to": USDT_BSC.lower(), "value": "0x0", **tx_extra}
    adapter = _adapter(_explorer(created_at, tx=tx, receipt=receipt))

    outcome = _verify(adapter, created_at)

    assert outcome.checks["transaction_exists"] is True
    assert outcome.checks["recipient_verified"] is False
    assert outcome.checks["amount_verified"] is False
    assert outcome.mismatches == {}
    assert outcome.raw_data["transfer_final"] is False
    adapter.price_service.get_native_price_usd.assert_not_awaited()


def test_unmined_usdt_call_reads_payee_from_input():
    created_at = utc_now()
    tx = {"from": SENDER, "to": USDT_BSC.lower(), "value": "0x0", "blockNumber": None,
          "input": _transfer_input(RECIPIENT, 1000 * 10 ** 18)}
    adapter = _adapter(_explorer(created_at, tx=tx))

    outcome = _verify(adapter, created_at)

    assert outcome.checks["recipient_verified"] is True
    assert outcome.checks["amount_verified"] is True
    assert outcome.checks["confirmed"] is False
    assert outcome.mismatches == {}


def test_unmined_usdt_call_to_other_payee_is_not_final():
    created_at = utc_now()
    tx = {"from": SENDER, "to": USDT_BSC.lower(), "value": "0x0", "blockNumber": None,
          "input": _transfer_input("0x" + "ee" * 20, 1000 * 10 ** 18)}
    adapter = _adapter(_explorer(created_at, tx=tx))

    outcome = _verify(adapter, created_at)

    assert outcome.checks["recipient_verified"] is False
    assert "not mined yet" in outcome.errors[0]
    assert outcome.mismatches == {}


def test_missing_transaction():
    async def fetch(params):
        return {"jsonrpc": "2.0", "id": 1, "result": None}

    outcome = _verify(_adapter(fetch), utc_now())
    assert outcome.checks["transaction_exists"] is False
    assert outcome.errors == ["Transaction not found on bsc"]


def test_rate_limited_explorer_is_unavailable():
    async def fetch(params):
        return {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}

    with pytest.raises(ChainUnavailable) as exc_info:
        _verify(_adapter(fetch), utc_now())
    assert "rate limit" in str(exc_info.value)


def test_retries_before_giving_up():
    calls = []

    async def fetch(params):
        calls.append(params["action"])
        return {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "upstream timeout"}}

    adapter = _adapter(fetch)
    adapter.settings = AdapterSettings(retries=2, backoff_seconds=0, timeout_seconds=5)
    with pytest.raises(ChainUnavailable):
        _verify(adapter, utc_now())
    assert calls == ["eth_getTransactionByHash"] * 3


def test_registry_dispatch():
    registry = AdapterRegistry()
    adapter = _adapter(_explorer(utc_now()))
    registry.register(adapter)
    assert registry.get("BSC") is adapter
    assert registry.supports(Chain.BSC)
    with pytest.raises(ValidationError):
        registry.get(Chain.TRON)


def test_tron_is_not_an_evm_chain():
    with pytest.raises(ValueError):
        EvmScanAdapter(Chain.TRON, settings=FAST)
