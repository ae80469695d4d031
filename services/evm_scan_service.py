# services/evm_scan_service.py

"""Verifier for EVM chains (Ethereum, BSC, Polygon) through Etherscan-compatible explorers.

All three explorers expose the same ``module=proxy`` JSON-RPC passthrough, so
one adapter class serves every EVM chain; only URL, key, USDT contract and
native coin differ.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

import config
from services.chain_adapter import AdapterSettings, ChainAdapter, ChainTransaction, ExplorerResponseError
from services.payment_models import Chain

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# bytes4(keccak256("transfer(address,uint256)"))
TRANSFER_SELECTOR = "0xa9059cbb"


def _hex_to_int(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


def _topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _decode_transfer_call(call_data: str):
    """Return (to, raw_amount) for ERC-20 ``transfer`` call data, else None."""
    body = call_data[2:] if call_data.startswith("0x") else call_data
    if not body.startswith(TRANSFER_SELECTOR[2:]) or len(body) < 8 + 128:
        return None
    return "0x" + body[8 + 24:8 + 64], int(body[8 + 64:8 + 128], 16)


class EvmScanAdapter(ChainAdapter):
    def __init__(self, chain: Chain, settings: Optional[AdapterSettings] = None, store=None, price_service=None,
                 api_url: Optional[str] = None, api_key: Optional[str] = None, concurrency: Optional[int] = None):
        chain = Chain.parse(chain)
        if not chain.is_evm:
            raise ValueError(f"{chain.value} is not an EVM chain")
        self.chain = chain
        super().__init__(settings=settings, store=store, price_service=price_service, concurrency=concurrency)
        self.api_url = api_url or config.EXPLORER_API_URLS[chain.value]
        key = api_key if api_key is not None else config.EXPLORER_API_KEYS.get(chain.value)
        self.api_key = key if key and key != "KEY_NOT_SET_IN_ENV" else None
        contract, self.usdt_decimals = config.STABLECOIN_CONTRACTS[chain.value]
        self.usdt_contract = contract.lower()
        self.native_decimals = config.NATIVE_DECIMALS[chain.value]

    async def _fetch_json(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = dict(params)
        if self.api_key:
            query["apikey"] = self.api_key
        async with aiohttp.ClientSession() as session:
            async with session.get(self.api_url, params=query) as response:
                if response.status != 200:
                    raise ExplorerResponseError(f"{self.chain.value} explorer returned HTTP {response.status}")
                return await response.json(content_type=None)

    async def _proxy(self, action: str, **params) -> Any:
        data = await self._fetch_json({"module": "proxy", "action": action, **params})
        if "error" in data:
            raise ExplorerResponseError(f"{action} failed: {data['error']}")
        # Rate limits and bad keys come back as {"status": "0", "message": "NOTOK", "result": "<text>"}
        if data.get("status") == "0" and isinstance(data.get("result"), str):
            raise ExplorerResponseError(f"{action} refused: {data['result']}")
        return data.get("result")

    async def fetch_transaction(self, tx_hash: str, recipient: str) -> ChainTransaction:
        tx_data = await self._proxy("eth_getTransactionByHash", txhash=tx_hash)
        if not tx_data:
            logger.info(f"Transaction {tx_hash} not found on {self.chain.value}")
            return ChainTransaction(tx_hash=tx_hash, found=False)

        tx = ChainTransaction(
            tx_hash=tx_hash,
            found=True,
            sender=(tx_data.get("from") or "").lower(),
            recipient=(tx_data.get("to") or "").lower(),
            raw_amount=_hex_to_int(tx_data.get("value")),
            decimals=self.native_decimals,
        )

        if tx_data.get("blockNumber") is None:
            # Still in the mempool: exists, not mined yet.
            return self._unmined(tx, tx_data)

        receipt = await self._proxy("eth_getTransactionReceipt", txhash=tx_hash)
        if not receipt:
            return self._unmined(tx, tx_data)
        tx.succeeded = receipt.get("status") == "0x1"
        if not tx.succeeded:
            logger.info(f"Transaction {tx_hash} reverted on {self.chain.value}")
            return tx

        tx.block_number = _hex_to_int(tx_data["blockNumber"])
        latest = _hex_to_int(await self._proxy("eth_blockNumber"))
        tx.confirmations = max(0, latest - tx.block_number + 1)

        block = await self._proxy("eth_getBlockByNumber", tag=tx_data["blockNumber"], boolean="false")
        if block and block.get("timestamp"):
            tx.timestamp = datetime.fromtimestamp(_hex_to_int(block["timestamp"]), tz=timezone.utc)

        transfer = self._pick_usdt_transfer(receipt.get("logs") or [], recipient)
        if transfer is not None:
            tx.sender, tx.recipient, tx.raw_amount = transfer
            tx.decimals = self.usdt_decimals
            tx.is_stablecoin = True
            tx.token_contract = self.usdt_contract
        return tx

    def _unmined(self, tx: ChainTransaction, tx_data: Dict[str, Any]) -> ChainTransaction:
        """Pending transaction: plain coin transfers are settled, contract calls are not.

        A USDT ``transfer(address,uint256)`` call is read from its input so the
        reviewer sees the intended payee and amount; until it is mined neither is final.
        """
        tx.succeeded = True
        call_data = (tx_data.get("input") or "0x").lower()
        if tx.recipient != self.usdt_contract and call_data == "0x":
            return tx

        tx.transfer_final = False
        if tx.recipient == self.usdt_contract:
            tx.is_stablecoin = True
            tx.decimals = self.usdt_decimals
            tx.token_contract = self.usdt_contract
            decoded = _decode_transfer_call(call_data)
            if decoded is not None:
                tx.recipient, tx.raw_amount = decoded
        return tx

    def _pick_usdt_transfer(self, logs: List[Dict[str, Any]], recipient: str):
        """Return (from, to, raw_amount) of the USDT Transfer log paying *recipient*, else the first one."""
        transfers = []
        for log in logs:
            topics = log.get("topics") or []
            if (log.get("address", "").lower() == self.usdt_contract
                    and len(topics) == 3 and topics[0].lower() == TRANSFER_TOPIC):
                transfers.append((_topic_to_address(topics[1]), _topic_to_address(topics[2]),
                                  _hex_to_int(log.get("data"))))
        wanted = (recipient or "").lower()
        for transfer in transfers:
            if transfer[1] == wanted:
                return transfer
        return transfers[0] if transfers else None
