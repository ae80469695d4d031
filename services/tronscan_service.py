# services/tronscan_service.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp

import config
from services.chain_adapter import AdapterSettings, ChainAdapter, ChainTransaction, ExplorerResponseError
from services.payment_models import Chain

logger = logging.getLogger(__name__)

TRX_DECIMALS = 6
# TronScan contractType for a plain TRX TransferContract
TRANSFER_CONTRACT_TYPE = 1


class TronScanAdapter(ChainAdapter):
    """Tron verifier backed by the TronScan public API.

    Handles both USDT (TRC20) transfers, read from ``trc20TransferInfo``, and
    native TRX transfers, read from ``contractData``.
    """

    chain = Chain.TRON

    def __init__(self, settings: Optional[AdapterSettings] = None, store=None, price_service=None,
                 api_url: Optional[str] = None, api_key: Optional[str] = None, concurrency: Optional[int] = None):
        super().__init__(settings=settings, store=store, price_service=price_service, concurrency=concurrency)
        self.endpoint = (api_url or config.EXPLORER_API_URLS["tron"]).rstrip("/")
        key = api_key if api_key is not None else config.EXPLORER_API_KEYS.get("tron")
        self.api_key = key if key and key != "KEY_NOT_SET_IN_ENV" else None
        self.usdt_contract, self.usdt_decimals = config.STABLECOIN_CONTRACTS["tron"]

    async def _fetch_json(self, path: str, params: Dict[str, Any]) -> Any:
        headers = {"TRON-PRO-API-KEY": self.api_key} if self.api_key else {}
        async with aiohttp.ClientSession() as session:
            async with session.get(f"{self.endpoint}{path}", params=params, headers=headers) as response:
                if response.status == 404:
                    return {}
                if response.status != 200:
                    raise ExplorerResponseError(f"TronScan returned HTTP {response.status} for {path}")
                return await response.json(content_type=None)

    async def _latest_block_number(self) -> int:
        data = await self._fetch_json("/api/block", {"sort": "-number", "start": 0, "limit": 1})
        blocks = (data or {}).get("data") or []
        if not blocks:
            raise ExplorerResponseError("TronScan returned no latest block")
        return int(blocks[0]["number"])

    async def fetch_transaction(self, tx_hash: str, recipient: str) -> ChainTransaction:
        data = await self._fetch_json("/api/transaction-info", {"hash": tx_hash})

        if not data or "contractRet" not in data:
            logger.info(f"Transaction {tx_hash} not found on TronScan")
            return ChainTransaction(tx_hash=tx_hash, found=False)

        tx = ChainTransaction(
            tx_hash=tx_hash,
            found=True,
            succeeded=data.get("contractRet") == "SUCCESS",
            block_number=data.get("blockNumber"),
        )
        if not tx.succeeded:
            logger.info(f"Transaction {tx_hash} failed on-chain: {data.get('contractRet')}")
            return tx

        if data.get("block_timestamp"):
            tx.timestamp = datetime.fromtimestamp(int(data["block_timestamp"]) / 1000, tz=timezone.utc)

        tx.confirmations = await self._confirmations(data)

        transfer = self._pick_usdt_transfer(data.get("trc20TransferInfo") or [], recipient)
        if transfer is not None:
            tx.sender = transfer.get("from_address", "")
            tx.recipient = transfer.get("to_address", "")
            tx.raw_amount = int(transfer.get("amount_str", "0"))
            tx.decimals = int(transfer.get("decimals", self.usdt_decimals))
            tx.is_stablecoin = True
            tx.token_contract = self.usdt_contract
            return tx

        # Native TRX transfer
        contract_data = data.get("contractData") or {}
        tx.sender = contract_data.get("owner_address") or data.get("ownerAddress", "")
        tx.recipient = contract_data.get("to_address") or data.get("toAddress", "")
        if data.get("contractType", TRANSFER_CONTRACT_TYPE) == TRANSFER_CONTRACT_TYPE:
            tx.raw_amount = int(contract_data.get("amount", 0))
        tx.decimals = TRX_DECIMALS
        return tx

    async def _confirmations(self, data: Dict[str, Any]) -> int:
        if data.get("confirmations") is not None:
            return int(data["confirmations"])
        block_number = data.get("blockNumber")
        if block_number is None:
            return 0
        latest = await self._latest_block_number()
        return max(0, latest - int(block_number) + 1)

    def _pick_usdt_transfer(self, transfers, recipient: str) -> Optional[Dict[str, Any]]:
        usdt = [t for t in transfers if t.get("contract_address") == self.usdt_contract]
        for transfer in usdt:
            if transfer.get("to_address") == recipient:
                return transfer
        return usdt[0] if usdt else None
