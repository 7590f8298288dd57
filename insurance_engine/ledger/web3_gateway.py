"""
Ledger gateway for the on-chain insurance contract.

Wraps a synchronous web3 HTTP client; every RPC runs in the default executor
so the event loop never blocks. Commands are signed by the moderator key and
serialized through one asyncio.Lock so pending nonces never collide.
"""
import asyncio
import json
from datetime import datetime
from decimal import Decimal
from functools import partial
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

from web3 import Web3
from web3.exceptions import Web3Exception

from insurance_engine.constants import LEDGER_EVENT_NAME
from insurance_engine.domain.models import LedgerContractRecord, LedgerEvent
from insurance_engine.exceptions import LedgerError
from insurance_engine.ledger.events import decode_contract_record, decode_event, to_wei
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_ABI_PATH = Path(__file__).parent / "abi" / "insurance.json"

# Errors web3 and its HTTP transport raise for RPC/contract failures
_RPC_ERRORS = (Web3Exception, ValueError, OSError)


def load_abi(abi_path: Optional[str] = None) -> List[dict]:
    path = Path(abi_path) if abi_path else DEFAULT_ABI_PATH
    with open(path, "r") as f:
        return json.load(f)


class Web3LedgerGateway:
    """LedgerGateway backed by web3.py."""

    def __init__(
        self,
        rpc_http_url: str,
        contract_address: str,
        private_key: str,
        abi_path: Optional[str] = None,
        start_block: Optional[int] = None,
        max_block_range: int = 2000,
        request_timeout: float = 30.0,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_http_url, request_kwargs={"timeout": request_timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=load_abi(abi_path),
        )
        self.account = self.w3.eth.account.from_key(private_key)
        self._private_key = private_key
        self.start_block = start_block
        self.max_block_range = max_block_range
        self._tx_lock = asyncio.Lock()
        self._chain_id: Optional[int] = None

        logger.info(
            "Web3LedgerGateway initialized",
            contract=self.contract.address,
            sender=self.account.address,
        )

    async def _run(self, fn: Callable[[], Any], action: str) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except _RPC_ERRORS as e:
            raise LedgerError(f"{action} failed: {e}") from e

    def _send_sync(self, fn_name: str, *args) -> str:
        if self._chain_id is None:
            self._chain_id = self.w3.eth.chain_id
        call = getattr(self.contract.functions, fn_name)(*args)
        tx = call.build_transaction({
            "from": self.account.address,
            "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
            "chainId": self._chain_id,
        })
        signed = self.w3.eth.account.sign_transaction(tx, private_key=self._private_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def _send(self, fn_name: str, *args) -> str:
        async with self._tx_lock:
            tx_hash = await self._run(partial(self._send_sync, fn_name, *args), fn_name)
        logger.info("LEDGER_TX_SENT", function=fn_name, contract_id=args[0], tx_hash=tx_hash)
        return tx_hash

    # ----- commands -----

    async def register_available(self, contract_id: str, q_claim: Decimal, expired_at: datetime) -> str:
        return await self._send("updateAvailableInsurance", contract_id, to_wei(q_claim), int(expired_at.timestamp()))

    async def invalidate(self, contract_id: str) -> str:
        return await self._send("updateInvalidInsurance", contract_id)

    async def cancel(self, contract_id: str) -> str:
        return await self._send("cancel", contract_id)

    async def claim(self, contract_id: str) -> str:
        return await self._send("claim", contract_id)

    async def refund(self, contract_id: str) -> str:
        return await self._send("refund", contract_id)

    async def liquidate(self, contract_id: str) -> str:
        return await self._send("liquidate", contract_id)

    async def expire(self, contract_id: str) -> str:
        return await self._send("expire", contract_id)

    # ----- reads -----

    async def read_contract(self, contract_id: str) -> Optional[LedgerContractRecord]:
        result = await self._run(
            lambda: self.contract.functions.readInsurance(contract_id).call(),
            "readInsurance",
        )
        return decode_contract_record(result)

    def _fetch_logs_sync(self, from_block: Optional[int]) -> Tuple[List[LedgerEvent], Optional[int]]:
        head = self.w3.eth.block_number
        start = from_block if from_block is not None else (self.start_block if self.start_block is not None else head)
        if start > head:
            return [], start

        end = min(head, start + self.max_block_range - 1)
        event = getattr(self.contract.events, LEDGER_EVENT_NAME)
        logs = event.get_logs(from_block=start, to_block=end)

        events = []
        for log in logs:
            decoded = decode_event(log["args"], Web3.to_hex(log["transactionHash"]), log["blockNumber"])
            if decoded is not None:
                events.append(decoded)
        return events, end + 1

    async def fetch_events(self, from_block: Optional[int]) -> Tuple[List[LedgerEvent], Optional[int]]:
        """Decoded events from from_block (None = configured start or head) and the next cursor."""
        return await self._run(partial(self._fetch_logs_sync, from_block), "get_logs")


class DisabledLedgerGateway:
    """
    Stand-in when the ledger is switched off (local runs, dry runs).

    Commands fail with LedgerError so the failure lands in the state log;
    reads see no on-chain record and no events.
    """

    async def _refuse(self, command: str, contract_id: str) -> str:
        raise LedgerError(f"Ledger disabled: {command} not sent for {contract_id}")

    async def register_available(self, contract_id: str, q_claim: Decimal, expired_at: datetime) -> str:
        return await self._refuse("register_available", contract_id)

    async def invalidate(self, contract_id: str) -> str:
        return await self._refuse("invalidate", contract_id)

    async def cancel(self, contract_id: str) -> str:
        return await self._refuse("cancel", contract_id)

    async def claim(self, contract_id: str) -> str:
        return await self._refuse("claim", contract_id)

    async def refund(self, contract_id: str) -> str:
        return await self._refuse("refund", contract_id)

    async def liquidate(self, contract_id: str) -> str:
        return await self._refuse("liquidate", contract_id)

    async def expire(self, contract_id: str) -> str:
        return await self._refuse("expire", contract_id)

    async def read_contract(self, contract_id: str) -> Optional[LedgerContractRecord]:
        return None

    async def fetch_events(self, from_block: Optional[int]) -> Tuple[List[LedgerEvent], Optional[int]]:
        return [], from_block
