"""
Tests for the ledger adapter: code decoding, the web3 gateway (with a mocked
client), the disabled gateway and the event listener.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from insurance_engine.constants import ZERO_ADDRESS
from insurance_engine.domain.models import LedgerEvent, LedgerEventKind, QuoteUnit
from insurance_engine.exceptions import InvalidTransition, InvariantError, LedgerError
from insurance_engine.ledger.events import decode_contract_record, decode_event, from_wei, to_wei
from insurance_engine.ledger.listener import LedgerEventListener
from insurance_engine.ledger.web3_gateway import DisabledLedgerGateway, Web3LedgerGateway, load_abi

BUYER = "0xAbCdEf0123456789abcdef0123456789ABCDEF01"
CONTRACT_ADDRESS = "0x1111111111111111111111111111111111111111"
PRIVATE_KEY = "0x" + "11" * 32


def _args(event_type=0, unit=0, margin=10 * 10**18):
    return {
        "idInsurance": "c1",
        "buyer": BUYER,
        "unit": unit,
        "margin": margin,
        "q_claim": 0,
        "expired_at": 0,
        "created_at": 0,
        "state": 0,
        "event_type": event_type,
    }


class TestDecoding:

    def test_wei_conversion(self):
        assert from_wei(35 * 10**18) == Decimal("35")
        assert to_wei(Decimal("35")) == 35 * 10**18
        assert to_wei(Decimal("0.5")) == 5 * 10**17

    def test_decode_created_event(self):
        event = decode_event(_args(), "0xabc", 12)

        assert event.kind == LedgerEventKind.CREATED
        assert event.contract_id == "c1"
        assert event.address == BUYER.lower()
        assert event.unit == QuoteUnit.USDT
        assert event.margin == Decimal("10")
        assert event.block_number == 12

    @pytest.mark.parametrize("code,kind", [
        (3, LedgerEventKind.REFUNDED),
        (5, LedgerEventKind.CLAIMED),
        (7, LedgerEventKind.LIQUIDATED),
    ])
    def test_event_codes(self, code, kind):
        assert decode_event(_args(event_type=code), "0xabc").kind == kind

    def test_unknown_event_code(self):
        assert decode_event(_args(event_type=42), "0xabc") is None

    def test_unknown_unit_code(self):
        assert decode_event(_args(unit=9), "0xabc").unit is None

    def test_contract_record(self):
        record = decode_contract_record((BUYER, 1, 10 * 10**18, 35 * 10**18, 0, 0, 1))
        assert record.address == BUYER.lower()
        assert record.unit == QuoteUnit.VNST
        assert record.margin == Decimal("10")
        assert record.q_claim == Decimal("35")
        assert record.state == "AVAILABLE"

    def test_unregistered_record(self):
        assert decode_contract_record((ZERO_ADDRESS, 0, 0, 0, 0, 0, 0)) is None


class TestWeb3LedgerGateway:

    def _gateway(self, **kwargs):
        w3 = MagicMock()
        w3.eth.chain_id = 97
        w3.eth.get_transaction_count.return_value = 4
        w3.eth.send_raw_transaction.return_value = b"\x12\x34"
        gateway = Web3LedgerGateway(
            rpc_http_url="http://localhost:8545",
            contract_address=CONTRACT_ADDRESS,
            private_key=PRIVATE_KEY,
            w3=w3,
            **kwargs,
        )
        return gateway, w3, w3.eth.contract.return_value

    def test_bundled_abi_has_event(self):
        names = {entry.get("name") for entry in load_abi()}
        assert {"EInsurance", "readInsurance", "updateAvailableInsurance", "claim"} <= names

    @pytest.mark.asyncio
    async def test_command_returns_tx_hash(self):
        gateway, w3, contract = self._gateway()

        tx_hash = await gateway.claim("c1")

        assert tx_hash == "0x1234"
        contract.functions.claim.assert_called_once_with("c1")
        tx_params = contract.functions.claim.return_value.build_transaction.call_args[0][0]
        assert tx_params["nonce"] == 4
        assert tx_params["chainId"] == 97

    @pytest.mark.asyncio
    async def test_register_available_converts_units(self):
        gateway, w3, contract = self._gateway()
        expired_at = datetime(2025, 1, 2, tzinfo=timezone.utc)

        await gateway.register_available("c1", Decimal("35"), expired_at)

        contract.functions.updateAvailableInsurance.assert_called_once_with(
            "c1", 35 * 10**18, int(expired_at.timestamp())
        )

    @pytest.mark.asyncio
    async def test_rpc_failure_becomes_ledger_error(self):
        gateway, w3, _ = self._gateway()
        w3.eth.send_raw_transaction.side_effect = ValueError("nonce too low")

        with pytest.raises(LedgerError, match="nonce too low"):
            await gateway.refund("c1")

    @pytest.mark.asyncio
    async def test_read_contract(self):
        gateway, _, contract = self._gateway()
        contract.functions.readInsurance.return_value.call.return_value = (
            BUYER, 0, 10 * 10**18, 0, 0, 0, 0,
        )

        record = await gateway.read_contract("c1")

        assert record.margin == Decimal("10")
        assert record.unit == QuoteUnit.USDT

    @pytest.mark.asyncio
    async def test_fetch_events_is_block_ranged(self):
        gateway, w3, contract = self._gateway(start_block=90, max_block_range=5)
        w3.eth.block_number = 100
        contract.events.EInsurance.get_logs.return_value = [
            {"args": _args(event_type=5), "transactionHash": b"\xab", "blockNumber": 91},
            {"args": _args(event_type=42), "transactionHash": b"\xcd", "blockNumber": 92},
        ]

        events, cursor = await gateway.fetch_events(None)

        contract.events.EInsurance.get_logs.assert_called_once_with(from_block=90, to_block=94)
        assert [e.kind for e in events] == [LedgerEventKind.CLAIMED]
        assert events[0].tx_hash == "0xab"
        assert cursor == 95

    @pytest.mark.asyncio
    async def test_fetch_events_ahead_of_head(self):
        gateway, w3, contract = self._gateway()
        w3.eth.block_number = 100

        assert await gateway.fetch_events(101) == ([], 101)
        contract.events.EInsurance.get_logs.assert_not_called()


class TestDisabledLedgerGateway:

    @pytest.mark.asyncio
    async def test_commands_fail(self):
        with pytest.raises(LedgerError, match="disabled"):
            await DisabledLedgerGateway().claim("c1")

    @pytest.mark.asyncio
    async def test_reads_are_empty(self):
        gateway = DisabledLedgerGateway()
        assert await gateway.read_contract("c1") is None
        assert await gateway.fetch_events(7) == ([], 7)


class TestLedgerEventListener:

    @pytest.mark.asyncio
    async def test_poll_dispatches_and_advances(self):
        events = [
            LedgerEvent(kind=LedgerEventKind.CLAIMED, contract_id="a", tx_hash="0x1"),
            LedgerEvent(kind=LedgerEventKind.REFUNDED, contract_id="b", tx_hash="0x2"),
        ]
        gateway = MagicMock()
        gateway.fetch_events = AsyncMock(return_value=(events, 11))
        controller = MagicMock()
        controller.handle_ledger_event = AsyncMock(
            side_effect=[InvalidTransition("a", "AVAILABLE", "CLAIMED"), None]
        )
        listener = LedgerEventListener(gateway, controller, from_block=5)

        assert await listener.poll_once() == 2

        gateway.fetch_events.assert_awaited_once_with(5)
        assert controller.handle_ledger_event.await_count == 2
        assert listener.cursor == 11
        assert listener.events_handled == 2

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_cursor(self):
        gateway = MagicMock()
        gateway.fetch_events = AsyncMock(side_effect=LedgerError("rpc down"))
        listener = LedgerEventListener(gateway, MagicMock(), from_block=5)

        with pytest.raises(LedgerError):
            await listener.poll_once()
        assert listener.cursor == 5

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_does_not_stop_batch(self):
        events = [
            LedgerEvent(kind=LedgerEventKind.CLAIMED, contract_id="a", tx_hash="0x1"),
            LedgerEvent(kind=LedgerEventKind.REFUNDED, contract_id="b", tx_hash="0x2"),
        ]
        gateway = MagicMock()
        gateway.fetch_events = AsyncMock(return_value=(events, 11))
        controller = MagicMock()
        controller.handle_ledger_event = AsyncMock(side_effect=[ValueError("boom"), None])
        listener = LedgerEventListener(gateway, controller, from_block=5)

        assert await listener.poll_once() == 2

        assert controller.handle_ledger_event.await_count == 2
        assert listener.cursor == 11

    @pytest.mark.asyncio
    async def test_invariant_error_from_handler_propagates(self):
        gateway = MagicMock()
        gateway.fetch_events = AsyncMock(return_value=(
            [LedgerEvent(kind=LedgerEventKind.CLAIMED, contract_id="a", tx_hash="0x1")], 11
        ))
        controller = MagicMock()
        controller.handle_ledger_event = AsyncMock(side_effect=InvariantError("two owners"))
        listener = LedgerEventListener(gateway, controller, from_block=5)

        with pytest.raises(InvariantError):
            await listener.poll_once()
        assert listener.cursor == 5
