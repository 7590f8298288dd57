"""
Ledger event listener.

Polls the gateway for EInsurance logs and hands each decoded event to the
lifecycle controller. The block cursor only advances after a fetch succeeds,
so a failed poll is retried from the same block.
"""
import asyncio
from typing import Optional

from insurance_engine.constants import LEDGER_EVENT_POLL_SECONDS
from insurance_engine.domain.protocols import LedgerGateway
from insurance_engine.exceptions import DataError, InvariantError, OperationalError
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)


class LedgerEventListener:
    def __init__(
        self,
        gateway: LedgerGateway,
        controller,
        poll_seconds: float = LEDGER_EVENT_POLL_SECONDS,
        from_block: Optional[int] = None,
    ):
        self.gateway = gateway
        self.controller = controller
        self.poll_seconds = poll_seconds
        self.cursor = from_block
        self.active = False
        self.events_handled = 0

    async def poll_once(self) -> int:
        """Fetch and dispatch one batch. Returns the number of events dispatched."""
        events, next_cursor = await self.gateway.fetch_events(self.cursor)
        for event in events:
            try:
                await self.controller.handle_ledger_event(event)
            except (DataError, OperationalError) as e:
                logger.warning(
                    "LEDGER_EVENT_HANDLING_FAILED",
                    contract_id=event.contract_id,
                    kind=event.kind.value,
                    error=str(e),
                )
            except InvariantError:
                raise
            except Exception as e:
                logger.exception(
                    "LEDGER_EVENT_HANDLING_FAILED",
                    contract_id=event.contract_id,
                    kind=event.kind.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        self.cursor = next_cursor
        self.events_handled += len(events)
        return len(events)

    async def run(self) -> None:
        self.active = True
        logger.info("Ledger event listener started", poll_seconds=self.poll_seconds, from_block=self.cursor)
        while self.active:
            try:
                count = await self.poll_once()
                if count:
                    logger.info("LEDGER_EVENTS_DISPATCHED", count=count, cursor=self.cursor)
            except asyncio.CancelledError:
                raise
            except OperationalError as e:
                logger.warning("LEDGER_POLL_FAILED", error=str(e), cursor=self.cursor)
            await asyncio.sleep(self.poll_seconds)

    def stop(self) -> None:
        self.active = False
