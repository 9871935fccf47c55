"""Deploy tickets.

The API layer issues a ticket when a deploy is requested and redeems it
when the progress stream is opened. A ticket is single-use and expires
after its TTL; a background task sweeps expired tickets.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable

from pydantic import BaseModel

from clawnest.configure import InstanceSettings
from clawnest.logging_schema import LogEvent

logger = logging.getLogger(__name__)


class DeployTicket(BaseModel):
    ticket_id: str
    instance_id: str
    settings: InstanceSettings
    expires_at: float


class DeployTicketStore:
    """Single-use, TTL-bound deploy tickets."""

    def __init__(
        self,
        ttl: float = 300.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._tickets: dict[str, DeployTicket] = {}
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._tickets)

    def issue(self, instance_id: str, settings: InstanceSettings) -> str:
        ticket_id = uuid.uuid4().hex
        self._tickets[ticket_id] = DeployTicket(
            ticket_id=ticket_id,
            instance_id=instance_id,
            settings=settings,
            expires_at=self._clock() + self._ttl,
        )
        logger.debug(
            "Ticket issued",
            extra={"event": LogEvent.TICKET_ISSUED, "instance_id": instance_id},
        )
        return ticket_id

    def redeem(self, ticket_id: str) -> DeployTicket | None:
        """Consume a ticket; None if unknown, already used, or expired."""
        ticket = self._tickets.pop(ticket_id, None)
        if ticket is None or ticket.expires_at < self._clock():
            return None
        return ticket

    def sweep(self) -> int:
        now = self._clock()
        expired = [tid for tid, t in self._tickets.items() if t.expires_at < now]
        for tid in expired:
            del self._tickets[tid]
        return len(expired)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="ticket-sweeper")

    async def close(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self.sweep()
            if removed:
                logger.info(
                    "Expired tickets swept",
                    extra={"event": LogEvent.TICKETS_SWEPT, "removed_count": removed},
                )
