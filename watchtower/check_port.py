from __future__ import annotations

from enum import Enum

from watchtower.checks import Event, ProbeContext, SocketCheck
from watchtower.models import CheckType

READ_CHUNK_BYTES = 4096


class PortState(Enum):
    START = "start"
    CONNECTING = "connecting"
    AWAITING_DATA = "awaiting_data"
    DONE = "done"
    CLOSED = "closed"


class PortCheck(SocketCheck):
    """Connectivity plus first-byte liveness; the probe hangs up on the first byte."""

    check_type = CheckType.PORT
    State = PortState
    TRANSITIONS = {
        (PortState.START, Event.LOOKUP): (PortState.CONNECTING, "lookup"),
        (PortState.CONNECTING, Event.CONNECT): (PortState.AWAITING_DATA, "connect"),
        (PortState.AWAITING_DATA, Event.DATA): (PortState.DONE, "readable"),
        (PortState.AWAITING_DATA, Event.END): (PortState.DONE, "end"),
    }

    async def _drive(self, ctx: ProbeContext) -> None:
        async with self.connect(ctx) as (reader, _writer):
            data = await reader.read(READ_CHUNK_BYTES)
            self.handle(ctx, Event.DATA if data else Event.END)
