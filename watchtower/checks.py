"""
Probe state machines.

Every check type drives one connection through an explicit `State` enum. All
events (socket progress, data, terminal outcomes) go through a single
`handle()` transition method on the strategy, and a probe settles exactly once:
events arriving after the terminal transition are dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, ClassVar

import structlog

from watchtower.models import CheckType, ProbeResult, Target
from watchtower.timing import TimingRecorder

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_EHLO_IDENTITY = "lambda-watchtower.test"


class Event(str, Enum):
    LOOKUP = "lookup"
    CONNECT = "connect"
    SECURE_CONNECT = "secureConnect"
    REQUEST_SENT = "request_sent"
    RESPONSE = "response"
    DATA = "data"
    GREETING = "greeting"
    REPLY_OK = "reply_ok"
    END = "end"
    CLOSE = "close"
    ERROR = "error"
    TIMEOUT = "timeout"


TERMINAL_EVENTS = frozenset({Event.CLOSE, Event.ERROR, Event.TIMEOUT})


@dataclass
class ProbeContext:
    target: Target
    state: Enum
    timings: TimingRecorder = field(default_factory=TimingRecorder)
    status_code: int | None = None
    error: str | None = None
    result: ProbeResult | None = None

    @property
    def settled(self) -> bool:
        return self.result is not None

    def settle(self, status_code: int) -> bool:
        if self.result is not None:
            return False
        self.timings.record("close")
        self.status_code = status_code
        self.result = ProbeResult(
            name=self.target.name,
            check_type=self.target.type,
            status_code=status_code,
            timings=self.timings.snapshot(),
            durations=self.timings.finalize(),
            component=self.target.component,
            error=self.error,
        )
        return True


class CheckStrategy(ABC):
    check_type: ClassVar[CheckType]
    State: ClassVar[type[Enum]]
    # (state, event) -> (next state, phase recorded on entry or None)
    TRANSITIONS: ClassVar[dict[tuple[Any, Event], tuple[Any, str | None]]]
    # Exceptions that mean "the target is degraded", as opposed to a bug.
    transport_errors: ClassVar[tuple[type[BaseException], ...]] = (OSError,)

    def __init__(self, target: Target, *, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.target = target
        self.timeout_seconds = float(timeout_seconds)

    def new_context(self) -> ProbeContext:
        return ProbeContext(target=self.target, state=self.State["START"])

    async def run(self) -> ProbeResult:
        """Run the probe to completion; network failures never raise."""
        ctx = self.new_context()
        try:
            await asyncio.wait_for(self._drive(ctx), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            self.handle(ctx, Event.TIMEOUT)
        except self.transport_errors as exc:
            self.handle(ctx, Event.ERROR, exc)
        else:
            self.handle(ctx, Event.CLOSE)
        if ctx.result is None:
            raise RuntimeError(f"probe for {self.target.name!r} finished without a result")
        return ctx.result

    def handle(self, ctx: ProbeContext, event: Event, payload: Any = None) -> bytes | None:
        """Apply one event. Returns bytes to write to the peer, if any."""
        if ctx.settled:
            logger.debug("probe_event_after_close", target=ctx.target.name, probe_event=event.value)
            return None

        if event in TERMINAL_EVENTS:
            if event is Event.TIMEOUT:
                ctx.error = f"timeout after {self.timeout_seconds:g}s"
            elif event is Event.ERROR and payload is not None:
                ctx.error = f"{type(payload).__name__}: {payload}"
            ctx.state = self.State["CLOSED"]
            ctx.settle(self.terminal_status(ctx, event))
            return None

        step = self.TRANSITIONS.get((ctx.state, event))
        if step is None:
            logger.debug(
                "probe_event_ignored",
                target=ctx.target.name,
                state=ctx.state.name,
                probe_event=event.value,
            )
            return None
        next_state, phase = step
        if phase:
            ctx.timings.record(phase)
        ctx.state = next_state
        return self.on_transition(ctx, event, payload)

    def on_transition(self, ctx: ProbeContext, event: Event, payload: Any) -> bytes | None:
        return None

    async def resolve(self, host: str, port: int) -> list[str]:
        """Addresses for host:port in resolver order; the caller reports the lookup phase."""
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        addresses: list[str] = []
        for info in infos:
            address = str(info[4][0])
            if address not in addresses:
                addresses.append(address)
        if not addresses:
            raise OSError(f"no addresses for {host}:{port}")
        return addresses

    @abstractmethod
    def terminal_status(self, ctx: ProbeContext, event: Event) -> int:
        ...

    @abstractmethod
    async def _drive(self, ctx: ProbeContext) -> None:
        ...


class SocketCheck(CheckStrategy):
    """Raw TCP connection: 0 on a clean close, -1 on socket error or timeout."""

    def terminal_status(self, ctx: ProbeContext, event: Event) -> int:
        return 0 if event is Event.CLOSE else -1

    @contextlib.asynccontextmanager
    async def connect(self, ctx: ProbeContext) -> AsyncIterator[tuple[asyncio.StreamReader, asyncio.StreamWriter]]:
        host = str(self.target.hostname)
        port = int(self.target.port or 0)

        addresses = await self.resolve(host, port)
        self.handle(ctx, Event.LOOKUP)

        reader, writer = await self._open_first(addresses, port)
        try:
            self.handle(ctx, Event.CONNECT)
            yield reader, writer
        except BaseException:
            # timeout/cancel/error: drop the socket without a graceful close
            writer.transport.abort()
            raise
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            # peer reset while we hung up; the probe already got its answer
            pass

    async def _open_first(
        self, addresses: list[str], port: int
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Connect to the first address that accepts; the last address's failure propagates."""
        for address in addresses[:-1]:
            try:
                return await asyncio.open_connection(address, port)
            except OSError as exc:
                logger.debug("connect_attempt_failed", target=self.target.name, address=address, error=str(exc))
        return await asyncio.open_connection(addresses[-1], port)
