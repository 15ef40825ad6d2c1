from __future__ import annotations

import ssl
from enum import Enum
from typing import Any

import httpx
import structlog

from watchtower.checks import CheckStrategy, Event, ProbeContext
from watchtower.models import CheckType, Target

logger = structlog.get_logger(__name__)


class HttpState(Enum):
    START = "start"
    CONNECTING = "connecting"
    SECURE_HANDSHAKE = "secure_handshake"
    SENDING = "sending"
    AWAITING_RESPONSE = "awaiting_response"
    STREAMING = "streaming"
    CLOSED = "closed"


_COMMON_TRANSITIONS = {
    (HttpState.START, Event.LOOKUP): (HttpState.CONNECTING, "lookup"),
    (HttpState.SENDING, Event.REQUEST_SENT): (HttpState.AWAITING_RESPONSE, None),
    (HttpState.SENDING, Event.RESPONSE): (HttpState.STREAMING, "readable"),
    (HttpState.AWAITING_RESPONSE, Event.RESPONSE): (HttpState.STREAMING, "readable"),
    (HttpState.STREAMING, Event.END): (HttpState.STREAMING, "end"),
}

PLAIN_TRANSITIONS = {
    **_COMMON_TRANSITIONS,
    (HttpState.CONNECTING, Event.CONNECT): (HttpState.SENDING, "connect"),
}

SECURE_TRANSITIONS = {
    **_COMMON_TRANSITIONS,
    (HttpState.CONNECTING, Event.CONNECT): (HttpState.SECURE_HANDSHAKE, "connect"),
    (HttpState.SECURE_HANDSHAKE, Event.SECURE_CONNECT): (HttpState.SENDING, "secureConnect"),
}

# httpcore trace event names -> probe events
TRACE_EVENTS = {
    "connection.connect_tcp.complete": Event.CONNECT,
    "connection.start_tls.complete": Event.SECURE_CONNECT,
    "http11.send_request_body.complete": Event.REQUEST_SENT,
    "http11.receive_response_headers.complete": Event.RESPONSE,
}


def _address_url(url: httpx.URL, address: str) -> httpx.URL:
    host = f"[{address}]" if ":" in address else address
    port = f":{url.port}" if url.port is not None else ""
    return httpx.URL(f"{url.scheme}://{host}{port}{url.raw_path.decode('ascii')}")


class HttpCheck(CheckStrategy):
    """
    Single GET against `target.url`, redirects not followed.

    The host is resolved here rather than inside httpx so the DNS phase gets its
    own timestamp; the request then goes to the resolved address with the
    original Host header and TLS server name. Connection, TLS and first response
    byte timestamps come from httpx's request trace hook.
    """

    check_type = CheckType.HTTP
    State = HttpState
    transport_errors = (httpx.TransportError, httpx.InvalidURL, OSError)

    def __init__(
        self,
        target: Target,
        *,
        timeout_seconds: float,
        verify: ssl.SSLContext | bool = True,
    ) -> None:
        super().__init__(target, timeout_seconds=timeout_seconds)
        self.verify = verify
        self.secure = str(target.url or "").lower().startswith("https://")
        self.TRANSITIONS = SECURE_TRANSITIONS if self.secure else PLAIN_TRANSITIONS

    def terminal_status(self, ctx: ProbeContext, event: Event) -> int:
        return ctx.status_code if ctx.status_code is not None else 0

    def on_transition(self, ctx: ProbeContext, event: Event, payload: Any) -> bytes | None:
        if event is Event.RESPONSE and payload is not None:
            ctx.status_code = int(payload)
        return None

    def _trace(self, ctx: ProbeContext):
        async def trace(event_name: str, info: dict[str, Any]) -> None:
            event = TRACE_EVENTS.get(event_name)
            if event is None:
                return
            payload = None
            if event is Event.RESPONSE:
                returned = info.get("return_value")
                if isinstance(returned, tuple) and len(returned) > 1:
                    payload = returned[1]
            self.handle(ctx, event, payload)

        return trace

    async def _drive(self, ctx: ProbeContext) -> None:
        url = httpx.URL(str(self.target.url))
        host = url.host
        if not host:
            raise httpx.InvalidURL(f"No host in url {self.target.url!r}")
        port = url.port or (443 if self.secure else 80)

        addresses = await self.resolve(host, port)
        self.handle(ctx, Event.LOOKUP)

        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=False,
            trust_env=False,
            verify=self.verify,
        ) as client:
            for address in addresses[:-1]:
                try:
                    await self._get(ctx, client, url, address)
                    return
                except httpx.ConnectError as exc:
                    # only a refused/unreachable TCP connect moves on to the next address
                    if ctx.timings.has("connect"):
                        raise
                    logger.debug("connect_attempt_failed", target=self.target.name, address=address, error=str(exc))
            await self._get(ctx, client, url, addresses[-1])

    async def _get(self, ctx: ProbeContext, client: httpx.AsyncClient, url: httpx.URL, address: str) -> None:
        extensions: dict[str, Any] = {"trace": self._trace(ctx)}
        if self.secure:
            extensions["sni_hostname"] = url.host
        headers = {"Host": url.netloc.decode("ascii")}

        async with client.stream(
            "GET",
            _address_url(url, address),
            headers=headers,
            extensions=extensions,
        ) as response:
            # no-op when the trace hook already reported the status line
            self.handle(ctx, Event.RESPONSE, response.status_code)
            async for _ in response.aiter_raw():
                pass
            self.handle(ctx, Event.END)
