from __future__ import annotations

import asyncio
import contextlib
import socket
import ssl as ssl_module
from typing import AsyncIterator, Awaitable, Callable

import pytest

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]

_ENV_VARS = (
    "WATCHTOWER_NAMESPACE",
    "WATCHTOWER_TIMEOUT_MS",
    "WATCHTOWER_METRICS_ENDPOINT",
    "STATUS_API_HOST",
    "STATUS_API_KEY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@contextlib.asynccontextmanager
async def _serve(handler: Handler, *, ssl: ssl_module.SSLContext | None = None) -> AsyncIterator[int]:
    async def _wrapped(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            await handler(reader, writer)
        except ConnectionError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(_wrapped, "127.0.0.1", 0, ssl=ssl)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        server.close()
        await asyncio.wait_for(server.wait_closed(), timeout=5)


@pytest.fixture
def tcp_server():
    """`async with tcp_server(handler[, ssl=ctx]) as port:` runs a throwaway TCP server on 127.0.0.1."""
    return _serve


@pytest.fixture
def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def resolve_to(monkeypatch: pytest.MonkeyPatch):
    """Make the running loop resolve every host to the given addresses, in order."""

    def install(*addresses: str) -> None:
        async def getaddrinfo(host, port, *, family=0, type=0, proto=0, flags=0):
            out = []
            for address in addresses:
                if ":" in address:
                    out.append((socket.AF_INET6, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", (address, port, 0, 0)))
                else:
                    out.append((socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", (address, port)))
            return out

        monkeypatch.setattr(asyncio.get_running_loop(), "getaddrinfo", getaddrinfo)

    return install


@pytest.fixture
def stalled_resolver(monkeypatch: pytest.MonkeyPatch):
    """Make the running loop's DNS lookups never complete."""

    def install() -> None:
        async def getaddrinfo(*args, **kwargs):
            await asyncio.Event().wait()

        monkeypatch.setattr(asyncio.get_running_loop(), "getaddrinfo", getaddrinfo)

    return install
