from __future__ import annotations

import asyncio

import pytest

from watchtower.check_port import PortCheck
from watchtower.check_smtp import SmtpCheck, classify_line
from watchtower.checks import Event, ProbeContext
from watchtower.models import CheckType, Target


def _port_target(port: int) -> Target:
    return Target(name="local-port", type=CheckType.PORT, hostname="127.0.0.1", port=port)


def _smtp_target(port: int) -> Target:
    return Target(name="local-smtp", type=CheckType.SMTP, hostname="127.0.0.1", port=port)


async def _drain(reader: asyncio.StreamReader) -> None:
    while await reader.read(1024):
        pass


@pytest.mark.asyncio
async def test_port_check_closes_after_first_byte(tcp_server) -> None:
    async def banner_then_silent(reader, writer):
        writer.write(b"x")
        await writer.drain()
        await _drain(reader)

    async with tcp_server(banner_then_silent) as port:
        result = await PortCheck(_port_target(port), timeout_seconds=5.0).run()

    assert result.status_code == 0
    assert result.error is None
    for phase in ("start", "lookup", "connect", "readable", "close"):
        assert phase in result.timings
    assert result.durations["readable"] >= 0
    assert result.durations["total"] >= 0
    assert result.durations["secureConnect"] == -1


@pytest.mark.asyncio
async def test_port_check_refused_is_minus_one(unused_port: int) -> None:
    result = await PortCheck(_port_target(unused_port), timeout_seconds=5.0).run()
    assert result.status_code == -1
    assert result.error is not None
    assert "connect" not in result.timings
    assert result.durations["connect"] == -1
    assert result.durations["total"] >= 0


@pytest.mark.asyncio
async def test_port_check_timeout_keeps_captured_phases(tcp_server) -> None:
    async def silent(reader, writer):
        await _drain(reader)

    async with tcp_server(silent) as port:
        result = await PortCheck(_port_target(port), timeout_seconds=0.3).run()

    assert result.status_code == -1
    assert result.error is not None and result.error.startswith("timeout")
    assert result.durations["connect"] >= 0
    assert result.durations["readable"] == -1
    assert result.durations["total"] >= 250


@pytest.mark.asyncio
async def test_port_check_peer_hangup_is_clean_close(tcp_server) -> None:
    async def hang_up(reader, writer):
        return None

    async with tcp_server(hang_up) as port:
        result = await PortCheck(_port_target(port), timeout_seconds=5.0).run()

    assert result.status_code == 0
    assert "end" in result.timings
    assert "readable" not in result.timings


def test_port_check_settles_once() -> None:
    check = PortCheck(_port_target(1), timeout_seconds=1.0)
    ctx = check.new_context()
    check.handle(ctx, Event.ERROR, ConnectionResetError("reset"))
    first = ctx.result
    check.handle(ctx, Event.TIMEOUT)
    check.handle(ctx, Event.CLOSE)
    assert ctx.result is first
    assert first is not None and first.status_code == -1
    assert first.error == "ConnectionResetError: reset"


@pytest.mark.parametrize(
    ("line", "event"),
    [
        ("220 mx.example.com ESMTP\r\n", Event.GREETING),
        ("220\r\n", Event.GREETING),
        ("220-mx.example.com first line\r\n", Event.DATA),
        ("250-mx.example.com\r\n", Event.REPLY_OK),
        ("250 OK\r\n", Event.REPLY_OK),
        ("554 go away\r\n", Event.DATA),
    ],
)
def test_classify_line(line: str, event: Event) -> None:
    assert classify_line(line) is event


def _smtp_server(received: list[str], *, greeting_chunks: list[bytes]):
    async def handler(reader, writer):
        for chunk in greeting_chunks:
            writer.write(chunk)
            await writer.drain()
            await asyncio.sleep(0.05)
        while True:
            line = await reader.readline()
            if not line:
                break
            received.append(line.decode("utf-8").strip())
            if line.startswith(b"EHLO"):
                writer.write(b"250-mx.test\r\n250 OK\r\n")
                await writer.drain()

    return handler


@pytest.mark.asyncio
async def test_smtp_check_greeting_and_ehlo(tcp_server) -> None:
    received: list[str] = []
    async with tcp_server(_smtp_server(received, greeting_chunks=[b"220 mx.test ESMTP\r\n"])) as port:
        result = await SmtpCheck(_smtp_target(port), timeout_seconds=5.0).run()

    assert result.status_code == 0
    assert "readable" in result.timings
    assert result.durations["readable"] >= 0
    assert received == ["EHLO lambda-watchtower.test"]


@pytest.mark.asyncio
async def test_smtp_check_reassembles_fragmented_greeting(tcp_server) -> None:
    received: list[str] = []
    chunks = [b"22", b"0 mx.test", b" ESMTP\r\n"]
    async with tcp_server(_smtp_server(received, greeting_chunks=chunks)) as port:
        result = await SmtpCheck(_smtp_target(port), timeout_seconds=5.0, ehlo_identity="monitor.test").run()

    assert result.status_code == 0
    assert "readable" in result.timings
    assert received == ["EHLO monitor.test"]


@pytest.mark.asyncio
async def test_smtp_check_sends_ehlo_once_for_multiline_greeting(tcp_server) -> None:
    received: list[str] = []
    chunks = [b"220-mx.test welcome\r\n220-more text\r\n220 ready\r\n"]
    async with tcp_server(_smtp_server(received, greeting_chunks=chunks)) as port:
        result = await SmtpCheck(_smtp_target(port), timeout_seconds=5.0).run()

    assert result.status_code == 0
    assert received == ["EHLO lambda-watchtower.test"]


@pytest.mark.asyncio
async def test_smtp_check_rejected_greeting_is_clean_close(tcp_server) -> None:
    async def reject(reader, writer):
        writer.write(b"554 no service\r\n")
        await writer.drain()

    async with tcp_server(reject) as port:
        result = await SmtpCheck(_smtp_target(port), timeout_seconds=5.0).run()

    assert result.status_code == 0
    assert "readable" not in result.timings
    assert "end" in result.timings


@pytest.mark.asyncio
async def test_smtp_check_without_greeting_times_out(tcp_server) -> None:
    async def mute(reader, writer):
        await _drain(reader)

    async with tcp_server(mute) as port:
        result = await SmtpCheck(_smtp_target(port), timeout_seconds=0.3).run()

    assert result.status_code == -1
    assert result.durations["readable"] == -1
    assert result.durations["connect"] >= 0


@pytest.mark.asyncio
async def test_resolve_keeps_every_address_in_order(resolve_to) -> None:
    resolve_to("::1", "127.0.0.1", "::1")
    addresses = await PortCheck(_port_target(25), timeout_seconds=1.0).resolve("dual.test", 25)
    assert addresses == ["::1", "127.0.0.1"]


@pytest.mark.asyncio
async def test_port_check_falls_back_to_next_address(tcp_server, resolve_to) -> None:
    async def banner(reader, writer):
        writer.write(b"hello\r\n")
        await writer.drain()
        await _drain(reader)

    async with tcp_server(banner) as port:
        # nothing listens on ::1, only on 127.0.0.1
        resolve_to("::1", "127.0.0.1")
        target = Target(name="dual", type=CheckType.PORT, hostname="dual.test", port=port)
        result = await PortCheck(target, timeout_seconds=5.0).run()

    assert result.status_code == 0
    assert result.error is None
    assert "readable" in result.timings


@pytest.mark.asyncio
async def test_smtp_check_falls_back_to_next_address(tcp_server, resolve_to) -> None:
    received: list[str] = []
    async with tcp_server(_smtp_server(received, greeting_chunks=[b"220 mx.test ESMTP\r\n"])) as port:
        resolve_to("::1", "127.0.0.1")
        target = Target(name="dual", type=CheckType.SMTP, hostname="dual.test", port=port)
        result = await SmtpCheck(target, timeout_seconds=5.0).run()

    assert result.status_code == 0
    assert received == ["EHLO lambda-watchtower.test"]


@pytest.mark.asyncio
async def test_port_check_reports_last_address_when_all_fail(resolve_to, unused_port: int) -> None:
    resolve_to("::1", "127.0.0.1")
    target = Target(name="dual", type=CheckType.PORT, hostname="dual.test", port=unused_port)
    result = await PortCheck(target, timeout_seconds=5.0).run()

    assert result.status_code == -1
    assert result.error is not None and "127.0.0.1" in result.error
    assert "lookup" in result.timings
    assert "connect" not in result.timings


@pytest.mark.asyncio
@pytest.mark.parametrize("check_cls", [PortCheck, SmtpCheck])
async def test_timeout_during_lookup_leaves_only_total(check_cls, stalled_resolver) -> None:
    stalled_resolver()
    target = Target(name="stuck", type=check_cls.check_type, hostname="stuck.test", port=25)
    result = await check_cls(target, timeout_seconds=0.2).run()

    assert result.status_code == -1
    assert result.error is not None and result.error.startswith("timeout")
    assert set(result.timings) == {"start", "close"}
    assert result.durations["total"] >= 150
    assert all(v == -1 for k, v in result.durations.items() if k != "total")


@pytest.mark.asyncio
async def test_run_raises_when_context_never_settles(monkeypatch: pytest.MonkeyPatch, unused_port: int) -> None:
    monkeypatch.setattr(ProbeContext, "settle", lambda self, status_code: False)
    with pytest.raises(RuntimeError, match="without a result"):
        await PortCheck(_port_target(unused_port), timeout_seconds=1.0).run()
