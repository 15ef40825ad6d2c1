from __future__ import annotations

import re
from enum import Enum
from typing import Any

from watchtower.checks import DEFAULT_EHLO_IDENTITY, Event, ProbeContext, SocketCheck
from watchtower.models import CheckType

# Final line of a 220 greeting; "220-" continuation lines are not the end of it.
_GREETING_RE = re.compile(r"^220(?:[ \t\r\n]|$)")
_OK_RE = re.compile(r"^250")


class SmtpState(Enum):
    START = "start"
    CONNECTING = "connecting"
    AWAITING_GREETING = "awaiting_greeting"
    AWAITING_EHLO_REPLY = "awaiting_ehlo_reply"
    DONE = "done"
    CLOSED = "closed"


def classify_line(line: str) -> Event:
    if _GREETING_RE.match(line):
        return Event.GREETING
    if _OK_RE.match(line):
        return Event.REPLY_OK
    return Event.DATA


class SmtpCheck(SocketCheck):
    """
    Greets the server and waits for a 250 reply to EHLO.

    Reads are line-buffered, so a reply split across several TCP segments is
    still matched. No mail is sent; the probe hangs up once EHLO is accepted.
    """

    check_type = CheckType.SMTP
    State = SmtpState
    TRANSITIONS = {
        (SmtpState.START, Event.LOOKUP): (SmtpState.CONNECTING, "lookup"),
        (SmtpState.CONNECTING, Event.CONNECT): (SmtpState.AWAITING_GREETING, "connect"),
        (SmtpState.AWAITING_GREETING, Event.GREETING): (SmtpState.AWAITING_EHLO_REPLY, None),
        (SmtpState.AWAITING_EHLO_REPLY, Event.REPLY_OK): (SmtpState.DONE, "readable"),
        (SmtpState.AWAITING_GREETING, Event.END): (SmtpState.DONE, "end"),
        (SmtpState.AWAITING_EHLO_REPLY, Event.END): (SmtpState.DONE, "end"),
    }
    # StreamReader.readline raises ValueError when a line exceeds its buffer limit.
    transport_errors = (OSError, ValueError)

    def __init__(self, target, *, timeout_seconds: float, ehlo_identity: str = DEFAULT_EHLO_IDENTITY) -> None:
        super().__init__(target, timeout_seconds=timeout_seconds)
        self.ehlo_identity = ehlo_identity

    def on_transition(self, ctx: ProbeContext, event: Event, payload: Any) -> bytes | None:
        if event is Event.GREETING:
            return f"EHLO {self.ehlo_identity}\r\n".encode("utf-8")
        return None

    async def _drive(self, ctx: ProbeContext) -> None:
        waiting = (SmtpState.AWAITING_GREETING, SmtpState.AWAITING_EHLO_REPLY)
        async with self.connect(ctx) as (reader, writer):
            while ctx.state in waiting:
                line = await reader.readline()
                if not line:
                    self.handle(ctx, Event.END)
                    break
                text = line.decode("utf-8", errors="replace")
                reply = self.handle(ctx, classify_line(text), text)
                if reply:
                    writer.write(reply)
                    await writer.drain()
