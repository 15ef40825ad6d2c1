from __future__ import annotations

import asyncio
from typing import Sequence

import structlog

from watchtower.check_http import HttpCheck
from watchtower.check_port import PortCheck
from watchtower.check_smtp import SmtpCheck
from watchtower.checks import DEFAULT_EHLO_IDENTITY, DEFAULT_TIMEOUT_SECONDS, CheckStrategy
from watchtower.models import CheckType, ProbeResult, Target

logger = structlog.get_logger(__name__)


def strategy_for(
    target: Target,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ehlo_identity: str = DEFAULT_EHLO_IDENTITY,
) -> CheckStrategy:
    if target.type is CheckType.HTTP:
        return HttpCheck(target, timeout_seconds=timeout_seconds)
    if target.type is CheckType.PORT:
        return PortCheck(target, timeout_seconds=timeout_seconds)
    if target.type is CheckType.SMTP:
        return SmtpCheck(target, timeout_seconds=timeout_seconds, ehlo_identity=ehlo_identity)
    raise ValueError(f"Unsupported check type: {target.type!r}")


async def run_probes(
    targets: Sequence[Target],
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ehlo_identity: str = DEFAULT_EHLO_IDENTITY,
) -> list[ProbeResult]:
    """
    Probe every target concurrently and return one result per target, in input order.

    Each probe enforces its own timeout and never raises for network failures, so
    this only fails if a probe hits an unexpected error; the remaining probes are
    cancelled in that case.
    """
    strategies = [
        strategy_for(target, timeout_seconds=timeout_seconds, ehlo_identity=ehlo_identity) for target in targets
    ]
    tasks = [asyncio.create_task(s.run(), name=f"probe:{s.target.name}") for s in strategies]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    for result in results:
        log = logger.info if result.error is None else logger.warning
        log(
            "probe_finished",
            target=result.name,
            check_type=result.check_type.value,
            status_code=result.status_code,
            total_ms=result.durations.get("total"),
            error=result.error,
        )
    return list(results)
