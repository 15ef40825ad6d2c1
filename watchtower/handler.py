from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from watchtower.config import CheckRequest, parse_request
from watchtower.dispatcher import run_probes
from watchtower.incidents import reconcile
from watchtower.metrics import HttpMetricsSink, LogMetricsSink, MetricsSink, build_metric_records, send_metrics
from watchtower.models import ProbeResult

logger = structlog.get_logger(__name__)


async def _reconcile_best_effort(
    results: list[ProbeResult], request: CheckRequest, client: httpx.AsyncClient
) -> None:
    cfg = request.status_page()
    if cfg is None:
        logger.debug("status_page_disabled")
        return
    try:
        await reconcile(results, client, cfg)
    except Exception:
        logger.exception("incident_reconcile_failed")


async def handle(
    payload: Any,
    *,
    sink: MetricsSink | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[Any]:
    """
    Run one check cycle for an invocation payload.

    Returns the metrics sink's per-batch results. Raises `RequestValidationError`
    before probing when the payload has no targets, and `MetricsSubmissionError`
    when any batch fails. Status-page reconciliation runs alongside the metrics
    upload and only ever logs its failures.
    """
    request = parse_request(payload)
    logger.info("check_run_started", targets=len(request.targets), timeout_ms=request.timeout)

    results = await run_probes(
        request.targets,
        timeout_seconds=request.timeout_seconds,
        ehlo_identity=request.ehlo_identity,
    )
    records = build_metric_records(results, request.log_timings, timestamp=datetime.now(timezone.utc))

    own_client = client is None
    http_client = client or httpx.AsyncClient()
    try:
        if sink is None:
            if request.metrics_endpoint:
                sink = HttpMetricsSink(http_client, request.metrics_endpoint)
            else:
                sink = LogMetricsSink()

        sent, _ = await asyncio.gather(
            send_metrics(records, sink, namespace=request.namespace),
            _reconcile_best_effort(results, request, http_client),
            return_exceptions=True,
        )
    finally:
        if own_client:
            await http_client.aclose()

    if isinstance(sent, BaseException):
        raise sent
    return sent
