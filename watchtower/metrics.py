from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

import httpx
import structlog

from watchtower.models import MetricRecord, ProbeResult

logger = structlog.get_logger(__name__)

# The metrics sink accepts at most this many records per call.
MAX_BATCH_SIZE = 10
DEFAULT_LOG_TIMINGS = ("readable", "total")
DEFAULT_NAMESPACE = "Watchtower"


class MetricsSubmissionError(RuntimeError):
    def __init__(self, message: str, *, batch_index: int | None = None) -> None:
        super().__init__(message)
        self.batch_index = batch_index


class MetricsSink(Protocol):
    async def submit(self, namespace: str, batch: Sequence[MetricRecord]) -> Any:
        ...


class HttpMetricsSink:
    """POSTs each batch as JSON (`Namespace` + `MetricData`) to a collector endpoint."""

    def __init__(self, client: httpx.AsyncClient, endpoint: str, *, timeout_seconds: float = 15.0) -> None:
        self.client = client
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds

    async def submit(self, namespace: str, batch: Sequence[MetricRecord]) -> Any:
        payload = {"Namespace": namespace, "MetricData": [r.to_dict() for r in batch]}
        resp = await self.client.post(self.endpoint, json=payload, timeout=self.timeout_seconds)
        resp.raise_for_status()
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {"body": resp.text[:500]}


class LogMetricsSink:
    """Writes batches to the log instead of shipping them."""

    async def submit(self, namespace: str, batch: Sequence[MetricRecord]) -> Any:
        logger.info(
            "metrics_batch",
            namespace=namespace,
            count=len(batch),
            metrics=json.dumps([r.to_dict() for r in batch], ensure_ascii=False),
        )
        return {"namespace": namespace, "count": len(batch)}


def build_metric_records(
    results: Sequence[ProbeResult],
    log_timings: Sequence[str] = DEFAULT_LOG_TIMINGS,
    *,
    timestamp: datetime | None = None,
) -> list[MetricRecord]:
    ts = timestamp or datetime.now(timezone.utc)
    records: list[MetricRecord] = []
    for result in results:
        records.append(
            MetricRecord(
                metric_name="status",
                dimension_name=result.name,
                dimension_value="HTTP Status",
                value=result.status_code,
                timestamp=ts,
            )
        )
        for timing in log_timings:
            records.append(
                MetricRecord(
                    metric_name=f"timing-{timing}",
                    dimension_name=result.name,
                    dimension_value=f"Timing: {timing}",
                    value=result.durations.get(timing, -1),
                    unit="Milliseconds",
                    timestamp=ts,
                )
            )
    return records


def chunk_records(records: Sequence[MetricRecord], size: int = MAX_BATCH_SIZE) -> list[list[MetricRecord]]:
    size = max(1, min(int(size), MAX_BATCH_SIZE))
    return [list(records[i : i + size]) for i in range(0, len(records), size)]


async def send_metrics(
    records: Sequence[MetricRecord],
    sink: MetricsSink,
    *,
    namespace: str = DEFAULT_NAMESPACE,
) -> list[Any]:
    """Submit all batches concurrently; any failed batch fails the whole call."""
    batches = chunk_records(records)
    outcomes = await asyncio.gather(
        *(sink.submit(namespace, batch) for batch in batches),
        return_exceptions=True,
    )
    for idx, outcome in enumerate(outcomes):
        if isinstance(outcome, Exception):
            raise MetricsSubmissionError(
                f"metrics batch {idx + 1}/{len(batches)} failed: {type(outcome).__name__}: {outcome}",
                batch_index=idx,
            ) from outcome
        if isinstance(outcome, BaseException):
            raise outcome
    logger.info("metrics_sent", namespace=namespace, records=len(records), batches=len(batches))
    return list(outcomes)
