"""Invocation payload model and environment defaults."""

from __future__ import annotations

import os
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from watchtower.checks import DEFAULT_EHLO_IDENTITY
from watchtower.metrics import DEFAULT_LOG_TIMINGS, DEFAULT_NAMESPACE
from watchtower.models import Target
from watchtower.status_page import StatusPageConfig
from watchtower.timing import INTERVALS

DEFAULT_TIMEOUT_MS = 5000


class RequestValidationError(ValueError):
    """The invocation payload is unusable; no probe was started."""


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


class CheckRequest(BaseModel):
    """One check run: the targets plus how to report them."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    targets: list[Target] = Field(description="Targets to probe")
    log_timings: list[str] = Field(
        default_factory=lambda: list(DEFAULT_LOG_TIMINGS),
        alias="logTimings",
        description="Durations shipped as metrics next to the status",
    )
    namespace: str = Field(
        default_factory=lambda: os.getenv("WATCHTOWER_NAMESPACE") or DEFAULT_NAMESPACE,
        description="Metrics namespace",
    )
    timeout: float = Field(
        default_factory=lambda: _env_float("WATCHTOWER_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
        gt=0,
        description="Per-probe timeout in milliseconds",
    )
    api_host: Optional[str] = Field(default_factory=lambda: os.getenv("STATUS_API_HOST") or None)
    api_key: Optional[str] = Field(default_factory=lambda: os.getenv("STATUS_API_KEY") or None)
    ehlo_identity: str = Field(default=DEFAULT_EHLO_IDENTITY, description="Hostname sent with SMTP EHLO")
    metrics_endpoint: Optional[str] = Field(
        default_factory=lambda: os.getenv("WATCHTOWER_METRICS_ENDPOINT") or None,
        description="Collector URL for HttpMetricsSink; batches are only logged when unset",
    )

    @field_validator("targets", mode="before")
    @classmethod
    def _parse_targets(cls, value: Any) -> list[Target]:
        if not isinstance(value, list):
            raise ValueError("targets must be a list")
        out: list[Target] = []
        for idx, item in enumerate(value):
            if isinstance(item, Target):
                out.append(item)
                continue
            try:
                out.append(Target.from_dict(item))
            except ValueError as exc:
                raise ValueError(f"targets[{idx}]: {exc}") from exc
        return out

    @field_validator("log_timings")
    @classmethod
    def _known_timings(cls, value: list[str]) -> list[str]:
        unknown = [t for t in value if t not in INTERVALS]
        if unknown:
            raise ValueError(f"unknown timings {unknown}; expected any of {sorted(INTERVALS)}")
        return value

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0

    def status_page(self) -> StatusPageConfig | None:
        if not self.api_host or not self.api_key:
            return None
        return StatusPageConfig(api_host=self.api_host, api_key=self.api_key)


def parse_request(payload: Any) -> CheckRequest:
    if not isinstance(payload, dict) or payload.get("targets") is None:
        raise RequestValidationError("No targets given")
    try:
        return CheckRequest.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError(str(exc)) from exc
