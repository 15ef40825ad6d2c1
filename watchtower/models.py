from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class CheckType(str, Enum):
    HTTP = "http"
    PORT = "port"
    SMTP = "smtp"

    @classmethod
    def parse(cls, value: Any) -> "CheckType":
        s = str(value or "").strip().lower()
        # "http(s)" is how targets were historically documented.
        if s in {"", "http", "https", "http(s)"}:
            return cls.HTTP
        try:
            return cls(s)
        except ValueError:
            raise ValueError(f"Unknown check type {value!r}; expected http, port or smtp") from None


@dataclass(frozen=True)
class Target:
    name: str
    type: CheckType = CheckType.HTTP
    url: str | None = None
    hostname: str | None = None
    port: int | None = None
    component: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Target":
        if not isinstance(raw, dict):
            raise ValueError(f"Target must be a mapping, got {type(raw).__name__}")

        check_type = CheckType.parse(raw.get("type"))
        url = str(raw.get("url") or "").strip() or None
        hostname = str(raw.get("hostname") or "").strip() or None
        port_raw = raw.get("port")
        port = int(port_raw) if port_raw not in (None, "") else None

        if check_type is CheckType.HTTP:
            if not url:
                raise ValueError("http targets require a url")
        else:
            if not hostname or port is None:
                raise ValueError(f"{check_type.value} targets require hostname and port")
            if not 0 < port < 65536:
                raise ValueError(f"port out of range: {port}")

        name = str(raw.get("name") or "").strip() or url or f"{hostname}:{port}"
        component = raw.get("component")
        return cls(
            name=name,
            type=check_type,
            url=url,
            hostname=hostname,
            port=port,
            component=str(component) if component not in (None, "") else None,
        )


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe.

    `status_code` is the HTTP status for http checks. For port/smtp checks `0`
    means a clean close and `-1` a socket error or timeout. An http probe that
    failed before any status was received reports `0`.
    """

    name: str
    check_type: CheckType
    status_code: int
    timings: dict[str, int]
    durations: dict[str, int]
    component: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class MetricRecord:
    metric_name: str
    dimension_name: str
    dimension_value: str
    value: float
    timestamp: datetime
    unit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "MetricName": self.metric_name,
            "Dimensions": [{"Name": self.dimension_name, "Value": self.dimension_value}],
            "Value": self.value,
            "Timestamp": self.timestamp.isoformat(),
        }
        if self.unit:
            out["Unit"] = self.unit
        return out


@dataclass(frozen=True)
class Incident:
    incident_id: str
    name: str
    status: str
    message: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Incident":
        if not isinstance(raw, dict):
            raise ValueError(f"Unexpected incident payload (not a JSON object): {raw!r}")
        return cls(
            incident_id=str(raw.get("incidentID") or raw.get("incident_id") or ""),
            name=str(raw.get("name") or ""),
            status=str(raw.get("status") or ""),
            message=str(raw.get("message") or ""),
            raw=dict(raw),
        )

    @property
    def is_open(self) -> bool:
        return self.status != "Resolved"
