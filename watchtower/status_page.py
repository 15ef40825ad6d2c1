from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from watchtower.models import Incident


@dataclass(frozen=True)
class StatusPageConfig:
    api_host: str
    api_key: str
    timeout_seconds: float = 15.0

    @property
    def base_url(self) -> str:
        return f"https://{self.api_host.strip().rstrip('/')}/api/v0"


async def _request(
    client: httpx.AsyncClient,
    cfg: StatusPageConfig,
    method: str,
    endpoint: str,
    payload: dict[str, Any] | None = None,
) -> Any:
    resp = await client.request(
        method,
        f"{cfg.base_url}/{endpoint.lstrip('/')}",
        headers={"x-api-key": cfg.api_key},
        json=payload,
        timeout=cfg.timeout_seconds,
    )
    resp.raise_for_status()
    return resp.json()


async def list_incidents(client: httpx.AsyncClient, cfg: StatusPageConfig) -> list[Incident]:
    data = await _request(client, cfg, "GET", "incidents")
    if not isinstance(data, list):
        raise ValueError("Unexpected incidents response (not a JSON list)")
    return [Incident.from_dict(item) for item in data]


async def get_open_incidents(client: httpx.AsyncClient, cfg: StatusPageConfig) -> list[Incident]:
    return [i for i in await list_incidents(client, cfg) if i.is_open]


async def create_incident(
    client: httpx.AsyncClient, cfg: StatusPageConfig, *, name: str, status: str, message: str
) -> Incident:
    data = await _request(client, cfg, "POST", "incidents", {"name": name, "status": status, "message": message})
    return Incident.from_dict(data)


async def update_incident(
    client: httpx.AsyncClient, cfg: StatusPageConfig, incident_id: str, *, status: str, message: str
) -> Incident:
    data = await _request(client, cfg, "PATCH", f"incidents/{incident_id}", {"status": status, "message": message})
    return Incident.from_dict(data)


async def update_component(
    client: httpx.AsyncClient, cfg: StatusPageConfig, component_id: str, *, status: str
) -> dict[str, Any]:
    data = await _request(client, cfg, "PATCH", f"components/{component_id}", {"status": status})
    if not isinstance(data, dict):
        raise ValueError("Unexpected component response (not a JSON object)")
    return data
