"""Reconcile status-page incidents and components against probe results."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence, Union

import httpx
import structlog

from watchtower.models import CheckType, Incident, ProbeResult
from watchtower.status_page import (
    StatusPageConfig,
    create_incident,
    get_open_incidents,
    update_component,
    update_incident,
)

logger = structlog.get_logger(__name__)

STATUS_IDENTIFIED = "Identified"
STATUS_RESOLVED = "Resolved"
COMPONENT_OPERATIONAL = "Operational"
COMPONENT_MAJOR_OUTAGE = "Major Outage"


@dataclass(frozen=True)
class UpdateComponent:
    component_id: str
    status: str


@dataclass(frozen=True)
class CreateIncident:
    name: str
    message: str
    status: str = STATUS_IDENTIFIED


@dataclass(frozen=True)
class ResolveIncident:
    incident_id: str
    name: str
    message: str
    status: str = STATUS_RESOLVED


IncidentAction = Union[UpdateComponent, CreateIncident, ResolveIncident]


def incident_name(target_name: str) -> str:
    return f"{target_name} - Site Outage"


def is_healthy(result: ProbeResult) -> bool:
    # port/smtp probes report 0 for a clean close; http needs exactly 200
    if result.check_type is CheckType.HTTP:
        return result.status_code == 200
    return result.status_code == 0


def plan_actions(result: ProbeResult, open_incidents: Sequence[Incident]) -> list[IncidentAction]:
    healthy = is_healthy(result)
    name = incident_name(result.name)
    matching = [i for i in open_incidents if i.name == name]

    actions: list[IncidentAction] = []
    if result.component:
        actions.append(
            UpdateComponent(
                component_id=result.component,
                status=COMPONENT_OPERATIONAL if healthy else COMPONENT_MAJOR_OUTAGE,
            )
        )

    if not healthy:
        if not matching:
            actions.append(
                CreateIncident(
                    name=name,
                    message=f"{result.name} is currently unavailable (HTTP {result.status_code}).",
                )
            )
    elif len(matching) == 1:
        # zero or several matches is ambiguous and left alone
        actions.append(
            ResolveIncident(
                incident_id=matching[0].incident_id,
                name=name,
                message=f"{result.name} is currently operating normally.",
            )
        )
    return actions


async def apply_action(client: httpx.AsyncClient, cfg: StatusPageConfig, action: IncidentAction) -> None:
    if isinstance(action, UpdateComponent):
        await update_component(client, cfg, action.component_id, status=action.status)
        logger.info("component_updated", component=action.component_id, status=action.status)
    elif isinstance(action, CreateIncident):
        incident = await create_incident(client, cfg, name=action.name, status=action.status, message=action.message)
        logger.info("incident_created", incident_id=incident.incident_id, name=incident.name)
    elif isinstance(action, ResolveIncident):
        incident = await update_incident(
            client, cfg, action.incident_id, status=action.status, message=action.message
        )
        logger.info("incident_resolved", incident_id=incident.incident_id, name=incident.name)
    else:
        raise TypeError(f"Unknown incident action: {action!r}")


async def reconcile(
    results: Sequence[ProbeResult],
    client: httpx.AsyncClient,
    cfg: StatusPageConfig,
) -> list[IncidentAction]:
    """
    Best effort: fetch open incidents once, then apply every planned action
    concurrently. Failures are logged and never raised. Returns the actions
    that succeeded.
    """
    try:
        open_incidents = await get_open_incidents(client, cfg)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("incident_fetch_failed", error=f"{type(exc).__name__}: {exc}")
        return []

    actions = [action for result in results for action in plan_actions(result, open_incidents)]
    outcomes = await asyncio.gather(
        *(apply_action(client, cfg, action) for action in actions),
        return_exceptions=True,
    )

    done: list[IncidentAction] = []
    for action, outcome in zip(actions, outcomes):
        if isinstance(outcome, Exception):
            logger.warning(
                "incident_action_failed",
                action=type(action).__name__,
                detail=repr(action),
                error=f"{type(outcome).__name__}: {outcome}",
            )
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            done.append(action)
    return done
