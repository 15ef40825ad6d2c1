"""Uptime prober: HTTP(S), TCP port and SMTP checks with phase timings."""

from watchtower.dispatcher import run_probes
from watchtower.handler import handle
from watchtower.models import CheckType, Incident, MetricRecord, ProbeResult, Target

__all__ = ["CheckType", "Incident", "MetricRecord", "ProbeResult", "Target", "handle", "run_probes"]
