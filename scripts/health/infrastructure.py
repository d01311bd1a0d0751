"""
scripts/health/infrastructure.py — Redis / Kafka reachability checks.

Both are checked for raw TCP reachability only, not protocol health.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scripts.health import ProbeResult
from scripts.health.probe import check_port

if TYPE_CHECKING:
    from scripts.registry import UnitEntry

LABELS = {"redis": "Redis", "kafka": "Kafka"}


def label(unit: UnitEntry) -> str:
    return LABELS.get(unit.name, unit.name)


def start_hint(unit: UnitEntry) -> str:
    return f"Start {label(unit)}: docker compose up -d {' '.join(unit.compose_services)}"


def check_unit(unit: UnitEntry) -> ProbeResult:
    return check_port(label(unit), unit.host, unit.port, remediation=start_hint(unit))

