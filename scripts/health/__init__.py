"""
scripts/health — Probe primitives and the classified result type.

Every probe returns exactly one ProbeResult. The orchestrator and the
remediation controller consume them; scripts/report.py serialises them.

Usage:
    from scripts.health import ProbeResult, Status
    from scripts.health.probe import probe, extract_field
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_timestamp() -> str:
    return datetime.now(tz=UTC).strftime(TIMESTAMP_FORMAT)


class Status(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


@dataclass(frozen=True)
class ProbeResult:
    name: str
    status: Status
    message: str = ""
    remediation: str | None = None
    timestamp: str = field(default_factory=utc_timestamp)
    # Raw response body, kept for field extraction; never serialised.
    body: str | None = field(default=None, repr=False, compare=False)

    @property
    def passed(self) -> bool:
        return self.status is Status.PASS

    @property
    def failed(self) -> bool:
        return self.status is Status.FAIL

    def to_record(self) -> dict[str, str]:
        record = {"name": self.name, "status": self.status.value}
        if self.message:
            record["message"] = self.message
        if self.remediation:
            record["remediation"] = self.remediation
        record["timestamp"] = self.timestamp
        return record


def passed(name: str, message: str, body: str | None = None) -> ProbeResult:
    return ProbeResult(name, Status.PASS, message, body=body)


def failed(
    name: str, message: str, remediation: str | None = None, body: str | None = None
) -> ProbeResult:
    return ProbeResult(name, Status.FAIL, message, remediation, body=body)


def skipped(name: str, message: str) -> ProbeResult:
    return ProbeResult(name, Status.SKIP, message)
