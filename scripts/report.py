"""
scripts/report.py — Result aggregation, run log and JSON report.

A RunContext is created once per run and threaded through every phase and
step. It owns:
  - the ordered PhaseRecords and the running Summary
  - the EntityHandle table (write-once)
  - the RunLog (one severity-tagged line per event, flushed immediately)
  - the ReportWriter (whole-document checkpoint after every record)

Report shapes (shared record + summary schema):
  flat:   {"timestamp", "base_url", "tests": [record, ...], "summary"}
  phased: {"phase", "timestamp", "base_url", "phases": {key: [record, ...]}, "summary"}
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal, TextIO

from scripts.health import ProbeResult, Status, utc_timestamp

ReportShape = Literal["flat", "phased"]


class PhaseState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABORTED = "aborted"


@dataclass
class Summary:
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0

    def add(self, status: Status) -> None:
        if status is Status.PASS:
            self.passed += 1
        elif status is Status.FAIL:
            self.failed += 1
        else:
            self.skipped += 1
        self.total += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


@dataclass
class PhaseRecord:
    key: str
    title: str
    state: PhaseState = PhaseState.NOT_STARTED
    results: list[ProbeResult] = field(default_factory=list)


class RunLog:
    """Line-oriented log tee'd to a stream and an append-only file."""

    def __init__(self, path: Path | None, stream: TextIO | None = None) -> None:
        self.path = path
        self._stream = stream if stream is not None else sys.stdout
        self._fh = open(path, "a", encoding="utf-8") if path is not None else None

    def emit(self, tag: str, message: str = "") -> None:
        line = f"[{tag}] {message}" if message else ""
        print(line, file=self._stream)
        if self._fh is not None:
            self._fh.write(line + "\n")
            self._fh.flush()

    def info(self, message: str = "") -> None:
        self.emit("INFO", message)

    def phase(self, message: str) -> None:
        self.emit("PHASE", message)

    def error(self, message: str) -> None:
        self.emit("ERROR", message)

    def warn(self, message: str) -> None:
        self.emit("WARN", message)

    def fixed(self, message: str) -> None:
        self.emit("FIXED", message)

    def result(self, result: ProbeResult) -> None:
        self.emit(result.status.name, f"{result.name}: {result.message}")
        if result.failed and result.remediation:
            self.emit("ERROR", f"Remediation: {result.remediation}")

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


class ReportWriter:
    """Writes the full report document atomically (temp file + os.replace).

    The file at `path` is therefore always a complete JSON document for the
    prefix of the run that has been checkpointed.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_path, self.path)


class RunContext:
    def __init__(
        self,
        title: str,
        base_url: str,
        shape: ReportShape,
        log: RunLog,
        writer: ReportWriter | None = None,
        verbose: bool = False,
    ) -> None:
        self.title = title
        self.base_url = base_url
        self.shape = shape
        self.log = log
        self.writer = writer
        self.verbose = verbose
        self.started_at = utc_timestamp()
        self.phases: list[PhaseRecord] = []
        self.summary = Summary()
        self.handles: dict[str, str] = {}
        self.aborted = False

    # ------------------------------------------------------------------
    # Entity handles
    # ------------------------------------------------------------------

    def set_handle(self, key: str, value: str) -> None:
        if key in self.handles:
            raise ValueError(f"entity handle '{key}' is already bound")
        self.handles[key] = value

    def missing_handles(self, keys: tuple[str, ...] | list[str]) -> list[str]:
        return [k for k in keys if k not in self.handles]

    # ------------------------------------------------------------------
    # Phases and results
    # ------------------------------------------------------------------

    @property
    def current(self) -> PhaseRecord | None:
        return self.phases[-1] if self.phases else None

    def begin_phase(self, key: str, title: str) -> PhaseRecord:
        if any(p.key == key for p in self.phases):
            raise ValueError(f"phase '{key}' already recorded")
        record = PhaseRecord(key, title, PhaseState.RUNNING)
        self.phases.append(record)
        self.log.phase(title)
        self.checkpoint()
        return record

    def end_phase(self, state: PhaseState = PhaseState.COMPLETED) -> None:
        record = self.current
        if record is None or record.state is not PhaseState.RUNNING:
            raise RuntimeError("no running phase to close")
        record.state = state
        if state is PhaseState.ABORTED:
            self.aborted = True
        self.log.info()
        self.checkpoint()

    def record(self, result: ProbeResult) -> ProbeResult:
        record = self.current
        if record is None or record.state is not PhaseState.RUNNING:
            raise RuntimeError(f"result '{result.name}' recorded outside a running phase")
        record.results.append(result)
        self.summary.add(result.status)
        self.log.result(result)
        if result.body and (self.verbose or result.failed):
            self.log.emit("INFO", f"  Response: {result.body[:500]}")
        self.checkpoint()
        return result

    @property
    def results(self) -> list[ProbeResult]:
        return [r for p in self.phases for r in p.results]

    # ------------------------------------------------------------------
    # Report document
    # ------------------------------------------------------------------

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {}
        if self.shape == "phased":
            document["phase"] = self.title
        document["timestamp"] = self.started_at
        document["base_url"] = self.base_url
        if self.shape == "phased":
            document["phases"] = {
                p.key: [r.to_record() for r in p.results] for p in self.phases
            }
        else:
            document["tests"] = [r.to_record() for r in self.results]
        document["summary"] = self.summary.to_dict()
        return document

    def checkpoint(self) -> None:
        if self.writer is not None:
            self.writer.write(self.to_document())

    @property
    def exit_code(self) -> int:
        return 0 if self.summary.failed == 0 else 1

    def finalize(self) -> int:
        """Write the final report, log the summary block and return the exit code."""
        if self.current is not None and self.current.state is PhaseState.RUNNING:
            self.end_phase(PhaseState.ABORTED)
        self.checkpoint()

        log = self.log
        log.info("=========================================")
        log.info(f"{self.title}: Test Summary")
        log.info("=========================================")
        log.info(f"Total:   {self.summary.total}")
        log.info(f"Passed:  {self.summary.passed}")
        log.info(f"Failed:  {self.summary.failed}")
        log.info(f"Skipped: {self.summary.skipped}")
        if self.aborted:
            log.error("Run aborted early: a required setup step failed")
        if self.writer is not None:
            log.info(f"JSON output: {self.writer.path}")

        if self.summary.failed:
            log.error("Failed Tests:")
            for result in self.results:
                if result.failed:
                    log.error(f"  - {result.name}: {result.message}")
            log.error("Remediation:")
            log.error("1. Review failed tests above")
            log.error("2. Run: python scripts/remediate.py all")
            log.error("3. Check service logs: python scripts/remediate.py logs <unit>")
            log.error("4. Verify environment variables (HIVE_REPO_URL, SWARM_REPO_URL, RELAY_URL)")
        else:
            log.emit("PASS", "All tests passed!")
        if log.path is not None:
            log.info(f"Full log: {log.path}")
        return self.exit_code
