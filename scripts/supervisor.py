"""
scripts/supervisor.py — docker compose wrapper used by the remediation controller.

Every call is a single subprocess.run with a timeout; nothing is retried
here. Timeouts and a missing docker binary come back as a failed
CommandResult instead of raising.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from config.settings import Settings


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    output: str


class Supervisor:
    def __init__(self, compose_args: list[str], timeout_seconds: int = 300) -> None:
        self.compose_args = compose_args
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, cfg: Settings) -> Supervisor:
        return cls(cfg.compose_args(), cfg.COMPOSE_TIMEOUT_SECONDS)

    def _run(self, args: list[str], timeout: int | None = None) -> CommandResult:
        cmd = self.compose_args + args
        limit = timeout or self.timeout_seconds
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=limit)
        except subprocess.TimeoutExpired:
            return CommandResult(False, f"{' '.join(cmd)} timed out ({limit}s)")
        except OSError as e:
            return CommandResult(False, f"could not run {cmd[0]}: {e}")
        output = (result.stdout + "\n" + result.stderr).strip()
        return CommandResult(result.returncode == 0, output)

    def available(self) -> bool:
        return self._run(["version"], timeout=30).ok

    def up(self, services: list[str]) -> CommandResult:
        return self._run(["up", "-d", *services])

    def restart(self, service: str) -> CommandResult:
        return self._run(["restart", service])

    def logs(self, service: str, lines: int) -> CommandResult:
        return self._run(["logs", f"--tail={lines}", service])
