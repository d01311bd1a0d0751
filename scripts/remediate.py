#!/usr/bin/env python3
"""
scripts/remediate.py — Start / poll / restart units of the fleet.

Runs independently of the validation run. Starting, restarting and log
tailing go through docker compose (scripts/supervisor.py); health polling
goes through the same liveness probes the validation run uses.

Usage:
    python3 scripts/remediate.py                 # same as `all`
    python3 scripts/remediate.py all
    python3 scripts/remediate.py infrastructure | core | plugins
    python3 scripts/remediate.py env
    python3 scripts/remediate.py logs identity-service --lines 100
    python3 scripts/remediate.py restart pagi-external-gateway

`all`: infrastructure → poll infrastructure → core services → warm-up →
plugins → warm-up → env advisory → poll critical units → restart the
unhealthy ones. Restarted units are not polled again; re-run
scripts/validate.py to confirm them.
"""

from __future__ import annotations

import argparse
import pathlib
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

from pydantic import ValidationError  # noqa: E402

from config.settings import Settings, load_settings  # noqa: E402
from scripts.health import ProbeResult  # noqa: E402
from scripts.health.probe import check_port, probe  # noqa: E402
from scripts.registry import Registry, ServiceEndpoint, UnitEntry, load_registry  # noqa: E402
from scripts.report import RunLog  # noqa: E402
from scripts.supervisor import CommandResult, Supervisor  # noqa: E402

LOG_PREFIX = "remediation"


class UnitState(str, Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    POLLING = "polling"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ActionKind(str, Enum):
    START = "start"
    POLL_HEALTH = "poll_health"
    RESTART = "restart"


@dataclass(frozen=True)
class RemediationAction:
    target_unit: str
    kind: ActionKind
    max_attempts: int = 1
    interval_seconds: float = 0.0

    def describe(self) -> str:
        if self.kind is ActionKind.POLL_HEALTH:
            return (
                f"{self.kind.value} {self.target_unit} "
                f"(up to {self.max_attempts} attempts, {self.interval_seconds:g}s apart)"
            )
        return f"{self.kind.value} {self.target_unit}"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class All:
    pass


@dataclass(frozen=True)
class Infrastructure:
    pass


@dataclass(frozen=True)
class Core:
    pass


@dataclass(frozen=True)
class Plugins:
    pass


@dataclass(frozen=True)
class Env:
    pass


@dataclass(frozen=True)
class Logs:
    unit: str
    lines: int | None = None


@dataclass(frozen=True)
class Restart:
    unit: str


Command = All | Infrastructure | Core | Plugins | Env | Logs | Restart


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class RemediationController:
    def __init__(
        self,
        cfg: Settings,
        registry: Registry,
        supervisor: Supervisor,
        log: RunLog,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self.registry = registry
        self.supervisor = supervisor
        self.log = log
        self.sleep = sleep
        self.states: dict[str, UnitState] = {}

    def _echo(self, result: CommandResult) -> None:
        for line in result.output.splitlines():
            if line.strip():
                self.log.info(f"  {line}")

    def _compose_ready(self) -> bool:
        if self.supervisor.available():
            return True
        self.log.error("Docker Compose not found. Install Docker with the compose plugin.")
        return False

    # ------------------------------------------------------------------
    # Single-unit operations
    # ------------------------------------------------------------------

    def start_unit(self, name: str) -> bool:
        """Issue one start command; a failure here is terminal for this invocation."""
        action = RemediationAction(name, ActionKind.START)
        self.states[name] = UnitState.STARTING
        self.log.info(f"Action: {action.describe()}")
        result = self.supervisor.up(self.registry.compose_services(name))
        self._echo(result)
        if result.ok:
            self.log.fixed(f"{name} started")
            return True
        self.states[name] = UnitState.UNHEALTHY
        self.log.error(f"Failed to start {name}")
        return False

    def _liveness(self, name: str, endpoint: ServiceEndpoint) -> ProbeResult:
        timeout = self.cfg.HEALTH_POLL_TIMEOUT_SECONDS
        if endpoint.base_url.startswith("tcp://"):
            host = endpoint.base_url.removeprefix("tcp://")
            return check_port(name, host, endpoint.port, timeout=timeout)
        return probe(name, "GET", endpoint.liveness_url, timeout=timeout)

    def poll_health(
        self,
        name: str,
        endpoint: ServiceEndpoint,
        max_attempts: int,
        interval_seconds: float,
    ) -> UnitState:
        """Probe liveness until the first pass or until max_attempts are used up.

        Sleeps only between attempts, so a unit healthy on attempt N costs
        N probes and N - 1 intervals.
        """
        action = RemediationAction(name, ActionKind.POLL_HEALTH, max_attempts, interval_seconds)
        self.log.info(f"Action: {action.describe()}")
        self.states[name] = UnitState.POLLING
        for attempt in range(1, max_attempts + 1):
            if self._liveness(name, endpoint).passed:
                self.states[name] = UnitState.HEALTHY
                self.log.fixed(f"{name} is healthy (attempt {attempt}/{max_attempts})")
                return UnitState.HEALTHY
            if attempt < max_attempts:
                self.sleep(interval_seconds)
        self.states[name] = UnitState.UNHEALTHY
        self.log.error(f"{name} did not become healthy after {max_attempts} attempts")
        return UnitState.UNHEALTHY

    def poll_unit(self, unit: UnitEntry) -> UnitState:
        return self.poll_health(
            unit.name,
            self.registry.endpoint(unit.name),
            self.cfg.HEALTH_POLL_ATTEMPTS,
            self.cfg.HEALTH_POLL_INTERVAL_SECONDS,
        )

    def restart_unit(self, name: str) -> bool:
        action = RemediationAction(name, ActionKind.RESTART)
        self.log.info(f"Action: {action.describe()}")
        for service in self.registry.compose_services(name):
            result = self.supervisor.restart(service)
            self._echo(result)
            if not result.ok:
                self.log.error(f"Failed to restart {service}")
                return False
        self.log.fixed(f"{name} restarted")
        self.sleep(self.cfg.RESTART_SETTLE_SECONDS)
        return True

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def _start_group(self, label: str, units: list[UnitEntry], warmup: float) -> bool:
        services = [s for u in units for s in u.compose_services]
        self.log.info(f"Starting {label}: {', '.join(u.name for u in units)}")
        for unit in units:
            self.states[unit.name] = UnitState.STARTING
        result = self.supervisor.up(services)
        self._echo(result)
        if not result.ok:
            for unit in units:
                self.states[unit.name] = UnitState.UNHEALTHY
            self.log.error(f"Failed to start {label}")
            return False
        self.log.fixed(f"{label.capitalize()} started")
        self.log.info(f"Waiting {warmup:g}s for {label} to be ready...")
        self.sleep(warmup)
        return True

    def remediate_infrastructure(self) -> bool:
        self.log.phase("Remediating Infrastructure")
        if not self._compose_ready():
            return False
        units = self.registry.managed_units("infrastructure")
        for unit in units:
            if not self.start_unit(unit.name):
                return False
            self.sleep(self.cfg.INFRA_SETTLE_SECONDS)
        self.log.info(f"Waiting {self.cfg.INFRA_WARMUP_SECONDS:g}s for infrastructure to be ready...")
        self.sleep(self.cfg.INFRA_WARMUP_SECONDS)
        for unit in units:
            if self.poll_unit(unit) is not UnitState.HEALTHY:
                self.log.error("Infrastructure did not become healthy")
                return False
        self.log.fixed("Infrastructure healthy")
        return True

    def remediate_core(self) -> bool:
        self.log.phase("Remediating Core Services")
        if not self._compose_ready():
            return False
        return self._start_group(
            "core services", self.registry.managed_units("service"), self.cfg.CORE_WARMUP_SECONDS
        )

    def remediate_plugins(self) -> bool:
        self.log.phase("Remediating Plugins")
        if not self._compose_ready():
            return False
        return self._start_group(
            "plugins", self.registry.managed_units("plugin"), self.cfg.PLUGIN_WARMUP_SECONDS
        )

    def check_env(self) -> list[str]:
        """Report unset optional variables. Absence is never a failure."""
        self.log.phase("Checking Environment Variables")
        missing = self.cfg.unset_optional_vars
        if missing:
            self.log.warn("Optional environment variables not set:")
            for name in missing:
                self.log.warn(f"  - {name} (optional)")
            self.log.warn("These are optional but enable playbook sync and relay checks")
        else:
            self.log.fixed("All optional environment variables configured")
        return missing

    def remediate_all(self) -> int:
        if not self.remediate_infrastructure():
            return 1
        if not self.remediate_core():
            return 1
        if not self.remediate_plugins():
            return 1
        self.check_env()

        self.log.info()
        self.log.phase("Verifying Critical Services")
        restart_failed = False
        for unit in self.registry.critical_units():
            if self.poll_unit(unit) is UnitState.UNHEALTHY:
                if not self.restart_unit(unit.name):
                    restart_failed = True
        if restart_failed:
            self.log.error("Remediation incomplete: a critical unit could not be restarted")
            return 1

        self.log.info()
        self.log.fixed("Remediation complete!")
        restarted = [n for n, s in self.states.items() if s is UnitState.UNHEALTHY]
        if restarted:
            self.log.warn(f"Restarted but not re-verified: {', '.join(restarted)}")
        self.log.info("Run python scripts/validate.py to verify")
        return 0

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def view_logs(self, name: str, lines: int) -> int:
        ok = True
        for service in self.registry.compose_services(name):
            self.log.info(f"Recent logs for {service} (last {lines} lines):")
            result = self.supervisor.logs(service, lines)
            self._echo(result)
            if not result.ok:
                self.log.error(f"Could not read logs for {service}")
                ok = False
        return 0 if ok else 1

    def restart(self, name: str) -> int:
        return 0 if self.restart_unit(name) else 1


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Start, poll and restart fleet units.")
    parser.add_argument("--env-file", default=".env", help="env file merged under os.environ")
    sub = parser.add_subparsers(dest="action", metavar="ACTION")
    sub.add_parser("all", help="full remediation (default)")
    sub.add_parser("infrastructure", help="start Redis and Kafka and wait for them")
    sub.add_parser("core", help="start core services")
    sub.add_parser("plugins", help="start plugins")
    sub.add_parser("env", help="report unset optional environment variables")
    logs = sub.add_parser("logs", help="show recent logs of a unit")
    logs.add_argument("unit", help="registry unit name or compose service name")
    logs.add_argument("--lines", type=int, default=None, help="number of lines (default LOG_TAIL_LINES)")
    restart = sub.add_parser("restart", help="restart a unit")
    restart.add_argument("unit", help="registry unit name or compose service name")
    return parser


def parse_command(args: argparse.Namespace) -> Command:
    match args.action:
        case None | "all":
            return All()
        case "infrastructure":
            return Infrastructure()
        case "core":
            return Core()
        case "plugins":
            return Plugins()
        case "env":
            return Env()
        case "logs":
            return Logs(args.unit, args.lines)
        case "restart":
            return Restart(args.unit)
    raise ValueError(f"unknown action '{args.action}'")


def dispatch(command: Command, controller: RemediationController) -> int:
    match command:
        case All():
            return controller.remediate_all()
        case Infrastructure():
            return 0 if controller.remediate_infrastructure() else 1
        case Core():
            return 0 if controller.remediate_core() else 1
        case Plugins():
            return 0 if controller.remediate_plugins() else 1
        case Env():
            controller.check_env()
            return 0
        case Logs(unit=unit, lines=lines):
            return controller.view_logs(unit, lines or controller.cfg.LOG_TAIL_LINES)
        case Restart(unit=unit):
            return controller.restart(unit)
    raise ValueError(f"unhandled command {command!r}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    command = parse_command(args)

    try:
        cfg = load_settings(args.env_file)
        registry = load_registry(cfg.registry_path, cfg.BASE_URL)
    except (ValidationError, ValueError, FileNotFoundError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    log = RunLog(cfg.log_path(LOG_PREFIX))
    try:
        log.info("=========================================")
        log.info("Fleet Auto-Remediation")
        log.info("=========================================")
        log.info(f"Log file: {log.path}")
        log.info()
        controller = RemediationController(cfg, registry, Supervisor.from_settings(cfg), log)
        return dispatch(command, controller)
    finally:
        log.close()


if __name__ == "__main__":
    sys.exit(main())
