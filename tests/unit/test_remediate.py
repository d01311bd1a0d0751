"""Unit tests for scripts.remediate (start / poll / restart controller and CLI)."""

from __future__ import annotations

import io

import pytest

from scripts import remediate as remediate_module
from scripts.remediate import (
    All,
    Env,
    Logs,
    RemediationController,
    Restart,
    UnitState,
    build_parser,
    dispatch,
    parse_command,
)
from scripts.registry import ServiceEndpoint
from scripts.report import RunLog
from scripts.supervisor import CommandResult


class FakeSupervisor:
    def __init__(self, available: bool = True, fail_up=(), fail_restart=()):
        self.calls: list[tuple] = []
        self._available = available
        self._fail_up = set(fail_up)
        self._fail_restart = set(fail_restart)

    def available(self) -> bool:
        self.calls.append(("available",))
        return self._available

    def up(self, services: list[str]) -> CommandResult:
        self.calls.append(("up", tuple(services)))
        ok = not (set(services) & self._fail_up)
        return CommandResult(ok, "" if ok else "service failed to start")

    def restart(self, service: str) -> CommandResult:
        self.calls.append(("restart", service))
        return CommandResult(service not in self._fail_restart, "")

    def logs(self, service: str, lines: int) -> CommandResult:
        self.calls.append(("logs", service, lines))
        return CommandResult(True, "line one\nline two")

    def actions(self, kind: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == kind]


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def controller_for(make_cfg, registry, sleeps, tmp_path):
    def _make(supervisor=None, **cfg_overrides):
        log = RunLog(tmp_path / "remediation.log", stream=io.StringIO())
        return RemediationController(
            make_cfg(**cfg_overrides), registry, supervisor or FakeSupervisor(), log, sleep=sleeps.append
        )

    return _make


def _log_text(tmp_path) -> str:
    return (tmp_path / "remediation.log").read_text()


class TestPollHealth:
    def test_healthy_on_third_attempt(self, fleet, controller_for, registry, sleeps):
        fleet.set("GET", 8002, "/healthz", (503, ""), (503, ""), (200, '{"status": "ok"}'))
        controller = controller_for()
        state = controller.poll_health("identity-service", registry.endpoint("identity-service"), 30, 1.0)
        assert state is UnitState.HEALTHY
        assert fleet.calls_to(8002, "/healthz") == 3
        assert sleeps == [1.0, 1.0]

    def test_exhausted_attempts_are_unhealthy(self, fleet, controller_for, registry, sleeps):
        fleet.set("GET", 8002, "/healthz", (503, ""))
        controller = controller_for()
        state = controller.poll_health("identity-service", registry.endpoint("identity-service"), 3, 0.5)
        assert state is UnitState.UNHEALTHY
        assert controller.states["identity-service"] is UnitState.UNHEALTHY
        assert fleet.calls_to(8002, "/healthz") == 3
        assert sleeps == [0.5, 0.5]

    def test_unreachable_counts_as_unhealthy_attempt(self, fleet, controller_for, registry):
        fleet.down_ports.add(8010)
        state = controller_for().poll_health("external-gateway", registry.endpoint("external-gateway"), 2, 1.0)
        assert state is UnitState.UNHEALTHY
        assert fleet.calls_to(8010) == 2

    def test_garbled_reply_counts_as_unhealthy_attempt(self, raw_server, controller_for, sleeps):
        port = raw_server(b"-ERR unknown command\r\n")
        endpoint = ServiceEndpoint("garbled-unit", "http://127.0.0.1", port)
        state = controller_for().poll_health("garbled-unit", endpoint, 2, 0.1)
        assert state is UnitState.UNHEALTHY
        assert sleeps == [0.1]

    def test_infrastructure_polled_by_port(self, fleet, controller_for, registry):
        state = controller_for().poll_health("redis", registry.endpoint("redis"), 1, 1.0)
        assert state is UnitState.HEALTHY
        assert fleet.port_checks == [6379]
        assert fleet.calls == []


class TestStartAndRestart:
    def test_start_failure_is_reported(self, fleet, controller_for):
        supervisor = FakeSupervisor(fail_up={"redis"})
        controller = controller_for(supervisor)
        assert controller.start_unit("redis") is False
        assert controller.states["redis"] is UnitState.UNHEALTHY
        assert supervisor.actions("up") == [("up", ("redis",))]

    def test_restart_settles(self, fleet, controller_for, sleeps):
        supervisor = FakeSupervisor()
        controller = controller_for(supervisor, RESTART_SETTLE_SECONDS=3)
        assert controller.restart_unit("kafka") is True
        assert supervisor.actions("restart") == [("restart", "zookeeper"), ("restart", "kafka")]
        assert sleeps == [3.0]

    def test_restart_unknown_name_passes_through(self, fleet, controller_for):
        supervisor = FakeSupervisor()
        assert controller_for(supervisor).restart("pagi-external-gateway") == 0
        assert supervisor.actions("restart") == [("restart", "pagi-external-gateway")]


class TestGroups:
    def test_infrastructure_starts_then_polls(self, fleet, controller_for, sleeps):
        supervisor = FakeSupervisor()
        assert controller_for(supervisor).remediate_infrastructure() is True
        assert supervisor.actions("up") == [("up", ("redis",)), ("up", ("zookeeper", "kafka"))]
        assert sleeps == [2.0, 2.0, 10.0]
        assert fleet.port_checks == [6379, 29092]

    def test_infrastructure_never_healthy_fails(self, fleet, controller_for):
        fleet.closed_ports.add(29092)
        controller = controller_for(HEALTH_POLL_ATTEMPTS=2)
        assert controller.remediate_infrastructure() is False

    def test_compose_unavailable_stops_before_start(self, fleet, controller_for, tmp_path):
        supervisor = FakeSupervisor(available=False)
        assert controller_for(supervisor).remediate_core() is False
        assert supervisor.actions("up") == []
        assert "Docker Compose not found" in _log_text(tmp_path)

    def test_plugins_start_only_managed_units(self, fleet, controller_for, registry):
        supervisor = FakeSupervisor()
        assert controller_for(supervisor).remediate_plugins() is True
        (_, services), = supervisor.actions("up")
        assert "pagi-did-plugin" in services
        assert "pagi-ipfs-plugin" not in services


class TestRemediateAll:
    def test_healthy_fleet_needs_no_restart(self, fleet, controller_for, tmp_path):
        supervisor = FakeSupervisor()
        controller = controller_for(supervisor)
        assert controller.remediate_all() == 0
        assert [c[0] for c in supervisor.calls] == [
            "available", "up", "up", "available", "up", "available", "up",
        ]
        assert supervisor.actions("restart") == []
        assert "Remediation complete!" in _log_text(tmp_path)

    def test_unhealthy_critical_unit_is_restarted_not_reverified(self, fleet, controller_for, tmp_path):
        fleet.set("GET", 8002, "/healthz", (503, ""))
        supervisor = FakeSupervisor()
        controller = controller_for(supervisor, HEALTH_POLL_ATTEMPTS=2)
        assert controller.remediate_all() == 0
        assert supervisor.actions("restart") == [("restart", "pagi-identity-service")]
        assert fleet.calls_to(8002, "/healthz") == 2
        assert "Restarted but not re-verified: identity-service" in _log_text(tmp_path)

    def test_failed_restart_returns_one(self, fleet, controller_for):
        fleet.set("GET", 8002, "/healthz", (503, ""))
        supervisor = FakeSupervisor(fail_restart={"pagi-identity-service"})
        assert controller_for(supervisor, HEALTH_POLL_ATTEMPTS=1).remediate_all() == 1

    def test_start_failure_is_terminal(self, fleet, controller_for):
        supervisor = FakeSupervisor(fail_up={"redis"})
        assert controller_for(supervisor).remediate_all() == 1
        assert supervisor.actions("up") == [("up", ("redis",))]
        assert fleet.calls == []


class TestEnvAndLogs:
    def test_env_reports_unset_optional_vars(self, controller_for, tmp_path):
        missing = controller_for(RELAY_URL="https://relay.example").check_env()
        assert missing == ["HIVE_REPO_URL", "SWARM_REPO_URL"]
        assert "[WARN]   - HIVE_REPO_URL (optional)" in _log_text(tmp_path)

    def test_env_all_configured(self, controller_for):
        controller = controller_for(
            HIVE_REPO_URL="https://git.example/hive.git",
            SWARM_REPO_URL="https://git.example/swarm.git",
            RELAY_URL="https://relay.example",
        )
        assert controller.check_env() == []

    def test_logs_default_to_configured_tail(self, controller_for, tmp_path):
        supervisor = FakeSupervisor()
        controller = controller_for(supervisor, LOG_TAIL_LINES=25)
        assert dispatch(Logs("identity-service"), controller) == 0
        assert supervisor.actions("logs") == [("logs", "pagi-identity-service", 25)]
        assert "line two" in _log_text(tmp_path)


class TestCommands:
    def test_no_action_means_all(self):
        assert parse_command(build_parser().parse_args([])) == All()

    def test_logs_with_lines(self):
        args = build_parser().parse_args(["logs", "identity-service", "--lines", "10"])
        assert parse_command(args) == Logs("identity-service", 10)

    def test_restart_requires_unit(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["restart"])

    def test_restart_command(self):
        assert parse_command(build_parser().parse_args(["restart", "redis"])) == Restart("redis")

    def test_env_dispatch_always_succeeds(self, controller_for):
        assert dispatch(Env(), controller_for()) == 0

    def test_main_runs_env_check(self, make_cfg, monkeypatch, tmp_path):
        cfg = make_cfg()
        monkeypatch.setattr(remediate_module, "load_settings", lambda env_file: cfg)
        monkeypatch.setattr(remediate_module.Supervisor, "from_settings", lambda cfg: FakeSupervisor())
        assert remediate_module.main(["env"]) == 0
        assert "Checking Environment Variables" in (tmp_path / "run.log").read_text()
