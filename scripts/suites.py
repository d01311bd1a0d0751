"""
scripts/suites.py — Phase declarations for the two validation suites.

  swarm          phase-grouped report; infrastructure → twin bootstrap →
                 DIDComm messaging → playbook sync → refinement artifacts →
                 meta-learning → relay → multi-twin coordination
  comprehensive  flat report; every service and plugin, basic twin
                 functionality, tool registration

Paths and payloads may reference entity handles as "{twin_a_id}"; the
referenced handles become the step's prerequisites automatically. The
non-handle placeholders "{executive_url}" and "{relay_url}" are filled
from the registry and settings.

Entity-creation steps create new twins on every run; they are not
idempotent.
"""

from __future__ import annotations

import dataclasses
import string
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from scripts.health import ProbeResult, failed, passed, skipped
from scripts.health.infrastructure import check_unit, label
from scripts.health.probe import probe
from scripts.orchestrator import Phase, Policy, Step, StepContext
from scripts.registry import Registry
from scripts.report import ReportShape

TOOLS_SCRATCH = "tools"
GATEWAY = "external-gateway"
_RENDER_EXTRAS = {"executive_url", "relay_url"}


# ---------------------------------------------------------------------------
# Placeholder rendering
# ---------------------------------------------------------------------------

def _placeholders(value: Any) -> set[str]:
    if isinstance(value, str):
        return {name for _, name, _, _ in string.Formatter().parse(value) if name}
    if isinstance(value, dict):
        return set().union(*(_placeholders(v) for v in value.values())) if value else set()
    if isinstance(value, (list, tuple)):
        return set().union(*(_placeholders(v) for v in value)) if value else set()
    return set()


def _render(value: Any, values: dict[str, str]) -> Any:
    if isinstance(value, str):
        return value.format(**values)
    if isinstance(value, dict):
        return {k: _render(v, values) for k, v in value.items()}
    if isinstance(value, list):
        return [_render(v, values) for v in value]
    return value


def _render_values(step_ctx: StepContext) -> dict[str, str]:
    return {
        **step_ctx.handles,
        "executive_url": step_ctx.registry.endpoint("executive-engine").root,
        "relay_url": step_ctx.cfg.RELAY_URL or "",
    }


def _handle_refs(*templates: Any) -> tuple[str, ...]:
    names: set[str] = set()
    for template in templates:
        names |= _placeholders(template)
    return tuple(sorted(names - _RENDER_EXTRAS))


# ---------------------------------------------------------------------------
# Step constructors
# ---------------------------------------------------------------------------

def http_step(
    name: str,
    unit: str,
    path: str,
    method: str = "GET",
    expected_status: int | tuple[int, ...] = 200,
    payload: dict[str, Any] | None = None,
    *,
    produces: dict[str, str] | None = None,
    required: bool = False,
    liveness: bool = False,
    enabled_by: tuple[str, ...] = (),
    stash: str | None = None,
    needs_tool: str | None = None,
    remediation: str | None = None,
) -> Step:
    def action(step_ctx: StepContext) -> ProbeResult:
        if needs_tool is not None:
            listing = step_ctx.scratch.get(TOOLS_SCRATCH, "")
            if needs_tool not in listing:
                return skipped(name, f"tool '{needs_tool}' not registered (may not be implemented)")
        values = _render_values(step_ctx)
        url = step_ctx.registry.endpoint(unit).url(_render(path, values))
        body = _render(payload, values) if payload is not None else None
        result = probe(name, method, url, expected_status, body, timeout=step_ctx.timeout)
        if stash is not None and result.passed and result.body is not None:
            step_ctx.scratch[stash] = result.body
        if remediation is not None and result.failed:
            result = dataclasses.replace(result, remediation=remediation)
        return result

    return Step(
        name=name,
        action=action,
        produces=produces or {},
        requires=_handle_refs(path, payload),
        enabled_by=enabled_by,
        required=required,
        liveness=liveness,
    )


def health_step(name: str, unit: str, registry: Registry) -> Step:
    port = registry.unit(unit).port
    return http_step(
        name,
        unit,
        "/healthz",
        liveness=True,
        remediation=(
            f"Check if {unit} is running on port {port}: "
            f"python scripts/remediate.py logs {unit}"
        ),
    )


def port_step(unit_name: str, registry: Registry) -> Step:
    unit = registry.unit(unit_name)

    def action(step_ctx: StepContext) -> ProbeResult:
        return check_unit(unit)

    return Step(name=label(unit), action=action, liveness=True)


def capability_step(name: str, tool: str, plugin: str | None = None) -> Step:
    """Substring match of a tool name against the gateway's tool listing.

    Reuses the listing stashed by an earlier "List Tools" step of the same
    phase; otherwise fetches it (one request) and stashes it.
    """

    def action(step_ctx: StepContext) -> ProbeResult:
        listing = step_ctx.scratch.get(TOOLS_SCRATCH)
        if listing is None:
            url = step_ctx.registry.endpoint(GATEWAY).url("/tools")
            fetched = probe(name, "GET", url, timeout=step_ctx.timeout)
            if not fetched.passed:
                return fetched
            listing = fetched.body or ""
            step_ctx.scratch[TOOLS_SCRATCH] = listing
        if tool in listing:
            return passed(name, f"Tool '{tool}' is registered")
        hint = "Check plugin registration and plugin logs"
        if plugin is not None:
            hint = (
                f"Check plugin registration: curl "
                f"{step_ctx.registry.endpoint(plugin).liveness_url} and the plugin logs"
            )
        return failed(name, f"Tool '{tool}' not found in registry", hint)

    return Step(name=name, action=action)


def inspect_step(
    name: str,
    source: str,
    check: Callable[[str], tuple[bool, str]],
    remediation: str,
) -> Step:
    """Judge a body stashed by an earlier step; `check(body) -> (ok, message)`."""

    def action(step_ctx: StepContext) -> ProbeResult:
        body = step_ctx.scratch.get(source)
        if body is None:
            return failed(name, f"no {source} response to inspect", remediation)
        ok, message = check(body)
        return passed(name, message) if ok else failed(name, message, remediation)

    return Step(name=name, action=action)


def _interaction_fields(body: str) -> tuple[bool, str]:
    found = [f for f in ("status", "output", "plan") if f'"{f}"' in body]
    if found:
        return True, f"response contains {', '.join(found)}"
    return False, "response missing expected fields (status, output or plan)"


def _tool_count(body: str) -> tuple[bool, str]:
    count = body.count('"name"')
    if count > 0:
        return True, f"{count} tools available"
    return False, "no tools available"


# ---------------------------------------------------------------------------
# Swarm suite (phase-grouped report)
# ---------------------------------------------------------------------------

SWARM_TITLE = "Phase 6 - Real-World Swarm Deployment"
SWARM_REPORT = "phase6-smoke-test-results.json"
SWARM_LOG_PREFIX = "phase6-smoke-test"

TWIN_A = {"initial_state": {"status": "active", "name": "TwinA"}}
TWIN_B = {"initial_state": {"status": "active", "name": "TwinB"}}

DIDCOMM_MESSAGE = {
    "twin_id": "{twin_a_id}",
    "parameters": {
        "from_twin_id": "{twin_a_id}",
        "to_did": "{twin_b_did}",
        "to_url": "{executive_url}",
        "msg_type": "text/plain",
        "body": {"text": "Hello from Twin A - swarm smoke test message"},
    },
}

RELAY_MESSAGE = {
    "twin_id": "{twin_a_id}",
    "parameters": {
        "from_twin_id": "{twin_a_id}",
        "to_did": "{twin_b_did}",
        "to_url": "{executive_url}",
        "relay_url": "{relay_url}",
        "msg_type": "text/plain",
        "body": {"text": "Test message via relay"},
    },
}

ARTIFACT = {
    "twin_id": "{twin_a_id}",
    "parameters": {
        "critique": "Smoke test critique",
        "updated_playbook": {"instructions": "Smoke test playbook instructions", "version": 1},
    },
}


def swarm_phases(registry: Registry) -> tuple[Phase, ...]:
    list_tools = http_step("List Tools", GATEWAY, "/tools", stash=TOOLS_SCRATCH)

    return (
        Phase(
            key="infrastructure",
            title="Phase 1: Infrastructure and Core Services",
            policy=Policy.FAIL_FAST,
            steps=(
                *(port_step(u.name, registry) for u in registry.units("infrastructure")),
                health_step("Event Router Health", "event-router", registry),
                health_step("Identity Service Health", "identity-service", registry),
                health_step("External Gateway Health", GATEWAY, registry),
                health_step("Executive Engine Health", "executive-engine", registry),
            ),
        ),
        Phase(
            key="twin_setup",
            title="Phase 2: Twin Creation and DID Setup",
            policy=Policy.FAIL_FAST,
            steps=(
                http_step(
                    "Create Twin A", "identity-service", "/twins", "POST", payload=TWIN_A,
                    produces={"twin_a_id": "twin_id"}, required=True,
                ),
                http_step(
                    "Get Twin A DID", "identity-service", "/twins/{twin_a_id}/did",
                    produces={"twin_a_did": "did"},
                ),
                http_step(
                    "Create Twin B", "identity-service", "/twins", "POST", payload=TWIN_B,
                    produces={"twin_b_id": "twin_id"}, required=True,
                ),
                http_step(
                    "Get Twin B DID", "identity-service", "/twins/{twin_b_id}/did",
                    produces={"twin_b_did": "did"}, required=True,
                ),
            ),
        ),
        Phase(
            key="didcomm_messaging",
            title="Phase 3: DIDComm Messaging Between Twins",
            policy=Policy.FAIL_SOFT,
            requires=("twin_a_id", "twin_b_id", "twin_b_did"),
            steps=(
                health_step("DIDComm Plugin Health", "didcomm-plugin", registry),
                list_tools,
                capability_step("DIDComm tool registered", "didcomm_send_message", "didcomm-plugin"),
                http_step(
                    "Send DIDComm Message", GATEWAY, "/execute/didcomm_send_message", "POST",
                    payload=DIDCOMM_MESSAGE,
                    remediation="Check DIDComm plugin configuration and recipient endpoint",
                ),
            ),
        ),
        Phase(
            key="playbook_sync",
            title="Phase 4: Playbook Synchronization (Hive/Swarm Sync)",
            policy=Policy.FAIL_SOFT,
            steps=(
                health_step("Hive Sync Plugin Health", "hive-sync-plugin", registry),
                list_tools,
                capability_step("Hive Sync tool registered", "pull_latest_playbook", "hive-sync-plugin"),
                health_step("Swarm Sync Plugin Health", "swarm-sync-plugin", registry),
                capability_step("Swarm Sync tool registered", "push_artifact", "swarm-sync-plugin"),
                http_step(
                    "Pull Latest Playbook", GATEWAY, "/execute/pull_latest_playbook", "POST",
                    payload={"twin_id": "{twin_a_id}"},
                    enabled_by=("HIVE_REPO_URL", "SWARM_REPO_URL"),
                ),
            ),
        ),
        Phase(
            key="refinement_artifacts",
            title="Phase 5: Refinement Artifact Generation",
            policy=Policy.FAIL_SOFT,
            requires=("twin_a_id",),
            steps=(
                http_step(
                    "Generate Plan", "executive-engine", "/plan", "POST",
                    payload={
                        "twin_id": "{twin_a_id}",
                        "goal": "Test goal for refinement artifact generation in smoke test",
                    },
                    remediation="Check Executive Engine and its dependencies",
                ),
                http_step(
                    "Push Refinement Artifact", GATEWAY, "/execute/push_artifact", "POST",
                    payload=ARTIFACT, enabled_by=("SWARM_REPO_URL",),
                ),
            ),
        ),
        Phase(
            key="meta_learning",
            title="Phase 6: MO Meta-Learning Capabilities",
            policy=Policy.FAIL_SOFT,
            requires=("twin_a_id",),
            steps=(
                http_step(
                    "MO Interact", "executive-engine", "/interact/{twin_a_id}", "POST",
                    payload={
                        "goal": "Test MO meta-learning: analyze task patterns and "
                        "generate improvement suggestions"
                    },
                    stash="interaction",
                    remediation="Check Executive Engine (MO) is running and can reach its dependencies",
                ),
                inspect_step(
                    "MO Interaction Response", "interaction", _interaction_fields,
                    "Check the Executive Engine interaction response format",
                ),
                http_step(
                    "List Tools for Twin", GATEWAY, "/tools/{twin_a_id}", stash="twin_tools",
                ),
                inspect_step(
                    "MO Tool Access", "twin_tools", _tool_count,
                    "Check plugin registration and tool allowlists",
                ),
            ),
        ),
        Phase(
            key="relay_nodes",
            title="Phase 7: Relay Node Functionality (Offline Support)",
            policy=Policy.FAIL_SOFT,
            requires=("twin_a_id", "twin_b_did"),
            steps=(
                list_tools,
                http_step(
                    "Send Message via Relay", GATEWAY,
                    "/execute/didcomm_send_message_with_relay", "POST",
                    payload=RELAY_MESSAGE,
                    enabled_by=("RELAY_URL",),
                    needs_tool="didcomm_send_message_with_relay",
                ),
            ),
        ),
        Phase(
            key="multi_twin_coordination",
            title="Phase 8: Multi-Twin Coordination",
            policy=Policy.FAIL_SOFT,
            requires=("twin_a_id", "twin_b_id"),
            steps=(
                http_step(
                    "Twin A Goal Execution", "executive-engine", "/interact/{twin_a_id}", "POST",
                    payload={"goal": "Twin A coordination test: research quantum computing basics"},
                ),
                http_step(
                    "Twin B Goal Execution", "executive-engine", "/interact/{twin_b_id}", "POST",
                    payload={"goal": "Twin B coordination test: analyze emotional support strategies"},
                ),
                http_step("Twin A Tool Access", GATEWAY, "/tools/{twin_a_id}"),
                http_step("Twin B Tool Access", GATEWAY, "/tools/{twin_b_id}"),
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Comprehensive suite (flat report)
# ---------------------------------------------------------------------------

COMPREHENSIVE_TITLE = "Comprehensive Smoke Test"
COMPREHENSIVE_REPORT = "smoke-test-results.json"
COMPREHENSIVE_LOG_PREFIX = "smoke-test"


def comprehensive_phases(registry: Registry) -> tuple[Phase, ...]:
    plugin_steps: list[Step] = []
    for plugin in registry.units("plugin"):
        plugin_steps.append(health_step(f"Plugin health: {plugin.name}", plugin.name, registry))
        if plugin.tool:
            plugin_steps.append(
                capability_step(
                    f"{plugin.name}: Tool '{plugin.tool}' registered", plugin.tool, plugin.name
                )
            )
        if plugin.execute_payload is not None:
            plugin_steps.append(
                http_step(
                    f"{plugin.name}: Execute '{plugin.tool}'", GATEWAY,
                    f"/execute/{plugin.tool}", "POST", (200, 201, 202),
                    payload=plugin.execute_payload,
                    remediation="Check tool parameters and plugin logs",
                )
            )

    return (
        Phase(
            key="infrastructure",
            title="Infrastructure Dependencies",
            policy=Policy.FAIL_SOFT,
            steps=tuple(port_step(u.name, registry) for u in registry.units("infrastructure")),
        ),
        Phase(
            key="core_services",
            title="Core Services",
            policy=Policy.FAIL_SOFT,
            steps=tuple(
                health_step(f"Health check: {u.name}", u.name, registry)
                for u in registry.units("service")
            ),
        ),
        Phase(
            key="core_functionality",
            title="Core Service Functionality",
            policy=Policy.FAIL_SOFT,
            steps=(
                http_step(
                    "Identity Service: Create twin", "identity-service", "/twins", "POST",
                    payload={"initial_state": {"status": "active"}},
                    produces={"twin_id": "twin_id"},
                ),
                http_step("Identity Service: Get DID", "identity-service", "/twins/{twin_id}/did"),
                http_step(
                    "Working Memory: Store fragment", "working-memory", "/memory/{twin_id}", "POST",
                    payload={
                        "twin_id": "{twin_id}",
                        "fragment": {"type": "test", "content": "smoke test memory"},
                    },
                ),
                http_step("Working Memory: Get memory", "working-memory", "/memory/{twin_id}"),
                http_step(
                    "Context Builder: Build context", "context-builder", "/build", "POST",
                    payload={"twin_id": "{twin_id}", "goal": "Test goal for smoke test"},
                ),
                http_step(
                    "Emotion State Manager: Get emotion", "emotion-state-manager",
                    "/emotion/{twin_id}",
                ),
                http_step(
                    "Executive Engine: Plan", "executive-engine", "/plan", "POST",
                    payload={"twin_id": "{twin_id}", "goal": "Test goal"},
                ),
            ),
        ),
        Phase(
            key="external_gateway",
            title="External Gateway",
            policy=Policy.FAIL_SOFT,
            steps=(
                http_step("External Gateway: List tools", GATEWAY, "/tools"),
                http_step("External Gateway: List tools for twin", GATEWAY, "/tools/{twin_id}"),
            ),
        ),
        Phase(
            key="plugins",
            title="Plugins",
            policy=Policy.FAIL_SOFT,
            steps=tuple(plugin_steps),
        ),
    )


# ---------------------------------------------------------------------------
# Suite table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Suite:
    name: str
    title: str
    shape: ReportShape
    default_report: str
    log_prefix: str
    build: Callable[[Registry], tuple[Phase, ...]]


SUITES = {
    "swarm": Suite(
        "swarm", SWARM_TITLE, "phased", SWARM_REPORT, SWARM_LOG_PREFIX, swarm_phases
    ),
    "comprehensive": Suite(
        "comprehensive",
        COMPREHENSIVE_TITLE,
        "flat",
        COMPREHENSIVE_REPORT,
        COMPREHENSIVE_LOG_PREFIX,
        comprehensive_phases,
    ),
}
