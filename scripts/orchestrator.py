"""
scripts/orchestrator.py — Sequences phases and steps over one RunContext.

Policies:
  FAIL_FAST  a failing `required` step aborts the whole run (SetupFailure);
             the report keeps every record up to and including that step.
  FAIL_SOFT  failures are recorded; remaining steps and phases still run.

Skips (no network call is made for a skipped step):
  - phase `requires` handles missing → every non-liveness step is skipped,
    liveness steps still run
  - step `requires` handles missing → that step is skipped
  - step `enabled_by` settings all unset → that step is skipped
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from scripts.health import ProbeResult, failed, passed, skipped
from scripts.health.probe import extract_field
from scripts.report import PhaseState, RunContext

if TYPE_CHECKING:
    from config.settings import Settings
    from scripts.registry import Registry


class Policy(str, Enum):
    FAIL_FAST = "fail_fast"
    FAIL_SOFT = "fail_soft"


@dataclass
class StepContext:
    cfg: Settings
    registry: Registry
    handles: Mapping[str, str]
    timeout: float
    # Raw bodies shared between steps of the same phase (e.g. a tool listing).
    scratch: dict[str, str] = field(default_factory=dict)


StepAction = Callable[[StepContext], ProbeResult]


@dataclass(frozen=True)
class Step:
    name: str
    action: StepAction
    produces: Mapping[str, str] = field(default_factory=dict)  # handle key -> response field
    requires: tuple[str, ...] = ()
    enabled_by: tuple[str, ...] = ()
    required: bool = False
    liveness: bool = False


@dataclass(frozen=True)
class Phase:
    key: str
    title: str
    policy: Policy
    steps: tuple[Step, ...]
    requires: tuple[str, ...] = ()


def _extract_handles(step: Step, result: ProbeResult, ctx: RunContext) -> ProbeResult:
    """Bind every handle the step produces; a missing field downgrades the step to fail."""
    values: dict[str, str] = {}
    for key, field_name in step.produces.items():
        value = extract_field(result.body, field_name)
        if value is None:
            return failed(
                step.name,
                f"Could not extract {field_name} from response",
                "Check the response body shape returned by the unit",
                body=result.body,
            )
        values[key] = value
    for key, value in values.items():
        ctx.set_handle(key, value)
    details = ", ".join(f"{step.produces[k]}={v}" for k, v in values.items())
    return passed(step.name, f"{result.message}, {details}", body=result.body)


def _precheck(step: Step, ctx: RunContext, cfg: Settings) -> ProbeResult | None:
    missing = ctx.missing_handles(step.requires)
    if missing:
        return skipped(step.name, f"prerequisite missing: {', '.join(missing)}")
    if step.enabled_by and not any(cfg.is_configured(name) for name in step.enabled_by):
        return skipped(step.name, f"not configured: {' or '.join(step.enabled_by)}")
    return None


def run_step(step: Step, ctx: RunContext, step_ctx: StepContext) -> ProbeResult:
    blocked = _precheck(step, ctx, step_ctx.cfg)
    if blocked is not None:
        return ctx.record(blocked)
    result = step.action(step_ctx)
    if result.passed and step.produces:
        result = _extract_handles(step, result, ctx)
    return ctx.record(result)


def run_phase(
    phase: Phase,
    ctx: RunContext,
    cfg: Settings,
    registry: Registry,
    timeout: float,
) -> PhaseState:
    ctx.begin_phase(phase.key, phase.title)
    step_ctx = StepContext(cfg, registry, ctx.handles, timeout)

    missing = ctx.missing_handles(phase.requires)
    if missing:
        reason = f"prerequisite missing: {', '.join(missing)}"
        ctx.log.info(f"{phase.title}: skipping domain steps ({reason})")
        for step in phase.steps:
            if step.liveness:
                run_step(step, ctx, step_ctx)
            else:
                ctx.record(skipped(step.name, reason))
        ctx.end_phase(PhaseState.SKIPPED)
        return PhaseState.SKIPPED

    for step in phase.steps:
        result = run_step(step, ctx, step_ctx)
        if phase.policy is Policy.FAIL_FAST and step.required and result.failed:
            ctx.log.error(f"{step.name} failed - cannot continue with dependent phases")
            ctx.end_phase(PhaseState.ABORTED)
            return PhaseState.ABORTED

    ctx.end_phase(PhaseState.COMPLETED)
    return PhaseState.COMPLETED


def run_phases(
    phases: list[Phase] | tuple[Phase, ...],
    ctx: RunContext,
    cfg: Settings,
    registry: Registry,
) -> bool:
    """Run phases in declared order. Returns False when a fail-fast phase aborted the run."""
    for phase in phases:
        state = run_phase(phase, ctx, cfg, registry, cfg.TIMEOUT)
        if state is PhaseState.ABORTED:
            return False
    return True
