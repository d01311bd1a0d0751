#!/usr/bin/env python3
"""
scripts/validate.py — Phased deployment smoke test.

Probes a running fleet through an ordered list of phases and writes a
severity-tagged log plus a machine-readable JSON report.

Suites:
  swarm          (default) phase-grouped report, fail-fast bootstrap phases
  comprehensive  flat report covering every service and plugin

Usage:
    python3 scripts/validate.py                        # swarm suite
    python3 scripts/validate.py --suite comprehensive
    BASE_URL=http://staging TIMEOUT=5 python3 scripts/validate.py

Exit code: 0 when no probe failed, 1 otherwise (including an early abort).

Importable (used by tests):
    from scripts.validate import run_validation
    ctx = run_validation(cfg)
"""

from __future__ import annotations

import argparse
import pathlib
import sys

# Add project root to path so scripts and config are importable
_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

try:
    from config.settings import Settings, load_settings
except ImportError:
    print(
        "ERROR: pydantic-settings not installed.\n"
        "Run: pip install -e .[test]"
    )
    sys.exit(1)

from pydantic import ValidationError  # noqa: E402

from scripts.orchestrator import run_phases  # noqa: E402
from scripts.registry import Registry, load_registry  # noqa: E402
from scripts.report import ReportWriter, RunContext, RunLog  # noqa: E402
from scripts.suites import SUITES  # noqa: E402


def run_validation(
    cfg: Settings | None = None,
    suite: str = "swarm",
    registry: Registry | None = None,
    log: RunLog | None = None,
) -> RunContext:
    """Run one suite end to end and return its finalised RunContext."""
    if cfg is None:
        cfg = load_settings()
    if registry is None:
        registry = load_registry(cfg.registry_path, cfg.BASE_URL)
    definition = SUITES[suite]
    owns_log = log is None
    if log is None:
        log = RunLog(cfg.log_path(definition.log_prefix))

    ctx = RunContext(
        title=definition.title,
        base_url=cfg.BASE_URL,
        shape=definition.shape,
        log=log,
        writer=ReportWriter(cfg.report_path(definition.default_report)),
        verbose=cfg.VERBOSE,
    )
    log.info("=========================================")
    log.info(definition.title)
    log.info("=========================================")
    if log.path is not None:
        log.info(f"Log file: {log.path}")
    log.info(f"Base URL: {cfg.BASE_URL}")
    log.info(f"Timeout: {cfg.TIMEOUT:g}s")
    log.info()

    try:
        ctx.checkpoint()
        try:
            run_phases(definition.build(registry), ctx, cfg, registry)
        finally:
            ctx.finalize()
    finally:
        if owns_log:
            log.close()
    return ctx


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Probe a running deployment phase by phase.")
    parser.add_argument(
        "--suite",
        choices=sorted(SUITES),
        default="swarm",
        help="swarm: phase-grouped report (default); comprehensive: flat report",
    )
    parser.add_argument("--env-file", default=".env", help="env file merged under os.environ")
    args = parser.parse_args(argv)

    try:
        cfg = load_settings(args.env_file)
        registry = load_registry(cfg.registry_path, cfg.BASE_URL)
    except (ValidationError, ValueError, FileNotFoundError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    log = RunLog(cfg.log_path(SUITES[args.suite].log_prefix))
    try:
        ctx = run_validation(cfg, args.suite, registry, log)
    finally:
        log.close()
    return ctx.exit_code


if __name__ == "__main__":
    sys.exit(main())
