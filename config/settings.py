"""
config/settings.py — Canonical configuration contract for fleet-smoke.

Uses pydantic-settings to load, validate, and type-check all environment
variables read by the validation run (scripts/validate.py) and the
remediation controller (scripts/remediate.py).

Two usage modes:
  Production / scripts:
      cfg = load_settings()              # reads from .env + os.environ
      cfg = load_settings("env/ci.env")  # override env file path

  Tests (isolated — no env file, no os.environ bleed):
      cfg = Settings(BASE_URL="http://fleet", TIMEOUT=2)
      # All values come exclusively from kwargs → clean, reproducible.
"""
from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

REPO_ROOT = Path(__file__).parent.parent
DEFAULT_REGISTRY_FILE = REPO_ROOT / "config" / "registry.yml"

# Optional variables that enable sync and relay features. Their absence turns
# the dependent steps into skips, never failures.
OPTIONAL_FEATURE_VARS = ("HIVE_REPO_URL", "SWARM_REPO_URL", "RELAY_URL")


class Settings(BaseSettings):
    # Settings() reads purely from kwargs; load_settings() is the explicit
    # production entry point that merges the env file and os.environ.
    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Only kwargs. load_settings() supplies env vars explicitly as kwargs.
        return (init_settings,)

    # -------------------------------------------------------------------------
    # Probe target
    # -------------------------------------------------------------------------
    BASE_URL: str = "http://localhost"
    TIMEOUT: float = 15.0

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------
    JSON_OUTPUT: Optional[str] = None
    LOG_FILE: Optional[str] = None
    VERBOSE: bool = False

    # -------------------------------------------------------------------------
    # Optional feature URLs (sync repositories, relay node)
    # -------------------------------------------------------------------------
    HIVE_REPO_URL: Optional[str] = None
    SWARM_REPO_URL: Optional[str] = None
    RELAY_URL: Optional[str] = None

    # -------------------------------------------------------------------------
    # Unit registry
    # -------------------------------------------------------------------------
    REGISTRY_FILE: Optional[str] = None

    # -------------------------------------------------------------------------
    # Container supervisor (remediation)
    # -------------------------------------------------------------------------
    COMPOSE_COMMAND: str = "docker compose"
    COMPOSE_FILE: Optional[str] = None
    COMPOSE_TIMEOUT_SECONDS: int = 300

    # -------------------------------------------------------------------------
    # Health polling and warm-up delays (remediation)
    # -------------------------------------------------------------------------
    HEALTH_POLL_ATTEMPTS: int = 30
    HEALTH_POLL_INTERVAL_SECONDS: float = 1.0
    HEALTH_POLL_TIMEOUT_SECONDS: float = 2.0
    INFRA_SETTLE_SECONDS: float = 2.0
    INFRA_WARMUP_SECONDS: float = 10.0
    CORE_WARMUP_SECONDS: float = 5.0
    PLUGIN_WARMUP_SECONDS: float = 5.0
    RESTART_SETTLE_SECONDS: float = 3.0
    LOG_TAIL_LINES: int = 50

    # -------------------------------------------------------------------------
    # Convenience properties
    # -------------------------------------------------------------------------

    @property
    def registry_path(self) -> Path:
        return Path(self.REGISTRY_FILE) if self.REGISTRY_FILE else DEFAULT_REGISTRY_FILE

    @property
    def unset_optional_vars(self) -> list[str]:
        """Optional feature variables that are not configured, in declaration order."""
        return [name for name in OPTIONAL_FEATURE_VARS if not getattr(self, name)]

    def is_configured(self, name: str) -> bool:
        value = getattr(self, name, None)
        return bool(value.strip()) if isinstance(value, str) else bool(value)

    def report_path(self, default_name: str) -> Path:
        return Path(self.JSON_OUTPUT) if self.JSON_OUTPUT else Path(default_name)

    def log_path(self, prefix: str) -> Path:
        """LOG_FILE if set, else '<prefix>-YYYYmmdd-HHMMSS.log' in the working directory."""
        if self.LOG_FILE:
            return Path(self.LOG_FILE)
        return Path(f"{prefix}-{datetime.now().strftime('%Y%m%d-%H%M%S')}.log")

    def compose_args(self) -> list[str]:
        args = self.COMPOSE_COMMAND.split()
        if self.COMPOSE_FILE:
            args += ["-f", self.COMPOSE_FILE]
        return args

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------

    @field_validator("BASE_URL", mode="before")
    @classmethod
    def normalise_base_url(cls, v: str) -> str:
        """Strip whitespace and the trailing slash so ':port' can be appended."""
        v = str(v).strip().rstrip("/")
        if not re.match(r"^https?://", v):
            raise ValueError(f"BASE_URL must start with http:// or https://, got '{v}'")
        return v

    @field_validator("HIVE_REPO_URL", "SWARM_REPO_URL", "RELAY_URL", "COMPOSE_FILE", mode="before")
    @classmethod
    def blank_is_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator(
        "TIMEOUT",
        "HEALTH_POLL_INTERVAL_SECONDS",
        "HEALTH_POLL_TIMEOUT_SECONDS",
    )
    @classmethod
    def positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0 seconds")
        return v

    @field_validator(
        "INFRA_SETTLE_SECONDS",
        "INFRA_WARMUP_SECONDS",
        "CORE_WARMUP_SECONDS",
        "PLUGIN_WARMUP_SECONDS",
        "RESTART_SETTLE_SECONDS",
    )
    @classmethod
    def non_negative_seconds(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be >= 0 seconds")
        return v

    @model_validator(mode="after")
    def validate_counts(self) -> Settings:
        if self.HEALTH_POLL_ATTEMPTS < 1:
            raise ValueError("HEALTH_POLL_ATTEMPTS must be >= 1")
        if self.LOG_TAIL_LINES < 1:
            raise ValueError("LOG_TAIL_LINES must be >= 1")
        if self.COMPOSE_TIMEOUT_SECONDS < 1:
            raise ValueError("COMPOSE_TIMEOUT_SECONDS must be >= 1")
        if not self.COMPOSE_COMMAND.strip():
            raise ValueError("COMPOSE_COMMAND must not be empty (e.g. 'docker compose')")
        return self


def load_settings(env_file: str = ".env") -> Settings:
    """Load and validate settings from an env file + os.environ.

    Manually parses the env file and merges with os.environ (os.environ wins),
    then passes only known Settings fields as explicit kwargs.

    Raises:
        ValidationError: if any value is invalid (e.g. TIMEOUT=0, BASE_URL without scheme).
    """
    file_vals: dict[str, str] = {}
    try:
        with open(env_file, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                k, _, v = line.partition("=")
                k = k.strip()
                # Strip inline comments: "15   # seconds" → "15"
                v = re.sub(r"\s+#.*$", "", v.strip())
                if k:
                    file_vals[k] = v
    except FileNotFoundError:
        pass
    merged = {**file_vals, **os.environ}  # os.environ wins
    known = {k: v for k, v in merged.items() if k in Settings.model_fields}
    return Settings(**known)
