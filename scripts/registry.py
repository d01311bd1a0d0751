"""
Typed unit registry: logical unit name -> reachable network location.

The registry file (config/registry.yml) is treated as an API contract:
  - strict required fields
  - `registry_version` for forward compatibility
  - clear validation errors for common mistakes (duplicate names or ports)

Loaded once at startup and read-only afterwards.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ValidationError, field_validator, model_validator

SUPPORTED_REGISTRY_VERSION = 1
_UNIT_NAME_RE = re.compile(r"^[a-z][a-z0-9-]*$")

UnitKind = Literal["infrastructure", "service", "plugin"]


class UnknownUnitError(KeyError):
    """Raised when a logical unit name is not present in the registry."""

    def __str__(self) -> str:
        return f"unknown unit '{self.args[0]}'"


@dataclass(frozen=True)
class ServiceEndpoint:
    logical_name: str
    base_url: str
    port: int

    @property
    def root(self) -> str:
        return f"{self.base_url}:{self.port}"

    def url(self, path: str = "") -> str:
        if path and not path.startswith("/"):
            path = f"/{path}"
        return f"{self.root}{path}"

    @property
    def liveness_url(self) -> str:
        return self.url("/healthz")


class UnitEntry(BaseModel):
    """Single row of the registry: one service, plugin or infrastructure dependency."""

    name: str
    kind: UnitKind
    port: int
    host: str = "localhost"
    compose_services: list[str] = []
    critical: bool = False
    managed: bool = True
    tool: str | None = None
    # Body POSTed to the gateway's /execute/<tool>; placeholders like "{twin_id}" allowed.
    execute_payload: dict[str, Any] | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not _UNIT_NAME_RE.match(value):
            raise ValueError(f"'{value}' is not a valid unit name (lowercase, digits, '-')")
        return value

    @field_validator("port")
    @classmethod
    def validate_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError(f"port {value} out of range 1-65535")
        return value

    @field_validator("compose_services")
    @classmethod
    def validate_compose_services(cls, value: list[str]) -> list[str]:
        cleaned = [v.strip() for v in value]
        if any(not v for v in cleaned):
            raise ValueError("compose_services entries cannot be blank")
        return cleaned

    @model_validator(mode="after")
    def default_compose_service(self) -> UnitEntry:
        if not self.compose_services:
            self.compose_services = [f"pagi-{self.name}"]
        if self.tool is not None and self.kind != "plugin":
            raise ValueError(f"unit '{self.name}': only plugins register a tool")
        if self.execute_payload is not None and self.tool is None:
            raise ValueError(f"unit '{self.name}': execute_payload needs a tool")
        return self

    @property
    def is_http(self) -> bool:
        return self.kind != "infrastructure"


class RegistryManifest(BaseModel):
    """Versioned contract for config/registry.yml."""

    registry_version: int
    units: list[UnitEntry]

    @field_validator("registry_version")
    @classmethod
    def validate_registry_version(cls, value: int) -> int:
        if value != SUPPORTED_REGISTRY_VERSION:
            raise ValueError(
                f"unsupported registry_version={value}; expected {SUPPORTED_REGISTRY_VERSION}"
            )
        return value

    @model_validator(mode="after")
    def validate_unique(self) -> RegistryManifest:
        names = [u.name for u in self.units]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"units contain duplicate names: {', '.join(duplicates)}")
        ports = [(u.host, u.port) for u in self.units]
        clashing = sorted({str(p) for h, p in ports if ports.count((h, p)) > 1})
        if clashing:
            raise ValueError(f"units share the same port: {', '.join(clashing)}")
        return self


class Registry:
    """Resolves logical unit names to endpoints and supervisor service names."""

    def __init__(self, manifest: RegistryManifest, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")
        self._units = {u.name: u for u in manifest.units}

    def unit(self, name: str) -> UnitEntry:
        try:
            return self._units[name]
        except KeyError:
            raise UnknownUnitError(name) from None

    def endpoint(self, name: str) -> ServiceEndpoint:
        unit = self.unit(name)
        if unit.is_http:
            return ServiceEndpoint(unit.name, self._base_url, unit.port)
        return ServiceEndpoint(unit.name, f"tcp://{unit.host}", unit.port)

    def units(self, kind: UnitKind | None = None) -> list[UnitEntry]:
        return [u for u in self._units.values() if kind is None or u.kind == kind]

    def managed_units(self, kind: UnitKind) -> list[UnitEntry]:
        return [u for u in self.units(kind) if u.managed]

    def critical_units(self) -> list[UnitEntry]:
        return [u for u in self._units.values() if u.critical]

    def compose_services(self, name: str) -> list[str]:
        """Compose services for a registered unit; unregistered names pass through as-is."""
        if name in self._units:
            return list(self._units[name].compose_services)
        return [name]


def load_registry_yaml(path: Path) -> dict:
    with open(path, encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
        if not isinstance(payload, dict):
            raise ValueError("registry root must be a YAML mapping/object")
        return payload


def load_registry(path: Path, base_url: str) -> Registry:
    if not path.exists():
        raise FileNotFoundError(f"Unit registry not found: {path}")
    payload = load_registry_yaml(path)
    try:
        manifest = RegistryManifest.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(exc) from exc
    return Registry(manifest, base_url)
