"""
scripts/health/probe.py — Single-request probes.

probe() issues one HTTP request with a timeout and classifies the outcome;
check_port() does a raw TCP connect for dependencies that are only checked
for reachability (Redis, Kafka). Neither retries: retrying is the caller's
business (only scripts/remediate.py polls).
"""

from __future__ import annotations

import http.client
import json
import re
import socket
import urllib.error
import urllib.request
from typing import Any

from scripts.health import ProbeResult, failed, passed

DEFAULT_TIMEOUT_SECONDS = 15.0
PORT_TIMEOUT_SECONDS = 2.0

TRANSPORT_FAILURE = "request failed or timed out"
STATUS_REMEDIATION = "Check the unit's logs and verify the endpoint"


def _expected_label(expected: int | tuple[int, ...]) -> str:
    if isinstance(expected, int):
        return str(expected)
    return "/".join(str(code) for code in expected)


def _matches(actual: int, expected: int | tuple[int, ...]) -> bool:
    if isinstance(expected, int):
        return actual == expected
    return actual in expected


def send(
    method: str,
    url: str,
    body: dict[str, Any] | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> tuple[int, str]:
    """Send one request and return (status, body text).

    HTTP error statuses are returned, not raised. Transport failures
    propagate as urllib.error.URLError / OSError; non-HTTP replies and
    truncated bodies as http.client.HTTPException.
    """
    data = json.dumps(body).encode("utf-8") if body is not None else None
    request = urllib.request.Request(
        url,
        data=data,
        method=method.upper(),
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as resp:
            return resp.status, resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        # HTTPError is also a URLError; it carries a real response.
        payload = exc.read() if exc.fp is not None else b""
        return exc.code, payload.decode("utf-8", errors="replace")


def probe(
    name: str,
    method: str,
    url: str,
    expected_status: int | tuple[int, ...] = 200,
    body: dict[str, Any] | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> ProbeResult:
    try:
        status, text = send(method, url, body=body, timeout=timeout)
    except (urllib.error.URLError, OSError, ValueError, http.client.HTTPException):
        # HTTPException covers non-HTTP replies and truncated bodies.
        return failed(name, TRANSPORT_FAILURE, f"Check that the unit is reachable: curl {url}")

    if _matches(status, expected_status):
        return passed(name, f"HTTP {status}", body=text)
    return failed(
        name,
        f"Expected HTTP {_expected_label(expected_status)}, got {status}",
        STATUS_REMEDIATION,
        body=text,
    )


def extract_field(body: str | None, field_name: str) -> str | None:
    """Best-effort scan for the first '"field_name":"value"' pair in a raw body.

    The rest of the document is not parsed or validated; a malformed or
    restructured payload simply yields None.
    """
    if not body:
        return None
    match = re.search(rf'"{re.escape(field_name)}"\s*:\s*"([^"]*)"', body)
    if match is None or not match.group(1):
        return None
    return match.group(1)


def check_port(
    name: str,
    host: str,
    port: int,
    remediation: str | None = None,
    timeout: float = PORT_TIMEOUT_SECONDS,
) -> ProbeResult:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError:
        return failed(name, f"Port {port} not accessible", remediation)
    return passed(name, f"Port {port} is open")
