"""
tests/conftest.py — Shared fixtures and path setup for all tests.

Adds the project root to sys.path so unit tests can import:
    from config.settings import Settings
    from scripts.registry import load_registry
    from scripts.health import ProbeResult

The `fleet` fixture replaces urllib.request.urlopen and socket.create_connection
with an in-memory fleet that answers like a healthy deployment. Individual
routes can be overridden per test and every request is counted.
"""
from __future__ import annotations

import contextlib
import io
import pathlib
import socket
import sys
import threading
import urllib.error
import urllib.request
from urllib.parse import urlsplit

import pytest

# Make project root importable without installing as a package
PROJECT_ROOT = pathlib.Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import DEFAULT_REGISTRY_FILE, Settings  # noqa: E402
from scripts.health import probe as probe_module  # noqa: E402
from scripts.registry import load_registry  # noqa: E402

FLEET_URL = "http://fleet.test"

TOOL_LISTING = (
    '[{"name": "sign_message"}, {"name": "didcomm_send_message"}, '
    '{"name": "issue_credential"}, {"name": "pull_latest_playbook"}, '
    '{"name": "push_artifact"}, {"name": "publish_note"}, {"name": "ipfs_add"}, '
    '{"name": "filecoin_deal_status"}, {"name": "list_clusters"}, '
    '{"name": "check_update"}]'
)


class FakeResponse:
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self._body = body.encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        return None


class FakeFleet:
    """Answers every unit on every port like a healthy deployment."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, int, str]] = []
        self.port_checks: list[int] = []
        self.down_ports: set[int] = set()
        self.closed_ports: set[int] = set()
        self.tool_listing = TOOL_LISTING
        self._overrides: dict[tuple[str, int, str], list[tuple[int, str]]] = {}
        self._twins = 0

    def set(self, method: str, port: int, path: str, *responses: tuple[int, str]) -> None:
        """Override a route. Several responses are served in order; the last one repeats."""
        self._overrides[(method, port, path)] = list(responses)

    def calls_to(self, port: int, path: str | None = None, method: str | None = None) -> int:
        return sum(
            1
            for m, p, pth in self.calls
            if p == port and (path is None or pth == path) and (method is None or m == method)
        )

    def _default(self, method: str, path: str) -> tuple[int, str]:
        if path == "/healthz":
            return 200, '{"status": "ok"}'
        if method == "POST" and path == "/twins":
            self._twins += 1
            return 200, f'{{"twin_id": "twin-{self._twins}", "status": "active"}}'
        if path.startswith("/twins/") and path.endswith("/did"):
            twin_id = path.split("/")[2]
            return 200, f'{{"did": "did:key:{twin_id}"}}'
        if path == "/tools" or path.startswith("/tools/"):
            return 200, self.tool_listing
        if path.startswith("/interact/"):
            return 200, '{"status": "completed", "output": "done"}'
        return 200, '{"status": "ok"}'

    def urlopen(self, request: urllib.request.Request, timeout: float | None = None) -> FakeResponse:
        parts = urlsplit(request.full_url)
        method = request.get_method()
        port = parts.port or 80
        self.calls.append((method, port, parts.path))
        if port in self.down_ports:
            raise urllib.error.URLError("connection refused")

        queued = self._overrides.get((method, port, parts.path))
        if queued:
            status, body = queued.pop(0) if len(queued) > 1 else queued[0]
        else:
            status, body = self._default(method, parts.path)
        if status >= 400:
            raise urllib.error.HTTPError(
                request.full_url, status, "error", hdrs=None, fp=io.BytesIO(body.encode("utf-8"))
            )
        return FakeResponse(status, body)

    def create_connection(self, address: tuple[str, int], timeout: float | None = None):
        _, port = address
        self.port_checks.append(port)
        if port in self.closed_ports:
            raise ConnectionRefusedError(f"port {port} closed")
        return contextlib.nullcontext()


@pytest.fixture
def fleet(monkeypatch):
    fake = FakeFleet()
    monkeypatch.setattr(probe_module.urllib.request, "urlopen", fake.urlopen)
    monkeypatch.setattr(probe_module.socket, "create_connection", fake.create_connection)
    return fake


@pytest.fixture
def make_cfg(tmp_path):
    """Settings writing the report and the log under tmp_path; kwargs override."""

    def _make(**overrides: object) -> Settings:
        base: dict[str, object] = {
            "BASE_URL": FLEET_URL,
            "TIMEOUT": 2,
            "JSON_OUTPUT": str(tmp_path / "report.json"),
            "LOG_FILE": str(tmp_path / "run.log"),
        }
        base.update(overrides)
        return Settings(**base)

    return _make


@pytest.fixture
def registry():
    return load_registry(DEFAULT_REGISTRY_FILE, FLEET_URL)


@pytest.fixture
def raw_server(monkeypatch):
    """Local TCP server answering every connection with fixed bytes, then closing.

    Returns a start(reply) -> port function. Used for replies the in-memory
    fleet cannot produce (garbage status lines, truncated bodies).
    """
    for var in ("http_proxy", "HTTP_PROXY", "all_proxy", "ALL_PROXY"):
        monkeypatch.delenv(var, raising=False)
    stop = threading.Event()
    listeners: list[socket.socket] = []

    def _start(reply: bytes) -> int:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen()
        listener.settimeout(0.2)
        listeners.append(listener)

        def serve() -> None:
            while not stop.is_set():
                try:
                    conn, _ = listener.accept()
                except TimeoutError:
                    continue
                except OSError:
                    return
                with conn:
                    conn.recv(65536)
                    conn.sendall(reply)

        threading.Thread(target=serve, daemon=True).start()
        return listener.getsockname()[1]

    yield _start
    stop.set()
    for listener in listeners:
        listener.close()
