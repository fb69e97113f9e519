"""Tests for the two-tier health prober."""
from __future__ import annotations

import json
import socket
import threading
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from instancectl.providers.health import SKIPPED_VERSION, HealthProber, Status, parse_version


class _Handler(BaseHTTPRequestHandler):
    routes: dict[str, tuple[int, str]] = {}

    def do_GET(self) -> None:  # noqa: N802 - http.server naming
        status, body = self.routes.get(self.path, (404, ""))
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        return


def _serve(routes: dict[str, tuple[int, str]]) -> Iterator[int]:
    handler = type("Handler", (_Handler,), {"routes": routes})
    server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def healthy_port() -> Iterator[int]:
    """Serve a version endpoint and an image info file."""
    yield from _serve(
        {
            "/apps/core/version/": (200, json.dumps({"openslides_version": "3.4.1"})),
            "/image-version.txt": (200, "Built 2024-05-01 from commit abc123\n"),
        }
    )


@pytest.fixture
def failing_port() -> Iterator[int]:
    """Accept connections but fail the version endpoint."""
    yield from _serve({"/apps/core/version/": (503, "starting")})


@pytest.fixture
def banner_port() -> Iterator[int]:
    """Accept connections and answer with a non-HTTP banner."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen()
    listener.settimeout(0.2)
    stop = threading.Event()

    def serve() -> None:
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                continue
            with conn:
                try:
                    conn.settimeout(1.0)
                    conn.recv(1024)
                    conn.sendall(b"SSH-2.0-OpenSSH_9.0\r\n")
                except OSError:
                    continue

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield listener.getsockname()[1]
    finally:
        stop.set()
        thread.join(timeout=2)
        listener.close()


@pytest.fixture
def closed_port() -> int:
    """Return a port nobody listens on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def prober() -> HealthProber:
    """Return a prober with generous timeouts for CI."""
    return HealthProber(connect_timeout=1.0, http_timeout=1.0)


def test_closed_port_is_down(prober: HealthProber, closed_port: int) -> None:
    """Nothing listening means DOWN."""
    result = prober.probe(closed_port)

    assert result.status is Status.DOWN
    assert result.reachable is False


def test_missing_port_is_down(prober: HealthProber) -> None:
    """Instances without a published port are DOWN."""
    assert prober.probe(None).status is Status.DOWN


def test_open_port_with_failing_endpoint_is_degraded(prober: HealthProber, failing_port: int) -> None:
    """Reachable but unhealthy applications are DEGRADED."""
    result = prober.probe(failing_port)

    assert result.status is Status.DEGRADED
    assert result.reachable is True
    assert result.version is None


def test_non_http_listener_is_degraded(prober: HealthProber, banner_port: int) -> None:
    """A port answering with something other than HTTP is DEGRADED, not an error."""
    result = prober.probe(banner_port)

    assert result.status is Status.DEGRADED
    assert result.reachable is True
    assert prober.image_info(banner_port) is None


def test_version_endpoint_means_up(prober: HealthProber, healthy_port: int) -> None:
    """A non-empty version field means UP."""
    result = prober.probe(healthy_port)

    assert result.status is Status.UP
    assert result.version == "3.4.1"
    assert result.checked_version is True


def test_fast_mode_skips_version_check(prober: HealthProber, failing_port: int) -> None:
    """Fast mode treats any reachable instance as healthy."""
    result = prober.probe(failing_port, fast=True)

    assert result.status is Status.UP
    assert result.version == SKIPPED_VERSION
    assert result.checked_version is False


def test_image_info_requires_built_prefix(
    prober: HealthProber,
    healthy_port: int,
    failing_port: int,
) -> None:
    """Only image descriptions starting with ``Built`` are reported."""
    assert prober.image_info(healthy_port) == "Built 2024-05-01 from commit abc123"
    assert prober.image_info(failing_port) is None


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ('{"openslides_version": "3.3"}', "3.3"),
        ('{"version": "4.0", "other": 1}', "4.0"),
        ('{"openslides_version": "", "x": ""}', None),
        ('"name" "2.3-dev"', "2.3-dev"),
        ("", None),
        ("<html>oops</html>", None),
    ],
)
def test_parse_version(body: str, expected: str | None) -> None:
    """The version field is extracted from JSON or quoted responses."""
    assert parse_version(body) == expected
