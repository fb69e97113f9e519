"""Two-tier health probing for instance reverse-proxy ports."""
from __future__ import annotations

import http.client
import json
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum

SKIPPED_VERSION = "[skipped]"

_QUOTED_RE = re.compile(r'"([^"]*)"')


class Status(str, Enum):
    """Classification of an instance's liveness."""

    UP = "UP"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of probing one local port."""

    status: Status
    version: str | None = None
    reachable: bool = False
    checked_version: bool = False

    @property
    def online(self) -> bool:
        """Return True unless the instance is down."""
        return self.status is not Status.DOWN

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "status": self.status.value,
            "version": self.version,
            "reachable": self.reachable,
            "checked_version": self.checked_version,
        }


def parse_version(body: str, field: str = "openslides_version") -> str | None:
    """Extract the application version from a version endpoint response."""
    text = body.strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        value = payload.get(field)
        if isinstance(value, str) and value:
            return value
        for candidate in payload.values():
            if isinstance(candidate, str) and candidate:
                return candidate
        return None
    quoted = _QUOTED_RE.findall(text)
    if len(quoted) >= 2 and quoted[1]:
        return quoted[1]
    return None


@dataclass(slots=True)
class HealthProber:
    """Classify instances as UP, DEGRADED or DOWN from their local port."""

    host: str = "127.0.0.1"
    connect_timeout: float = 0.5
    http_timeout: float = 0.1
    version_path: str = "/apps/core/version/"
    version_field: str = "openslides_version"
    image_info_path: str = "/image-version.txt"

    def probe(self, port: int | None, *, fast: bool = False) -> ProbeResult:
        """Probe *port*; a missing port is always DOWN."""
        if port is None or not self.is_reachable(port):
            return ProbeResult(status=Status.DOWN)
        if fast:
            return ProbeResult(status=Status.UP, version=SKIPPED_VERSION, reachable=True)
        body = self._fetch(port, self.version_path)
        version = parse_version(body, self.version_field) if body is not None else None
        if version is None:
            return ProbeResult(status=Status.DEGRADED, reachable=True, checked_version=True)
        return ProbeResult(
            status=Status.UP,
            version=version,
            reachable=True,
            checked_version=True,
        )

    def is_reachable(self, port: int) -> bool:
        """Return True when a TCP connection to *port* succeeds."""
        try:
            with socket.create_connection((self.host, port), timeout=self.connect_timeout):
                return True
        except OSError:
            return False

    def image_info(self, port: int | None) -> str | None:
        """Return the image build description served by the instance."""
        if port is None:
            return None
        body = self._fetch(port, self.image_info_path)
        if body is None:
            return None
        text = body.strip()
        return text if text.startswith("Built") else None

    # ------------------------------------------------------------------
    def _fetch(self, port: int, path: str) -> str | None:
        url = f"http://{self.host}:{port}{path}"
        try:
            with urllib.request.urlopen(url, timeout=self.http_timeout) as response:  # noqa: S310
                return response.read().decode("utf-8", errors="replace")
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError):
            return None


__all__ = ["HealthProber", "ProbeResult", "SKIPPED_VERSION", "Status", "parse_version"]
