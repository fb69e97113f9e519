"""Port allocation helpers for instancectl.

Every instance publishes exactly one host port (its reverse proxy). The next
port is derived from the highest port declared by any instance config under
the fleet root and then double-checked against the live sockets on the host,
which also covers test instances started outside the fleet root.
"""
from __future__ import annotations

import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .compose import ComposeDocument
from .errors import MalformedTemplateError, ResourceExhaustedError


def port_is_bound(port: int, host: str = "0.0.0.0") -> bool:
    """Return True when a TCP socket cannot be bound to *port*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


@dataclass(slots=True)
class PortAllocator:
    """Hand out unique local ports from the reserved range."""

    fleet_root: Path
    config_filename: str
    proxy_service: str = "client"
    proxy_port: int = 80
    base: int = 61000
    ceiling: int = 65535
    max_attempts: int = 25
    is_bound: Callable[[int], bool] = field(default=port_is_bound)

    # ------------------------------------------------------------------
    def declared_ports(self) -> dict[str, int]:
        """Return ``{instance name: port}`` for every config in the fleet."""
        declared: dict[str, int] = {}
        if not self.fleet_root.is_dir():
            return declared
        for config_path in sorted(self.fleet_root.glob(f"*/{self.config_filename}")):
            try:
                document = ComposeDocument.load(config_path)
            except MalformedTemplateError:
                continue
            ports = [
                port
                for port in document.published_ports(self.proxy_service, self.proxy_port)
                if self.base <= port <= self.ceiling
            ]
            if ports:
                declared[config_path.parent.name] = max(ports)
        return declared

    def allocate_port(self) -> int:
        """Return the next free port above the highest declared one."""
        declared = self.declared_ports()
        highest = max(declared.values(), default=self.base)
        candidate = highest + 1
        used = set(declared.values())

        attempts = 0
        while True:
            if candidate > self.ceiling:
                raise ResourceExhaustedError(
                    f"Ran out of ports: no free port in {self.base}-{self.ceiling}."
                )
            if candidate not in used and not self.is_bound(candidate):
                return candidate
            attempts += 1
            if attempts > self.max_attempts:
                raise ResourceExhaustedError(
                    f"Could not find a free port after {self.max_attempts} attempts "
                    f"(last tried {candidate})."
                )
            candidate += 1


__all__ = ["PortAllocator", "port_is_bound"]
