"""Check that an instance domain resolves to this host."""
from __future__ import annotations

import socket
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field

from ..errors import PreconditionError

HOSTNAME_TIMEOUT = 5.0


def resolve_addresses(name: str) -> set[str]:
    """Return the IPv4 addresses *name* resolves to (empty when unknown)."""
    try:
        _, _, addresses = socket.gethostbyname_ex(name)
    except OSError:
        return set()
    return set(addresses)


def local_addresses(timeout: float = HOSTNAME_TIMEOUT) -> set[str]:
    """Return the addresses assigned to this host as reported by ``hostname -I``."""
    try:
        result = subprocess.run(  # noqa: S603, S607
            ["hostname", "-I"],
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return set()
    if result.returncode != 0:
        return set()
    return set(result.stdout.split())


@dataclass(slots=True)
class DomainResolver:
    """Verify an instance's domain name before creating it."""

    resolve: Callable[[str], set[str]] = field(default=resolve_addresses)
    host_addresses: Callable[[], set[str]] = field(default=local_addresses)

    def verify(self, name: str) -> set[str]:
        """Return the shared addresses or raise :class:`PreconditionError`."""
        resolved = self.resolve(name)
        if not resolved:
            raise PreconditionError(f"Hostname {name} not found. Override with --force.")
        shared = resolved & self.host_addresses()
        if not shared:
            raise PreconditionError(
                f"{name} does not point to this host. Override with --force."
            )
        return shared


__all__ = ["DomainResolver", "local_addresses", "resolve_addresses"]
