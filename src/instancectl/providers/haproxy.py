"""HAProxy provider maintaining the managed SNI routing block."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ConfigurationError, ExternalToolError
from ..state.files import atomic_write_text


@dataclass(slots=True)
class ProxyUpdateResult:
    """Outcome of registering or unregistering an instance."""

    changed: bool
    reload_error: str | None = None

    @property
    def reloaded(self) -> bool:
        """Return True when the proxy accepted the new configuration."""
        return self.changed and self.reload_error is None


@dataclass(slots=True)
class ProxyRegistrar:
    """Add and remove per-instance routing rules between two sentinel lines."""

    config_file: Path = Path("/etc/haproxy/haproxy.cfg")
    backup_suffix: str = ".osbak"
    begin_marker: str = "-----BEGIN AUTOMATIC OPENSLIDES CONFIG-----"
    end_marker: str = "-----END AUTOMATIC OPENSLIDES CONFIG-----"
    reload_command: tuple[str, ...] = ("systemctl", "reload", "haproxy")
    backend_host: str = "127.1"
    command_timeout: float = 300.0

    @property
    def backup_path(self) -> Path:
        """Return the path of the pre-change backup copy."""
        return self.config_file.with_name(self.config_file.name + self.backup_suffix)

    def rule_lines(self, name: str, port: int) -> list[str]:
        """Return the routing rule pair for *name* on *port*."""
        return [
            f"\tuse-server {name} if {{ ssl_fc_sni_end -i {name} }}",
            f"\tserver     {name} {self.backend_host}:{port}  weight 0 check",
        ]

    def entries(self) -> list[tuple[str, int]]:
        """Return ``(name, port)`` for every managed server line."""
        lines = self._read_lines()
        begin, end = self._locate_block(lines)
        found: list[tuple[str, int]] = []
        for line in lines[begin + 1 : end]:
            tokens = line.split()
            if len(tokens) >= 3 and tokens[0] == "server":
                _, _, port_text = tokens[2].rpartition(":")
                if port_text.isdigit():
                    found.append((tokens[1], int(port_text)))
        return found

    def register(self, name: str, port: int, *, reload: bool = True) -> ProxyUpdateResult:
        """Insert (or replace) the rules for *name* inside the managed block."""
        lines = self._read_lines()
        begin, end = self._locate_block(lines)
        block = [line for line in lines[begin + 1 : end] if not self._belongs_to(line, name)]
        block.extend(self.rule_lines(name, port))
        updated = [*lines[: begin + 1], *block, *lines[end:]]
        return self._apply(lines, updated, reload=reload)

    def unregister(self, name: str, *, reload: bool = True) -> ProxyUpdateResult:
        """Remove every rule line belonging to *name* from the managed block."""
        lines = self._read_lines()
        begin, end = self._locate_block(lines)
        block = [line for line in lines[begin + 1 : end] if not self._belongs_to(line, name)]
        updated = [*lines[: begin + 1], *block, *lines[end:]]
        return self._apply(lines, updated, reload=reload)

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Ask the proxy to reload its configuration."""
        return self._run_command(self.reload_command)

    # ------------------------------------------------------------------
    @staticmethod
    def _belongs_to(line: str, name: str) -> bool:
        tokens = line.split()
        return len(tokens) >= 2 and tokens[0] in {"use-server", "server"} and tokens[1] == name

    def _read_lines(self) -> list[str]:
        try:
            text = self.config_file.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Proxy configuration {self.config_file} does not exist.") from exc
        except OSError as exc:
            raise ConfigurationError(f"Cannot read {self.config_file}: {exc}") from exc
        return text.splitlines()

    def _locate_block(self, lines: Sequence[str]) -> tuple[int, int]:
        begins = [index for index, line in enumerate(lines) if self.begin_marker in line]
        ends = [index for index, line in enumerate(lines) if self.end_marker in line]
        if len(begins) != 1 or len(ends) != 1 or begins[0] > ends[0]:
            raise ConfigurationError(
                f"{self.config_file} must contain exactly one '{self.begin_marker}' line "
                f"followed by one '{self.end_marker}' line."
            )
        return begins[0], ends[0]

    def _apply(
        self,
        previous: Sequence[str],
        updated: Sequence[str],
        *,
        reload: bool,
    ) -> ProxyUpdateResult:
        if list(previous) == list(updated):
            return ProxyUpdateResult(changed=False)
        try:
            shutil.copy2(self.config_file, self.backup_path)
            atomic_write_text(self.config_file, "\n".join(updated) + "\n")
        except OSError as exc:
            raise ConfigurationError(f"Cannot update {self.config_file}: {exc}") from exc
        if not reload:
            return ProxyUpdateResult(changed=True)
        try:
            self.reload()
        except ExternalToolError as exc:
            return ProxyUpdateResult(changed=True, reload_error=str(exc))
        return ProxyUpdateResult(changed=True)

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.command_timeout,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"{args[0]} not found: {exc}", command=args) from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(
                f"{' '.join(args)} timed out after {self.command_timeout:g} seconds.",
                command=args,
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ExternalToolError(
                f"{' '.join(args)} failed (exit {result.returncode}): {message}",
                command=args,
                returncode=result.returncode,
            )
        return result


__all__ = ["ProxyRegistrar", "ProxyUpdateResult"]
