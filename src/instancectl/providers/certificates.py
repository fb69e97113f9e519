"""Certificate manager wrapping acmetool."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from cryptography import x509

from ..errors import ExternalToolError


@dataclass(slots=True)
class CertificateManager:
    """Request and withdraw TLS certificates for instance domains."""

    tool: str = "acmetool"
    live_dir: Path = Path("/var/lib/acme/live")
    command_timeout: float = 300.0

    def domains_for(self, name: str, www: bool = False) -> list[str]:
        """Return the domain set to request for *name*."""
        domains = [name]
        if www:
            domains.append(f"www.{name}")
        return domains

    def issue(self, name: str, *, www: bool = False, local_only: bool = False) -> list[str] | None:
        """Request certificates for *name*; returns ``None`` when skipped."""
        if local_only:
            return None
        domains = self.domains_for(name, www)
        self._run_command([self.tool, "want", *domains])
        return domains

    def revoke(self, name: str) -> None:
        """Withdraw the certificate desire for *name*."""
        self._run_command([self.tool, "unwant", name])

    def certificate_path(self, name: str) -> Path:
        """Return the live certificate path for *name*."""
        return self.live_dir / name / "cert"

    def expiry(self, name: str) -> datetime | None:
        """Return the ``notAfter`` timestamp of the live certificate."""
        path = self.certificate_path(name)
        try:
            data = path.read_bytes()
        except OSError:
            return None
        try:
            certificate = x509.load_pem_x509_certificate(data)
        except ValueError:
            return None
        return certificate.not_valid_after_utc

    # ------------------------------------------------------------------
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


__all__ = ["CertificateManager"]
