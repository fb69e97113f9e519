"""Provider interfaces for instancectl."""
from __future__ import annotations

from .certificates import CertificateManager
from .containers import ComposeRuntime, ContainerRuntime, RollingUpdateResult, StackRuntime, runtime_for
from .database import CloneResult, PostgresProvider
from .dns import DomainResolver
from .haproxy import ProxyRegistrar, ProxyUpdateResult
from .health import HealthProber, ProbeResult, Status

__all__ = [
    "CertificateManager",
    "CloneResult",
    "ComposeRuntime",
    "ContainerRuntime",
    "DomainResolver",
    "HealthProber",
    "PostgresProvider",
    "ProbeResult",
    "ProxyRegistrar",
    "ProxyUpdateResult",
    "RollingUpdateResult",
    "StackRuntime",
    "Status",
    "runtime_for",
]
