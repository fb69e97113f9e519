"""Discovery and status reporting for the instances under the fleet root.

Every sub-directory of the fleet root that holds an instance config file is
an instance. Listing probes each instance's local port and can fan the probes
out over a thread pool; the output always follows discovery order.
"""
from __future__ import annotations

import concurrent.futures
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..errors import ConfigurationError, NotFoundError
from ..models import ImageRef, Instance, UserAccount
from ..providers.certificates import CertificateManager
from ..providers.health import HealthProber, ProbeResult, Status

SUMMARY_WIDTH = 40


@dataclass(frozen=True, slots=True)
class ListFilter:
    """Selection and detail options for a fleet listing."""

    pattern: str | None = None
    search_metadata: bool = False
    online: bool = False
    offline: bool = False
    fast: bool = False
    long: bool = False
    metadata: bool = False
    image_info: bool = False
    parallel: bool = True

    def accepts(self, probe: ProbeResult) -> bool:
        """Apply the online/offline post-filter."""
        if self.online and not self.offline:
            return probe.status is not Status.DOWN
        if self.offline and not self.online:
            return probe.status is Status.DOWN
        return True


@dataclass(slots=True)
class InstanceReport:
    """One row of a fleet listing."""

    instance: Instance
    probe: ProbeResult
    port: int | None = None
    image: ImageRef | None = None
    summary: str | None = None
    metadata: list[str] = field(default_factory=list)
    admin_password: str | None = None
    user_account: UserAccount | None = None
    image_info: str | None = None
    certificate_expiry: datetime | None = None

    @property
    def name(self) -> str:
        """Return the instance name."""
        return self.instance.name

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        account = None
        if self.user_account is not None:
            account = {
                "first_name": self.user_account.first_name,
                "last_name": self.user_account.last_name,
                "password": self.user_account.password,
            }
        return {
            "name": self.instance.name,
            "directory": str(self.instance.directory),
            "stack_name": self.instance.stack_name,
            "status": self.probe.status.value,
            "version": self.probe.version,
            "port": self.port,
            "image": str(self.image) if self.image else None,
            "summary": self.summary,
            "metadata": list(self.metadata),
            "admin_password": self.admin_password,
            "user_account": account,
            "image_info": self.image_info,
            "certificate_expiry": (
                self.certificate_expiry.isoformat() if self.certificate_expiry else None
            ),
        }


def summarise(line: str | None, width: int = SUMMARY_WIDTH) -> str | None:
    """Shorten a metadata line to fit a single listing column."""
    if line is None:
        return None
    if len(line) <= width:
        return line
    return line[: width - 1] + "…"


@dataclass(slots=True)
class InstanceRegistry:
    """Read-only view over the instance directories of the fleet root."""

    fleet_root: Path
    config_filename: str
    marker_filename: str = ".instancectl-marker"
    metadata_filename: str = "metadata.txt"
    prober: HealthProber = field(default_factory=HealthProber)
    certificates: CertificateManager | None = None
    proxy_service: str = "client"
    proxy_port: int = 80
    application: tuple[str, ...] = ("server", "prioserver")
    admin_file: str = "adminsecret.env"
    user_file: str = "usersecret.env"

    def ensure_root(self) -> None:
        """Fail when the fleet root is missing."""
        if not self.fleet_root.is_dir():
            raise ConfigurationError(f"Fleet root {self.fleet_root} does not exist.")

    def instance(self, name: str) -> Instance:
        """Return the :class:`Instance` for *name* (it may not exist yet)."""
        return self.at(self.fleet_root / name)

    def at(self, directory: Path) -> Instance:
        """Return the :class:`Instance` rooted at *directory*."""
        return Instance(
            name=directory.name,
            directory=directory,
            config_filename=self.config_filename,
            marker_filename=self.marker_filename,
            metadata_filename=self.metadata_filename,
        )

    def discover(self) -> list[Instance]:
        """Return every instance under the fleet root sorted by name."""
        self.ensure_root()
        try:
            entries = sorted(self.fleet_root.iterdir())
        except OSError as exc:
            raise ConfigurationError(f"Cannot list {self.fleet_root}: {exc}") from exc
        found: list[Instance] = []
        for entry in entries:
            if entry.is_dir() and (entry / self.config_filename).is_file():
                found.append(self.at(entry))
        return found

    def get(self, name: str) -> Instance:
        """Return the existing instance *name* or raise :class:`NotFoundError`."""
        instance = self.instance(name)
        if not instance.exists:
            raise NotFoundError(f"Instance {name} not found in {self.fleet_root}.")
        return instance

    def find(self, pattern: str | None = None, *, search_metadata: bool = False) -> list[Instance]:
        """Return instances whose name (or metadata) matches *pattern*."""
        instances = self.discover()
        if not pattern:
            return instances
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise ConfigurationError(f"Invalid search pattern '{pattern}': {exc}") from exc
        matched: list[Instance] = []
        for instance in instances:
            if regex.search(instance.name):
                matched.append(instance)
            elif search_metadata and any(regex.search(line) for line in instance.read_metadata()):
                matched.append(instance)
        return matched

    def list(self, options: ListFilter | None = None) -> list[InstanceReport]:
        """Return reports for the matching instances in discovery order."""
        options = options or ListFilter()
        instances = self.find(options.pattern, search_metadata=options.search_metadata)
        reports = self._collect(instances, options)
        return [report for report in reports if options.accepts(report.probe)]

    def report(self, instance: Instance, options: ListFilter | None = None) -> InstanceReport:
        """Build the listing row for a single instance."""
        options = options or ListFilter()
        port = instance.local_port(self.proxy_service, self.proxy_port)
        probe = self.prober.probe(port, fast=options.fast)
        metadata = instance.read_metadata()
        report = InstanceReport(
            instance=instance,
            probe=probe,
            port=port,
            summary=None if options.fast else summarise(metadata[0] if metadata else None),
        )
        if options.long or options.metadata:
            report.metadata = metadata
        if options.long:
            report.image = instance.image(self.application)
            report.admin_password = instance.admin_password(self.admin_file)
            report.user_account = instance.user_account(self.user_file)
            if self.certificates is not None:
                report.certificate_expiry = self.certificates.expiry(instance.name)
        if options.image_info and probe.online:
            report.image_info = self.prober.image_info(port)
        return report

    # ------------------------------------------------------------------
    def _collect(self, instances: Sequence[Instance], options: ListFilter) -> list[InstanceReport]:
        if not options.parallel or len(instances) <= 1:
            return [self.report(instance, options) for instance in instances]

        results: list[InstanceReport | None] = [None] * len(instances)
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(instances)) as executor:
            future_to_index: dict[concurrent.futures.Future[InstanceReport], int] = {}
            for index, instance in enumerate(instances):
                future = executor.submit(self.report, instance, options)
                future_to_index[future] = index

            for future in concurrent.futures.as_completed(future_to_index):
                index = future_to_index[future]
                results[index] = future.result()

        return [result for result in results if result is not None]


__all__ = ["InstanceReport", "InstanceRegistry", "ListFilter", "summarise"]
