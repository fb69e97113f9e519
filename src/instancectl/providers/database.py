"""PostgreSQL cloning between instance database containers."""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ..errors import ExternalToolError
from .containers import ContainerRuntime


@dataclass(slots=True)
class CloneResult:
    """Databases copied (and skipped) during a clone."""

    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PostgresProvider:
    """Copy application databases from one instance to another via pg_dump."""

    runtime: ContainerRuntime
    user: str = "openslides"
    owner: str = "openslides"
    system_user: str = "postgres"
    source_host: str = "db"
    target_host: str = "pgnode1"
    databases: tuple[str, ...] = ("openslides", "instancecfg", "mediafiledata")
    ready_timeout: float = 60.0
    poll_interval: float = 0.5
    max_poll_interval: float = 5.0
    sleep: Callable[[float], None] = field(default=time.sleep)
    clock: Callable[[], float] = field(default=time.monotonic)

    def wait_ready(self, container: str) -> int:
        """Poll ``pg_isready`` until the server accepts connections.

        Returns the number of attempts made. The interval doubles after each
        failed attempt up to ``max_poll_interval``; once ``ready_timeout``
        elapses an :class:`ExternalToolError` is raised.
        """
        deadline = self.clock() + self.ready_timeout
        interval = self.poll_interval
        attempts = 0
        while True:
            attempts += 1
            try:
                self.runtime.exec(container, ["pg_isready", "-q"], user=self.system_user)
                return attempts
            except ExternalToolError as exc:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    raise ExternalToolError(
                        f"Database in container {container} not ready after "
                        f"{self.ready_timeout:g} seconds: {exc}"
                    ) from exc
                self.sleep(min(interval, remaining))
                interval = min(interval * 2, self.max_poll_interval)

    def list_databases(self, container: str) -> list[str]:
        """Return the database names served through *container*."""
        result = self.runtime.exec(
            container,
            ["psql", "-U", self.user, "-h", self.source_host, "-d", self.databases[0],
             "-c", r"\l", "-AtF", "\t"],
        )
        names: list[str] = []
        for line in (result.stdout or "").splitlines():
            name = line.split("\t", 1)[0].strip()
            if name:
                names.append(name)
        return names

    def recreate(self, container: str, database: str) -> None:
        """Drop and re-create *database* in the target container."""
        terminate = (
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            f"WHERE datname='{database}';"
        )
        self.runtime.exec(container, ["psql", "-q", "-c", terminate], user=self.system_user)
        self.runtime.exec(container, ["dropdb", "--if-exists", database], user=self.system_user)
        self.runtime.exec(container, ["createdb", "-O", self.owner, database], user=self.system_user)

    def copy(self, source: str, target: str, database: str) -> None:
        """Stream a dump of *database* from *source* into *target*."""
        self.runtime.pipe(
            (source, ["pg_dump", "-h", self.source_host, "-U", self.user, "-c", "--if-exists", database]),
            (target, ["psql", "-h", self.target_host, "-U", self.user, database]),
            user=self.system_user,
        )

    def clone(
        self,
        source: str,
        target: str,
        *,
        on_step: Callable[[str, str], None] | None = None,
    ) -> CloneResult:
        """Copy every configured database present on *source* into *target*."""
        outcome = CloneResult()
        available = set(self.list_databases(source))
        for database in self.databases:
            if database not in available:
                outcome.skipped.append(database)
                if on_step is not None:
                    on_step(f"database.skip:{database}", "not present on source")
                continue
            self.recreate(target, database)
            self.copy(source, target, database)
            outcome.copied.append(database)
            if on_step is not None:
                on_step(f"database.copy:{database}", "copied")
        return outcome


__all__ = ["CloneResult", "PostgresProvider"]
