"""Tests for the PostgreSQL clone helper."""
from __future__ import annotations

from collections.abc import Sequence

import pytest

from instancectl.errors import ExternalToolError
from instancectl.providers.database import PostgresProvider


class DummyResult:
    """Minimal ``CompletedProcess`` replacement."""

    def __init__(self, stdout: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = 0
        self.stdout = stdout
        self.stderr = ""


class FakeRuntime:
    """Record exec and pipe calls instead of talking to docker."""

    def __init__(self, *, listing: str = "", ready_after: int = 1) -> None:
        """Configure the database listing and readiness behaviour."""
        self.listing = listing
        self.ready_after = ready_after
        self.execs: list[tuple[str, list[str], str | None]] = []
        self.pipes: list[tuple[str, list[str], str, list[str]]] = []

    def exec(self, container: str, args: Sequence[str], *, user: str | None = None) -> DummyResult:
        self.execs.append((container, list(args), user))
        if args[0] == "pg_isready":
            attempts = sum(1 for _, call, _ in self.execs if call[0] == "pg_isready")
            if attempts < self.ready_after:
                raise ExternalToolError("pg_isready failed (exit 2): no response")
        if args[0] == "psql" and r"\l" in args:
            return DummyResult(self.listing)
        return DummyResult()

    def pipe(
        self,
        source: tuple[str, Sequence[str]],
        target: tuple[str, Sequence[str]],
        *,
        user: str | None = None,
    ) -> None:
        self.pipes.append((source[0], list(source[1]), target[0], list(target[1])))


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self) -> None:
        """Start at zero."""
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _provider(runtime: FakeRuntime, clock: FakeClock, **kwargs: object) -> PostgresProvider:
    return PostgresProvider(
        runtime=runtime,  # type: ignore[arg-type]
        sleep=clock.sleep,
        clock=clock,
        **kwargs,  # type: ignore[arg-type]
    )


def test_wait_ready_backs_off_exponentially() -> None:
    """The poll interval doubles up to the configured maximum."""
    clock = FakeClock()
    runtime = FakeRuntime(ready_after=6)

    attempts = _provider(runtime, clock, poll_interval=0.5, max_poll_interval=2.0).wait_ready("db1")

    assert attempts == 6
    assert clock.sleeps == [0.5, 1.0, 2.0, 2.0, 2.0]
    assert runtime.execs[0] == ("db1", ["pg_isready", "-q"], "postgres")


def test_wait_ready_times_out() -> None:
    """A database that never answers raises after the timeout."""
    clock = FakeClock()
    runtime = FakeRuntime(ready_after=10_000)

    with pytest.raises(ExternalToolError) as excinfo:
        _provider(runtime, clock, ready_timeout=3.0, poll_interval=1.0).wait_ready("db1")

    assert "not ready after 3 seconds" in str(excinfo.value)
    assert sum(clock.sleeps) == pytest.approx(3.0)


def test_list_databases_reads_first_column() -> None:
    """Only the name column of ``\\l`` output is kept."""
    runtime = FakeRuntime(listing="openslides\tpostgres\tUTF8\ntemplate0\tpostgres\tUTF8\n")

    names = _provider(runtime, FakeClock()).list_databases("src")

    assert names == ["openslides", "template0"]


def test_clone_copies_present_databases_and_skips_missing() -> None:
    """Databases absent on the source are skipped, the rest recreated and piped."""
    runtime = FakeRuntime(listing="openslides\tx\ninstancecfg\tx\n")
    steps: list[tuple[str, str]] = []

    result = _provider(runtime, FakeClock()).clone(
        "src",
        "dst",
        on_step=lambda name, detail: steps.append((name, detail)),
    )

    assert result.copied == ["openslides", "instancecfg"]
    assert result.skipped == ["mediafiledata"]
    dropped = [args for container, args, _ in runtime.execs if args[0] == "dropdb"]
    assert dropped == [["dropdb", "--if-exists", "openslides"], ["dropdb", "--if-exists", "instancecfg"]]
    assert runtime.pipes[0] == (
        "src",
        ["pg_dump", "-h", "db", "-U", "openslides", "-c", "--if-exists", "openslides"],
        "dst",
        ["psql", "-h", "pgnode1", "-U", "openslides", "openslides"],
    )
    assert ("database.skip:mediafiledata", "not present on source") in steps
