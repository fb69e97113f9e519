"""Tests for the HAProxy registrar."""
from __future__ import annotations

import time
from collections.abc import Sequence
from pathlib import Path

import pytest

from instancectl.errors import ConfigurationError, ExternalToolError
from instancectl.providers.haproxy import ProxyRegistrar


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def calls(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    """Capture reload commands instead of running them."""
    recorded: list[list[str]] = []

    def fake_run(self: ProxyRegistrar, args: Sequence[str]) -> DummyResult:
        recorded.append(list(args))
        return DummyResult()

    monkeypatch.setattr(ProxyRegistrar, "_run_command", fake_run)
    return recorded


@pytest.fixture
def registrar(proxy_cfg: Path) -> ProxyRegistrar:
    """Return a registrar bound to the temporary proxy config."""
    return ProxyRegistrar(config_file=proxy_cfg)


def _block(path: Path) -> list[str]:
    lines = path.read_text(encoding="utf-8").splitlines()
    begin = next(i for i, line in enumerate(lines) if "BEGIN AUTOMATIC" in line)
    end = next(i for i, line in enumerate(lines) if "END AUTOMATIC" in line)
    return lines[begin + 1 : end]


def test_register_inserts_rule_pair(
    registrar: ProxyRegistrar,
    proxy_cfg: Path,
    calls: list[list[str]],
) -> None:
    """Registration adds a use-server and a server line inside the block."""
    result = registrar.register("demo.example.org", 61001)

    assert result.changed is True
    assert result.reloaded is True
    assert _block(proxy_cfg) == [
        "\tuse-server demo.example.org if { ssl_fc_sni_end -i demo.example.org }",
        "\tserver     demo.example.org 127.1:61001  weight 0 check",
    ]
    assert calls == [["systemctl", "reload", "haproxy"]]
    assert registrar.backup_path.exists()
    assert registrar.entries() == [("demo.example.org", 61001)]


def test_register_is_idempotent(
    registrar: ProxyRegistrar,
    proxy_cfg: Path,
    calls: list[list[str]],
) -> None:
    """Registering twice leaves exactly one rule pair."""
    registrar.register("demo.example.org", 61001)
    second = registrar.register("demo.example.org", 61001)

    assert second.changed is False
    assert len(_block(proxy_cfg)) == 2
    assert len(calls) == 1


def test_register_replaces_previous_port(
    registrar: ProxyRegistrar,
    calls: list[list[str]],
) -> None:
    """Re-registering with another port replaces the old rule."""
    registrar.register("demo.example.org", 61001)
    registrar.register("demo.example.org", 61002)

    assert registrar.entries() == [("demo.example.org", 61002)]


def test_unregister_matches_exact_name(
    registrar: ProxyRegistrar,
    proxy_cfg: Path,
    calls: list[list[str]],
) -> None:
    """Only the named instance is removed; similar names survive."""
    registrar.register("demo.example.org", 61001)
    registrar.register("my-demo.example.org", 61002)

    result = registrar.unregister("demo.example.org")

    assert result.changed is True
    assert registrar.entries() == [("my-demo.example.org", 61002)]
    assert "legacy.example.org 127.1:60000" in proxy_cfg.read_text(encoding="utf-8")


def test_unregister_unknown_name_is_noop(registrar: ProxyRegistrar, calls: list[list[str]]) -> None:
    """Removing an absent instance changes nothing and does not reload."""
    result = registrar.unregister("ghost.example.org")

    assert result.changed is False
    assert calls == []


def test_reload_failure_is_reported_not_raised(
    monkeypatch: pytest.MonkeyPatch,
    registrar: ProxyRegistrar,
) -> None:
    """A failing reload keeps the new file and returns the error."""

    def failing_run(self: ProxyRegistrar, args: Sequence[str]) -> DummyResult:
        raise ExternalToolError("systemctl reload haproxy failed (exit 1): boom")

    monkeypatch.setattr(ProxyRegistrar, "_run_command", failing_run)

    result = registrar.register("demo.example.org", 61001)

    assert result.changed is True
    assert result.reloaded is False
    assert "boom" in (result.reload_error or "")
    assert registrar.entries() == [("demo.example.org", 61001)]


def test_missing_sentinels_raise(tmp_path: Path) -> None:
    """A config without the managed block is a configuration error."""
    cfg = tmp_path / "haproxy.cfg"
    cfg.write_text("global\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        ProxyRegistrar(config_file=cfg).register("demo.example.org", 61001)


def test_missing_file_raises(tmp_path: Path) -> None:
    """A missing proxy config is a configuration error."""
    with pytest.raises(ConfigurationError):
        ProxyRegistrar(config_file=tmp_path / "absent.cfg").entries()


def test_hung_reload_is_cut_off(proxy_cfg: Path) -> None:
    """A reload command that never returns is killed after the command timeout."""
    registrar = ProxyRegistrar(
        config_file=proxy_cfg,
        reload_command=("sleep", "10"),
        command_timeout=0.5,
    )

    started = time.monotonic()
    result = registrar.register("demo.example.org", 61001)

    assert time.monotonic() - started < 5
    assert result.changed is True
    assert "timed out after 0.5 seconds" in (result.reload_error or "")
    assert registrar.entries() == [("demo.example.org", 61001)]


def test_write_failure_is_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
    registrar: ProxyRegistrar,
    calls: list[list[str]],
) -> None:
    """Filesystem errors while replacing the config are reported with the path."""

    def refuse(path: Path, content: str, *, mode: int | None = None) -> None:
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr("instancectl.providers.haproxy.atomic_write_text", refuse)

    with pytest.raises(ConfigurationError) as excinfo:
        registrar.register("demo.example.org", 61001)

    assert str(registrar.config_file) in str(excinfo.value)
    assert calls == []
