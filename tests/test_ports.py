"""Tests for local port allocation."""
from __future__ import annotations

import socket
from collections.abc import Callable
from pathlib import Path

import pytest

from instancectl.errors import ResourceExhaustedError
from instancectl.ports import PortAllocator, port_is_bound

MakeInstance = Callable[..., Path]


def _allocator(fleet_root: Path, bound: set[int] | None = None) -> PortAllocator:
    taken = bound or set()
    return PortAllocator(
        fleet_root=fleet_root,
        config_filename="docker-compose.yml",
        is_bound=lambda port: port in taken,
    )


def test_empty_fleet_allocates_first_port_above_base(fleet_root: Path) -> None:
    """With no instances the first port handed out is base + 1."""
    assert _allocator(fleet_root).allocate_port() == 61001


def test_allocation_follows_highest_declared_port(
    fleet_root: Path,
    make_instance: MakeInstance,
) -> None:
    """The next candidate is one above the highest declared port."""
    make_instance("a.example.org", 61003)
    make_instance("b.example.org", 61001)

    allocator = _allocator(fleet_root)

    assert allocator.declared_ports() == {"a.example.org": 61003, "b.example.org": 61001}
    assert allocator.allocate_port() == 61004


def test_live_listeners_are_skipped(fleet_root: Path, make_instance: MakeInstance) -> None:
    """Ports bound by processes outside the fleet are never returned."""
    make_instance("a.example.org", 61001)

    allocator = _allocator(fleet_root, bound={61002, 61003})

    assert allocator.allocate_port() == 61004


def test_ports_outside_range_are_ignored(fleet_root: Path, make_instance: MakeInstance) -> None:
    """Declared ports below the reserved range do not influence allocation."""
    make_instance("old.example.org", 8000)

    allocator = _allocator(fleet_root)

    assert allocator.declared_ports() == {}
    assert allocator.allocate_port() == 61001


def test_malformed_configs_are_skipped(fleet_root: Path, make_instance: MakeInstance) -> None:
    """A broken instance config does not prevent allocation."""
    broken = fleet_root / "broken.example.org"
    broken.mkdir()
    (broken / "docker-compose.yml").write_text("services: [oops\n", encoding="utf-8")
    make_instance("ok.example.org", 61005)

    assert _allocator(fleet_root).allocate_port() == 61006


def test_exhausted_when_ceiling_declared(fleet_root: Path, make_instance: MakeInstance) -> None:
    """A fleet that already declares the ceiling has no port left."""
    make_instance("last.example.org", 65535)

    with pytest.raises(ResourceExhaustedError):
        _allocator(fleet_root).allocate_port()


def test_exhausted_after_max_attempts(fleet_root: Path) -> None:
    """Retries stop after the configured number of attempts."""
    allocator = PortAllocator(
        fleet_root=fleet_root,
        config_filename="docker-compose.yml",
        max_attempts=3,
        is_bound=lambda port: True,
    )

    with pytest.raises(ResourceExhaustedError) as excinfo:
        allocator.allocate_port()

    assert "3 attempts" in str(excinfo.value)


def test_port_is_bound_detects_listener() -> None:
    """A port held by a listening socket is reported as bound."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]

        assert port_is_bound(port, host="127.0.0.1") is True
