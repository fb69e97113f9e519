"""Shared fixtures for the instancectl test suite."""
from __future__ import annotations

from pathlib import Path

import pytest

from instancectl.config import AppConfig, load_config

TEMPLATE_YAML = """\
version: "3.4"
services:
  server:
    image: openslides/openslides-server:latest
    environment:
      - DJANGO_SECRET_FILE=/run/secrets/django
  prioserver:
    image: openslides/openslides-server:latest
  client:
    image: openslides/openslides-client:latest
    ports:
      - "127.0.0.1:61000:80"
      - "8443:443"
  postfix:
    image: openslides/openslides-postfix:latest
    environment:
      MYHOSTNAME: localhost
      RELAYHOST: localhost
  pgnode1:
    image: openslides/openslides-repmgr:latest
    ports:
      - "5432:5432"
"""

PROXY_CFG = """\
global
\tlog /dev/log local0

frontend https
\tbind :443
\tmode tcp
backend openslides
\tmode tcp
\t# -----BEGIN AUTOMATIC OPENSLIDES CONFIG-----
\t# -----END AUTOMATIC OPENSLIDES CONFIG-----
\tserver     legacy.example.org 127.1:60000  weight 0 check
"""


def write_instance_config(fleet_root: Path, name: str, port: int, *, filename: str = "docker-compose.yml") -> Path:
    """Create a minimal instance directory publishing *port*."""
    directory = fleet_root / name
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(
        "services:\n"
        "  server:\n"
        "    image: openslides/openslides-server:3.4\n"
        "  client:\n"
        "    ports:\n"
        f'      - "127.0.0.1:{port}:80"\n',
        encoding="utf-8",
    )
    return path


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """Return a template directory holding ``docker-compose.yml.example``."""
    directory = tmp_path / "template"
    directory.mkdir()
    (directory / "docker-compose.yml.example").write_text(TEMPLATE_YAML, encoding="utf-8")
    (directory / "docker-stack.yml.example").write_text(TEMPLATE_YAML, encoding="utf-8")
    return directory


@pytest.fixture
def fleet_root(tmp_path: Path) -> Path:
    """Return an empty fleet root."""
    root = tmp_path / "instances"
    root.mkdir()
    return root


@pytest.fixture
def proxy_cfg(tmp_path: Path) -> Path:
    """Return a proxy configuration file with an empty managed block."""
    path = tmp_path / "haproxy.cfg"
    path.write_text(PROXY_CFG, encoding="utf-8")
    return path


@pytest.fixture
def env_overrides(
    tmp_path: Path,
    fleet_root: Path,
    template_dir: Path,
    proxy_cfg: Path,
) -> dict[str, str]:
    """Environment variables pointing every path at the temporary tree."""
    return {
        "INSTANCECTL_CONFIG_FILE": str(tmp_path / "missing-config.yml"),
        "INSTANCECTL_FLEET_ROOT": str(fleet_root),
        "INSTANCECTL_LOGS_DIR": str(tmp_path / "logs"),
        "INSTANCECTL_TEMPLATE__SOURCE": str(template_dir),
        "INSTANCECTL_PROXY__CONFIG_FILE": str(proxy_cfg),
        "INSTANCECTL_PROXY__RELOAD_COMMAND": "echo reload",
        "INSTANCECTL_CERTIFICATES__LIVE_DIR": str(tmp_path / "acme"),
    }


@pytest.fixture
def app_config(env_overrides: dict[str, str]) -> AppConfig:
    """Return an :class:`AppConfig` bound to the temporary tree."""
    return load_config(env=env_overrides)


@pytest.fixture
def make_instance(fleet_root: Path):
    """Return a factory creating instance directories under the fleet root."""

    def factory(name: str, port: int, *, filename: str = "docker-compose.yml") -> Path:
        return write_instance_config(fleet_root, name, port, filename=filename)

    return factory


@pytest.fixture
def template_text() -> str:
    """Return the default compose template source."""
    return TEMPLATE_YAML
