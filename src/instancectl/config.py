"""Configuration loader for instancectl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/instancectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``INSTANCECTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export INSTANCECTL_PORTS__BASE=62000
    export INSTANCECTL_DEPLOYMENT_MODE=stack

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``; it is built once per process and handed to every component.
"""
from __future__ import annotations

import os
import shlex
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import ConfigurationError
from .models import DeploymentMode

ENV_PREFIX = "INSTANCECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Kept as an alias so callers can catch configuration problems by this name.
ConfigError = ConfigurationError


@dataclass(frozen=True)
class PortsConfig:
    """Reserved local port range for instance reverse proxies."""

    base: int = 61000
    ceiling: int = 65535
    max_attempts: int = 25

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "ceiling": self.ceiling, "max_attempts": self.max_attempts}


@dataclass(frozen=True)
class ImagesConfig:
    """Default application image and repository settings."""

    name: str = "openslides/openslides"
    tag: str = "latest"
    namespace: str = "openslides"
    repository: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "tag": self.tag,
            "namespace": self.namespace,
            "repository": self.repository,
        }


@dataclass(frozen=True)
class TemplateConfig:
    """Where new instance directories are cloned from."""

    source: str = "/srv/openslides/openslides-docker-compose"
    suffix: str = ".example"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"source": self.source, "suffix": self.suffix}


@dataclass(frozen=True)
class ServicesConfig:
    """Well-known service names inside the instance compose document."""

    application: tuple[str, ...] = ("server", "prioserver")
    proxy: str = "client"
    proxy_port: int = 80
    database: str = "pgnode1"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "application": list(self.application),
            "proxy": self.proxy,
            "proxy_port": self.proxy_port,
            "database": self.database,
        }


@dataclass(frozen=True)
class ProxyConfig:
    """Shared HAProxy configuration file and reload command."""

    config_file: Path = Path("/etc/haproxy/haproxy.cfg")
    backup_suffix: str = ".osbak"
    begin_marker: str = "-----BEGIN AUTOMATIC OPENSLIDES CONFIG-----"
    end_marker: str = "-----END AUTOMATIC OPENSLIDES CONFIG-----"
    reload_command: tuple[str, ...] = ("systemctl", "reload", "haproxy")
    backend_host: str = "127.1"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_file": str(self.config_file),
            "backup_suffix": self.backup_suffix,
            "begin_marker": self.begin_marker,
            "end_marker": self.end_marker,
            "reload_command": shlex.join(self.reload_command),
            "backend_host": self.backend_host,
        }


@dataclass(frozen=True)
class CertificatesConfig:
    """External certificate tool settings."""

    tool: str = "acmetool"
    live_dir: Path = Path("/var/lib/acme/live")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"tool": self.tool, "live_dir": str(self.live_dir)}


@dataclass(frozen=True)
class ProbeConfig:
    """Health probe timeouts and endpoints."""

    connect_timeout: float = 0.5
    http_timeout: float = 0.1
    version_path: str = "/apps/core/version/"
    version_field: str = "openslides_version"
    image_info_path: str = "/image-version.txt"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "connect_timeout": self.connect_timeout,
            "http_timeout": self.http_timeout,
            "version_path": self.version_path,
            "version_field": self.version_field,
            "image_info_path": self.image_info_path,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Database settings used when cloning instances."""

    user: str = "openslides"
    owner: str = "openslides"
    system_user: str = "postgres"
    source_host: str = "db"
    target_host: str = "pgnode1"
    databases: tuple[str, ...] = ("openslides", "instancecfg", "mediafiledata")
    ready_timeout: float = 60.0
    poll_interval: float = 0.5
    max_poll_interval: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "owner": self.owner,
            "system_user": self.system_user,
            "source_host": self.source_host,
            "target_host": self.target_host,
            "databases": list(self.databases),
            "ready_timeout": self.ready_timeout,
            "poll_interval": self.poll_interval,
            "max_poll_interval": self.max_poll_interval,
        }


@dataclass(frozen=True)
class SecretsConfig:
    """Secret file names and generated password length."""

    length: int = 15
    admin_file: str = "adminsecret.env"
    user_file: str = "usersecret.env"
    app_key_file: str = "django"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "length": self.length,
            "admin_file": self.admin_file,
            "user_file": self.user_file,
            "app_key_file": self.app_key_file,
        }


@dataclass(frozen=True)
class UpdateConfig:
    """Rolling update settings for compose deployments."""

    static_mount: str = "/app/openslides/static"
    scale_services: tuple[str, ...] = ("server", "prioserver", "client")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"static_mount": self.static_mount, "scale_services": list(self.scale_services)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for instancectl."""

    config_file: Path
    fleet_root: Path
    logs_dir: Path
    deployment_mode: DeploymentMode
    compose_command: tuple[str, ...]
    docker_command: str
    git_command: str
    command_timeout: float
    marker_file: str
    metadata_file: str
    mail_relay: str | None
    ports: PortsConfig
    images: ImagesConfig
    template: TemplateConfig
    services: ServicesConfig
    proxy: ProxyConfig
    certificates: CertificatesConfig
    probe: ProbeConfig
    database: DatabaseConfig
    secrets: SecretsConfig
    update: UpdateConfig

    @property
    def config_filename(self) -> str:
        """Return the instance config file name for the deployment mode."""
        return self.deployment_mode.config_filename

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "fleet_root": str(self.fleet_root),
            "logs_dir": str(self.logs_dir),
            "deployment_mode": self.deployment_mode.value,
            "compose_command": shlex.join(self.compose_command),
            "docker_command": self.docker_command,
            "git_command": self.git_command,
            "command_timeout": self.command_timeout,
            "marker_file": self.marker_file,
            "metadata_file": self.metadata_file,
            "mail_relay": self.mail_relay,
            "ports": self.ports.to_dict(),
            "images": self.images.to_dict(),
            "template": self.template.to_dict(),
            "services": self.services.to_dict(),
            "proxy": self.proxy.to_dict(),
            "certificates": self.certificates.to_dict(),
            "probe": self.probe.to_dict(),
            "database": self.database.to_dict(),
            "secrets": self.secrets.to_dict(),
            "update": self.update.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/instancectl/config.yml",
    "fleet_root": "/srv/openslides/docker-instances",
    "logs_dir": "/var/log/instancectl",
    "deployment_mode": "compose",
    "compose_command": "docker compose",
    "docker_command": "docker",
    "git_command": "git",
    "command_timeout": 300.0,
    "marker_file": ".instancectl-marker",
    "metadata_file": "metadata.txt",
    "mail_relay": None,
    "ports": PortsConfig().to_dict(),
    "images": ImagesConfig().to_dict(),
    "template": TemplateConfig().to_dict(),
    "services": ServicesConfig().to_dict(),
    "proxy": ProxyConfig().to_dict(),
    "certificates": CertificatesConfig().to_dict(),
    "probe": ProbeConfig().to_dict(),
    "database": DatabaseConfig().to_dict(),
    "secrets": SecretsConfig().to_dict(),
    "update": UpdateConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS = {key for key, value in DEFAULTS.items() if isinstance(value, Mapping)}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigurationError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigurationError(f"Unknown configuration keys: {joined}.")

    for section in sorted(SECTION_KEYS):
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        allowed = set(_as_dict(DEFAULTS[section], section).keys())
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigurationError(f"Unknown {section} configuration keys: {joined}.")

    mode = raw.get("deployment_mode")
    allowed_modes = {member.value for member in DeploymentMode}
    if str(mode) not in allowed_modes:
        allowed = ", ".join(sorted(allowed_modes))
        raise ConfigurationError(f"Unsupported deployment mode '{mode}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ports_mapping = _as_dict(raw.get("ports"), "ports")
    defaults_ports = PortsConfig()
    ports = PortsConfig(
        base=_expect_int(ports_mapping.get("base"), "ports.base", default=defaults_ports.base),
        ceiling=_expect_int(
            ports_mapping.get("ceiling"), "ports.ceiling", default=defaults_ports.ceiling
        ),
        max_attempts=_expect_int(
            ports_mapping.get("max_attempts"),
            "ports.max_attempts",
            default=defaults_ports.max_attempts,
        ),
    )
    if not 1 <= ports.base < ports.ceiling <= 65535:
        raise ConfigurationError(
            f"Port range {ports.base}-{ports.ceiling} must satisfy 1 <= base < ceiling <= 65535."
        )
    if ports.max_attempts < 1:
        raise ConfigurationError("ports.max_attempts must be at least 1.")

    images_mapping = _as_dict(raw.get("images"), "images")
    images = ImagesConfig(
        name=_expect_image_name(images_mapping.get("name"), "images.name"),
        tag=str(images_mapping.get("tag") or "latest"),
        namespace=str(images_mapping.get("namespace") or "openslides"),
        repository=_optional_str(images_mapping.get("repository")),
    )

    template_mapping = _as_dict(raw.get("template"), "template")
    template = TemplateConfig(
        source=_expect_str(template_mapping.get("source"), "template.source"),
        suffix=str(template_mapping.get("suffix", ".example")),
    )

    services_mapping = _as_dict(raw.get("services"), "services")
    services = ServicesConfig(
        application=_as_str_tuple(services_mapping.get("application"), "services.application"),
        proxy=_expect_str(services_mapping.get("proxy"), "services.proxy"),
        proxy_port=_expect_int(services_mapping.get("proxy_port"), "services.proxy_port", default=80),
        database=_expect_str(services_mapping.get("database"), "services.database"),
    )
    if not services.application:
        raise ConfigurationError("services.application must name at least one service.")

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    proxy = ProxyConfig(
        config_file=_to_path(proxy_mapping.get("config_file")),
        backup_suffix=str(proxy_mapping.get("backup_suffix", ".osbak")),
        begin_marker=_expect_str(proxy_mapping.get("begin_marker"), "proxy.begin_marker"),
        end_marker=_expect_str(proxy_mapping.get("end_marker"), "proxy.end_marker"),
        reload_command=_as_command(proxy_mapping.get("reload_command"), "proxy.reload_command"),
        backend_host=str(proxy_mapping.get("backend_host", "127.1")),
    )

    certificates_mapping = _as_dict(raw.get("certificates"), "certificates")
    certificates = CertificatesConfig(
        tool=_expect_str(certificates_mapping.get("tool"), "certificates.tool"),
        live_dir=_to_path(certificates_mapping.get("live_dir")),
    )

    probe_mapping = _as_dict(raw.get("probe"), "probe")
    default_probe = ProbeConfig()
    probe = ProbeConfig(
        connect_timeout=_expect_positive_float(
            probe_mapping.get("connect_timeout"),
            "probe.connect_timeout",
            default=default_probe.connect_timeout,
        ),
        http_timeout=_expect_positive_float(
            probe_mapping.get("http_timeout"),
            "probe.http_timeout",
            default=default_probe.http_timeout,
        ),
        version_path=str(probe_mapping.get("version_path", default_probe.version_path)),
        version_field=str(probe_mapping.get("version_field", default_probe.version_field)),
        image_info_path=str(probe_mapping.get("image_info_path", default_probe.image_info_path)),
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    default_db = DatabaseConfig()
    database = DatabaseConfig(
        user=str(database_mapping.get("user", default_db.user)),
        owner=str(database_mapping.get("owner", default_db.owner)),
        system_user=str(database_mapping.get("system_user", default_db.system_user)),
        source_host=str(database_mapping.get("source_host", default_db.source_host)),
        target_host=str(database_mapping.get("target_host", default_db.target_host)),
        databases=_as_str_tuple(database_mapping.get("databases"), "database.databases"),
        ready_timeout=_expect_positive_float(
            database_mapping.get("ready_timeout"),
            "database.ready_timeout",
            default=default_db.ready_timeout,
        ),
        poll_interval=_expect_positive_float(
            database_mapping.get("poll_interval"),
            "database.poll_interval",
            default=default_db.poll_interval,
        ),
        max_poll_interval=_expect_positive_float(
            database_mapping.get("max_poll_interval"),
            "database.max_poll_interval",
            default=default_db.max_poll_interval,
        ),
    )

    secrets_mapping = _as_dict(raw.get("secrets"), "secrets")
    default_secrets = SecretsConfig()
    secrets_config = SecretsConfig(
        length=_expect_int(secrets_mapping.get("length"), "secrets.length", default=15),
        admin_file=str(secrets_mapping.get("admin_file", default_secrets.admin_file)),
        user_file=str(secrets_mapping.get("user_file", default_secrets.user_file)),
        app_key_file=str(secrets_mapping.get("app_key_file", default_secrets.app_key_file)),
    )
    if secrets_config.length < 8:
        raise ConfigurationError("secrets.length must be at least 8.")

    update_mapping = _as_dict(raw.get("update"), "update")
    update = UpdateConfig(
        static_mount=str(update_mapping.get("static_mount", UpdateConfig().static_mount)),
        scale_services=_as_str_tuple(update_mapping.get("scale_services"), "update.scale_services"),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        fleet_root=_to_path(raw.get("fleet_root")),
        logs_dir=_to_path(raw.get("logs_dir")),
        deployment_mode=DeploymentMode(str(raw.get("deployment_mode"))),
        compose_command=_as_command(raw.get("compose_command"), "compose_command"),
        docker_command=_expect_str(raw.get("docker_command"), "docker_command"),
        git_command=_expect_str(raw.get("git_command"), "git_command"),
        command_timeout=_expect_positive_float(
            raw.get("command_timeout"), "command_timeout", default=300.0
        ),
        marker_file=_expect_str(raw.get("marker_file"), "marker_file"),
        metadata_file=_expect_str(raw.get("metadata_file"), "metadata_file"),
        mail_relay=_optional_str(raw.get("mail_relay")),
        ports=ports,
        images=images,
        template=template,
        services=services,
        proxy=proxy,
        certificates=certificates,
        probe=probe,
        database=database,
        secrets=secrets_config,
        update=update,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigurationError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigurationError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigurationError(f"Cannot convert value {value!r} to Path.")


def _as_command(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = tuple(shlex.split(value))
    elif isinstance(value, Sequence):
        parts = tuple(str(item) for item in value)
    else:
        raise ConfigurationError(f"Expected {label} to be a command string or list.")
    if not parts:
        raise ConfigurationError(f"{label} must not be empty.")
    return parts


def _as_str_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    if not isinstance(value, Sequence):
        raise ConfigurationError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return tuple(str(item) for item in value)


def _expect_image_name(value: object, label: str) -> str:
    name = _expect_str(value, label)
    if ":" in name:
        raise ConfigurationError(
            f"{label} must not contain colons. Tags can be specified separately."
        )
    return name


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigurationError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    raise ConfigurationError(f"Expected {key} to resolve to a non-empty string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigurationError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigurationError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"Expected {label} to be a mapping. Got {type(value).__name__}."
        )
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigurationError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "CertificatesConfig",
    "ConfigError",
    "DatabaseConfig",
    "ImagesConfig",
    "PortsConfig",
    "ProbeConfig",
    "ProxyConfig",
    "SecretsConfig",
    "ServicesConfig",
    "TemplateConfig",
    "UpdateConfig",
    "load_config",
]
