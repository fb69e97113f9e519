"""Core data model: deployment modes, image references and instances."""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import ConfigurationError


class DeploymentMode(str, Enum):
    """How an instance's containers are run; fixed for the process lifetime."""

    COMPOSE = "compose"
    STACK = "stack"

    @property
    def config_filename(self) -> str:
        """Return the compose document name used by this mode."""
        if self is DeploymentMode.STACK:
            return "docker-stack.yml"
        return "docker-compose.yml"


@dataclass(frozen=True, slots=True)
class ImageRef:
    """A container image split into repository path and tag."""

    name: str
    tag: str | None = None

    @classmethod
    def parse(cls, value: str) -> ImageRef:
        """Split ``name[:tag]`` where the tag follows the last path segment."""
        text = value.strip()
        slash = text.rfind("/")
        colon = text.rfind(":")
        if colon > slash:
            return cls(name=text[:colon], tag=text[colon + 1 :] or None)
        return cls(name=text)

    def __str__(self) -> str:
        """Render as ``name:tag`` (or just the name when untagged)."""
        return f"{self.name}:{self.tag}" if self.tag else self.name


def validate_image_name(name: str) -> str:
    """Reject image names carrying a tag separator."""
    normalised = name.strip()
    if not normalised:
        raise ConfigurationError("Image name must be a non-empty string.")
    if ":" in normalised:
        raise ConfigurationError(
            "Image names must not contain colons. Tags can be specified with --tag."
        )
    return normalised


_DOMAIN_RE = re.compile(r"[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*")


def validate_instance_name(value: str) -> str:
    """Validate and normalise an instance name (a domain name)."""
    normalised = value.strip().lower()
    if not normalised:
        raise ConfigurationError("Instance name must be a non-empty string.")
    if len(normalised) > 253:
        raise ConfigurationError("Instance name must be 253 characters or fewer.")
    if not _DOMAIN_RE.fullmatch(normalised):
        raise ConfigurationError(
            f"Instance name '{value}' is not a valid domain name."
        )
    return normalised


@dataclass(frozen=True, slots=True)
class UserAccount:
    """Secondary login provisioned alongside the admin account."""

    first_name: str
    last_name: str
    password: str | None = None

    @property
    def display_name(self) -> str:
        """Return the account's full name."""
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class Instance:
    """One managed deployment, identified by its domain name."""

    name: str
    directory: Path
    config_filename: str
    marker_filename: str = ".instancectl-marker"
    metadata_filename: str = "metadata.txt"

    # Paths -------------------------------------------------------------
    @property
    def config_path(self) -> Path:
        """Return the rendered compose document path."""
        return self.directory / self.config_filename

    @property
    def marker_path(self) -> Path:
        """Return the ownership marker path."""
        return self.directory / self.marker_filename

    @property
    def secrets_dir(self) -> Path:
        """Return the owner-only secrets directory."""
        return self.directory / "secrets"

    @property
    def metadata_path(self) -> Path:
        """Return the append-only metadata log path."""
        return self.directory / self.metadata_filename

    @property
    def env_path(self) -> Path:
        """Return the ``.env`` file consumed by compose/stack."""
        return self.directory / ".env"

    @property
    def stack_name(self) -> str:
        """Return the name used for swarm stacks (dots are not allowed there)."""
        env_value = self.env_values().get("PROJECT_STACK_NAME")
        if env_value:
            return env_value
        return self.name.replace(".", "")

    # State ---------------------------------------------------------------
    @property
    def exists(self) -> bool:
        """Return True when the instance directory is present."""
        return self.directory.is_dir()

    @property
    def has_config(self) -> bool:
        """Return True when the rendered config file is present."""
        return self.config_path.is_file()

    @property
    def has_marker(self) -> bool:
        """Return True when the directory is managed by instancectl."""
        return self.marker_path.is_file()

    # Metadata ------------------------------------------------------------
    def read_metadata(self) -> list[str]:
        """Return metadata lines, skipping blanks and ``#`` comments."""
        if not self.metadata_path.is_file():
            return []
        try:
            text = self.metadata_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read {self.metadata_path}: {exc}") from exc
        lines: list[str] = []
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            lines.append(line.rstrip())
        return lines

    def append_metadata(self, line: str) -> None:
        """Append a single free-text line to the metadata log."""
        self.metadata_path.parent.mkdir(parents=True, exist_ok=True)
        with self.metadata_path.open("a", encoding="utf-8") as handle:
            handle.write(line.replace("\n", " ").rstrip() + "\n")

    def env_values(self) -> dict[str, str]:
        """Return ``KEY=VALUE`` pairs from the instance ``.env`` file."""
        return read_env_file(self.env_path)

    # Derived from the rendered config --------------------------------------
    def local_port(self, proxy_service: str = "client", proxy_port: int = 80) -> int | None:
        """Return the host port published by the proxy service, if any."""
        from .compose import ComposeDocument

        if not self.has_config:
            return None
        try:
            ports = ComposeDocument.load(self.config_path).published_ports(proxy_service, proxy_port)
        except ConfigurationError:
            return None
        return ports[0] if ports else None

    def image(self, application: tuple[str, ...] = ("server", "prioserver")) -> ImageRef | None:
        """Return the image of the first application service."""
        from .compose import ComposeDocument

        if not self.has_config:
            return None
        try:
            return ComposeDocument.load(self.config_path).application_image(application)
        except ConfigurationError:
            return None

    # Credentials -----------------------------------------------------------
    def admin_password(self, filename: str = "adminsecret.env") -> str | None:
        """Return the stored admin password."""
        return read_env_file(self.secrets_dir / filename).get("OPENSLIDES_ADMIN_PASSWORD")

    def user_account(self, filename: str = "usersecret.env") -> UserAccount | None:
        """Return the secondary account recorded for this instance."""
        values = read_env_file(self.secrets_dir / filename)
        if not values:
            return None
        return UserAccount(
            first_name=values.get("OPENSLIDES_USER_FIRSTNAME", ""),
            last_name=values.get("OPENSLIDES_USER_LASTNAME", ""),
            password=values.get("OPENSLIDES_USER_PASSWORD"),
        )


def read_env_file(path: Path) -> dict[str, str]:
    """Parse a shell-style ``KEY=VALUE`` file (missing file ⇒ empty mapping)."""
    if not path.is_file():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read {path}: {exc}") from exc
    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, _, value = stripped.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def format_env(values: Mapping[str, str]) -> str:
    """Render a mapping as ``KEY=VALUE`` lines."""
    return "".join(f"{key}={value}\n" for key, value in values.items())


__all__ = [
    "DeploymentMode",
    "ImageRef",
    "Instance",
    "UserAccount",
    "format_env",
    "read_env_file",
    "validate_image_name",
    "validate_instance_name",
]
