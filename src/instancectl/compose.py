"""Typed access to instance compose documents and the config templater.

Instance configs are derived from a generic compose template. Instead of
rewriting lines of text, the template is parsed once into a
:class:`ComposeDocument`, validated, transformed, and serialised again.
"""
from __future__ import annotations

import copy
from collections.abc import Iterator, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError, MalformedTemplateError
from .models import ImageRef
from .state.files import atomic_write_text


@dataclass(frozen=True, slots=True)
class PortMapping:
    """A published port in either short (string) or long (mapping) syntax."""

    target: int | None
    published: int | None = None
    host_ip: str | None = None
    protocol: str | None = None
    long_syntax: bool = False

    @classmethod
    def parse(cls, raw: object) -> PortMapping:
        """Parse a compose ``ports`` entry."""
        if isinstance(raw, bool):
            raise MalformedTemplateError(f"Invalid port mapping {raw!r}.")
        if isinstance(raw, int):
            return cls(target=raw)
        if isinstance(raw, Mapping):
            return cls(
                target=_maybe_int(raw.get("target")),
                published=_maybe_int(raw.get("published")),
                host_ip=str(raw["host_ip"]) if raw.get("host_ip") else None,
                protocol=str(raw["protocol"]) if raw.get("protocol") else None,
                long_syntax=True,
            )
        if isinstance(raw, str):
            text = raw.strip().strip('"')
            spec, _, protocol = text.partition("/")
            parts = spec.split(":")
            target = _maybe_int(parts[-1])
            published = _maybe_int(parts[-2]) if len(parts) >= 2 else None
            host_ip = ":".join(parts[:-2]) if len(parts) >= 3 else None
            return cls(
                target=target,
                published=published,
                host_ip=host_ip or None,
                protocol=protocol or None,
            )
        raise MalformedTemplateError(f"Invalid port mapping {raw!r}.")

    def render(self) -> object:
        """Serialise back into the syntax the mapping was parsed from."""
        if self.long_syntax:
            rendered: dict[str, object] = {"target": self.target}
            if self.published is not None:
                rendered["published"] = self.published
            if self.host_ip:
                rendered["host_ip"] = self.host_ip
            if self.protocol:
                rendered["protocol"] = self.protocol
            return rendered
        parts = [str(self.target)]
        if self.published is not None:
            parts.insert(0, str(self.published))
            if self.host_ip:
                parts.insert(0, self.host_ip)
        text = ":".join(parts)
        if self.protocol:
            text = f"{text}/{self.protocol}"
        return text


def _maybe_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


@dataclass(frozen=True, slots=True)
class TemplateLayout:
    """Service names the templater needs to find inside a compose document."""

    application: tuple[str, ...] = ("server", "prioserver")
    proxy: str = "client"
    proxy_port: int = 80
    namespace: str = "openslides"


@dataclass(frozen=True, slots=True)
class TemplateContext:
    """Instance specific values substituted into the template."""

    name: str
    port: int
    image: str | None = None
    tag: str | None = None
    relay_host: str | None = None
    repository: str | None = None
    bind_address: str = "127.0.0.1"
    layout: TemplateLayout = field(default_factory=TemplateLayout)


class ComposeDocument:
    """Wrapper around a parsed compose mapping with a ``services`` section."""

    def __init__(self, data: Mapping[str, Any], *, source: Path | None = None) -> None:
        """Validate and wrap *data* (a deep copy is taken)."""
        if not isinstance(data, Mapping):
            raise MalformedTemplateError(
                f"{source or 'Compose document'} must contain a mapping at the top level."
            )
        services = data.get("services")
        if not isinstance(services, Mapping) or not services:
            raise MalformedTemplateError(
                f"{source or 'Compose document'} does not define any services."
            )
        self._data: dict[str, Any] = copy.deepcopy(dict(data))
        self.source = source

    # Construction / serialisation ---------------------------------------
    @classmethod
    def loads(cls, text: str, *, source: Path | None = None) -> ComposeDocument:
        """Parse YAML *text* into a document."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise MalformedTemplateError(f"Failed to parse {source or 'compose document'}: {exc}") from exc
        return cls(data, source=source)

    @classmethod
    def load(cls, path: Path) -> ComposeDocument:
        """Read and parse the compose document at *path*."""
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise MalformedTemplateError(f"Cannot read {path}: {exc}") from exc
        return cls.loads(text, source=path)

    def dumps(self) -> str:
        """Serialise the document back to YAML."""
        return yaml.safe_dump(self._data, sort_keys=False, default_flow_style=False)

    def write(self, path: Path) -> None:
        """Atomically write the document to *path*."""
        try:
            atomic_write_text(path, self.dumps(), mode=0o644)
        except OSError as exc:
            raise ConfigurationError(f"Cannot write {path}: {exc}") from exc

    def copy(self) -> ComposeDocument:
        """Return an independent copy of the document."""
        return ComposeDocument(self._data, source=self.source)

    def to_dict(self) -> dict[str, Any]:
        """Return a deep copy of the underlying mapping."""
        return copy.deepcopy(self._data)

    # Services ------------------------------------------------------------
    @property
    def services(self) -> MutableMapping[str, Any]:
        """Return the mutable ``services`` mapping."""
        return self._data["services"]

    def service(self, name: str) -> MutableMapping[str, Any] | None:
        """Return the service definition named *name*, if present."""
        value = self.services.get(name)
        return value if isinstance(value, MutableMapping) else None

    def iter_services(self) -> Iterator[tuple[str, MutableMapping[str, Any]]]:
        """Yield ``(name, definition)`` for every mapping-valued service."""
        for name, definition in self.services.items():
            if isinstance(definition, MutableMapping):
                yield str(name), definition

    def application_services(
        self, names: Sequence[str]
    ) -> list[tuple[str, MutableMapping[str, Any]]]:
        """Return the application server services present in the document."""
        found: list[tuple[str, MutableMapping[str, Any]]] = []
        for name in names:
            definition = self.service(name)
            if definition is not None:
                found.append((name, definition))
        return found

    # Images --------------------------------------------------------------
    def application_image(self, names: Sequence[str]) -> ImageRef | None:
        """Return the image of the first application service that has one."""
        for _, definition in self.application_services(names):
            image = definition.get("image")
            if isinstance(image, str) and image.strip():
                return ImageRef.parse(image)
        return None

    def set_application_image(
        self,
        names: Sequence[str],
        *,
        image: str | None = None,
        tag: str | None = None,
    ) -> int:
        """Override image name and/or tag of every application service.

        Returns the number of services changed.
        """
        if not image and not tag:
            return 0
        changed = 0
        for _, definition in self.application_services(names):
            current = definition.get("image")
            if not isinstance(current, str):
                continue
            ref = ImageRef.parse(current)
            updated = ImageRef(name=image or ref.name, tag=tag or ref.tag)
            definition["image"] = str(updated)
            changed += 1
        return changed

    def rewrite_repository(self, namespace: str, repository: str) -> int:
        """Point every ``<namespace>/...`` image at *repository* instead."""
        prefix = f"{namespace.rstrip('/')}/"
        target = repository.rstrip("/")
        changed = 0
        for _, definition in self.iter_services():
            image = definition.get("image")
            if isinstance(image, str) and image.startswith(prefix):
                definition["image"] = f"{target}/{image[len(prefix):]}"
                changed += 1
        return changed

    def has_legacy_build(self, names: Sequence[str]) -> bool:
        """Return True when an application service is built from a local context."""
        return any("build" in definition for _, definition in self.application_services(names))

    # Ports ---------------------------------------------------------------
    def port_mappings(self, service: str) -> list[PortMapping]:
        """Return the parsed ``ports`` entries of *service*."""
        definition = self.service(service)
        if definition is None:
            return []
        raw_ports = definition.get("ports") or []
        if not isinstance(raw_ports, list):
            raise MalformedTemplateError(f"Service '{service}' has a malformed ports section.")
        return [PortMapping.parse(entry) for entry in raw_ports]

    def published_ports(self, service: str, container_port: int) -> list[int]:
        """Return host ports published for *container_port* of *service*."""
        return [
            mapping.published
            for mapping in self.port_mappings(service)
            if mapping.target == container_port and mapping.published is not None
        ]

    def publish_single_port(
        self,
        service: str,
        container_port: int,
        host_port: int,
        *,
        bind_address: str,
    ) -> None:
        """Publish only ``host_port -> container_port`` for *service*.

        Every other published port of every service is removed.
        """
        definition = self.service(service)
        if definition is None:
            raise MalformedTemplateError(f"Template has no '{service}' service to publish.")
        mappings = self.port_mappings(service)
        primary = next((m for m in mappings if m.target == container_port), None)
        if primary is None:
            raise MalformedTemplateError(
                f"Service '{service}' does not map container port {container_port}; "
                "the instance would have no public port."
            )
        rewritten = PortMapping(
            target=container_port,
            published=host_port,
            host_ip=primary.host_ip or bind_address,
            protocol=primary.protocol,
            long_syntax=primary.long_syntax,
        )
        for name, other in self.iter_services():
            if name != service:
                other.pop("ports", None)
        definition["ports"] = [rewritten.render()]

    # Environment -----------------------------------------------------------
    def environment_value(self, key_suffix: str) -> str | None:
        """Return the first environment value whose key ends with *key_suffix*."""
        for _, definition in self.iter_services():
            for key, value in _iter_environment(definition):
                if key.endswith(key_suffix):
                    return value
        return None

    def set_environment(self, key_suffix: str, value: str) -> int:
        """Set every environment variable ending with *key_suffix* to *value*."""
        changed = 0
        for _, definition in self.iter_services():
            env = definition.get("environment")
            if isinstance(env, MutableMapping):
                for key in list(env.keys()):
                    if str(key).endswith(key_suffix):
                        env[key] = value
                        changed += 1
            elif isinstance(env, list):
                for index, item in enumerate(env):
                    if not isinstance(item, str):
                        continue
                    key, sep, _ = item.partition("=")
                    if sep and key.strip().endswith(key_suffix):
                        env[index] = f"{key}={value}"
                        changed += 1
        return changed


def _iter_environment(definition: Mapping[str, Any]) -> Iterator[tuple[str, str | None]]:
    env = definition.get("environment")
    if isinstance(env, Mapping):
        for key, value in env.items():
            yield str(key), None if value is None else str(value)
    elif isinstance(env, list):
        for item in env:
            if isinstance(item, str):
                key, sep, value = item.partition("=")
                yield key.strip(), value if sep else None


def render(template: ComposeDocument, context: TemplateContext) -> ComposeDocument:
    """Derive a concrete instance config from *template*.

    The steps run in a fixed order: application image, the single published
    proxy port, hostname, mail relay and finally the image repository.
    """
    layout = context.layout
    document = template.copy()

    if not document.application_services(layout.application):
        names = ", ".join(layout.application)
        raise MalformedTemplateError(f"Template defines none of the application services: {names}.")
    document.set_application_image(layout.application, image=context.image, tag=context.tag)

    document.publish_single_port(
        layout.proxy,
        layout.proxy_port,
        context.port,
        bind_address=context.bind_address,
    )

    document.set_environment("MYHOSTNAME", context.name)

    if context.relay_host:
        document.set_environment("RELAYHOST", context.relay_host)

    if context.repository:
        document.rewrite_repository(layout.namespace, context.repository)

    return document


def render_file(source: Path, destination: Path, context: TemplateContext) -> ComposeDocument:
    """Render the template at *source* into *destination*."""
    document = render(ComposeDocument.load(source), context)
    document.write(destination)
    return document


__all__ = [
    "ComposeDocument",
    "PortMapping",
    "TemplateContext",
    "TemplateLayout",
    "render",
    "render_file",
]
