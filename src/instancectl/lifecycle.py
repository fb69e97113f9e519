"""Lifecycle orchestration for fleet instances.

:class:`InstanceManager` sequences the providers for create, clone, start,
stop, update, erase and remove. Each external call is fail-fast: the first
failure aborts the remaining steps and nothing already done is rolled back.
Completed steps are recorded on the caller's operation scope so partial state
can be reconstructed from ``operations.jsonl``.
"""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from .compose import ComposeDocument, TemplateContext, TemplateLayout, render
from .config import AppConfig
from .credentials import CredentialStore
from .errors import ConfigurationError, ExternalToolError, NotFoundError, PreconditionError
from .logging import OperationScope
from .models import Instance, UserAccount, format_env, validate_image_name, validate_instance_name
from .ports import PortAllocator
from .providers.certificates import CertificateManager
from .providers.containers import ContainerRuntime
from .providers.database import PostgresProvider
from .providers.dns import DomainResolver
from .providers.haproxy import ProxyRegistrar, ProxyUpdateResult
from .state.registry import InstanceRegistry

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"


@dataclass(frozen=True, slots=True)
class CreateOptions:
    """Inputs for creating (or cloning) an instance."""

    name: str
    image: str | None = None
    tag: str | None = None
    local_only: bool = False
    www: bool = False
    relay_host: str | None = None
    repository: str | None = None
    user_account: tuple[str, str] | None = None
    force: bool = False
    clone_from: str | None = None


@dataclass(slots=True)
class CreateResult:
    """What a create or clone produced."""

    instance: Instance
    port: int
    admin_password: str | None = None
    user_account: UserAccount | None = None
    domains: list[str] | None = None
    proxy: ProxyUpdateResult | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class UpdateResult:
    """What an update changed."""

    instance: Instance
    image: str | None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RemoveResult:
    """What a remove cleaned up."""

    instance: Instance
    proxy: ProxyUpdateResult | None = None
    warnings: list[str] = field(default_factory=list)


def _timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def _step(op: OperationScope | None, name: str, detail: str | None = None) -> None:
    if op is not None:
        op.add_step(name, detail=detail)


@contextmanager
def _filesystem(action: str, path: Path) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise ConfigurationError(f"Cannot {action} {path}: {exc}") from exc


@dataclass(slots=True)
class InstanceManager:
    """Coordinate providers to move instances through their lifecycle."""

    config: AppConfig
    registry: InstanceRegistry
    ports: PortAllocator
    runtime: ContainerRuntime
    proxy: ProxyRegistrar
    certificates: CertificateManager
    database: PostgresProvider
    resolver: DomainResolver

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    def require_instance(self, instance: Instance) -> Instance:
        """Raise :class:`NotFoundError` unless *instance* has a directory."""
        if not instance.exists:
            raise NotFoundError(f"{instance.directory} does not exist.")
        return instance

    def check_marker(self, instance: Instance, *, force: bool = False) -> None:
        """Refuse to touch directories not created by this tool."""
        if force or instance.has_marker:
            return
        raise PreconditionError(
            f"{instance.directory} is not managed by instancectl "
            f"({instance.marker_filename} missing). Override with --force."
        )

    def verify_domain(self, name: str) -> set[str]:
        """Check that *name* resolves to an address of this host."""
        return self.resolver.verify(name)

    # ------------------------------------------------------------------
    # Create / clone
    # ------------------------------------------------------------------
    def create(self, options: CreateOptions, *, op: OperationScope | None = None) -> CreateResult:
        """Create a new instance, or clone one when ``clone_from`` is set."""
        name = validate_instance_name(options.name)
        image = validate_image_name(options.image) if options.image else None
        self.registry.ensure_root()

        instance = self.registry.instance(name)
        if instance.exists:
            raise PreconditionError(f"Instance {name} already exists at {instance.directory}.")

        source: Instance | None = None
        if options.clone_from:
            source = self.registry.get(validate_instance_name(options.clone_from))
            if not source.has_config:
                raise ConfigurationError(f"{source.name} has no {source.config_filename}.")
        else:
            image = image or self.config.images.name
        tag = options.tag or (None if source else self.config.images.tag)

        if not options.force:
            self.verify_domain(name)
            _step(op, "domain.verify", name)

        port = self.ports.allocate_port()
        _step(op, "port.allocate", str(port))

        self.provision_directory(instance.directory)
        _step(op, "directory.provision", str(instance.directory))
        with _filesystem("prepare", instance.directory):
            instance.marker_path.touch()
            instance.env_path.write_text(
                format_env({"PROJECT_STACK_NAME": instance.stack_name}), encoding="utf-8"
            )

        template = self._template_for(instance, source)
        document = render(
            template,
            TemplateContext(
                name=name,
                port=port,
                image=image,
                tag=tag,
                relay_host=options.relay_host or self.config.mail_relay,
                repository=options.repository or self.config.images.repository,
                layout=self.layout,
            ),
        )
        document.write(instance.config_path)
        _step(op, "config.render", str(instance.config_path))

        result = CreateResult(instance=instance, port=port)
        store = self.credentials(instance)
        if source is not None:
            with _filesystem("copy secrets into", store.directory):
                store.copy_from(source)
            _step(op, "secrets.copy", source.name)
            self.clone_databases(source, instance, op=op)
        else:
            with _filesystem("write secrets to", store.directory):
                store.create_app_key()
                result.admin_password = store.create_admin_secret()
                if options.user_account is not None:
                    first, last = options.user_account
                    result.user_account = store.create_user_secret(first, last)
            _step(op, "secrets.generate")
        result.admin_password = result.admin_password or store.admin_password()
        result.user_account = result.user_account or store.user_account()

        result.domains = self.certificates.issue(name, www=options.www, local_only=options.local_only)
        _step(op, "certificate.issue", ", ".join(result.domains or []) or "skipped")

        if not options.local_only:
            result.proxy = self.proxy.register(name, port)
            _step(op, "proxy.register", f"{name} -> {port}")
            if result.proxy.reload_error:
                result.warnings.append(f"Proxy reload failed: {result.proxy.reload_error}")

        with _filesystem("write", instance.metadata_path):
            if source is not None:
                instance.append_metadata(f"Cloned from {source.name} on {_timestamp()}")
            else:
                instance.append_metadata(f"{_timestamp()}: Instance created ({self.runtime.mode.value})")
            if options.local_only:
                instance.append_metadata("No HAProxy config added (--local-only)")
        _step(op, "metadata.append")
        return result

    def clone(
        self,
        source: str,
        options: CreateOptions,
        *,
        op: OperationScope | None = None,
    ) -> CreateResult:
        """Create ``options.name`` as a copy of the live instance *source*."""
        return self.create(replace(options, clone_from=source), op=op)

    def provision_directory(self, destination: Path) -> None:
        """Populate *destination* from the template source."""
        source = self.config.template.source
        if _is_git_source(source):
            self._run_command([self.config.git_command, "clone", source, str(destination)])
            return
        source_path = Path(source).expanduser()
        if not source_path.is_dir():
            raise ConfigurationError(f"Template source {source_path} does not exist.")
        with _filesystem("copy template to", destination):
            shutil.copytree(source_path, destination)

    def clone_databases(
        self,
        source: Instance,
        target: Instance,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Bring up the target database and copy the source databases into it."""
        service = self.config.services.database
        target_container = self.runtime.start_service(target, service)
        _step(op, "database.start", target_container)
        source_container = self.runtime.service_container(source, service)
        attempts = self.database.wait_ready(target_container)
        _step(op, "database.ready", f"{attempts} attempt(s)")
        self.database.clone(
            source_container,
            target_container,
            on_step=lambda name, detail: _step(op, name, detail),
        )

    # ------------------------------------------------------------------
    # Runtime state
    # ------------------------------------------------------------------
    def start(self, instance: Instance, *, op: OperationScope | None = None) -> None:
        """Start the containers of *instance*."""
        self.require_instance(instance)
        self.runtime.start(instance)
        _step(op, "containers.start", instance.name)

    def stop(self, instance: Instance, *, op: OperationScope | None = None) -> None:
        """Stop the containers of *instance*."""
        self.require_instance(instance)
        self.runtime.stop(instance)
        _step(op, "containers.stop", instance.name)

    def erase(self, instance: Instance, *, op: OperationScope | None = None) -> list[str]:
        """Remove containers and volumes; the directory is kept."""
        self.require_instance(instance)
        warnings = self.runtime.erase(instance)
        _step(op, "containers.erase", instance.name)
        return warnings

    def update(
        self,
        instance: Instance,
        *,
        image: str | None = None,
        tag: str | None = None,
        force: bool = False,
        op: OperationScope | None = None,
    ) -> UpdateResult:
        """Change image and/or tag and replace the running containers."""
        if not image and not tag:
            raise PreconditionError("Update requires --image and/or --tag.")
        if image:
            image = validate_image_name(image)
        self.require_instance(instance)
        if not instance.has_config:
            raise NotFoundError(f"{instance.config_path} does not exist.")

        application = self.config.services.application
        document = ComposeDocument.load(instance.config_path)
        if document.has_legacy_build(application):
            raise ConfigurationError(
                "This appears to be a legacy configuration file. Please specify an "
                "'image' for the server services and remove their 'build' sections."
            )
        document.set_application_image(application, image=image, tag=tag)
        document.write(instance.config_path)
        _step(op, "config.patch", str(instance.config_path))

        outcome = self.runtime.rolling_update(
            instance,
            application=application,
            scale_services=self.config.update.scale_services,
            static_mount=self.config.update.static_mount,
            force=force,
        )
        for name in outcome.steps:
            _step(op, name)

        current = document.application_image(application)
        label = str(current) if current else ":".join(filter(None, [image, tag]))
        with _filesystem("write", instance.metadata_path):
            instance.append_metadata(f"{_timestamp()}: Updated to {label}")
        _step(op, "metadata.append")
        return UpdateResult(instance=instance, image=label, warnings=list(outcome.warnings))

    def remove(
        self,
        instance: Instance,
        *,
        force: bool = False,
        op: OperationScope | None = None,
    ) -> RemoveResult:
        """Erase *instance*, delete its directory and drop its registrations."""
        self.require_instance(instance)
        self.check_marker(instance, force=force)
        result = RemoveResult(instance=instance)
        result.warnings.extend(self.erase(instance, op=op))
        with _filesystem("remove", instance.directory):
            shutil.rmtree(instance.directory)
        _step(op, "directory.remove", str(instance.directory))
        self.certificates.revoke(instance.name)
        _step(op, "certificate.revoke", instance.name)
        result.proxy = self.proxy.unregister(instance.name)
        _step(op, "proxy.unregister", instance.name)
        if result.proxy.reload_error:
            result.warnings.append(f"Proxy reload failed: {result.proxy.reload_error}")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def layout(self) -> TemplateLayout:
        """Return the service layout the templater works with."""
        services = self.config.services
        return TemplateLayout(
            application=services.application,
            proxy=services.proxy,
            proxy_port=services.proxy_port,
            namespace=self.config.images.namespace,
        )

    def credentials(self, instance: Instance) -> CredentialStore:
        """Return the credential store for *instance*."""
        secrets = self.config.secrets
        return CredentialStore(
            instance,
            length=secrets.length,
            admin_file=secrets.admin_file,
            user_file=secrets.user_file,
            app_key_file=secrets.app_key_file,
        )

    def _template_for(self, instance: Instance, source: Instance | None) -> ComposeDocument:
        suffix = self.config.template.suffix
        if source is not None:
            example = source.directory / f"{source.config_filename}{suffix}"
            return ComposeDocument.load(example if example.is_file() else source.config_path)
        example = instance.directory / f"{instance.config_filename}{suffix}"
        if not example.is_file():
            raise ConfigurationError(f"Template {example.name} not found in {self.config.template.source}.")
        return ComposeDocument.load(example)

    def _run_command(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.config.command_timeout,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"{args[0]} not found: {exc}", command=args) from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(
                f"{' '.join(args)} timed out after {self.config.command_timeout:g} seconds.",
                command=args,
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ExternalToolError(
                f"{' '.join(args)} failed (exit {result.returncode}): {message}",
                command=args,
                returncode=result.returncode,
            )
        return result


def _is_git_source(source: str) -> bool:
    return "://" in source or source.startswith("git@") or source.rstrip("/").endswith(".git")


__all__ = [
    "CreateOptions",
    "CreateResult",
    "InstanceManager",
    "RemoveResult",
    "UpdateResult",
]
