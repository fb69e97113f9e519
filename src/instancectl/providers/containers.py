"""Container runtime providers for the two deployment modes.

Both runtimes expose the same operations so the lifecycle code never needs
to branch on the deployment mode. Every external command goes through
:meth:`ContainerRuntime._run_command`, which raises
:class:`~instancectl.errors.ExternalToolError` on failure.
"""
from __future__ import annotations

import json
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import ExternalToolError
from ..models import DeploymentMode, Instance


@dataclass(slots=True)
class RollingUpdateResult:
    """Outcome of replacing the application containers of an instance."""

    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ContainerRuntime:
    """Shared plumbing for the compose and stack runtimes."""

    docker_command: str = "docker"
    compose_command: tuple[str, ...] = ("docker", "compose")
    command_timeout: float = 300.0

    mode = DeploymentMode.COMPOSE

    # Interface ----------------------------------------------------------
    def start(self, instance: Instance) -> None:
        """Start every service of *instance*."""
        raise NotImplementedError

    def stop(self, instance: Instance) -> None:
        """Stop and remove the containers of *instance*."""
        raise NotImplementedError

    def erase(self, instance: Instance) -> list[str]:
        """Remove containers and volumes; returns warnings for the operator."""
        raise NotImplementedError

    def start_service(self, instance: Instance, service: str) -> str:
        """Start a single service and return its container id."""
        raise NotImplementedError

    def service_container(self, instance: Instance, service: str) -> str:
        """Return the container id running *service* for *instance*."""
        raise NotImplementedError

    def rolling_update(
        self,
        instance: Instance,
        *,
        application: Sequence[str],
        scale_services: Sequence[str],
        static_mount: str,
        force: bool = False,
    ) -> RollingUpdateResult:
        """Replace application containers after the image changed."""
        raise NotImplementedError

    # Shared helpers -------------------------------------------------------
    def exec(
        self,
        container: str,
        args: Sequence[str],
        *,
        user: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* inside *container*."""
        return self._run_command(self._exec_args(container, args, user=user))

    def pipe(
        self,
        source: tuple[str, Sequence[str]],
        target: tuple[str, Sequence[str]],
        *,
        user: str | None = None,
    ) -> None:
        """Stream the stdout of a command in one container into another."""
        producer = self._exec_args(source[0], source[1], user=user)
        consumer = self._exec_args(target[0], target[1], user=user, interactive=True)
        self._pipe(producer, consumer)

    def remove_volume(self, name: str) -> None:
        """Delete the named volume."""
        self._docker("volume", "rm", name)

    def mount_volume(self, container: str, destination: str) -> str | None:
        """Return the name of the volume mounted at *destination* in *container*."""
        result = self._docker("inspect", "--format", "{{json .Mounts}}", container)
        try:
            mounts = json.loads(result.stdout or "[]")
        except ValueError as exc:
            raise ExternalToolError(f"Unexpected docker inspect output for {container}.") from exc
        for mount in mounts or []:
            if isinstance(mount, dict) and mount.get("Destination") == destination:
                name = mount.get("Name")
                return str(name) if name else None
        return None

    def _exec_args(
        self,
        container: str,
        args: Sequence[str],
        *,
        user: str | None = None,
        interactive: bool = False,
    ) -> list[str]:
        command = [self.docker_command, "exec"]
        if user:
            command.extend(["-u", user])
        if interactive:
            command.append("-i")
        command.append(container)
        command.extend(args)
        return command

    def _docker(self, *args: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
        return self._run_command([self.docker_command, *args], cwd=cwd)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=cwd,
                timeout=self.command_timeout,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(f"{args[0]} not found: {exc}", command=args) from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolError(
                f"{' '.join(args)} timed out after {self.command_timeout:g} seconds.",
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

    def _pipe(self, producer: Sequence[str], consumer: Sequence[str]) -> None:
        # Only stdout is piped; producer stderr is spooled to disk.
        with tempfile.TemporaryFile() as upstream_errors:
            try:
                with subprocess.Popen(  # noqa: S603
                    list(producer),
                    stdout=subprocess.PIPE,
                    stderr=upstream_errors,
                ) as upstream:
                    try:
                        downstream = subprocess.run(  # noqa: S603
                            list(consumer),
                            stdin=upstream.stdout,
                            capture_output=True,
                            check=False,
                            timeout=self.command_timeout,
                        )
                        if upstream.stdout is not None:
                            upstream.stdout.close()
                        upstream.wait(timeout=self.command_timeout)
                    except subprocess.TimeoutExpired as exc:
                        upstream.kill()
                        raise ExternalToolError(
                            f"{' '.join(producer)} | {' '.join(consumer)} timed out after "
                            f"{self.command_timeout:g} seconds.",
                            command=consumer,
                        ) from exc
            except FileNotFoundError as exc:
                missing = exc.filename or producer[0]
                raise ExternalToolError(f"{missing} not found: {exc}", command=producer) from exc
            upstream_errors.seek(0)
            upstream_err = upstream_errors.read()
        if upstream.returncode != 0:
            message = upstream_err.decode("utf-8", errors="replace").strip() or "no output"
            raise ExternalToolError(
                f"{' '.join(producer)} failed (exit {upstream.returncode}): {message}",
                command=producer,
                returncode=upstream.returncode,
            )
        if downstream.returncode != 0:
            message = downstream.stderr.decode("utf-8", errors="replace").strip() or "no output"
            raise ExternalToolError(
                f"{' '.join(consumer)} failed (exit {downstream.returncode}): {message}",
                command=consumer,
                returncode=downstream.returncode,
            )


@dataclass(slots=True)
class ComposeRuntime(ContainerRuntime):
    """Run instances on the local host with docker compose."""

    mode = DeploymentMode.COMPOSE

    def start(self, instance: Instance) -> None:
        """Build local images, then start every service detached."""
        self._compose(instance, "build")
        self._compose(instance, "up", "-d")

    def stop(self, instance: Instance) -> None:
        """Stop and remove the instance's containers."""
        self._compose(instance, "down")

    def erase(self, instance: Instance) -> list[str]:
        """Remove containers together with their volumes."""
        self._compose(instance, "down", "--volumes")
        return []

    def start_service(self, instance: Instance, service: str) -> str:
        """Start *service* alone (without its dependencies)."""
        self._compose(instance, "up", "-d", "--no-deps", service)
        return self.service_container(instance, service)

    def service_container(self, instance: Instance, service: str) -> str:
        """Return the container id of *service*."""
        result = self._compose(instance, "ps", "-q", service)
        container = (result.stdout or "").strip().splitlines()
        if not container:
            raise ExternalToolError(f"No running container for service '{service}' of {instance.name}.")
        return container[0].strip()

    def rolling_update(
        self,
        instance: Instance,
        *,
        application: Sequence[str],
        scale_services: Sequence[str],
        static_mount: str,
        force: bool = False,
    ) -> RollingUpdateResult:
        """Recreate containers and drop the stale static-files volume."""
        outcome = RollingUpdateResult()
        self._compose(instance, "up", "--no-start")
        outcome.steps.append("containers.create")

        volume: str | None = None
        for service in reversed(list(application)):
            try:
                container = self.service_container(instance, service)
            except ExternalToolError:
                continue
            volume = self.mount_volume(container, static_mount)
            if volume:
                break

        scale_args: list[str] = []
        for service in scale_services:
            scale_args.extend(["--scale", f"{service}=0"])
        self._compose(instance, "up", "-d", *scale_args)
        outcome.steps.append("containers.scale_down")

        if volume:
            self.remove_volume(volume)
            outcome.steps.append("volume.remove")
        else:
            outcome.warnings.append(f"No volume mounted at {static_mount}; nothing removed.")

        self._compose(instance, "up", "-d")
        outcome.steps.append("containers.up")
        return outcome

    # ------------------------------------------------------------------
    def _compose(self, instance: Instance, *args: str) -> subprocess.CompletedProcess[str]:
        command = [*self.compose_command, "-f", str(instance.config_path), *args]
        return self._run_command(command, cwd=instance.directory)


@dataclass(slots=True)
class StackRuntime(ContainerRuntime):
    """Run instances as docker swarm stacks."""

    mode = DeploymentMode.STACK

    def start(self, instance: Instance) -> None:
        """Deploy the instance stack."""
        self._docker(
            "stack",
            "deploy",
            "-c",
            str(instance.config_path),
            instance.stack_name,
            cwd=instance.directory,
        )

    def stop(self, instance: Instance) -> None:
        """Remove the instance stack."""
        self._docker("stack", "rm", instance.stack_name)

    def erase(self, instance: Instance) -> list[str]:
        """Remove the stack and the volumes it left behind on this node."""
        warnings: list[str] = []
        try:
            self.stop(instance)
        except ExternalToolError as exc:
            warnings.append(f"Stopping the stack failed: {exc}")
        prefix = f"{instance.stack_name}_"
        listing = self._docker("volume", "ls", "--format", "{{ .Name }}")
        for name in (listing.stdout or "").splitlines():
            name = name.strip()
            if not name.startswith(prefix):
                continue
            try:
                self.remove_volume(name)
            except ExternalToolError as exc:
                warnings.append(f"Could not remove volume {name}: {exc}")
        warnings.append("Volumes on other swarm nodes are not taken into account.")
        return warnings

    def start_service(self, instance: Instance, service: str) -> str:
        """Deploy the stack and return the container id of *service*."""
        self.start(instance)
        return self.service_container(instance, service)

    def service_container(self, instance: Instance, service: str) -> str:
        """Resolve the container id behind the running task of *service*."""
        full_name = f"{instance.stack_name}_{service}"
        tasks = self._docker("service", "ps", "-q", "--filter", "desired-state=running", full_name)
        task_ids = (tasks.stdout or "").split()
        if not task_ids:
            raise ExternalToolError(f"No running task for service {full_name}.")
        inspected = self._docker(
            "inspect", "-f", "{{.Status.ContainerStatus.ContainerID}}", task_ids[0]
        )
        container = (inspected.stdout or "").strip()
        if not container:
            raise ExternalToolError(f"Task {task_ids[0]} of {full_name} has no container yet.")
        return container

    def running_services(self) -> set[str]:
        """Return the names of every service known to the swarm."""
        result = self._docker("service", "ls", "--format", "{{.Name}}")
        return {line.strip() for line in (result.stdout or "").splitlines() if line.strip()}

    def rolling_update(
        self,
        instance: Instance,
        *,
        application: Sequence[str],
        scale_services: Sequence[str],
        static_mount: str,
        force: bool = False,
    ) -> RollingUpdateResult:
        """Trigger ``docker service update`` for every running application service."""
        outcome = RollingUpdateResult()
        running = self.running_services()
        for service in reversed(list(application)):
            full_name = f"{instance.stack_name}_{service}"
            if full_name not in running:
                outcome.warnings.append(f"{full_name} is not running.")
                continue
            args = ["service", "update"]
            if force:
                args.append("--force")
            args.append(full_name)
            self._docker(*args)
            outcome.steps.append(f"service.update:{service}")
        return outcome


def runtime_for(
    mode: DeploymentMode,
    *,
    docker_command: str = "docker",
    compose_command: Sequence[str] = ("docker", "compose"),
    command_timeout: float = 300.0,
) -> ContainerRuntime:
    """Return the runtime implementation for *mode*."""
    runtime_cls = StackRuntime if mode is DeploymentMode.STACK else ComposeRuntime
    return runtime_cls(
        docker_command=docker_command,
        compose_command=tuple(compose_command),
        command_timeout=command_timeout,
    )


__all__ = [
    "ComposeRuntime",
    "ContainerRuntime",
    "RollingUpdateResult",
    "StackRuntime",
    "runtime_for",
]
