"""Docker runtime client: subprocess wrappers around the ``docker`` CLI.

All public methods are async so they don't block the event loop.
The underlying subprocess calls run in a thread via ``asyncio.to_thread``.

No call carries a timeout: image pulls and ``docker stop`` may legitimately
take minutes, and bounding overall startup is the supervisor's job.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import socket
import subprocess
import tempfile
from collections.abc import Mapping
from typing import Any, Protocol

from lazy.labels import parse_labels
from lazy.logger import logger
from lazy.types import (
    ContainerSpec,
    ContainerSummary,
    NetworkResource,
    OwnContainer,
    VolumeResource,
)

_DOCKER_HUB = "docker.io"


class DockerError(Exception):
    """Raised when a docker command exits non-zero."""

    def __init__(self, command: str, stderr: str, returncode: int) -> None:
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"docker {command} failed (exit {returncode}): {stderr}")


def docker_available() -> bool:
    """Check if ``docker`` is on PATH."""
    return shutil.which("docker") is not None


def _run_docker_sync(
    *args: str,
    timeout: float | None = None,
    input: str | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a ``docker`` CLI command (blocking, internal only)."""
    return subprocess.run(
        ["docker", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        input=input,
        env=dict(env) if env is not None else None,
        check=False,
    )


async def run_docker(
    *args: str,
    check: bool = True,
    timeout: float | None = None,
    input: str | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a ``docker`` CLI command without blocking the event loop.

    With ``check=True`` a non-zero exit raises :class:`DockerError`.
    """
    result = await asyncio.to_thread(
        _run_docker_sync, *args, timeout=timeout, input=input, env=env
    )
    if check and result.returncode != 0:
        raise DockerError(_command_name(args), result.stderr.strip(), result.returncode)
    return result


def _command_name(args: tuple[str, ...]) -> str:
    """Subcommand of a docker invocation, skipping a global ``--config <dir>``."""
    if len(args) > 2 and args[0] == "--config":
        return args[2]
    return args[0] if args else ""


def _json_lines(stdout: str) -> list[dict[str, Any]]:
    """Parse ``--format '{{json .}}'`` output (one object per line)."""
    return [json.loads(line) for line in stdout.strip().splitlines() if line.strip()]


def registry_for_image(image: str) -> str:
    """Registry host an image reference points at (Docker Hub when unqualified)."""
    first, sep, _ = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return _DOCKER_HUB


class RuntimeClient(Protocol):
    """The container runtime operations the engine manager depends on."""

    async def get_own_container(self) -> OwnContainer: ...

    async def pull_image(self, image: str, auth: Mapping[str, str | None]) -> None: ...

    async def create_container(self, spec: ContainerSpec) -> str: ...

    async def start_container(self, container_id: str) -> None: ...

    async def stop_container(self, container_id: str) -> None: ...

    async def wait_container(self, container_id: str) -> int: ...

    async def delete_container(self, container_id: str) -> None: ...

    async def list_containers_in_network(self, network_name: str) -> list[ContainerSummary]: ...

    async def list_networks(self, label_filter: str) -> list[NetworkResource]: ...

    async def create_network(self, name: str, labels: Mapping[str, str]) -> NetworkResource: ...

    async def connect_network(self, network_name: str, container_id: str) -> None: ...

    async def list_volumes(self, label_filter: str) -> list[VolumeResource]: ...

    async def create_volume(self, name: str, labels: Mapping[str, str]) -> VolumeResource: ...


class DockerClient:
    """:class:`RuntimeClient` implemented over the docker CLI."""

    # ------------------------------------------------------------------
    # Own container
    # ------------------------------------------------------------------

    @staticmethod
    def _own_container_ref() -> str:
        # Docker sets the container hostname to the short container id
        # unless --hostname was given; LAZY_CONTAINER_ID covers that case.
        return (
            os.environ.get("LAZY_CONTAINER_ID")
            or os.environ.get("HOSTNAME")
            or socket.gethostname()
        )

    async def get_own_container(self) -> OwnContainer:
        ref = self._own_container_ref()
        result = await run_docker("inspect", "--type", "container", ref)
        info = json.loads(result.stdout)[0]
        networks = (info.get("NetworkSettings") or {}).get("Networks") or {}
        return OwnContainer(
            id=info["Id"],
            hostname=(info.get("Config") or {}).get("Hostname") or ref,
            networks=tuple(networks),
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def pull_image(self, image: str, auth: Mapping[str, str | None]) -> None:
        """Pull *image*, logging in first when credentials are given.

        Credentials go to a throwaway ``DOCKER_CONFIG`` directory so they
        never land in the host's ``~/.docker/config.json``.
        """
        username = auth.get("username") or auth.get("user")
        password = auth.get("password")
        if not username:
            await run_docker("pull", image)
            return

        server = auth.get("serveraddress") or auth.get("server") or registry_for_image(image)
        with tempfile.TemporaryDirectory(prefix="lazy-docker-") as config_dir:
            await run_docker(
                "--config",
                config_dir,
                "login",
                "--username",
                username,
                "--password-stdin",
                server,
                input=password or "",
            )
            await run_docker("--config", config_dir, "pull", image)

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def remove_container(self, name: str) -> None:
        """Force-remove a container (idempotent, no error if absent).

        Use before creating a named container to clear stale state, such as
        a leftover from a crashed run that is no longer on lazy's network.
        """
        await run_docker("rm", "-f", name, check=False)

    async def create_container(self, spec: ContainerSpec) -> str:
        args: list[str] = ["create"]
        if spec.name:
            await self.remove_container(spec.name)
            args += ["--name", spec.name]
        if spec.network:
            args += ["--network", spec.network]
        args += ["--restart", spec.restart_policy]
        for var in spec.env:
            args += ["-e", var]
        for bind in spec.binds:
            args += ["-v", bind]
        if spec.working_dir:
            args += ["-w", spec.working_dir]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        args.append(spec.image)
        if spec.command:
            args += spec.command

        result = await run_docker(*args)
        return result.stdout.strip()

    async def start_container(self, container_id: str) -> None:
        await run_docker("start", container_id)

    async def stop_container(self, container_id: str) -> None:
        await run_docker("stop", container_id)

    async def wait_container(self, container_id: str) -> int:
        result = await run_docker("wait", container_id)
        try:
            return int(result.stdout.strip())
        except ValueError:
            return -1

    async def delete_container(self, container_id: str) -> None:
        await run_docker("rm", container_id)

    async def list_containers_in_network(self, network_name: str) -> list[ContainerSummary]:
        result = await run_docker(
            "ps", "-a", "--no-trunc", "--filter", f"network={network_name}", "--format", "{{json .}}"
        )
        return [
            ContainerSummary(
                id=row["ID"],
                names=tuple(n for n in row.get("Names", "").split(",") if n),
            )
            for row in _json_lines(result.stdout)
        ]

    # ------------------------------------------------------------------
    # Networks & volumes
    # ------------------------------------------------------------------

    async def list_networks(self, label_filter: str) -> list[NetworkResource]:
        result = await run_docker(
            "network", "ls", "--no-trunc", "--filter", label_filter, "--format", "{{json .}}"
        )
        return [
            NetworkResource(
                id=row["ID"], name=row["Name"], labels=parse_labels(row.get("Labels", ""))
            )
            for row in _json_lines(result.stdout)
        ]

    async def create_network(self, name: str, labels: Mapping[str, str]) -> NetworkResource:
        args = ["network", "create"]
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]
        result = await run_docker(*args, name)
        logger.info("Created Docker network", network=name)
        return NetworkResource(id=result.stdout.strip(), name=name, labels=dict(labels))

    async def connect_network(self, network_name: str, container_id: str) -> None:
        await run_docker("network", "connect", network_name, container_id)

    async def list_volumes(self, label_filter: str) -> list[VolumeResource]:
        result = await run_docker("volume", "ls", "--filter", label_filter, "--format", "{{json .}}")
        return [
            VolumeResource(name=row["Name"], labels=parse_labels(row.get("Labels", "")))
            for row in _json_lines(result.stdout)
        ]

    async def create_volume(self, name: str, labels: Mapping[str, str]) -> VolumeResource:
        args = ["volume", "create"]
        for key, value in labels.items():
            args += ["--label", f"{key}={value}"]
        result = await run_docker(*args, name)
        logger.info("Created Docker volume", volume=name)
        return VolumeResource(name=result.stdout.strip() or name, labels=dict(labels))
