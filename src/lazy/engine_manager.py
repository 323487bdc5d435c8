"""Engine manager: provisions lazy's network/volume and runs the engines.

Startup is a strictly ordered sequence of phases, each of which may fan
out in parallel internally::

    NOT_STARTED
      → DISCOVERING_RESOURCES   own container ∥ network ∥ volume
      → CLEANING                stop → wait → rm every stale container
      → JOINING_NETWORK         attach lazy's container to the network
      → INSTALLING_ENGINES      pull → create → start → Engine.start, per engine ∥
      → INSTALLING_UI           (only when [ui] is configured)
      → RUNNING

Discovery and cleaning are idempotent, so after a crash the supervisor
simply restarts lazy and :meth:`EngineManager.start` converges: the
network ends up holding exactly lazy itself plus the engines installed by
this run. A failed start is not rolled back; containers created before the
failure stay until the next start cleans them.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any, TypeVar

import structlog

from lazy.config import EngineConfig, Settings
from lazy.docker import RuntimeClient
from lazy.engine import Engine
from lazy.labels import engine_container_name, owner_filter, owner_labels, resource_name
from lazy.logger import logger
from lazy.repository_auth import resolve_repository_auth, select_repository_auth
from lazy.types import ContainerSpec, ContainerSummary, NetworkResource, OwnContainer, VolumeResource

T = TypeVar("T")

SHARED_MOUNT = "/lazy"
ENGINE_LABEL = "org.getlazy.lazy.engine-manager.engine"
UI_ENGINE_NAME = "ui"


class ManagerPhase(str, Enum):
    NOT_STARTED = "not_started"
    DISCOVERING_RESOURCES = "discovering_resources"
    CLEANING = "cleaning"
    JOINING_NETWORK = "joining_network"
    INSTALLING_ENGINES = "installing_engines"
    INSTALLING_UI = "installing_ui"
    RUNNING = "running"


class EngineManagerError(Exception):
    """Base class for failures that abort :meth:`EngineManager.start`."""


class ProvisioningError(EngineManagerError):
    """Network, volume or own-container discovery failed."""


class TeardownError(EngineManagerError):
    """A stale engine container could not be stopped, awaited or deleted."""


class InstallError(EngineManagerError):
    """An engine's pull/create/start chain failed."""

    def __init__(self, engine_name: str, cause: BaseException) -> None:
        self.engine_name = engine_name
        super().__init__(f"engine {engine_name!r} failed to install: {cause}")


async def _gather_all(*aws: Awaitable[T]) -> list[T]:
    """Run *aws* concurrently, let all of them settle, then raise the first failure.

    Unlike a bare ``gather`` no sibling is left running unobserved after
    one of them fails.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)  # type: ignore[arg-type]


def _union(*lists: list[str]) -> list[str]:
    """Order-preserving union without duplicates."""
    return list(dict.fromkeys(item for items in lists for item in items))


def build_container_spec(
    engine_name: str,
    config: EngineConfig,
    *,
    manager_id: str,
    own_hostname: str,
    network_name: str,
    volume_name: str,
    service_url: str,
    private_api_port: int,
    environ: Mapping[str, str] | None = None,
    log: structlog.stdlib.BoundLogger | None = None,
) -> ContainerSpec:
    """Compute the ``docker create`` parameters for one engine.

    The command is split on whitespace only; quoted arguments are not
    supported. ``LAZY_ENGINE_URL`` follows the ``/engine/<name>`` pattern
    even for the UI engine, which is actually served at ``/``.
    """
    env = os.environ if environ is None else environ
    log = log or logger

    imported: list[str] = []
    for var in config.import_env:
        if var not in env:
            log.warning("Imported variable not set, skipping", engine=engine_name, var=var)
            continue
        imported.append(f"{var}={env[var]}")

    injected = [
        f"LAZY_HOSTNAME={own_hostname}",
        f"LAZY_ENGINE_NAME={engine_name}",
        f"LAZY_SERVICE_URL={service_url}",
        f"LAZY_PRIVATE_API_URL=http://{own_hostname}:{private_api_port}",
        f"LAZY_ENGINE_URL={service_url}/engine/{engine_name}",
        f"LAZY_VOLUME_NAME={volume_name}",
        f"LAZY_VOLUME_MOUNT={SHARED_MOUNT}",
        f"LAZY_ENGINE_SANDBOX_DIR={SHARED_MOUNT}/sandbox/{engine_name}",
    ]

    return ContainerSpec(
        image=config.image,
        name=engine_container_name(manager_id, engine_name),
        command=config.command.split() if config.command else None,
        env=_union(config.env, imported, injected),
        binds=_union(config.volumes, [f"{volume_name}:{SHARED_MOUNT}"]),
        network=network_name,
        restart_policy="unless-stopped",
        working_dir=config.working_dir,
        labels={ENGINE_LABEL: engine_name},
    )


class EngineManager:
    """Owns the engine containers for one lazy instance.

    Not safe for concurrent :meth:`start` calls; the caller serializes them.
    Once running, :attr:`engines` and :attr:`ui_engine` are read-only
    snapshots that request handlers may read without locking.
    """

    def __init__(
        self,
        settings: Settings,
        client: RuntimeClient,
        *,
        log: structlog.stdlib.BoundLogger | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._id = settings.id or "default"
        self._settings = settings
        self._client = client
        self._environ = environ
        self._log = (log or logger).bind(manager_id=self._id)

        self._container: OwnContainer | None = None
        self._network: NetworkResource | None = None
        self._volume: VolumeResource | None = None
        self._engines: Mapping[str, Engine] = MappingProxyType({})
        self._ui_engine: Engine | None = None
        self._is_running = False
        self._phase = ManagerPhase.NOT_STARTED

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def phase(self) -> ManagerPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def engines(self) -> Mapping[str, Engine]:
        return self._engines

    @property
    def ui_engine(self) -> Engine | None:
        return self._ui_engine

    @property
    def network(self) -> NetworkResource | None:
        return self._network

    @property
    def volume(self) -> VolumeResource | None:
        return self._volume

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Provision resources, clean up after any previous run, install engines."""
        self._is_running = False
        self._engines = MappingProxyType({})
        self._ui_engine = None

        try:
            self._enter(ManagerPhase.DISCOVERING_RESOURCES)
            self._container, self._network, self._volume = await _gather_all(
                self._get_own_container(),
                self._find_network_or_create_it(),
                self._find_volume_or_create_it(),
            )

            self._enter(ManagerPhase.CLEANING)
            await self._delete_all_engines()

            self._enter(ManagerPhase.JOINING_NETWORK)
            await self._join_container_to_network()

            self._enter(ManagerPhase.INSTALLING_ENGINES)
            engines = await self._install_all_engines()

            ui_engine = None
            if self._settings.ui is not None:
                self._enter(ManagerPhase.INSTALLING_UI)
                ui_engine = await self._install_engine(
                    UI_ENGINE_NAME, self._settings.ui, is_ui=True
                )
            # Published together, only once every install succeeded
            self._engines = MappingProxyType(engines)
            self._ui_engine = ui_engine
        except EngineManagerError as exc:
            self._log.error("Engine manager failed to start", phase=self._phase.value, err=str(exc))
            raise

        self._enter(ManagerPhase.RUNNING)
        self._is_running = True
        self._log.info(
            "Engine manager running",
            engines=sorted(self._engines),
            ui=self._ui_engine is not None,
        )

    async def stop(self) -> None:
        """Stop and delete every engine container, then mark lazy stopped."""
        if self._network is None:
            self._network = await self.get_network()
        if self._network is not None:
            if self._container is None:
                self._container = await self._get_own_container()
            await self._delete_all_engines()

        self._engines = MappingProxyType({})
        self._ui_engine = None
        self._is_running = False
        self._phase = ManagerPhase.NOT_STARTED
        self._log.info("Engine manager stopped")

    def _enter(self, phase: ManagerPhase) -> None:
        self._phase = phase
        self._log.debug("Engine manager phase", phase=phase.value)

    # ------------------------------------------------------------------
    # Resource discovery
    # ------------------------------------------------------------------

    async def _get_own_container(self) -> OwnContainer:
        try:
            return await self._client.get_own_container()
        except Exception as exc:
            raise ProvisioningError(f"cannot inspect own container: {exc}") from exc

    def _first_match(self, kind: str, matches: list[Any]) -> Any | None:
        if not matches:
            return None
        if len(matches) > 1:
            # Two instances racing on the same id can both create; take the
            # first like docker lists them and let the operator clean up.
            self._log.warning("Multiple resources carry the owner label", kind=kind, count=len(matches))
        return matches[0]

    async def get_network(self) -> NetworkResource | None:
        """Return lazy's network if it exists, without creating it."""
        networks = await self._client.list_networks(owner_filter(self._id))
        return self._first_match("network", networks)

    async def _find_network_or_create_it(self) -> NetworkResource:
        try:
            network = await self.get_network()
            if network is not None:
                return network
            return await self._client.create_network(
                resource_name("network", self._id), owner_labels(self._id)
            )
        except Exception as exc:
            raise ProvisioningError(f"cannot provision network: {exc}") from exc

    async def _find_volume_or_create_it(self) -> VolumeResource:
        try:
            volumes = await self._client.list_volumes(owner_filter(self._id))
            volume = self._first_match("volume", volumes)
            if volume is not None:
                return volume
            return await self._client.create_volume(
                resource_name("volume", self._id), owner_labels(self._id)
            )
        except Exception as exc:
            raise ProvisioningError(f"cannot provision volume: {exc}") from exc

    # ------------------------------------------------------------------
    # Teardown & network attach
    # ------------------------------------------------------------------

    async def _delete_all_engines(self) -> None:
        """Stop, wait for and delete every container in the network except lazy's own."""
        assert self._network is not None
        try:
            containers = await self._client.list_containers_in_network(self._network.name)
        except Exception as exc:
            raise TeardownError(f"cannot list containers in {self._network.name}: {exc}") from exc

        own_id = self._container.id if self._container is not None else None
        await _gather_all(
            *(self._delete_engine_container(c) for c in containers if c.id != own_id)
        )

    async def _delete_engine_container(self, container: ContainerSummary) -> None:
        self._log.info("Stopping/waiting/deleting engine container", container=container.name)
        try:
            await self._client.stop_container(container.id)
            await self._client.wait_container(container.id)
            await self._client.delete_container(container.id)
        except Exception as exc:
            raise TeardownError(f"cannot remove container {container.name}: {exc}") from exc

    async def _join_container_to_network(self) -> None:
        assert self._container is not None and self._network is not None
        if self._container.is_attached_to(self._network.name):
            return
        try:
            await self._client.connect_network(self._network.name, self._container.id)
        except Exception as exc:
            raise ProvisioningError(f"cannot join network {self._network.name}: {exc}") from exc
        self._log.info("Joined lazy network", network=self._network.name)

    # ------------------------------------------------------------------
    # Installation
    # ------------------------------------------------------------------

    async def _install_all_engines(self) -> dict[str, Engine]:
        names = list(self._settings.engines)
        engines = await _gather_all(
            *(self._install_engine(name, self._settings.engines[name]) for name in names)
        )
        return dict(zip(names, engines, strict=True))

    async def _install_engine(
        self, engine_name: str, engine_config: EngineConfig, *, is_ui: bool = False
    ) -> Engine:
        assert self._container is not None and self._network is not None
        assert self._volume is not None
        log = self._log.bind(engine=engine_name)

        auth = resolve_repository_auth(
            select_repository_auth(engine_config.repository_auth, self._settings.repository_auth),
            self._environ,
        )
        spec = build_container_spec(
            engine_name,
            engine_config,
            manager_id=self._id,
            own_hostname=self._container.hostname,
            network_name=self._network.name,
            volume_name=self._volume.name,
            service_url=self._settings.service_url,
            private_api_port=self._settings.private_api_port,
            environ=self._environ,
            log=log,
        )

        try:
            log.info("Pulling image", image=engine_config.image)
            await self._client.pull_image(engine_config.image, auth)

            log.info("Creating engine", network=self._network.name, volume=self._volume.name)
            container_id = await self._client.create_container(spec)
            await self._client.start_container(container_id)

            engine = Engine(
                engine_name, container_id, spec.name or container_id, engine_config, is_ui=is_ui
            )
            await engine.start()
        except Exception as exc:
            log.error("Engine install failed", err=str(exc))
            raise InstallError(engine_name, exc) from exc

        log.info("Engine installed", url=engine.url)
        return engine
