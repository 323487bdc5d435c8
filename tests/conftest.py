"""Shared test fixtures for lazy."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping

import pytest

from lazy.config import EngineConfig, LoggingConfig, ServerConfig, Settings
from lazy.labels import OWNER_LABEL
from lazy.types import (
    ContainerSpec,
    ContainerSummary,
    NetworkResource,
    OwnContainer,
    VolumeResource,
)

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Create a Settings object with sensible defaults for testing.

    Usage::

        s = make_settings(engines={"eslint": EngineConfig(image="lazy/eslint")})
        s = make_settings(ui=EngineConfig(image="lazy/ui"), id="ci")
    """
    defaults = {
        "id": "test",
        "engines": {},
        "ui": None,
        "repository_auth": {},
        "service_url": "http://lazy.example.com",
        "private_api_port": 17013,
        "server": ServerConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def _matches_filter(labels: Mapping[str, str], label_filter: str) -> bool:
    # "label=<key>=<value>"
    _, _, rest = label_filter.partition("=")
    key, _, value = rest.partition("=")
    return labels.get(key) == value


class FakeRuntime:
    """In-memory :class:`~lazy.docker.RuntimeClient` that records every call.

    ``errors`` maps a method name to the exception it should raise;
    ``pull_errors`` maps an image to the exception its pull raises.
    """

    def __init__(
        self,
        *,
        own: OwnContainer | None = None,
        networks: list[NetworkResource] | None = None,
        volumes: list[VolumeResource] | None = None,
        containers: dict[str, list[ContainerSummary]] | None = None,
    ) -> None:
        self.own = own or OwnContainer(id="own-id", hostname="lazyhost", networks=("bridge",))
        self.networks = list(networks or [])
        self.volumes = list(volumes or [])
        self.containers = {k: list(v) for k, v in (containers or {}).items()}
        self.calls: list[tuple] = []
        self.specs: list[ContainerSpec] = []
        self.errors: dict[str, Exception] = {}
        self.pull_errors: dict[str, Exception] = {}

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if method in self.errors:
            raise self.errors[method]

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    def running_in(self, network_name: str) -> list[str]:
        return [c.id for c in self.containers.get(network_name, [])]

    async def get_own_container(self) -> OwnContainer:
        self._record("get_own_container")
        return self.own

    async def pull_image(self, image, auth) -> None:
        self._record("pull_image", image, dict(auth))
        if image in self.pull_errors:
            raise self.pull_errors[image]

    async def create_container(self, spec: ContainerSpec) -> str:
        self._record("create_container", spec.name)
        self.specs.append(spec)
        container_id = f"cid-{spec.name}"
        if spec.network:
            self.containers.setdefault(spec.network, []).append(
                ContainerSummary(id=container_id, names=(f"/{spec.name}",))
            )
        return container_id

    async def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)

    async def stop_container(self, container_id: str) -> None:
        self._record("stop_container", container_id)

    async def wait_container(self, container_id: str) -> int:
        self._record("wait_container", container_id)
        return 0

    async def delete_container(self, container_id: str) -> None:
        self._record("delete_container", container_id)
        for members in self.containers.values():
            members[:] = [c for c in members if c.id != container_id]

    async def list_containers_in_network(self, network_name: str) -> list[ContainerSummary]:
        self._record("list_containers_in_network", network_name)
        return list(self.containers.get(network_name, []))

    async def list_networks(self, label_filter: str) -> list[NetworkResource]:
        self._record("list_networks", label_filter)
        return [n for n in self.networks if _matches_filter(n.labels, label_filter)]

    async def create_network(self, name, labels) -> NetworkResource:
        self._record("create_network", name)
        network = NetworkResource(id=f"net-{len(self.networks) + 1}", name=name, labels=dict(labels))
        self.networks.append(network)
        return network

    async def connect_network(self, network_name: str, container_id: str) -> None:
        self._record("connect_network", network_name, container_id)
        self.own = dataclasses.replace(self.own, networks=(*self.own.networks, network_name))
        self.containers.setdefault(network_name, []).append(
            ContainerSummary(id=container_id, names=("/lazy",))
        )

    async def list_volumes(self, label_filter: str) -> list[VolumeResource]:
        self._record("list_volumes", label_filter)
        return [v for v in self.volumes if _matches_filter(v.labels, label_filter)]

    async def create_volume(self, name, labels) -> VolumeResource:
        self._record("create_volume", name)
        volume = VolumeResource(name=name, labels=dict(labels))
        self.volumes.append(volume)
        return volume


def owned_network(manager_id: str = "test", name: str | None = None) -> NetworkResource:
    return NetworkResource(
        id=f"net-{manager_id}",
        name=name or f"lazy-network-{manager_id}",
        labels={OWNER_LABEL: manager_id},
    )


def owned_volume(manager_id: str = "test", name: str | None = None) -> VolumeResource:
    return VolumeResource(name=name or f"lazy-volume-{manager_id}", labels={OWNER_LABEL: manager_id})


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    No lazy.toml, no .env, no file I/O. Tests are isolated from local config.
    """
    monkeypatch.setattr("lazy.config._settings", make_settings())


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def engine_config():
    """Factory fixture for EngineConfig with a default image."""

    def _make(image: str = "lazy/engine:latest", **kwargs) -> EngineConfig:
        return EngineConfig(image=image, **kwargs)

    return _make
