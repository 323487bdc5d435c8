"""Data models for the docker records lazy works with."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class NetworkResource:
    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VolumeResource:
    name: str  # docker volumes are addressed by name only
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OwnContainer:
    """The container lazy itself runs in."""

    id: str
    hostname: str
    networks: tuple[str, ...] = ()  # names of attached networks

    def is_attached_to(self, network_name: str) -> bool:
        return network_name in self.networks


@dataclass(frozen=True)
class ContainerSummary:
    """One row of ``docker ps``."""

    id: str
    names: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.names[0] if self.names else self.id[:12]


@dataclass
class ContainerSpec:
    """Everything ``docker create`` needs for one engine."""

    image: str
    name: str | None = None
    command: list[str] | None = None
    env: list[str] = field(default_factory=list)
    binds: list[str] = field(default_factory=list)
    network: str | None = None
    restart_policy: str = "unless-stopped"
    working_dir: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
