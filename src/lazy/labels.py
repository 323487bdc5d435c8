"""Docker labels and resource naming for lazy-managed resources.

The owner label is how a restarted lazy finds the network and volume a
previous (possibly crashed) instance created. Its value is the manager id,
so several lazy instances can share one docker daemon.
"""

from __future__ import annotations

OWNER_LABEL = "org.getlazy.lazy.engine-manager.owner"


def owner_labels(manager_id: str) -> dict[str, str]:
    return {OWNER_LABEL: manager_id}


def owner_filter(manager_id: str) -> str:
    """``--filter`` value matching resources owned by *manager_id*."""
    return f"label={OWNER_LABEL}={manager_id}"


def resource_name(kind: str, manager_id: str) -> str:
    """Name for a newly created resource, e.g. ``lazy-network-default``."""
    return f"lazy-{kind}-{manager_id}"


def engine_container_name(manager_id: str, engine_name: str) -> str:
    """Container name, which is also the engine's DNS name on the lazy network."""
    return f"lazy-{manager_id}-{engine_name}"


def parse_labels(raw: str) -> dict[str, str]:
    """Parse docker's ``k1=v1,k2=v2`` label column (``--format {{json .}}``)."""
    labels: dict[str, str] = {}
    for item in raw.split(","):
        if not item:
            continue
        key, _, value = item.partition("=")
        labels[key] = value
    return labels
