"""Registry credentials for image pulls.

Credentials are never written to lazy.toml directly. A key with the
``_env`` suffix names an environment variable of lazy's own process that
holds the real value::

    [repository_auth]
    username = "ci-bot"
    password_env = "DOCKER_PW"     # -> {"username": "ci-bot", "password": $DOCKER_PW}
"""

from __future__ import annotations

import os
from collections.abc import Mapping

ENV_SUFFIX = "_env"


def select_repository_auth(
    engine_auth: Mapping[str, str] | None,
    default_auth: Mapping[str, str] | None,
) -> dict[str, str]:
    """Engine-level auth wins over the manager default; empty means anonymous."""
    if engine_auth:
        return dict(engine_auth)
    if default_auth:
        return dict(default_auth)
    return {}


def resolve_repository_auth(
    auth: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
) -> dict[str, str | None]:
    """Replace ``<field>_env`` entries with ``<field>`` read from the environment.

    A variable missing from the environment resolves to ``None``; the pull
    then fails at the registry rather than here.
    """
    env = os.environ if environ is None else environ
    resolved: dict[str, str | None] = {}
    for key, value in auth.items():
        if key.endswith(ENV_SUFFIX):
            resolved[key[: -len(ENV_SUFFIX)]] = env.get(value)
        else:
            resolved[key] = value
    return resolved
