from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

NAMESPACE_ENV = "HEPTIO_ARK_NAMESPACE"
NODE_NAME_ENV = "NODE_NAME"
CREDENTIALS_SECRET_NAME = "ark-restic-credentials"
CREDENTIALS_SECRET_KEY = "repository-password"
DEFAULT_HEALTH_PORT = 8085
DEFAULT_HOST_PODS_ROOT = "/host_pods"

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerConfig:
    """Immutable node-agent configuration resolved once at startup.

    Attributes:
        namespace: Ark system namespace holding the storage locations,
                   the credentials secret and the pod volume custom resources.
        node_name: Identity of this node; used verbatim as the pod filter.
        default_backup_location: Name of the storage location whose provider
                   credentials are provisioned before anything else runs.
        health_port: Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        host_pods_root: Host path where the kubelet pod directories are mounted.
    """

    namespace: str
    node_name: str
    default_backup_location: str = "default"
    health_port: int = DEFAULT_HEALTH_PORT
    host_pods_root: str = DEFAULT_HOST_PODS_ROOT


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = os.environ if env is None else env
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_server_config(
    default_backup_location: str = "default",
    env: Mapping[str, str] | None = None,
) -> ServerConfig:
    """Resolve the server configuration from the environment.

    ``HEPTIO_ARK_NAMESPACE`` and ``NODE_NAME`` are expected to be set by the
    DaemonSet (the latter via the downward API).  Missing values are used as
    empty strings: an empty node name filters for pods with no scheduling
    target, so the agent will see no pods.  This is logged, not rejected.
    """
    values = os.environ if env is None else env

    namespace = values.get(NAMESPACE_ENV, "")
    node_name = values.get(NODE_NAME_ENV, "")
    if not namespace:
        LOGGER.warning("%s is not set; using the empty namespace", NAMESPACE_ENV)
    if not node_name:
        LOGGER.warning(
            "%s is not set; the pod watch will match no pods on this node", NODE_NAME_ENV
        )

    return ServerConfig(
        namespace=namespace,
        node_name=node_name,
        default_backup_location=default_backup_location,
        health_port=env_int("HEALTH_PORT", DEFAULT_HEALTH_PORT, minimum=0, maximum=65535, env=values),
        host_pods_root=values.get("HOST_PODS_ROOT") or DEFAULT_HOST_PODS_ROOT,
    )
