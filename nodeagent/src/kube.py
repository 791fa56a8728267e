from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


class KubeConfigError(RuntimeError):
    """Raised when no usable Kubernetes transport configuration can be found."""


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (the agent normally runs as a DaemonSet
    pod), falling back to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return
    except ConfigException:
        pass
    try:
        config.load_kube_config()
    except (ConfigException, OSError) as exc:
        raise KubeConfigError(f"unable to load Kubernetes configuration: {exc}") from exc
    LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients sharing the active kube configuration."""
    api_client = client.ApiClient()
    return client.CoreV1Api(api_client), client.CustomObjectsApi(api_client)
