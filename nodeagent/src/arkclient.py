from __future__ import annotations

from typing import Any

from kubernetes.client import CustomObjectsApi

GROUP = "ark.heptio.com"
VERSION = "v1"

BACKUP_STORAGE_LOCATIONS = "backupstoragelocations"
POD_VOLUME_BACKUPS = "podvolumebackups"
POD_VOLUME_RESTORES = "podvolumerestores"


class NamespacedResource:
    """Handle on one custom-resource kind in one namespace.

    ``list`` forwards keyword arguments untouched, so the bound method can be
    passed straight to ``kubernetes.watch.Watch().stream`` as a list function.
    Objects are returned as plain dicts.
    """

    def __init__(self, custom_api: CustomObjectsApi, namespace: str, plural: str) -> None:
        self.custom_api = custom_api
        self.namespace = namespace
        self.plural = plural

    def get(self, name: str) -> dict[str, Any]:
        return self.custom_api.get_namespaced_custom_object(
            group=GROUP,
            version=VERSION,
            namespace=self.namespace,
            plural=self.plural,
            name=name,
        )

    def list(self, **kwargs: Any) -> Any:
        return self.custom_api.list_namespaced_custom_object(
            GROUP,
            VERSION,
            self.namespace,
            self.plural,
            **kwargs,
        )

    def patch_status(self, name: str, status: dict[str, Any]) -> dict[str, Any]:
        """Merge *status* into the object's ``status`` field."""
        return self.custom_api.patch_namespaced_custom_object(
            group=GROUP,
            version=VERSION,
            namespace=self.namespace,
            plural=self.plural,
            name=name,
            body={"status": status},
        )


class ArkV1Client:
    """Typed handles for the ``ark.heptio.com/v1`` group."""

    def __init__(self, custom_api: CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def backup_storage_locations(self, namespace: str) -> NamespacedResource:
        return NamespacedResource(self.custom_api, namespace, BACKUP_STORAGE_LOCATIONS)

    def pod_volume_backups(self, namespace: str) -> NamespacedResource:
        return NamespacedResource(self.custom_api, namespace, POD_VOLUME_BACKUPS)

    def pod_volume_restores(self, namespace: str) -> NamespacedResource:
        return NamespacedResource(self.custom_api, namespace, POD_VOLUME_RESTORES)
