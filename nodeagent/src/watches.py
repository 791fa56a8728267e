from __future__ import annotations

from kubernetes.client import CoreV1Api

from nodeagent.src.config import CREDENTIALS_SECRET_NAME
from nodeagent.src.informer import FilteredInformer, name_equals, node_name_equals
from nodeagent.src.tasks import TaskGroup


class ScopedWatchManager:
    """Owns the node-scoped pod watch and the credentials-secret watch.

    Both filters are sent to the API server as field selectors, so pods on
    other nodes and unrelated secrets never reach this process.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        node_name: str,
        credentials_secret_name: str = CREDENTIALS_SECRET_NAME,
    ) -> None:
        self.pods = FilteredInformer(
            "pods",
            core_api.list_pod_for_all_namespaces,
            selector=node_name_equals(node_name),
        )
        self.secrets = FilteredInformer(
            "secrets",
            core_api.list_namespaced_secret,
            selector=name_equals(credentials_secret_name),
            list_kwargs={"namespace": namespace},
        )

    @property
    def informers(self) -> list[FilteredInformer]:
        return [self.pods, self.secrets]

    def start(self, tasks: TaskGroup) -> None:
        for informer in self.informers:
            tasks.go(f"informer-{informer.name}", informer.run)

    def has_synced(self) -> bool:
        return all(informer.has_synced.is_set() for informer in self.informers)
