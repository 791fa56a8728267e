from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes.client import CoreV1Api

from nodeagent.src.arkclient import ArkV1Client
from nodeagent.src.controllers import (
    PodVolumeBackupController,
    PodVolumeRestoreController,
    Runner,
    VolumeClaimLookup,
)
from nodeagent.src.credentials import ResticEnvironment
from nodeagent.src.informer import FilteredInformer
from nodeagent.src.restic import run_command
from nodeagent.src.tasks import TaskGroup
from nodeagent.src.watches import ScopedWatchManager

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationTasks:
    backup: PodVolumeBackupController
    restore: PodVolumeRestoreController
    informers: tuple[FilteredInformer, ...]


class ReconciliationSupervisor:
    """Builds the backup and restore loops and runs each as one worker thread."""

    def __init__(
        self,
        ark_client: ArkV1Client,
        core_api: CoreV1Api,
        host_pods_root: str,
        runner: Runner = run_command,
    ) -> None:
        self.ark_client = ark_client
        self.core_api = core_api
        self.host_pods_root = host_pods_root
        self.runner = runner

    def build(
        self,
        namespace: str,
        node_name: str,
        streams: ScopedWatchManager,
        environment: ResticEnvironment,
    ) -> ReconciliationTasks:
        backups = self.ark_client.pod_volume_backups(namespace)
        restores = self.ark_client.pod_volume_restores(namespace)
        backup_informer = FilteredInformer("podvolumebackups", backups.list)
        restore_informer = FilteredInformer("podvolumerestores", restores.list)
        claims = VolumeClaimLookup(self.core_api)

        common = {
            "pods": streams.pods.indexer,
            "secrets": streams.secrets.indexer,
            "claims": claims,
            "node_name": node_name,
            "namespace": namespace,
            "environment": environment,
            "host_pods_root": self.host_pods_root,
            "runner": self.runner,
        }
        backup = PodVolumeBackupController(resource=backups, informer=backup_informer, **common)
        restore = PodVolumeRestoreController(resource=restores, informer=restore_informer, **common)
        streams.pods.add_event_handler(
            on_add=restore.on_pod_change,
            on_update=lambda _old, new: restore.on_pod_change(new),
        )
        return ReconciliationTasks(
            backup=backup,
            restore=restore,
            informers=(backup_informer, restore_informer),
        )

    def start(
        self,
        namespace: str,
        node_name: str,
        streams: ScopedWatchManager,
        environment: ResticEnvironment,
        tasks: TaskGroup,
    ) -> ReconciliationTasks:
        loops = self.build(namespace, node_name, streams, environment)
        for informer in loops.informers:
            tasks.go(f"informer-{informer.name}", informer.run)
        tasks.go("controller-backup", loops.backup.run)
        tasks.go("controller-restore", loops.restore.run)
        LOGGER.info("Started backup and restore controllers for node %r", node_name)
        return loops
