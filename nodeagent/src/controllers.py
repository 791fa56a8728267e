from __future__ import annotations

import glob
import logging
import os
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from nodeagent.src.arkclient import NamespacedResource
from nodeagent.src.config import CREDENTIALS_SECRET_KEY, CREDENTIALS_SECRET_NAME
from nodeagent.src.credentials import ResticEnvironment
from nodeagent.src.informer import FilteredInformer, Indexer, field_value, meta_namespace_key
from nodeagent.src.metrics import METRICS
from nodeagent.src.restic import (
    ResticError,
    backup_command,
    parse_snapshot_id,
    repository_password,
    restore_command,
    run_command,
    temp_password_file,
)
from nodeagent.src.tasks import CancellationToken
from nodeagent.src.workqueue import RateLimitedQueue

PHASE_NEW = "New"
PHASE_IN_PROGRESS = "InProgress"
PHASE_COMPLETED = "Completed"
PHASE_FAILED = "Failed"

Runner = Callable[[Sequence[str], Mapping[str, str], CancellationToken], str]


class VolumeError(RuntimeError):
    """Raised when a pod volume cannot be located on this node."""


class VolumeClaimLookup:
    """Reads PersistentVolumeClaims to map claim-backed pod volumes to host directories."""

    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    def bound_volume_name(self, namespace: str, claim_name: str) -> str:
        try:
            claim = self.core_api.read_namespaced_persistent_volume_claim(
                name=claim_name, namespace=namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                raise VolumeError(f"persistent volume claim {namespace}/{claim_name} not found") from exc
            raise
        volume_name = getattr(getattr(claim, "spec", None), "volume_name", None)
        if not volume_name:
            raise VolumeError(f"persistent volume claim {namespace}/{claim_name} is not bound")
        return volume_name


def volume_directory(
    pod: Any, volume_name: str, claims: VolumeClaimLookup, host_pods_root: str
) -> str:
    """Return the host path of *volume_name* inside *pod*'s kubelet directory.

    Claim-backed volumes live under the bound PersistentVolume's name; every
    other volume type lives under the pod volume's own name.
    """
    volumes = getattr(getattr(pod, "spec", None), "volumes", None) or []
    volume = next((v for v in volumes if getattr(v, "name", None) == volume_name), None)
    if volume is None:
        raise VolumeError(f"volume {volume_name} not found in pod {meta_namespace_key(pod)}")

    directory = volume_name
    claim = getattr(volume, "persistent_volume_claim", None)
    if claim is not None and getattr(claim, "claim_name", None):
        directory = claims.bound_volume_name(pod.metadata.namespace, claim.claim_name)

    pattern = os.path.join(host_pods_root, str(pod.metadata.uid), "volumes", "*", directory)
    matches = glob.glob(pattern)
    if len(matches) != 1:
        raise VolumeError(f"expected one matching path for {pattern}, got {len(matches)}")
    return matches[0]


def restore_uid(obj: Any) -> str:
    """UID of the owning Ark restore, falling back to the object's own UID."""
    owners = field_value(obj, "metadata.ownerReferences") or []
    if owners and owners[0].get("uid"):
        return str(owners[0]["uid"])
    return str(field_value(obj, "metadata.uid") or "")


class PodVolumeController:
    """Shared reconcile loop for pod volume custom resources on one node.

    An informer over the custom resource kind feeds ``namespace/name`` keys
    into a rate-limited queue; a single worker drains it.  Domain failures
    (missing pod, missing volume, data tool error) mark the object
    ``Failed``; API errors requeue the key with backoff.
    """

    kind = ""

    def __init__(
        self,
        resource: NamespacedResource,
        informer: FilteredInformer,
        pods: Indexer,
        secrets: Indexer,
        claims: VolumeClaimLookup,
        node_name: str,
        namespace: str,
        environment: ResticEnvironment,
        host_pods_root: str,
        runner: Runner = run_command,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource = resource
        self.informer = informer
        self.pods = pods
        self.secrets = secrets
        self.claims = claims
        self.node_name = node_name
        self.namespace = namespace
        self.environment = environment
        self.host_pods_root = host_pods_root
        self.runner = runner
        self.logger = logger or logging.getLogger(f"{__name__}.{self.kind}")
        self.queue = RateLimitedQueue()
        informer.add_event_handler(
            on_add=self._enqueue,
            on_update=lambda _old, new: self._enqueue(new),
        )

    def _enqueue(self, obj: Any) -> None:
        if not self.should_process(obj):
            return
        self.queue.add(meta_namespace_key(obj))
        METRICS.queue_depth.labels(controller=self.kind).set(len(self.queue))

    @staticmethod
    def phase(obj: Any) -> str:
        return field_value(obj, "status.phase") or ""

    def should_process(self, obj: Any) -> bool:
        return self.phase(obj) in {"", PHASE_NEW}

    def pod_for(self, obj: Any) -> Any:
        namespace = field_value(obj, "spec.pod.namespace") or ""
        name = field_value(obj, "spec.pod.name") or ""
        pod = self.pods.get_by_namespace(namespace, name)
        if pod is None:
            raise VolumeError(f"pod {namespace}/{name} not found on node {self.node_name}")
        return pod

    def password(self) -> bytes:
        secret = self.secrets.get_by_namespace(self.namespace, CREDENTIALS_SECRET_NAME)
        if secret is None:
            raise ResticError(
                f"credentials secret {self.namespace}/{CREDENTIALS_SECRET_NAME} not found"
            )
        return repository_password(secret, CREDENTIALS_SECRET_KEY)

    def update_status(self, obj: Any, **status: Any) -> None:
        self.resource.patch_status(field_value(obj, "metadata.name"), status)

    def reconcile(self, obj: Any, token: CancellationToken) -> None:
        raise NotImplementedError

    def process(self, key: str, token: CancellationToken) -> None:
        obj = self.informer.indexer.get(key)
        if obj is None or not self.should_process(obj):
            self.queue.forget(key)
            return

        started = time.monotonic()
        try:
            self.reconcile(obj, token)
        except (VolumeError, ResticError) as exc:
            # Only new objects are processed, so nothing may be left InProgress.
            if token.cancelled:
                self.logger.warning("Stopped %s %s during shutdown: %s", self.kind, key, exc)
            else:
                self.logger.error("Error processing %s %s: %s", self.kind, key, exc)
            METRICS.reconcile_total.labels(controller=self.kind, result="failed").inc()
            try:
                self.update_status(obj, phase=PHASE_FAILED, message=str(exc))
            except ApiException:
                self.logger.exception("Failed to mark %s %s as failed", self.kind, key)
                self.queue.add_rate_limited(key)
                return
        except Exception:
            delay = self.queue.add_rate_limited(key)
            self.logger.exception("Error syncing %s %s; retrying in %.0fs", self.kind, key, delay)
            return
        else:
            METRICS.reconcile_total.labels(controller=self.kind, result="completed").inc()
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.kind).observe(
                time.monotonic() - started
            )
        self.queue.forget(key)

    def run(self, token: CancellationToken) -> None:
        token.add_callback(self.queue.shut_down)
        self.logger.info("Starting %s controller for node %r", self.kind, self.node_name)
        while True:
            key = self.queue.get()
            if key is None:
                break
            try:
                self.process(key, token)
            finally:
                self.queue.done(key)
                METRICS.queue_depth.labels(controller=self.kind).set(len(self.queue))
        self.logger.info("Stopped %s controller", self.kind)


class PodVolumeBackupController(PodVolumeController):
    kind = "backup"

    def should_process(self, obj: Any) -> bool:
        return super().should_process(obj) and field_value(obj, "spec.node") == self.node_name

    def reconcile(self, obj: Any, token: CancellationToken) -> None:
        key = meta_namespace_key(obj)
        pod = self.pod_for(obj)
        volume = field_value(obj, "spec.volume") or ""
        path = volume_directory(pod, volume, self.claims, self.host_pods_root)

        self.logger.info("Backing up volume %s of %s from %s", volume, key, path)
        self.update_status(obj, phase=PHASE_IN_PROGRESS, path=path)

        tags = field_value(obj, "spec.tags") or {}
        with temp_password_file(self.password()) as password_file:
            command = backup_command(
                repo_identifier=field_value(obj, "spec.repoIdentifier") or "",
                password_file=password_file,
                path=path,
                tags=tags,
            )
            output = self.runner(command.argv(), self.environment.process_env(), token)

        snapshot_id = parse_snapshot_id(output)
        self.update_status(obj, phase=PHASE_COMPLETED, snapshotID=snapshot_id)
        self.logger.info("Backed up %s as snapshot %s", key, snapshot_id)


class PodVolumeRestoreController(PodVolumeController):
    """Restores a snapshot into a pod volume on this node.

    Restores carry no node field; they are scoped by their target pod, which
    must be in the node-filtered pod cache and scheduled here.  On success a
    marker file named after the restore UID is written to ``.ark`` inside the
    volume so the pod's init container can proceed.
    """

    kind = "restore"

    def should_process(self, obj: Any) -> bool:
        if not super().should_process(obj):
            return False
        pod = self.pods.get_by_namespace(
            field_value(obj, "spec.pod.namespace") or "",
            field_value(obj, "spec.pod.name") or "",
        )
        return pod is not None and field_value(pod, "spec.nodeName") == self.node_name

    def on_pod_change(self, pod: Any) -> None:
        """Enqueue restores that target *pod*; restores may be seen before their pod."""
        namespace = field_value(pod, "metadata.namespace")
        name = field_value(pod, "metadata.name")
        for obj in self.informer.indexer.list():
            if (
                field_value(obj, "spec.pod.namespace") == namespace
                and field_value(obj, "spec.pod.name") == name
            ):
                self._enqueue(obj)

    def reconcile(self, obj: Any, token: CancellationToken) -> None:
        key = meta_namespace_key(obj)
        pod = self.pod_for(obj)
        volume = field_value(obj, "spec.volume") or ""
        path = volume_directory(pod, volume, self.claims, self.host_pods_root)
        snapshot_id = field_value(obj, "spec.snapshotID") or ""

        self.logger.info("Restoring snapshot %s into %s (%s)", snapshot_id, path, key)
        self.update_status(obj, phase=PHASE_IN_PROGRESS)

        with temp_password_file(self.password()) as password_file:
            command = restore_command(
                repo_identifier=field_value(obj, "spec.repoIdentifier") or "",
                password_file=password_file,
                snapshot_id=snapshot_id,
                target=path,
            )
            self.runner(command.argv(), self.environment.process_env(), token)

        marker_dir = os.path.join(path, ".ark")
        try:
            os.makedirs(marker_dir, exist_ok=True)
            with open(os.path.join(marker_dir, restore_uid(obj)), "w", encoding="utf-8"):
                pass
        except OSError as exc:
            raise VolumeError(f"unable to write restore marker in {marker_dir}: {exc}") from exc

        self.update_status(obj, phase=PHASE_COMPLETED)
        self.logger.info("Restored snapshot %s for %s", snapshot_id, key)
