from __future__ import annotations

import logging
import random
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from nodeagent.src.metrics import METRICS
from nodeagent.src.tasks import CancellationToken

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]
UpdateHandler = Callable[[Any, Any], None]

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def field_value(obj: Any, path: str) -> Any:
    """Resolve a dotted API field path on either a raw dict or a client model.

    Custom objects arrive as plain dicts with camelCase keys, while core kinds
    are generated models with snake_case attributes; ``spec.nodeName`` works
    for both.
    """
    current = obj
    for segment in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(segment)
        else:
            current = getattr(current, _snake(segment), None)
    return current


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` cache key (just ``name`` for cluster-scoped objects)."""
    namespace = field_value(obj, "metadata.namespace") or ""
    name = field_value(obj, "metadata.name") or ""
    return f"{namespace}/{name}" if namespace else name


@dataclass(frozen=True)
class FieldSelector:
    """A single ``field=value`` predicate evaluated by the API server.

    ``matches`` evaluates the same predicate locally so the cache can refuse
    any object the server should not have sent, and so the predicate can be
    tested without a transport.
    """

    field: str
    value: str

    def render(self) -> str:
        return f"{self.field}={self.value}"

    def matches(self, obj: Any) -> bool:
        actual = field_value(obj, self.field)
        return ("" if actual is None else str(actual)) == self.value

    def __str__(self) -> str:
        return self.render()


def node_name_equals(node_name: str) -> FieldSelector:
    return FieldSelector("spec.nodeName", node_name)


def name_equals(name: str) -> FieldSelector:
    return FieldSelector("metadata.name", name)


class Indexer:
    """Thread-safe local cache keyed by ``namespace/name`` with a namespace index.

    Only the owning informer writes; any number of reconciliation loops read.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, Any] = {}
        self._namespaces: dict[str, set[str]] = {}

    def _index_add(self, key: str, obj: Any) -> None:
        namespace = field_value(obj, "metadata.namespace") or ""
        self._namespaces.setdefault(namespace, set()).add(key)

    def _index_remove(self, key: str, obj: Any) -> None:
        namespace = field_value(obj, "metadata.namespace") or ""
        keys = self._namespaces.get(namespace)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del self._namespaces[namespace]

    def upsert(self, obj: Any) -> Any | None:
        """Store *obj* and return the object it replaced, if any."""
        key = meta_namespace_key(obj)
        with self._lock:
            previous = self._items.get(key)
            if previous is not None:
                self._index_remove(key, previous)
            self._items[key] = obj
            self._index_add(key, obj)
            return previous

    def delete(self, obj: Any) -> Any | None:
        key = meta_namespace_key(obj)
        with self._lock:
            previous = self._items.pop(key, None)
            if previous is not None:
                self._index_remove(key, previous)
            return previous

    def replace(self, objects: Iterable[Any]) -> tuple[list[Any], list[tuple[Any, Any]], list[Any]]:
        """Swap in a full snapshot.  Returns ``(added, updated, removed)``."""
        fresh = {meta_namespace_key(obj): obj for obj in objects}
        with self._lock:
            old = self._items
            added = [obj for key, obj in fresh.items() if key not in old]
            updated = [(old[key], obj) for key, obj in fresh.items() if key in old]
            removed = [obj for key, obj in old.items() if key not in fresh]
            self._items = {}
            self._namespaces = {}
            for key, obj in fresh.items():
                self._items[key] = obj
                self._index_add(key, obj)
        return added, updated, removed

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def get_by_namespace(self, namespace: str, name: str) -> Any | None:
        return self.get(f"{namespace}/{name}" if namespace else name)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def by_namespace(self, namespace: str) -> list[Any]:
        with self._lock:
            return [self._items[key] for key in sorted(self._namespaces.get(namespace, ()))]

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _list_items(response: Any) -> list[Any]:
    if isinstance(response, dict):
        return list(response.get("items") or [])
    return list(getattr(response, "items", None) or [])


def _list_resource_version(response: Any) -> str | None:
    if isinstance(response, dict):
        return (response.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(response, "metadata", None), "resource_version", None)


class FilteredInformer:
    """List-then-watch a filtered slice of cluster objects into an :class:`Indexer`.

    The loop mirrors a client-go informer:

    1. List with the field selector (retried with jittered exponential backoff)
       and replace the cache with the snapshot; ``has_synced`` is then set.
    2. Watch from the list's ``resourceVersion``, applying each event to the
       cache and notifying handlers.
    3. On ``410 Gone`` re-list and resume; on any other error back off (1 s
       doubling, 30 s cap, jittered) and reconnect.

    Errors are never fatal.  The loop only ends when the token is cancelled.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        selector: FieldSelector | None = None,
        list_kwargs: dict[str, Any] | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.selector = selector
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or LOGGER
        self.indexer = Indexer()
        self.has_synced = threading.Event()
        self._handlers: list[tuple[EventHandler | None, UpdateHandler | None, EventHandler | None]] = []
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: EventHandler | None = None,
        on_update: UpdateHandler | None = None,
        on_delete: EventHandler | None = None,
    ) -> None:
        self._handlers.append((on_add, on_update, on_delete))

    def _request_kwargs(self) -> dict[str, Any]:
        kwargs = dict(self.list_kwargs)
        if self.selector is not None:
            kwargs["field_selector"] = self.selector.render()
        return kwargs

    def _accepts(self, obj: Any) -> bool:
        if self.selector is None or self.selector.matches(obj):
            return True
        METRICS.informer_filtered_total.labels(informer=self.name).inc()
        self.logger.warning(
            "Informer %s dropped %s: does not match %s",
            self.name,
            meta_namespace_key(obj),
            self.selector,
        )
        return False

    def _notify(self, kind: str, *objects: Any) -> None:
        for on_add, on_update, on_delete in self._handlers:
            handler: Callable[..., None] | None = {
                "add": on_add,
                "update": on_update,
                "delete": on_delete,
            }[kind]
            if handler is None:
                continue
            try:
                handler(*objects)
            except Exception:
                self.logger.exception("Informer %s %s handler failed", self.name, kind)

    def _record_size(self) -> None:
        METRICS.cache_objects.labels(informer=self.name).set(len(self.indexer))

    def _relist(self) -> str | None:
        response = self.list_fn(**self._request_kwargs())
        objects = [obj for obj in _list_items(response) if self._accepts(obj)]
        added, updated, removed = self.indexer.replace(objects)
        self._record_size()
        for obj in added:
            self._notify("add", obj)
        for old, new in updated:
            self._notify("update", old, new)
        for obj in removed:
            self._notify("delete", obj)
        return _list_resource_version(response)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply a single watch event to the cache and fan it out to handlers."""
        if event_type in {"ADDED", "MODIFIED"}:
            if not self._accepts(obj):
                previous = self.indexer.delete(obj)
                if previous is not None:
                    self._notify("delete", previous)
            else:
                previous = self.indexer.upsert(obj)
                if previous is None:
                    self._notify("add", obj)
                else:
                    self._notify("update", previous, obj)
        elif event_type == "DELETED":
            previous = self.indexer.delete(obj)
            if previous is not None:
                self._notify("delete", previous)
        else:
            return
        METRICS.informer_events_total.labels(informer=self.name, type=event_type).inc()
        self._record_size()

    def stop_watch(self) -> None:
        """Interrupt the open watch stream, if any."""
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _backoff(self, token: CancellationToken, seconds: int) -> int:
        jittered = seconds * (0.5 + random.random())  # noqa: S311
        token.wait(timeout=jittered)
        return min(seconds * 2, 30)

    def run(self, token: CancellationToken) -> None:
        """List, then watch until *token* is cancelled.

        Any list failure (initial, or after the watch reports 410 Gone) is
        retried with backoff before the watch resumes, so the cache is always
        rebuilt from a full snapshot rather than a resourceVersion-less watch.
        """
        token.add_callback(self.stop_watch)
        self.logger.info(
            "Starting informer %s (selector=%s)", self.name, self.selector or "<none>"
        )

        resource_version: str | None = None
        needs_relist = True
        backoff_seconds = 1
        watch_stream_count = 0
        while not token.cancelled:
            if needs_relist:
                try:
                    resource_version = self._relist()
                except Exception:
                    self.logger.exception("List for informer %s failed", self.name)
                    METRICS.watch_errors_total.labels(informer=self.name).inc()
                    backoff_seconds = self._backoff(token, backoff_seconds)
                    continue
                needs_relist = False
                backoff_seconds = 1
                self.has_synced.set()
                self.logger.info(
                    "Informer %s synced %d object(s) at resourceVersion %s",
                    self.name,
                    len(self.indexer),
                    resource_version,
                )
                if token.cancelled:
                    break

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(informer=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._request_kwargs(),
                )
                for event in stream:
                    if token.cancelled:
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    latest = field_value(obj, "metadata.resourceVersion")
                    if latest:
                        resource_version = latest
                    self.handle_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Informer %s resource version expired, re-listing", self.name
                    )
                    needs_relist = True
                    continue
                self.logger.exception("Informer %s watch error (status=%s)", self.name, exc.status)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                backoff_seconds = self._backoff(token, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error in informer %s", self.name)
                METRICS.watch_errors_total.labels(informer=self.name).inc()
                backoff_seconds = self._backoff(token, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.has_synced.clear()
        self.logger.info("Informer %s stopped", self.name)
