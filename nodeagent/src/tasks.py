from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from nodeagent.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """One-way, process-wide shutdown signal shared by every background task.

    Wraps a ``threading.Event`` so that cancellation can carry a reason and so
    callers can tell whether *their* call was the one that fired it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* on cancellation, or immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the token.  Returns True only for the call that actually fired it."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        LOGGER.info("Cancellation requested: %s", reason)
        for callback in callbacks:
            try:
                callback()
            except Exception:
                LOGGER.exception("Cancellation callback failed")
        return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout=timeout)


class TaskGroup:
    """Registry of long-running background threads joined at shutdown.

    Every task is registered *before* its thread starts, so ``wait`` can never
    miss a task that is about to run.  A task returning or raising while the
    token is still live is treated as a failure of the whole agent and cancels
    the token.
    """

    def __init__(self, token: CancellationToken) -> None:
        self.token = token
        self._lock = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}
        self._errors: dict[str, BaseException] = {}

    def go(self, name: str, target: Callable[[CancellationToken], None]) -> threading.Thread:
        with self._lock:
            if name in self._threads:
                raise ValueError(f"task {name!r} is already registered")
            thread = threading.Thread(
                target=self._run, args=(name, target), name=name, daemon=True
            )
            self._threads[name] = thread
        METRICS.running_tasks.inc()
        thread.start()
        LOGGER.debug("Started task %s", name)
        return thread

    def _run(self, name: str, target: Callable[[CancellationToken], None]) -> None:
        try:
            target(self.token)
            if not self.token.cancelled:
                LOGGER.error("Task %s exited without a stop signal; shutting down", name)
                self.token.cancel(f"task {name} exited unexpectedly")
        except Exception as exc:
            LOGGER.exception("Task %s crashed", name)
            with self._lock:
                self._errors[name] = exc
            self.token.cancel(f"task {name} crashed")
        finally:
            METRICS.running_tasks.dec()
            LOGGER.debug("Task %s finished", name)

    @property
    def errors(self) -> dict[str, BaseException]:
        with self._lock:
            return dict(self._errors)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._threads)

    def running(self) -> list[str]:
        with self._lock:
            return [name for name, thread in self._threads.items() if thread.is_alive()]

    def wait(self, poll_interval: float = 30.0) -> None:
        """Block until every registered task has finished.

        There is no deadline: tasks are trusted to honour the token.  While
        waiting, the names of tasks that are still alive are logged once per
        ``poll_interval``.
        """
        while True:
            with self._lock:
                threads = list(self._threads.values())
            pending = [thread for thread in threads if thread.is_alive()]
            if not pending:
                return
            pending[0].join(timeout=poll_interval)
            if pending[0].is_alive():
                LOGGER.info("Waiting for tasks to stop: %s", ", ".join(self.running()))
