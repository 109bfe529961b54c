from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from netattach.src.kube import get_labels, meta_namespace_key, meta_value, selector_matches
from netattach.src.metrics import METRICS


class ResourceEventHandler(Protocol):
    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old: Any, new: Any) -> None: ...

    def on_delete(self, obj: Any) -> None: ...


def _list_items(result: Any) -> list[Any]:
    if isinstance(result, dict):
        return list(result.get("items") or [])
    return list(getattr(result, "items", None) or [])


def _list_resource_version(result: Any) -> str | None:
    if isinstance(result, dict):
        return (result.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(result, "metadata", None), "resource_version", None)


class Informer:
    """Local read-only mirror of one object kind, kept current by list-then-watch.

    The loop mirrors how a client-go informer behaves:

    1. List all objects (retrying with jittered exponential backoff), store
       them, deliver ``on_add`` for each, then set :attr:`synced`.
    2. Watch from the list's ``resourceVersion`` with a bounded timeout and
       apply every ``ADDED``/``MODIFIED``/``DELETED`` event to the store
       before notifying handlers.
    3. On ``410 Gone`` re-list and deliver the difference against the store
       as add/update/delete notifications.
    4. On ``401``/``403`` stop: the controller cannot work without read access
       and waiting for a sync that never comes is reported at startup.

    Handlers run on the informer thread, one notification at a time, so
    delivery order per kind matches the watch stream order.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any] | None = None,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = dict(list_kwargs or {})
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.synced = threading.Event()

        self._store: dict[str, Any] = {}
        self._store_lock = threading.RLock()
        self._handlers: list[ResourceEventHandler] = []
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    # -- lister -------------------------------------------------------------

    def get(self, namespace: str, name: str) -> Any | None:
        key = f"{namespace}/{name}" if namespace else name
        with self._store_lock:
            return self._store.get(key)

    def list(
        self,
        namespace: str | None = None,
        selector: dict[str, str] | None = None,
    ) -> list[Any]:
        """Return cached objects, optionally limited to a namespace and label selector.

        ``selector=None`` means everything; an explicit empty selector
        matches nothing.
        """
        with self._store_lock:
            items = list(self._store.values())
        if namespace is not None:
            items = [obj for obj in items if meta_value(obj, "namespace") == namespace]
        if selector is not None:
            items = [obj for obj in items if selector_matches(selector, get_labels(obj))]
        return items

    # -- store mutation + notification --------------------------------------

    def _notify(self, method: str, *args: Any) -> None:
        for handler in self._handlers:
            try:
                getattr(handler, method)(*args)
            except Exception:
                self.logger.exception(
                    "%s handler %s.%s failed", self.kind, type(handler).__name__, method
                )

    def apply_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the store and notify handlers."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            self.logger.debug("Ignoring %s watch event of type %s", self.kind, event_type)
            return
        try:
            key = meta_namespace_key(obj)
        except ValueError:
            self.logger.warning("Ignoring %s %s event for object without a name", self.kind, event_type)
            return

        if event_type in {"ADDED", "MODIFIED"}:
            with self._store_lock:
                old = self._store.get(key)
                self._store[key] = obj
            if old is None:
                self._notify("on_add", obj)
            else:
                self._notify("on_update", old, obj)
        elif event_type == "DELETED":
            with self._store_lock:
                old = self._store.pop(key, None)
            self._notify("on_delete", old if old is not None else obj)

    def replace(self, items: list[Any]) -> None:
        """Replace the store with a fresh listing and notify handlers of the difference."""
        fresh: dict[str, Any] = {}
        for obj in items:
            try:
                fresh[meta_namespace_key(obj)] = obj
            except ValueError:
                continue

        with self._store_lock:
            previous = self._store
            self._store = dict(fresh)

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify("on_add", obj)
            else:
                self._notify("on_update", old, obj)
        for key, old in previous.items():
            if key not in fresh:
                self._notify("on_delete", old)

    # -- watch loop ----------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> str | None:
        result = self.list_fn(**self.list_kwargs)
        self.replace(_list_items(result))
        return _list_resource_version(result)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List, then watch until shutdown, re-listing when the watch expires."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.synced.set()
                self.logger.info(
                    "%s cache synced; watching from resourceVersion %s",
                    self.kind,
                    resource_version,
                    extra={"kind": self.kind},
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                        extra={"kind": self.kind},
                    )
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                kwargs = dict(self.list_kwargs, timeout_seconds=self.watch_timeout_seconds)
                if resource_version:
                    kwargs["resource_version"] = resource_version
                for event in watcher.stream(self.list_fn, **kwargs):
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    event_resource_version = meta_value(obj, "resource_version")
                    if event_resource_version:
                        resource_version = event_resource_version
                    self.apply_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing",
                        self.kind,
                        extra={"kind": self.kind},
                    )
                    try:
                        resource_version = self._list()
                    except ApiException:
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind,
                        exc.status,
                        extra={"kind": self.kind},
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind).inc()
                    return

                self.logger.exception(
                    "Kubernetes API watch error on %s", self.kind, extra={"kind": self.kind}
                )
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
