from __future__ import annotations

import logging
import os
import threading
import time

from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from netattach.src.cache import Informer
from netattach.src.context import ControllerContext
from netattach.src.dispatcher import register_handlers
from netattach.src.events import EventRecorder
from netattach.src.kube import NAD_GROUP, NAD_PLURAL, NAD_VERSION
from netattach.src.metrics import METRICS
from netattach.src.networks import SelectionParseError
from netattach.src.reconciler import (
    EndpointsNotFoundError,
    EndpointsReconciler,
    MultipleNetworkSelectionsError,
    NoNetworkAnnotationError,
)
from netattach.src.recovery import NetworkAttachmentDefinitionRecovery
from netattach.src.workqueue import RateLimitingQueue


class CacheSyncTimeoutError(RuntimeError):
    """Raised when the informer caches do not finish their initial list in time."""


class NetworkController:
    """Keeps Service Endpoints on secondary networks and protects in-use attachment definitions.

    Four informers (Services, Pods, Endpoints, NetworkAttachmentDefinitions)
    feed the dispatcher, which turns relevant changes into Service keys on a
    deduplicating work queue.  ``workers`` threads pull keys and run
    :meth:`EndpointsReconciler.sync`.  NetworkAttachmentDefinition deletes
    bypass the queue and run recovery on the informer thread.

    Failed syncs are handled by category:

    ``ApiException``
        Transient: the key is requeued with per-key exponential backoff, at
        most ``max_sync_retries`` times, then dropped.
    Annotation, parse, policy and missing-Endpoints errors
        Permanent until the cluster changes, and any such change enqueues the
        key again, so they are logged and the backoff state is forgotten.
    """

    def __init__(
        self,
        context: ControllerContext,
        workers: int = 1,
        cache_sync_timeout_seconds: int = 60,
        max_sync_retries: int = 5,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.context = context
        self.workers = workers
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.max_sync_retries = max_sync_retries
        self.logger = logger or logging.getLogger(__name__)

        self.reconciler = EndpointsReconciler(context)
        self.recovery = NetworkAttachmentDefinitionRecovery(context)
        register_handlers(context, self.recovery)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._worker_threads: list[threading.Thread] = []

    @property
    def informers(self) -> tuple[Informer, ...]:
        return (
            self.context.network_attachment_definitions,
            self.context.endpoints,
            self.context.services,
            self.context.pods,
        )

    def workers_alive(self) -> bool:
        return all(thread.is_alive() for thread in self._worker_threads)

    def request_stop(self) -> None:
        """Request a cooperative stop of informers and workers."""
        self._external_stop.set()
        for informer in self.informers:
            informer.request_stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def process_next_work_item(self) -> bool:
        """Reconcile one key from the queue.  Returns False once the queue is shut down."""
        key, shutdown = self.context.queue.get()
        if shutdown or key is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconciler.sync(key)
        except ApiException as exc:
            self._handle_transient_failure(key, exc)
        except (
            NoNetworkAnnotationError,
            EndpointsNotFoundError,
        ) as exc:
            self.context.queue.forget(key)
            METRICS.syncs_total.labels(result="skipped").inc()
            self.logger.debug("Sync of %s aborted: %s", key, exc, extra={"key": key})
        except (SelectionParseError, MultipleNetworkSelectionsError) as exc:
            self.context.queue.forget(key)
            METRICS.syncs_total.labels(result="error").inc()
            self.logger.warning("Sync of %s aborted: %s", key, exc, extra={"key": key})
        except Exception:
            self.logger.exception("Unexpected error syncing %s", key, extra={"key": key})
            self._handle_transient_failure(key, None)
        else:
            self.context.queue.forget(key)
            METRICS.syncs_total.labels(result="success" if result is not None else "skipped").inc()
        finally:
            METRICS.sync_duration_seconds.observe(time.monotonic() - started)
            self.context.queue.done(key)
        return True

    def _handle_transient_failure(self, key: str, exc: ApiException | None) -> None:
        queue = self.context.queue
        if queue.shutting_down:
            self.logger.info(
                "Not requeueing %s; the work queue is shutting down", key, extra={"key": key}
            )
            METRICS.syncs_total.labels(result="dropped").inc()
            queue.forget(key)
            return

        attempts = queue.num_requeues(key)
        if attempts < self.max_sync_retries:
            self.logger.warning(
                "Sync of %s failed (%s); requeueing, attempt %d of %d",
                key,
                f"status={exc.status}" if exc is not None else "unexpected error",
                attempts + 1,
                self.max_sync_retries,
                extra={"key": key},
            )
            METRICS.syncs_total.labels(result="requeued").inc()
            METRICS.requeues_total.inc()
            queue.add_rate_limited(key)
            return

        self.logger.error(
            "Dropping %s from the queue after %d failed retries", key, attempts, extra={"key": key}
        )
        METRICS.syncs_total.labels(result="dropped").inc()
        queue.forget(key)

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def wait_for_cache_sync(self, stop: threading.Event) -> bool:
        """Block until every informer has synced.

        Returns False if a stop was requested first; raises
        :class:`CacheSyncTimeoutError` after ``cache_sync_timeout_seconds``.
        """
        deadline = time.monotonic() + self.cache_sync_timeout_seconds
        for informer in self.informers:
            while not informer.synced.wait(timeout=0.1):
                if self._should_stop(stop):
                    return False
                if time.monotonic() >= deadline:
                    raise CacheSyncTimeoutError(
                        f"timed out after {self.cache_sync_timeout_seconds}s waiting "
                        f"for the {informer.kind} cache to sync"
                    )
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start informers, wait for their initial sync, then reconcile until shutdown.

        On shutdown the informers are stopped first, the queue is shut down so
        workers drain what is already queued, and the call returns once every
        in-flight sync has finished.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.logger.info("Starting network controller")

        informer_threads = [
            threading.Thread(
                target=informer.run_forever,
                kwargs={"shutdown_event": stop},
                name=f"informer-{informer.kind}",
                daemon=True,
            )
            for informer in self.informers
        ]
        for thread in informer_threads:
            thread.start()

        try:
            if self.wait_for_cache_sync(stop):
                self._worker_threads = [
                    threading.Thread(target=self._run_worker, name=f"worker-{index}", daemon=True)
                    for index in range(self.workers)
                ]
                for thread in self._worker_threads:
                    thread.start()
                self.ready.set()
                self.logger.info("Caches synced; started %d worker(s)", self.workers)

                while not self._should_stop(stop):
                    stop.wait(timeout=1.0)
                    if not self.workers_alive():
                        self.logger.error("Worker thread exited unexpectedly; shutting down")
                        break
        finally:
            self.ready.clear()
            self.logger.info("Shutting down network controller")
            for informer in self.informers:
                informer.request_stop()
            self.context.queue.shut_down()
            for thread in self._worker_threads:
                thread.join()
            self._worker_threads = []


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
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


def build_context(
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
    watch_timeout_seconds: int = 30,
) -> ControllerContext:
    """Wire informers, the work queue and the event recorder for the given API clients."""
    return ControllerContext(
        core_api=core_api,
        custom_api=custom_api,
        services=Informer(
            "Service",
            core_api.list_service_for_all_namespaces,
            watch_timeout_seconds=watch_timeout_seconds,
        ),
        pods=Informer(
            "Pod",
            core_api.list_pod_for_all_namespaces,
            watch_timeout_seconds=watch_timeout_seconds,
        ),
        endpoints=Informer(
            "Endpoints",
            core_api.list_endpoints_for_all_namespaces,
            watch_timeout_seconds=watch_timeout_seconds,
        ),
        network_attachment_definitions=Informer(
            "NetworkAttachmentDefinition",
            custom_api.list_cluster_custom_object,
            list_kwargs={"group": NAD_GROUP, "version": NAD_VERSION, "plural": NAD_PLURAL},
            watch_timeout_seconds=watch_timeout_seconds,
        ),
        queue=RateLimitingQueue(name="secondary_endpoints"),
        recorder=EventRecorder(core_api),
    )


def build_controller_from_env(
    core_api: CoreV1Api, custom_api: CustomObjectsApi
) -> NetworkController:
    """Construct a :class:`NetworkController` from environment variables.

    Environment variables (with defaults):
        ``WORKERS``: reconciliation worker threads (``1``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``: startup cache sync limit (``60``).
        ``WATCH_TIMEOUT_SECONDS``: server-side watch timeout per stream (``30``).
        ``MAX_SYNC_RETRIES``: requeues after API errors before a key is dropped (``5``).
    """
    workers = env_int("WORKERS", 1, minimum=1, maximum=64)
    cache_sync_timeout_seconds = env_int("CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1)
    watch_timeout_seconds = env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1, maximum=300)
    max_sync_retries = env_int("MAX_SYNC_RETRIES", 5, minimum=0)

    context = build_context(
        core_api=core_api,
        custom_api=custom_api,
        watch_timeout_seconds=watch_timeout_seconds,
    )
    return NetworkController(
        context=context,
        workers=workers,
        cache_sync_timeout_seconds=cache_sync_timeout_seconds,
        max_sync_retries=max_sync_retries,
    )
