from __future__ import annotations

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass

from kubernetes.client import CoreV1Api, CustomObjectsApi

from vsrouter.src.cache import ChangeEvent, EventType, SourceCache, SourceWatcher
from vsrouter.src.kube import VirtualServiceStore
from vsrouter.src.metrics import METRICS
from vsrouter.src.model import PermanentError, TransientError
from vsrouter.src.reconciler import Reconciler
from vsrouter.src.tombstones import TombstoneIndex
from vsrouter.src.workqueue import RateLimiter, RateLimitingQueue, default_controller_rate_limiter

DEFAULT_ROUTE_LABEL_KEY = "virtualservice.httproute/VirtualServiceName"
DEFAULT_PORT_ANNOTATION_KEY = "virtualservice.httproute/PortNumber"


@dataclass(frozen=True)
class ControllerContext:
    """Clients the controller talks to, built once at startup and handed to each component."""

    core_api: CoreV1Api
    target_store: VirtualServiceStore


class RouteController:
    """Keeps one Istio route per labelled Service in the VirtualService its label names.

    Threads:

    * the Service watcher (list, then watch) updating :class:`SourceCache`
      and publishing :class:`ChangeEvent` objects on ``events``;
    * one dispatcher turning events into queue keys, recording tombstones
      for deletions and routing-label moves before the key is enqueued;
    * ``workers`` reconcile loops pulling keys from the rate-limited queue.

    Workers only start once the first Service list has been synced, so a
    reconciliation never acts on a half-populated cache.  Successful keys
    have their retry counter reset; transient failures are re-added with
    per-key exponential backoff; permanent failures (malformed labels or
    annotations) are logged and dropped until the Service changes again.

    On shutdown the watcher is stopped, already observed events are still
    enqueued, and in-flight reconciliations are allowed to finish within
    ``shutdown_timeout_seconds``.
    """

    def __init__(
        self,
        context: ControllerContext,
        label_key: str = DEFAULT_ROUTE_LABEL_KEY,
        port_annotation_key: str = DEFAULT_PORT_ANNOTATION_KEY,
        namespace: str | None = None,
        cluster_domain: str = "cluster.local",
        workers: int = 2,
        conflict_retries: int = 5,
        watch_timeout_seconds: int = 300,
        shutdown_timeout_seconds: int = 30,
        rate_limiter: RateLimiter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.context = context
        self.label_key = label_key
        self.workers = workers
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.cache = SourceCache()
        self.tombstones = TombstoneIndex()
        self.events: queue.Queue[ChangeEvent] = queue.Queue()
        self.queue = RateLimitingQueue(rate_limiter=rate_limiter)
        self.watcher = SourceWatcher(
            core_api=context.core_api,
            label_selector=label_key,
            cache=self.cache,
            events=self.events,
            namespace=namespace,
            watch_timeout_seconds=watch_timeout_seconds,
        )
        self.reconciler = Reconciler(
            cache=self.cache,
            tombstones=self.tombstones,
            store=context.target_store,
            label_key=label_key,
            port_annotation_key=port_annotation_key,
            cluster_domain=cluster_domain,
            conflict_retries=conflict_retries,
        )

        self.ready = threading.Event()
        self._external_stop = threading.Event()

    def handle_event(self, event: ChangeEvent) -> None:
        """Translate one change event into a queue key."""
        key = event.key
        # Tombstones must land before the key is visible to workers.
        if event.type is EventType.DELETED:
            self.tombstones.record(key, event.entity)
        previous = event.previous
        if previous is not None:
            old_label = previous.labels.get(self.label_key)
            if old_label != event.entity.labels.get(self.label_key):
                # The routing label moved; the old VirtualService still holds the route.
                self.tombstones.record(key, previous)
        self.queue.add(key)
        self.logger.info(
            "Service %s %s; queue length %d", key, event.type.value, len(self.queue)
        )

    def process_next_work_item(self) -> bool:
        """Reconcile one key from the queue; returns False once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconciler.process(key)
        except PermanentError as exc:
            self.logger.error("Dropping %s until it changes: %s", key, exc)
            self.queue.forget(key)
            METRICS.reconciliations_total.labels(result="permanent_error").inc()
        except TransientError as exc:
            self.logger.warning(
                "Reconciling %s failed (%s); retry %d scheduled",
                key,
                exc,
                self.queue.num_requeues(key) + 1,
            )
            self.queue.add_rate_limited(key)
            METRICS.reconciliations_total.labels(result="retry").inc()
        except Exception:
            self.logger.exception("Unexpected error reconciling %s; scheduling retry", key)
            self.queue.add_rate_limited(key)
            METRICS.reconciliations_total.labels(result="retry").inc()
        else:
            self.queue.forget(key)
            if result.action == "noop":
                outcome = "noop"
            elif result.changed:
                outcome = "changed"
            else:
                outcome = "unchanged"
            METRICS.reconciliations_total.labels(result=outcome).inc()
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(key)
        return True

    def status(self) -> dict[str, int]:
        """Point-in-time sizes of the controller's internal state."""
        return {
            "services": len(self.cache),
            "tombstones": len(self.tombstones),
            "queued": len(self.queue),
            "waiting": self.queue.waiting(),
        }

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def _dispatch_events(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                event = self.events.get(timeout=0.5)
            except queue.Empty:
                continue
            self.handle_event(event)

        # Events the watcher published before stopping are still delivered.
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return
            self.handle_event(event)

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt the open watch stream."""
        self._external_stop.set()
        self.watcher.request_stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run watcher, dispatcher and workers until *shutdown_event* or :meth:`request_stop`.

        Returns early, without starting workers, when the watcher exits before
        its first sync (for example on RBAC denial).  A watcher that dies
        later also ends the loop so the process can be restarted.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        watch_stop = threading.Event()
        watcher_thread = threading.Thread(
            target=self.watcher.run,
            kwargs={"stop_event": watch_stop},
            name="service-watch",
            daemon=True,
        )
        dispatch_thread = threading.Thread(
            target=self._dispatch_events,
            args=(watch_stop,),
            name="event-dispatch",
            daemon=True,
        )
        watcher_thread.start()
        dispatch_thread.start()

        while not self._should_stop(stop) and not self.watcher.synced.is_set():
            if not watcher_thread.is_alive():
                self.logger.error("Service watcher exited before the initial sync")
                break
            stop.wait(timeout=0.2)

        worker_threads: list[threading.Thread] = []
        if self.watcher.synced.is_set() and not self._should_stop(stop):
            for index in range(self.workers):
                worker = threading.Thread(
                    target=self._run_worker, name=f"reconcile-worker-{index}", daemon=True
                )
                worker.start()
                worker_threads.append(worker)
            self.ready.set()
            self.logger.info("Started %d reconcile worker(s)", self.workers)

            while not self._should_stop(stop):
                if not watcher_thread.is_alive():
                    self.logger.error("Service watcher exited unexpectedly; stopping controller")
                    break
                stop.wait(timeout=1.0)

        self.ready.clear()
        self.logger.info("Stopping Service watcher")
        watch_stop.set()
        self.watcher.request_stop()
        watcher_thread.join(timeout=self.shutdown_timeout_seconds)
        dispatch_thread.join(timeout=self.shutdown_timeout_seconds)

        if not worker_threads:
            self.queue.shut_down()
            return

        self.logger.info("Draining reconciliation queue (%d pending)", len(self.queue))
        drained = self.queue.shut_down_with_drain(timeout=self.shutdown_timeout_seconds)
        for worker in worker_threads:
            worker.join(timeout=self.shutdown_timeout_seconds)
        if not drained:
            self.logger.warning(
                "Reconciliation queue not drained within %ss; exiting with work outstanding",
                self.shutdown_timeout_seconds,
            )


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


def build_context_from_env(
    core_api: CoreV1Api, custom_api: CustomObjectsApi
) -> ControllerContext:
    """Wrap the API clients; ``VIRTUALSERVICE_API_VERSION`` selects the Istio API version."""
    version = os.getenv("VIRTUALSERVICE_API_VERSION", "v1alpha3").strip()
    if not version:
        raise ValueError("VIRTUALSERVICE_API_VERSION must be a non-empty string")
    return ControllerContext(
        core_api=core_api,
        target_store=VirtualServiceStore(custom_api=custom_api, version=version),
    )


def build_controller_from_env(context: ControllerContext) -> RouteController:
    """Construct a :class:`RouteController` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``     — Namespace to watch; empty watches all namespaces (``""``).
        ``ROUTE_LABEL_KEY``     — Label naming the VirtualService as ``<namespace>.<name>``
                                  (``virtualservice.httproute/VirtualServiceName``).
        ``PORT_ANNOTATION_KEY`` — Annotation overriding the routed port
                                  (``virtualservice.httproute/PortNumber``).
        ``CLUSTER_DOMAIN``      — DNS suffix for destination hosts (``cluster.local``).
        ``WORKERS``             — Parallel reconcile loops (``2``).
        ``RETRY_BASE_DELAY_MILLISECONDS`` / ``RETRY_MAX_DELAY_SECONDS`` —
                                  Per-key backoff bounds (``5`` / ``1000``).
        ``RETRY_QPS`` / ``RETRY_BURST`` — Overall retry token bucket (``10`` / ``100``).
        ``CONFLICT_RETRIES``    — Fresh-read attempts per reconciliation on 409 (``5``).
        ``WATCH_TIMEOUT_SECONDS`` — Server-side watch timeout (``300``).
        ``SHUTDOWN_TIMEOUT_SECONDS`` — Bound on draining in-flight work (``30``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip() or None

    label_key = os.getenv("ROUTE_LABEL_KEY", DEFAULT_ROUTE_LABEL_KEY).strip()
    if not label_key:
        raise ValueError("ROUTE_LABEL_KEY must be a non-empty string")
    if "=" in label_key or "," in label_key:
        raise ValueError(f"ROUTE_LABEL_KEY must be a bare label key, got: {label_key!r}")

    port_annotation_key = os.getenv("PORT_ANNOTATION_KEY", DEFAULT_PORT_ANNOTATION_KEY).strip()
    if not port_annotation_key:
        raise ValueError("PORT_ANNOTATION_KEY must be a non-empty string")

    cluster_domain = os.getenv("CLUSTER_DOMAIN", "cluster.local").strip().strip(".")
    if not cluster_domain:
        raise ValueError("CLUSTER_DOMAIN must be a non-empty string")

    base_delay_ms = env_int("RETRY_BASE_DELAY_MILLISECONDS", 5, minimum=1)
    max_delay_seconds = env_int("RETRY_MAX_DELAY_SECONDS", 1000, minimum=1)
    if max_delay_seconds * 1000 < base_delay_ms:
        raise ValueError(
            "RETRY_MAX_DELAY_SECONDS must not be smaller than RETRY_BASE_DELAY_MILLISECONDS"
        )
    rate_limiter = default_controller_rate_limiter(
        base_delay=base_delay_ms / 1000.0,
        max_delay=float(max_delay_seconds),
        qps=float(env_int("RETRY_QPS", 10, minimum=1)),
        burst=env_int("RETRY_BURST", 100, minimum=1),
    )

    return RouteController(
        context=context,
        label_key=label_key,
        port_annotation_key=port_annotation_key,
        namespace=namespace,
        cluster_domain=cluster_domain,
        workers=env_int("WORKERS", 2, minimum=1),
        conflict_retries=env_int("CONFLICT_RETRIES", 5, minimum=1),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 300, minimum=1),
        shutdown_timeout_seconds=env_int("SHUTDOWN_TIMEOUT_SECONDS", 30, minimum=1),
        rate_limiter=rate_limiter,
    )
