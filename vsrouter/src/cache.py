from __future__ import annotations

import enum
import logging
import queue
import random
import threading
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from vsrouter.src.kube import service_list_call
from vsrouter.src.metrics import METRICS
from vsrouter.src.model import SourceEntity


class EventType(enum.Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    """A single change observed by the watcher.

    ``entity`` is the new state for ``ADDED``/``UPDATED`` and the last known
    state for ``DELETED``.  ``previous`` is what the cache held for the key
    before this event, if anything.
    """

    type: EventType
    entity: SourceEntity
    previous: SourceEntity | None = None

    @property
    def key(self) -> str:
        return self.entity.key


class SourceCache:
    """Thread-safe local mirror of the watched Services, keyed by ``namespace/name``.

    Only the watcher writes to it; reconcilers read.
    """

    def __init__(self) -> None:
        self._items: dict[str, SourceEntity] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> SourceEntity | None:
        with self._lock:
            return self._items.get(key)

    def upsert(self, entity: SourceEntity) -> SourceEntity | None:
        with self._lock:
            previous = self._items.get(entity.key)
            self._items[entity.key] = entity
            METRICS.cache_size.set(len(self._items))
            return previous

    def delete(self, key: str) -> SourceEntity | None:
        with self._lock:
            previous = self._items.pop(key, None)
            METRICS.cache_size.set(len(self._items))
            return previous

    def keys(self) -> set[str]:
        with self._lock:
            return set(self._items)

    def list(self) -> list[SourceEntity]:
        with self._lock:
            return list(self._items.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class _AccessDenied(Exception):
    pass


class SourceWatcher:
    """List-then-watch Services carrying the routing label and publish change events.

    Every notification first updates :class:`SourceCache` and is then put on
    the ``events`` channel as a :class:`ChangeEvent`.  A full re-list (at
    startup and after ``410 Gone``) is diffed against the cache, so changes
    missed while the watch was disconnected, deletions included, are still
    delivered.  Replayed objects whose ``resourceVersion`` did not change
    produce no event.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        label_selector: str,
        cache: SourceCache,
        events: queue.Queue[ChangeEvent],
        namespace: str | None = None,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.label_selector = label_selector
        self.cache = cache
        self.events = events
        self.namespace = namespace or None
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"label_selector": self.label_selector}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _emit(self, event_type: EventType, entity: SourceEntity) -> None:
        if event_type is EventType.DELETED:
            previous = self.cache.delete(entity.key)
        else:
            previous = self.cache.upsert(entity)
        METRICS.watch_events_total.labels(type=event_type.value).inc()
        self.events.put(ChangeEvent(type=event_type, entity=entity, previous=previous))

    def _decode(self, obj: Any) -> SourceEntity | None:
        try:
            return SourceEntity.from_service(obj)
        except ValueError:
            self.logger.warning("Skipping Service without namespace or name in watch payload")
            return None

    def sync_from_list(self, services: Any) -> None:
        """Diff a full Service listing against the cache and emit the differences."""
        seen: set[str] = set()
        for item in getattr(services, "items", None) or []:
            entity = self._decode(item)
            if entity is None:
                continue
            seen.add(entity.key)
            previous = self.cache.get(entity.key)
            if previous is None:
                self._emit(EventType.ADDED, entity)
            elif previous.resource_version != entity.resource_version:
                self._emit(EventType.UPDATED, entity)

        for key in sorted(self.cache.keys() - seen):
            previous = self.cache.get(key)
            if previous is None:
                continue
            self.logger.info("Service %s vanished while the watch was disconnected", key)
            self._emit(EventType.DELETED, previous)

    def handle_watch_event(self, event: dict[str, Any]) -> str | None:
        """Apply one raw watch event; returns the resourceVersion it carried, if any.

        ``ERROR`` events with code 410 are raised as ``ApiException(status=410)``
        so the caller's re-list path handles both shapes of an expired watch.
        """
        event_type = str(event.get("type", ""))
        obj = event.get("object")

        if event_type == "ERROR":
            code = obj.get("code") if isinstance(obj, dict) else getattr(obj, "code", None)
            if code == 410:
                raise ApiException(status=410, reason="Gone")
            self.logger.warning("Watch returned error event: %s", obj)
            return None

        if obj is None:
            return None
        if isinstance(obj, dict):
            # Bookmarks are not deserialised into a model object.
            metadata = obj.get("metadata") or {}
            resource_version = metadata.get("resourceVersion")
        else:
            resource_version = getattr(getattr(obj, "metadata", None), "resource_version", None)
        if event_type == "BOOKMARK":
            return resource_version

        entity = self._decode(obj)
        if entity is None:
            return resource_version

        if event_type == "DELETED":
            self._emit(EventType.DELETED, entity)
        elif event_type in {"ADDED", "MODIFIED"}:
            previous = self.cache.get(entity.key)
            if previous is None:
                self._emit(EventType.ADDED, entity)
            elif previous.resource_version != entity.resource_version:
                self._emit(EventType.UPDATED, entity)
        else:
            self.logger.debug("Ignoring watch event type %s for %s", event_type, entity.key)
        return resource_version

    def _list_and_sync(self) -> str | None:
        services = service_list_call(self.core_api, self.namespace)(**self._list_kwargs())
        self.sync_from_list(services)
        return getattr(getattr(services, "metadata", None), "resource_version", None)

    def _initial_list(self, stop: threading.Event) -> str | None:
        """Retry the first list with jittered exponential backoff until it succeeds.

        Raises :class:`_AccessDenied` on ``401``/``403``.
        """
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list_and_sync()
                self.synced.set()
                self.logger.info(
                    "Synced %d Service(s); starting watch from resourceVersion %s",
                    len(self.cache),
                    resource_version,
                )
                return resource_version
            except ApiException as exc:
                if exc.status in {401, 403}:
                    raise _AccessDenied(exc.status) from exc
                self.logger.exception("Initial Service list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial Service list")
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch Services until stopped.

        ``401``/``403`` responses are configuration errors (RBAC/auth) and end
        the loop with an error log instead of retrying forever; every other
        failure is retried with jittered backoff capped at 30 s.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        try:
            resource_version = self._initial_list(stop)
        except _AccessDenied as exc:
            self.logger.error(
                "Kubernetes API access denied during initial Service list (status=%s). "
                "Check controller RBAC and service account permissions.",
                exc.args[0],
            )
            return

        backoff_seconds = 1
        watch_stream_count = 0
        needs_relist = False
        list_call = service_list_call(self.core_api, self.namespace)

        while not self._should_stop(stop):
            if needs_relist:
                # A watch without a fresh list never reports deletions missed
                # in the gap, so keep listing until one succeeds.
                try:
                    resource_version = self._list_and_sync()
                    needs_relist = False
                    backoff_seconds = 1
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self.logger.error(
                            "Kubernetes API access denied during 410 re-list (status=%s). "
                            "Check controller RBAC and service account permissions.",
                            exc.status,
                        )
                        return
                    self.logger.exception("Failed to re-list Services after 410")
                    METRICS.watch_errors_total.inc()
                except Exception:
                    self.logger.exception("Unexpected error re-listing Services after 410")
                    METRICS.watch_errors_total.inc()
                if needs_relist:
                    jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                    stop.wait(timeout=jittered)
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_call,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    allow_watch_bookmarks=True,
                    **self._list_kwargs(),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    latest = self.handle_watch_event(event)
                    if latest:
                        resource_version = latest

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away. Re-list to
                # catch up on everything missed, then resume from the new version.
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing Services")
                    needs_relist = True
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
