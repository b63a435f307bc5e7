from __future__ import annotations

import queue
import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import patch

import pytest
from kubernetes.client import ApiException

from vsrouter.src.cache import ChangeEvent, EventType, SourceCache, SourceWatcher

LABEL_KEY = "virtualservice.httproute/VirtualServiceName"


def make_service(
    name: str,
    namespace: str = "shop",
    resource_version: str = "1",
    label: str = "routing.vs1",
    port: int = 8080,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            namespace=namespace,
            name=name,
            labels={LABEL_KEY: label},
            annotations={},
            resource_version=resource_version,
        ),
        spec=SimpleNamespace(ports=[SimpleNamespace(port=port, name="http", protocol="TCP")]),
    )


def service_list(*services: SimpleNamespace, resource_version: str = "100") -> SimpleNamespace:
    return SimpleNamespace(
        items=list(services),
        metadata=SimpleNamespace(resource_version=resource_version),
    )


class FakeCoreApi:
    def __init__(self, lists: list[Any]) -> None:
        self.lists = list(lists)
        self.calls: list[dict[str, Any]] = []

    def _next(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        result = self.lists.pop(0) if len(self.lists) > 1 else self.lists[0]
        if isinstance(result, Exception):
            raise result
        return result

    def list_service_for_all_namespaces(self, **kwargs: Any) -> Any:
        return self._next(**kwargs)

    def list_namespaced_service(self, **kwargs: Any) -> Any:
        return self._next(**kwargs)


class FakeWatch:
    """Replays scripted streams; each entry is a list of events or an exception."""

    def __init__(self, streams: list[Any], stop: threading.Event) -> None:
        self.streams = streams
        self.stop_event = stop
        self.stream_kwargs: list[dict[str, Any]] = []

    def __call__(self) -> FakeWatch:
        return self

    def stream(self, func: Any, **kwargs: Any) -> Any:
        self.stream_kwargs.append(kwargs)
        if not self.streams:
            self.stop_event.set()
            return iter(())
        script = self.streams.pop(0)
        if isinstance(script, Exception):
            raise script
        return iter(script)

    def stop(self) -> None:
        return None


def drain(events: queue.Queue[ChangeEvent]) -> list[tuple[EventType, str]]:
    collected = []
    while True:
        try:
            event = events.get_nowait()
        except queue.Empty:
            return collected
        collected.append((event.type, event.key))


def make_watcher(core_api: Any, namespace: str | None = None) -> SourceWatcher:
    return SourceWatcher(
        core_api=core_api,
        label_selector=LABEL_KEY,
        cache=SourceCache(),
        events=queue.Queue(),
        namespace=namespace,
        watch_timeout_seconds=5,
    )


# ---------------------------------------------------------------------------
# List diffing
# ---------------------------------------------------------------------------


def test_initial_list_emits_added_for_every_service() -> None:
    watcher = make_watcher(FakeCoreApi([]))

    watcher.sync_from_list(service_list(make_service("cart"), make_service("checkout")))

    assert drain(watcher.events) == [
        (EventType.ADDED, "shop/cart"),
        (EventType.ADDED, "shop/checkout"),
    ]
    assert watcher.cache.keys() == {"shop/cart", "shop/checkout"}


def test_relist_emits_updates_and_missed_deletes_only() -> None:
    watcher = make_watcher(FakeCoreApi([]))
    watcher.sync_from_list(
        service_list(make_service("cart"), make_service("checkout"), make_service("gone"))
    )
    drain(watcher.events)

    watcher.sync_from_list(
        service_list(make_service("cart"), make_service("checkout", resource_version="2"))
    )

    assert drain(watcher.events) == [
        (EventType.UPDATED, "shop/checkout"),
        (EventType.DELETED, "shop/gone"),
    ]
    assert watcher.cache.get("shop/gone") is None


def test_relist_delete_carries_last_known_labels() -> None:
    watcher = make_watcher(FakeCoreApi([]))
    watcher.sync_from_list(service_list(make_service("cart", label="routing.vs1")))
    drain(watcher.events)

    watcher.sync_from_list(service_list())

    event = watcher.events.get_nowait()
    assert event.type is EventType.DELETED
    assert event.entity.labels[LABEL_KEY] == "routing.vs1"


def test_list_skips_objects_without_identity() -> None:
    watcher = make_watcher(FakeCoreApi([]))
    nameless = SimpleNamespace(metadata=SimpleNamespace(namespace="shop", name=None))

    watcher.sync_from_list(service_list(nameless, make_service("cart")))

    assert drain(watcher.events) == [(EventType.ADDED, "shop/cart")]


# ---------------------------------------------------------------------------
# Watch events
# ---------------------------------------------------------------------------


def test_watch_events_map_to_change_events() -> None:
    watcher = make_watcher(FakeCoreApi([]))

    watcher.handle_watch_event({"type": "ADDED", "object": make_service("cart")})
    watcher.handle_watch_event(
        {"type": "MODIFIED", "object": make_service("cart", resource_version="2")}
    )
    watcher.handle_watch_event(
        {"type": "DELETED", "object": make_service("cart", resource_version="3")}
    )

    assert drain(watcher.events) == [
        (EventType.ADDED, "shop/cart"),
        (EventType.UPDATED, "shop/cart"),
        (EventType.DELETED, "shop/cart"),
    ]
    assert len(watcher.cache) == 0


def test_replayed_event_with_same_version_is_ignored() -> None:
    watcher = make_watcher(FakeCoreApi([]))
    watcher.handle_watch_event({"type": "ADDED", "object": make_service("cart")})

    watcher.handle_watch_event({"type": "ADDED", "object": make_service("cart")})
    watcher.handle_watch_event({"type": "MODIFIED", "object": make_service("cart")})

    assert drain(watcher.events) == [(EventType.ADDED, "shop/cart")]


def test_modified_for_unknown_service_is_added() -> None:
    watcher = make_watcher(FakeCoreApi([]))

    watcher.handle_watch_event({"type": "MODIFIED", "object": make_service("cart")})

    assert drain(watcher.events) == [(EventType.ADDED, "shop/cart")]


def test_bookmark_only_advances_resource_version() -> None:
    watcher = make_watcher(FakeCoreApi([]))
    bookmark = SimpleNamespace(metadata=SimpleNamespace(resource_version="555"))

    assert watcher.handle_watch_event({"type": "BOOKMARK", "object": bookmark}) == "555"
    assert drain(watcher.events) == []


def test_bookmark_delivered_as_raw_dict_advances_resource_version() -> None:
    watcher = make_watcher(FakeCoreApi([]))
    bookmark = {"kind": "Service", "metadata": {"resourceVersion": "777"}}

    assert watcher.handle_watch_event({"type": "BOOKMARK", "object": bookmark}) == "777"
    assert drain(watcher.events) == []


def test_update_event_carries_previous_state() -> None:
    watcher = make_watcher(FakeCoreApi([]))
    watcher.handle_watch_event({"type": "ADDED", "object": make_service("cart")})
    watcher.events.get_nowait()

    watcher.handle_watch_event(
        {
            "type": "MODIFIED",
            "object": make_service("cart", resource_version="2", label="routing.vs2"),
        }
    )

    event = watcher.events.get_nowait()
    assert event.type is EventType.UPDATED
    assert event.previous is not None
    assert event.previous.labels[LABEL_KEY] == "routing.vs1"
    assert event.entity.labels[LABEL_KEY] == "routing.vs2"


def test_error_event_with_410_raises_gone() -> None:
    watcher = make_watcher(FakeCoreApi([]))

    with pytest.raises(ApiException) as excinfo:
        watcher.handle_watch_event({"type": "ERROR", "object": {"code": 410}})

    assert excinfo.value.status == 410


# ---------------------------------------------------------------------------
# run()
# ---------------------------------------------------------------------------


def test_run_lists_then_watches_from_list_version() -> None:
    core_api = FakeCoreApi([service_list(make_service("cart"), resource_version="100")])
    watcher = make_watcher(core_api)
    stop = threading.Event()
    fake_watch = FakeWatch(
        [[{"type": "ADDED", "object": make_service("checkout", resource_version="101")}]],
        stop,
    )

    with patch("vsrouter.src.cache.watch.Watch", fake_watch):
        watcher.run(stop_event=stop)

    assert watcher.synced.is_set()
    assert core_api.calls[0] == {"label_selector": LABEL_KEY}
    assert fake_watch.stream_kwargs[0]["resource_version"] == "100"
    assert fake_watch.stream_kwargs[1]["resource_version"] == "101"
    assert drain(watcher.events) == [
        (EventType.ADDED, "shop/cart"),
        (EventType.ADDED, "shop/checkout"),
    ]


def test_run_uses_namespaced_list_when_namespace_set() -> None:
    core_api = FakeCoreApi([service_list()])
    watcher = make_watcher(core_api, namespace="shop")
    stop = threading.Event()

    with patch("vsrouter.src.cache.watch.Watch", FakeWatch([], stop)):
        watcher.run(stop_event=stop)

    assert core_api.calls[0] == {"label_selector": LABEL_KEY, "namespace": "shop"}


def test_run_relists_after_410_and_recovers_missed_delete() -> None:
    core_api = FakeCoreApi(
        [
            service_list(make_service("cart"), resource_version="100"),
            service_list(resource_version="200"),
        ]
    )
    watcher = make_watcher(core_api)
    stop = threading.Event()
    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], stop)

    with patch("vsrouter.src.cache.watch.Watch", fake_watch):
        watcher.run(stop_event=stop)

    assert len(core_api.calls) == 2
    assert fake_watch.stream_kwargs[-1]["resource_version"] == "200"
    assert drain(watcher.events) == [
        (EventType.ADDED, "shop/cart"),
        (EventType.DELETED, "shop/cart"),
    ]


def test_run_retries_failed_relist_before_reopening_watch() -> None:
    core_api = FakeCoreApi(
        [
            service_list(make_service("cart"), resource_version="100"),
            ApiException(status=500, reason="boom"),
            service_list(resource_version="200"),
        ]
    )
    watcher = make_watcher(core_api)
    stop = threading.Event()
    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], stop)

    with (
        patch("vsrouter.src.cache.random.random", return_value=0.0),
        patch.object(threading.Event, "wait", return_value=False),
        patch("vsrouter.src.cache.watch.Watch", fake_watch),
    ):
        watcher.run(stop_event=stop)

    assert len(core_api.calls) == 3
    # No watch is opened between the failed and the successful re-list.
    assert len(fake_watch.stream_kwargs) == 2
    assert fake_watch.stream_kwargs[-1]["resource_version"] == "200"
    assert drain(watcher.events) == [
        (EventType.ADDED, "shop/cart"),
        (EventType.DELETED, "shop/cart"),
    ]


def test_run_stops_when_relist_is_forbidden() -> None:
    core_api = FakeCoreApi(
        [service_list(resource_version="100"), ApiException(status=403, reason="Forbidden")]
    )
    watcher = make_watcher(core_api)
    stop = threading.Event()
    fake_watch = FakeWatch([ApiException(status=410, reason="Gone")], stop)

    with patch("vsrouter.src.cache.watch.Watch", fake_watch):
        watcher.run(stop_event=stop)

    assert len(core_api.calls) == 2
    assert len(fake_watch.stream_kwargs) == 1
    assert not stop.is_set()


def test_run_stops_on_forbidden_initial_list() -> None:
    core_api = FakeCoreApi([ApiException(status=403, reason="Forbidden")])
    watcher = make_watcher(core_api)
    stop = threading.Event()

    with patch("vsrouter.src.cache.watch.Watch") as mock_watch:
        watcher.run(stop_event=stop)

    assert not watcher.synced.is_set()
    mock_watch.assert_not_called()


def test_run_retries_initial_list_after_transient_error() -> None:
    core_api = FakeCoreApi(
        [ApiException(status=500, reason="boom"), service_list(make_service("cart"))]
    )
    watcher = make_watcher(core_api)
    stop = threading.Event()

    with (
        patch("vsrouter.src.cache.random.random", return_value=0.0),
        patch.object(threading.Event, "wait", return_value=False),
        patch("vsrouter.src.cache.watch.Watch", FakeWatch([], stop)),
    ):
        watcher.run(stop_event=stop)

    assert len(core_api.calls) == 2
    assert watcher.synced.is_set()


def test_run_stops_on_forbidden_watch() -> None:
    core_api = FakeCoreApi([service_list()])
    watcher = make_watcher(core_api)
    stop = threading.Event()
    fake_watch = FakeWatch([ApiException(status=401, reason="Unauthorized")], stop)

    with patch("vsrouter.src.cache.watch.Watch", fake_watch):
        watcher.run(stop_event=stop)

    assert len(fake_watch.stream_kwargs) == 1
    assert not stop.is_set()


def test_request_stop_prevents_watch_loop() -> None:
    core_api = FakeCoreApi([service_list()])
    watcher = make_watcher(core_api)
    stop = threading.Event()
    stop.set()

    with patch("vsrouter.src.cache.watch.Watch") as mock_watch:
        watcher.run(stop_event=stop)

    mock_watch.assert_not_called()
    assert core_api.calls == []
