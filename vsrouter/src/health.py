from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, status and Prometheus metrics endpoints."""

    ready_event: threading.Event
    status_fn: Callable[[], dict[str, int]] | None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"synced=true")
            else:
                self._respond(503, b"synced=false")
        elif self.path == "/statusz":
            status_fn = self.status_fn
            if status_fn is None:
                self._respond(404)
                return
            body = json.dumps(status_fn(), sort_keys=True).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("vsrouter.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, status: Callable[[], dict[str, int]] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the controller's readiness event.

    ``ready`` is set once the Service cache has synced and workers run.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        status_fn = staticmethod(status) if status is not None else None  # type: ignore[assignment]

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, status: Callable[[], dict[str, int]] | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, status=status)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
