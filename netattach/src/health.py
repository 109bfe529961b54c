from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz`` (process alive), ``/readyz`` (caches synced) and ``/metrics``."""

    ready_event: threading.Event
    alive_check: Callable[[], bool] | None

    def _alive(self) -> bool:
        check = type(self).alive_check
        return check is None or check()

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
            if self._alive():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"workers stopped")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("netattach.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, alive: Callable[[], bool] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the readiness event and liveness check.

    The stdlib HTTPServer instantiates handlers without extra arguments, so
    state travels as class attributes.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        alive_check = staticmethod(alive) if alive is not None else None

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, alive: Callable[[], bool] | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, alive=alive)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
