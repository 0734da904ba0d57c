from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest

from nimbus_controller.src.diagnostics import Diagnostics


class _StatusHandler(BaseHTTPRequestHandler):
    """HTTP handler serving diagnostics, liveness, readiness and Prometheus metrics."""

    ready_event: threading.Event
    diagnostics: Diagnostics

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _respond_json(self, status: int, payload: Any) -> None:
        self._respond(status, json.dumps(payload).encode(), "application/json")

    def do_GET(self) -> None:
        if self.path == "/":
            self._respond_json(200, self.diagnostics.snapshot().to_dict())
        elif self.path == "/health":
            self._respond_json(200, "healthy")
        elif self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("nimbus_controller.health").debug(fmt, *args)


def make_status_handler(
    ready: threading.Event, diagnostics: Diagnostics
) -> type[_StatusHandler]:
    """Return a handler class bound to the given readiness event and diagnostics.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundStatusHandler(_StatusHandler):
        ready_event = ready

    _BoundStatusHandler.diagnostics = diagnostics
    return _BoundStatusHandler


def start_health_server(
    ready: threading.Event, diagnostics: Diagnostics, port: int
) -> ThreadingHTTPServer:
    """Start the status/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_status_handler(ready, diagnostics)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
