from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


def readiness_report(
    ready: threading.Event, retry_pending: Callable[[], bool] | None = None
) -> tuple[int, bytes]:
    """Return the ``/readyz`` status code and body.

    The status only follows ``ready``.  A pending patch retry is reported in
    the body but keeps the pod ready: the reconciler is running and will keep
    trying.
    """
    is_ready = ready.is_set()
    lines = [f"ready={'true' if is_ready else 'false'}"]
    if retry_pending is not None:
        lines.append(f"retry_pending={'true' if retry_pending() else 'false'}")
    return (200 if is_ready else 503), "\n".join(lines).encode()


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics`` for the reconciler."""

    ready_event: threading.Event
    retry_pending: Callable[[], bool] | None = None

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            self._respond(*readiness_report(self.ready_event, self.retry_pending))
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("cabundle_sync.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, retry_pending: Callable[[], bool] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the reconciler's readiness state."""
    return type(
        "_BoundHealthHandler",
        (_HealthHandler,),
        {
            "ready_event": ready,
            "retry_pending": staticmethod(retry_pending) if retry_pending else None,
        },
    )


def start_health_server(
    ready: threading.Event,
    port: int,
    retry_pending: Callable[[], bool] | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(
        ("0.0.0.0", port), make_health_handler(ready, retry_pending)  # noqa: S104
    )
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
