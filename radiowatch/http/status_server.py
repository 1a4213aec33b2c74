"""
HTTP status endpoint for the radio watchdog.

Provides:
- GET /status: JSON snapshot of role states, restart records and stream health
- GET /health: 200 while the pipeline is healthy, 503 otherwise
"""

import json
import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional

from radiowatch.pipeline.orchestrator import PipelineHealth, PipelineSnapshot

logger = logging.getLogger(__name__)


def make_status_handler(
    snapshot_provider: Callable[[], PipelineSnapshot],
    start_time: Optional[float] = None,
):
    """Create a StatusHandler class bound to a snapshot provider."""

    class StatusHandler(BaseHTTPRequestHandler):
        """HTTP request handler for watchdog status endpoints."""

        def __init__(self, *args, **kwargs):
            self.snapshot_provider = snapshot_provider
            self.start_time = start_time or time.time()
            super().__init__(*args, **kwargs)

        def do_GET(self):
            path = self.path.split("?", 1)[0]
            if path == "/status":
                self._handle_status()
            elif path == "/health":
                self._handle_health()
            else:
                self._send_json(404, {"status": "error", "error": "Not Found"})

        def _handle_status(self):
            try:
                snapshot = self.snapshot_provider()
            except Exception as e:
                logger.error(f"Error building status snapshot: {e}", exc_info=True)
                self._send_json(500, {"status": "error", "error": "Internal error"})
                return
            response = snapshot.to_dict()
            response["uptime_sec"] = round(time.time() - self.start_time, 1)
            self._send_json(200, response)

        def _handle_health(self):
            try:
                snapshot = self.snapshot_provider()
            except Exception as e:
                logger.error(f"Error building health snapshot: {e}", exc_info=True)
                self._send_json(500, {"status": "error", "error": "Internal error"})
                return
            healthy = snapshot.health == PipelineHealth.HEALTHY
            self._send_json(200 if healthy else 503, {"health": snapshot.health.value})

        def _send_json(self, status_code: int, payload: dict):
            body = json.dumps(payload).encode("utf-8")
            self.send_response(status_code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            """Override to use our logger."""
            logger.debug(f"{self.address_string()} - {format % args}")

    return StatusHandler


class StatusServer:
    """HTTP server exposing watchdog status."""

    def __init__(
        self,
        host: str,
        port: int,
        snapshot_provider: Callable[[], PipelineSnapshot],
    ):
        self.host = host
        self.port = port
        self.snapshot_provider = snapshot_provider
        self.start_time = time.time()
        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self._shutdown = False

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (useful when started with port 0)."""
        if self.server is None:
            return None
        return self.server.server_address[1]

    def start(self) -> None:
        """Start HTTP server in a background thread."""
        if self.server is not None:
            raise RuntimeError("Server already started")

        handler_class = make_status_handler(self.snapshot_provider, start_time=self.start_time)
        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)
        self.server.daemon_threads = True

        self.server_thread = threading.Thread(
            target=self._run_server,
            daemon=True,
            name="StatusServer",
        )
        self.server_thread.start()

        logger.info(f"Status server started on {self.host}:{self.bound_port}")

    def _run_server(self):
        try:
            self.server.serve_forever()
        except Exception as e:
            if not self._shutdown:
                logger.error(f"Status server error: {e}")

    def stop(self) -> None:
        if self.server is None:
            return

        self._shutdown = True
        self.server.shutdown()
        self.server.server_close()

        if self.server_thread:
            self.server_thread.join(timeout=2.0)

        self.server = None
        self.server_thread = None

        logger.info("Status server stopped")
