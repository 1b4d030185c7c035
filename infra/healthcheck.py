"""Lightweight HTTP health endpoint reporting per-bot cycle state."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], Dict[str, Any]]


class HealthServer:
    """
    JSON health server.

    ``/health`` returns the provider payload with 200 when ``ok`` is true and
    503 otherwise. ``/bots`` returns only the ``bots`` section.
    """

    def __init__(self, port: int, status_provider: StatusProvider, host: str = "127.0.0.1"):
        self._host = host
        self._port = int(port)
        self._status_provider = status_provider
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self._status_provider)
        self._server = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(status_provider: StatusProvider):
        provider = status_provider

        class HealthHandler(BaseHTTPRequestHandler):
            def do_GET(self):  # type: ignore[override]
                if self.path in ("/", "/health", "/healthz"):
                    payload = provider() or {}
                    code = 200 if payload.get("ok", True) else 503
                elif self.path == "/bots":
                    payload = {"bots": (provider() or {}).get("bots", {})}
                    code = 200
                else:
                    self.send_response(404)
                    self.end_headers()
                    return

                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                return

        return HealthHandler


__all__ = ["HealthServer"]
