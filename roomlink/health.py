"""Liveness endpoint for the relay hub."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from flask import Flask, jsonify
from werkzeug.serving import make_server

from .util import iso_now


def create_health_app(
    *,
    cors_origin: str | None = None,
    stats: Callable[[], dict[str, Any]] | None = None,
) -> Flask:
    app = Flask("roomlink.health")

    @app.after_request
    def _cors(response):
        if cors_origin:
            response.headers["Access-Control-Allow-Origin"] = cors_origin
            response.headers["Access-Control-Allow-Methods"] = "GET, POST"
        return response

    @app.get("/health")
    def health():
        return jsonify({"status": "OK", "timestamp": iso_now()})

    @app.get("/stats")
    def stats_view():
        return jsonify(stats() if stats is not None else {})

    return app


class HealthServer:
    """Serves the health app from a daemon thread."""

    def __init__(self, app: Flask, host: str, port: int) -> None:
        self.log = logging.getLogger("roomlink.health")
        self._server = make_server(host, int(port), app, threaded=True)
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        return int(self._server.server_port)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="roomlink-health",
            daemon=True,
        )
        self._thread.start()
        self.log.info("Health endpoint listening port=%s", self.port)

    def stop(self) -> None:
        self._server.shutdown()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
