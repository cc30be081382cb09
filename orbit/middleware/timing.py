"""
Per-request timing and correlation ids.

Every response carries ``X-Request-ID`` (echoed from the caller or
generated) and ``X-Request-Duration-Ms``.  Requests are logged at debug,
slow ones (over SLOW_REQUEST_MS) at warning and 5xx at error.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_QUIET_PREFIX = "/api/v1/health"

DEFAULT_SLOW_REQUEST_MS = 1000


def _level(status: int, duration_ms: float, slow_ms: float) -> int:
    if status >= 500:
        return logging.ERROR
    if duration_ms > slow_ms:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    slow_ms = float(app.config.get("SLOW_REQUEST_MS", DEFAULT_SLOW_REQUEST_MS))

    @app.before_request
    def _begin():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        g.request_started = time.perf_counter()

    @app.after_request
    def _finish(response):
        started = g.pop("request_started", None)
        if started is None:
            return response
        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"

        if not request.path.startswith(_QUIET_PREFIX):
            args = request.view_args or {}
            logger.log(
                _level(response.status_code, elapsed, slow_ms),
                "%s %s -> %d in %.0fms", request.method, request.path, response.status_code, elapsed,
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": elapsed,
                    "remote_addr": request.remote_addr,
                    "project_id": args.get("project_id"),
                    "asset_id": args.get("asset_id"),
                },
            )
        return response
