from __future__ import annotations

import argparse
import contextlib
import logging
import sys
import threading
import time
from typing import Any, Dict, Optional, Sequence

from flask import Flask, Response, jsonify
from werkzeug.serving import BaseWSGIServer, make_server

from . import __version__
from .broadcast import SSE_HEADERS
from .config import AppConfig, load_config
from .errors import ConfigError, UnknownFeedError
from .logging_utils import configure_logging
from .models import format_timestamp
from .runtime import EventLoopThread
from .service import FeedRegistry, FeedService, build_services

log = logging.getLogger(__name__)


def _admin_response(service: FeedService, action: str) -> Any:
    if action == "start":
        started = service.start()
        message = "Polling started" if started else "Polling already running"
    elif action == "stop":
        stopped = service.stop()
        message = "Polling stopped" if stopped else "Polling was not running"
    elif action == "clear":
        service.clear()
        message = "Cache cleared"
    else:
        return jsonify({"success": False, "message": f"unknown action {action!r}"}), 404
    log.info("%s admin: %s", service.name, message)
    payload: Dict[str, Any] = {"success": True, "message": message}
    payload.update(service.status())
    return jsonify(payload)


def _register_feed(app: Flask, service: FeedService) -> None:
    config = service.config
    name = config.name

    def snapshot() -> Any:
        return jsonify(service.snapshot_payload())

    def stream() -> Response:
        return Response(
            service.hub.handle_stream(),
            mimetype="text/event-stream",
            headers=dict(SSE_HEADERS),
        )

    def polling_start() -> Any:
        return _admin_response(service, "start")

    def polling_stop() -> Any:
        return _admin_response(service, "stop")

    def polling_status() -> Any:
        return jsonify(service.status())

    def cache_clear() -> Any:
        return _admin_response(service, "clear")

    app.add_url_rule(config.path, f"{name}_snapshot", snapshot, methods=["GET"])
    app.add_url_rule(f"{config.path}/stream", f"{name}_stream", stream, methods=["GET"])
    prefix = config.admin_path
    app.add_url_rule(f"{prefix}/polling/start", f"{name}_polling_start", polling_start, methods=["POST"])
    app.add_url_rule(f"{prefix}/polling/stop", f"{name}_polling_stop", polling_stop, methods=["POST"])
    app.add_url_rule(f"{prefix}/polling/status", f"{name}_polling_status", polling_status, methods=["GET"])
    app.add_url_rule(f"{prefix}/cache/clear", f"{name}_cache_clear", cache_clear, methods=["POST"])


def create_app(services: FeedRegistry) -> Flask:
    """Return a Flask application serving the feeds in *services*."""

    app = Flask(__name__)
    app.config["MEMEFEED_SERVICES"] = services

    @app.after_request
    def _no_store(response: Response) -> Response:
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        content_type = response.content_type or ""
        if "application/json" in content_type.lower():
            response.headers["Cache-Control"] = "no-store"
        return response

    @app.errorhandler(UnknownFeedError)
    def _unknown_feed(exc: UnknownFeedError) -> Any:
        return jsonify({"success": False, "message": str(exc)}), 404

    for service in services:
        _register_feed(app, service)

    @app.get("/api/feeds")
    def feeds() -> Any:
        return jsonify({"feeds": [service.status() for service in services]})

    @app.get("/api/feeds/<name>")
    def feed_status(name: str) -> Any:
        return jsonify(services.get(name).status())

    @app.post("/api/feeds/<name>/polling/<action>")
    def feed_polling(name: str, action: str) -> Any:
        service = services.get(name)
        if action not in {"start", "stop"}:
            return jsonify({"success": False, "message": f"unknown action {action!r}"}), 404
        return _admin_response(service, action)

    @app.post("/api/feeds/<name>/cache/clear")
    def feed_clear(name: str) -> Any:
        return _admin_response(services.get(name), "clear")

    @app.get("/health")
    def health() -> Any:
        details: Dict[str, Any] = {}
        for service in services:
            snapshot = service.store.get_snapshot()
            details[service.name] = {
                "fetchedAt": format_timestamp(snapshot.fetched_at),
                "error": snapshot.error,
                "tokenCount": len(snapshot.tokens),
                "isPolling": service.scheduler.running,
            }
        return jsonify({"ok": True, "version": __version__, "feeds": details})

    return app


class FeedServer:
    """Run the Flask app on a threaded Werkzeug server in a background thread."""

    def __init__(
        self,
        services: FeedRegistry,
        *,
        host: str = "127.0.0.1",
        port: int = 5000,
    ) -> None:
        self.services = services
        self.host = host
        self.port = int(port)
        self.app = create_app(services)
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[BaseWSGIServer] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        # one thread per request; each open stream holds its own thread
        server = make_server(self.host, self.port, self.app, threaded=True)
        server.daemon_threads = True
        self._server = server
        # port 0 binds an ephemeral port
        self.port = int(getattr(server, "server_port", self.port))

        def _serve() -> None:
            try:
                server.serve_forever()
            except Exception:  # pragma: no cover - best effort logging
                log.exception("feed server crashed")
            finally:
                self._server = None

        self._thread = threading.Thread(target=_serve, name="memefeed-http", daemon=True)
        self._thread.start()
        log.info("memefeed listening on %s", self.url)

    def stop(self) -> None:
        # closing the hubs ends open streams so their threads can exit
        for service in self.services:
            service.hub.close_all()
        server = self._server
        if server is not None:
            with contextlib.suppress(Exception):
                server.shutdown()
            with contextlib.suppress(Exception):
                server.server_close()
        if self._thread:
            self._thread.join(timeout=2)
        self._thread = None
        self._server = None


def _parse_cli_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll meme-coin token feeds and stream snapshots over SSE."
    )
    parser.add_argument("--config", default=None, help="Path to a TOML config file (default: $MEMEFEED_CONFIG)")
    parser.add_argument("--host", default=None, help="Interface to bind (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on (overrides config)")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO)")
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit structured JSON log lines (default: $LOG_JSON)",
    )
    return parser.parse_args(argv)


def _apply_cli_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    server = config.server
    updates: Dict[str, Any] = {}
    if args.host:
        updates["host"] = args.host
    if args.port is not None:
        updates["port"] = args.port
    if updates:
        config = config.model_copy(update={"server": server.model_copy(update=updates)})
    return config


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    configure_logging(level=args.log_level, json_logs=args.json_logs)
    try:
        config = _apply_cli_overrides(load_config(args.config), args)
    except ConfigError as exc:
        log.error("invalid configuration: %s", exc)
        return 2

    runtime = EventLoopThread()
    runtime.start()
    services = build_services(config, runtime)
    server = FeedServer(services, host=config.server.host, port=config.server.port)
    try:
        server.start()
    except OSError as exc:
        log.error("cannot bind %s:%s: %s", config.server.host, config.server.port, exc)
        runtime.stop()
        return 1

    started = services.start_all()
    log.info("polling feeds: %s", ", ".join(started) or "none")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        log.info("stopping memefeed server")
    finally:
        services.stop_all()
        server.stop()
        runtime.stop()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main(sys.argv[1:]))
