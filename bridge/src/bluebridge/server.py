"""Application factory and command line entry point."""

from __future__ import annotations

import argparse
import logging
import sys

from aiohttp import web

from .config import BridgeConfig, load_config_from_env
from .daemon_client import DaemonClient
from .daemon_events import DaemonEvents
from .http_api import (
    API_PREFIX,
    add_cors_headers,
    auth_middleware,
    error_middleware,
    preflight_middleware,
    setup_routes,
)
from .logs import configure_logging
from .poller import UpdatePoller
from .runtime import RUNTIME_KEY, Runtime
from .ws_transport import websocket_handler

logger = logging.getLogger(__name__)

POLLER_KEY = web.AppKey("poller", UpdatePoller)
EVENTS_KEY = web.AppKey("daemon_events", DaemonEvents)


def create_app(
    config: BridgeConfig | None = None,
    *,
    daemon: DaemonClient | None = None,
    start_background: bool = True,
) -> web.Application:
    config = config or load_config_from_env()
    runtime = Runtime(config, daemon)
    poller = UpdatePoller(runtime.daemon, runtime.relay, interval_s=config.poll_interval_s)
    events = DaemonEvents(runtime.daemon, runtime.relay, runtime.contacts)

    app = web.Application(
        middlewares=[preflight_middleware, error_middleware, auth_middleware],
        client_max_size=config.ws_max_msg_size,
    )
    app[RUNTIME_KEY] = runtime
    app[POLLER_KEY] = poller
    app[EVENTS_KEY] = events
    setup_routes(app)
    app.router.add_get(f"{API_PREFIX}/ws", websocket_handler)
    app.on_response_prepare.append(add_cors_headers)

    async def start_background_tasks(_: web.Application) -> None:
        if not start_background:
            return
        if config.polling_enabled:
            poller.start()
        if config.daemon_events:
            events.start()
        logger.info("bridge started; daemon at %s", config.daemon_url)

    async def stop_background_tasks(_: web.Application) -> None:
        await poller.stop()
        await events.stop()
        await runtime.close()

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(stop_background_tasks)
    return app


def _run_serve(args: argparse.Namespace, config: BridgeConfig) -> int:
    config = config.with_overrides(
        host=args.host,
        port=args.port,
        daemon_url=args.daemon_url,
        password=args.password,
        poll_interval_s=args.poll_interval,
    )
    configure_logging(args.log_level or config.log_level)
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    if not argv:
        argv = ["serve"]

    parser = argparse.ArgumentParser(description="Messages daemon bridge")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp bridge server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--daemon-url", default=None, help="Base URL of the Messages daemon")
    serve_parser.add_argument("--password", default=None, help="Shared server password")
    serve_parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between update polls; 0 disables polling",
    )
    serve_parser.add_argument("--log-level", default=None, help="Logging level name")

    args = parser.parse_args(argv)
    try:
        config = load_config_from_env()
    except ValueError as exc:
        parser.error(str(exc))
    return _run_serve(args, config)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
