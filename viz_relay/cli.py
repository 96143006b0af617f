"""
Relay CLI - Command-line interface for the relay server.

Entry point:
    viz-relay   - relay server (admin console -> visualizers)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

# Fix Windows console encoding for unicode characters
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def validate_port(value: str) -> int:
    """Validate port number is in valid range."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")

    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"Port must be between 1 and 65535, got: {port}")
    return port


def validate_interval(value: str) -> float:
    """Validate a positive interval in seconds."""
    try:
        interval = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid interval: {value}")

    if interval <= 0:
        raise argparse.ArgumentTypeError(f"Interval must be positive, got: {interval}")
    return interval


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="viz-relay",
        description="Audio visualization relay - forwards admin analyser output to visualizers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  viz-relay                          # Pages on :8888, relay on :8889
  viz-relay --http-port 9000         # Custom page port (or $PORT)
  viz-relay --no-metrics --no-http   # WebSocket relay only
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON config file (values override the environment)",
    )
    parser.add_argument("--host", type=str, default=None, help="Bind address (default: 0.0.0.0)")
    parser.add_argument(
        "--http-port",
        type=validate_port,
        default=None,
        help="Port for the entry pages (default: 8888 or $PORT)",
    )
    parser.add_argument(
        "--ws-port",
        type=validate_port,
        default=None,
        help="Port for relay WebSocket clients (default: 8889 or $WS_PORT)",
    )
    parser.add_argument(
        "--metrics-port",
        type=validate_port,
        default=None,
        help="Port for metrics HTTP endpoint (default: 8890 or $METRICS_PORT)",
    )
    parser.add_argument("--no-metrics", action="store_true", help="Disable metrics HTTP endpoint")
    parser.add_argument("--no-http", action="store_true", help="Do not serve the entry pages")
    parser.add_argument(
        "--status-interval",
        type=validate_interval,
        default=None,
        help="Seconds between server:status broadcasts (default: 5)",
    )
    parser.add_argument("--static-dir", type=str, default=None, help="Directory with the pages")
    parser.add_argument(
        "--pause-on-admin-loss",
        action="store_true",
        help="Tell connected visualizers to pause when the admin drops mid-playback",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=os.environ.get("LOG_LEVEL", "INFO").upper(),
        help="Logging level (default: INFO or $LOG_LEVEL)",
    )
    return parser


def resolve_config(args: argparse.Namespace):
    """Merge config file/environment with command-line overrides."""
    from viz_relay.config import RelayConfig

    config = RelayConfig.load(args.config) if args.config else RelayConfig.from_env()

    if args.host is not None:
        config.host = args.host
    if args.http_port is not None:
        config.http_port = args.http_port
    if args.ws_port is not None:
        config.ws_port = args.ws_port
    if args.metrics_port is not None:
        config.metrics_port = args.metrics_port
    if args.status_interval is not None:
        config.status_interval = args.status_interval
    if args.static_dir is not None:
        config.static_dir = args.static_dir
    if args.pause_on_admin_loss:
        config.pause_on_admin_loss = True
    if args.no_metrics:
        config.metrics_port = None
    if args.no_http:
        config.http_port = 0
    return config


def relay_server(argv=None):
    """
    Relay server mode.

    Serves the visualizer and admin pages and relays audio events
    between the admin console and every visualizer.
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    from viz_relay.server import RelayServer

    server = RelayServer(resolve_config(args))

    def signal_handler(sig, frame):
        server.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    async def _run_relay_server():
        try:
            await server.run()
        finally:
            await server.cleanup()

    try:
        asyncio.run(_run_relay_server())
    except KeyboardInterrupt:
        pass

    return 0


if __name__ == "__main__":
    sys.exit(relay_server())
