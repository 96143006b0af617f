"""
Health and metrics HTTP endpoint for relay monitoring.

Provides lightweight HTTP endpoints for production monitoring:
- GET /health - JSON health check
- GET /metrics - Prometheus-compatible text format metrics
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from viz_relay.server import RelayServer

logger = logging.getLogger(__name__)


async def handle_http_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    server: "RelayServer",
) -> None:
    """Handle a single HTTP request."""
    try:
        request_line = await reader.readline()
        if not request_line:
            return

        parts = request_line.decode("utf-8").strip().split()
        if len(parts) < 2:
            return

        method, path = parts[0], parts[1]

        # Read and discard headers
        while True:
            line = await reader.readline()
            if not line or line == b"\r\n":
                break

        if method == "GET" and path == "/health":
            _write_response(writer, "application/json", json.dumps(server.get_health_stats(), indent=2))
        elif method == "GET" and path == "/metrics":
            _write_response(writer, "text/plain; version=0.0.4", render_metrics(server))
        else:
            _write_response(writer, "text/plain", "Not Found", status="404 Not Found")

    except Exception as e:
        logger.error(f"Error handling metrics request: {e}")
    finally:
        try:
            await writer.drain()
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


def _write_response(
    writer: asyncio.StreamWriter, content_type: str, body: str, status: str = "200 OK"
) -> None:
    payload = body.encode("utf-8")
    head = (
        f"HTTP/1.1 {status}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "\r\n"
    )
    writer.write(head.encode("utf-8") + payload)


def render_metrics(server: "RelayServer") -> str:
    """Render relay counters in Prometheus text format."""
    stats = server.get_health_stats()
    state = server.state

    # Format: metric_name{label="value"} value
    lines = [
        "# HELP vizrelay_uptime_seconds Server uptime in seconds",
        "# TYPE vizrelay_uptime_seconds gauge",
        f"vizrelay_uptime_seconds {stats['uptime_seconds']:.2f}",
        "",
        "# HELP vizrelay_connections Number of currently registered connections",
        "# TYPE vizrelay_connections gauge",
        f"vizrelay_connections {stats['connections']}",
        "",
        "# HELP vizrelay_visualizers Number of connections announced as visualizers",
        "# TYPE vizrelay_visualizers gauge",
        f"vizrelay_visualizers {stats['visualizers']}",
        "",
        "# HELP vizrelay_admin_connected Whether an admin console holds the admin slot",
        "# TYPE vizrelay_admin_connected gauge",
        f"vizrelay_admin_connected {int(stats['admin_connected'])}",
        "",
        "# HELP vizrelay_playing Whether playback is active",
        "# TYPE vizrelay_playing gauge",
        f"vizrelay_playing {int(stats['is_playing'])}",
        "",
        "# HELP vizrelay_connects_total Total connections since start",
        "# TYPE vizrelay_connects_total counter",
        f"vizrelay_connects_total {state.connects}",
        "",
        "# HELP vizrelay_disconnects_total Total disconnections since start",
        "# TYPE vizrelay_disconnects_total counter",
        f"vizrelay_disconnects_total {state.disconnects}",
        "",
        "# HELP vizrelay_messages_relayed_total Total inbound messages fanned out",
        "# TYPE vizrelay_messages_relayed_total counter",
        f"vizrelay_messages_relayed_total {state.messages_relayed}",
        "",
        "# HELP vizrelay_metrics_routed_total Performance reports delivered to the admin",
        "# TYPE vizrelay_metrics_routed_total counter",
        f"vizrelay_metrics_routed_total {state.metrics_routed}",
        "",
        "# HELP vizrelay_metrics_dropped_total Performance reports dropped with no admin",
        "# TYPE vizrelay_metrics_dropped_total counter",
        f"vizrelay_metrics_dropped_total {state.metrics_dropped}",
        "",
        "# HELP vizrelay_send_failures_total Outbound sends that failed or timed out",
        "# TYPE vizrelay_send_failures_total counter",
        f"vizrelay_send_failures_total {server._send_failures}",
        "",
    ]
    return "\n".join(lines)


async def start_metrics_server(
    server: "RelayServer",
    port: int,
    host: str = "0.0.0.0",
) -> asyncio.Server:
    """Start the metrics HTTP server.

    Args:
        server: RelayServer instance to expose metrics for
        port: Port to listen on (0 picks a free port)
        host: Host to bind to (default: 0.0.0.0)

    Returns:
        asyncio.Server instance
    """

    async def client_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        await handle_http_request(reader, writer, server)

    metrics_server = await asyncio.start_server(client_handler, host, port)
    logger.info(f"Metrics server: http://localhost:{port}/health, /metrics")
    return metrics_server
