"""
Relay Server - forwards analyser output from the admin console to visualizers.

Accepts WebSocket connections from browser clients, tracks their roles,
fans audio frames and transport controls out to every other client and
publishes connection status.

Usage:
    python -m viz_relay.server

Architecture:
    Admin console ──> Relay ──┬──> Visualizer 1
         ^                    ├──> Visualizer 2
         └── client:metrics ──┴──> ...
"""

import asyncio
import json
import logging
import threading
import time
from typing import Dict, Iterable, Optional

import websockets
from websockets.asyncio.server import serve as ws_serve

from viz_relay.config import RelayConfig
from viz_relay.messages import MessageError, decode_message, encode_message
from viz_relay.state import Delivery, RelayState
from viz_relay.static_server import start_http_server

logger = logging.getLogger("viz_relay")


class RelayServer:
    """
    WebSocket transport around a ``RelayState``.

    Responsibilities:
    - Accept client WebSocket connections
    - Feed inbound events to the relay state
    - Deliver the resulting messages
    - Publish status on a fixed interval
    - Serve the entry pages and the metrics endpoint
    """

    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()
        self.state = RelayState(pause_on_admin_loss=self.config.pause_on_admin_loss)

        # connection_id -> websocket
        self._sockets: Dict[str, object] = {}

        self._running = False
        self._status_task: Optional[asyncio.Task] = None
        self._httpd = None
        self._http_thread: Optional[threading.Thread] = None

        # Metrics tracking
        self._start_time = time.time()
        self._send_failures = 0

    async def _handle_client(self, websocket):
        """Handle one client connection from accept to close."""
        connection_id = str(websocket.id)
        try:
            self._sockets[connection_id] = websocket
            await self._dispatch(self.state.register(connection_id))

            async for message in websocket:
                try:
                    event, payload = decode_message(message)
                    await self._dispatch(self.state.handle(connection_id, event, payload))
                except (json.JSONDecodeError, MessageError) as e:
                    logger.debug(f"Invalid message from {connection_id}: {e}")
                except Exception as e:
                    logger.error(f"Error handling message from {connection_id}: {e}")
                    # Don't close connection on error, just log and continue

        except websockets.exceptions.ConnectionClosed:
            pass
        except Exception as e:
            logger.error(f"Socket error on {connection_id}: {e}")
        finally:
            self._sockets.pop(connection_id, None)
            await self._dispatch(self.state.unregister(connection_id))

    async def _dispatch(self, deliveries: Iterable[Delivery]):
        """Send deliveries concurrently. One slow or dead receiver never blocks the rest."""
        encoded = {}
        sends = []
        for delivery in deliveries:
            websocket = self._sockets.get(delivery.target)
            if websocket is None:
                continue
            key = (delivery.event, id(delivery.payload))
            if key not in encoded:
                encoded[key] = encode_message(delivery.event, delivery.payload)
            sends.append(self._send_with_timeout(websocket, encoded[key], delivery.target))

        if sends:
            await asyncio.gather(*sends)

    async def _send_with_timeout(self, websocket, message, target: str):
        """Send a message with a timeout. Failures are counted, not raised."""
        try:
            await asyncio.wait_for(websocket.send(message), timeout=self.config.send_timeout)
        except (asyncio.TimeoutError, websockets.exceptions.ConnectionClosed) as e:
            self._send_failures += 1
            logger.debug(f"Send to {target} failed: {e!r}")
        except Exception as e:
            self._send_failures += 1
            logger.warning(f"Unexpected send error to {target}: {e!r}")

    async def _status_loop(self):
        """Publish the connection snapshot every ``status_interval`` seconds."""
        while self._running:
            try:
                await asyncio.sleep(self.config.status_interval)
                await self._dispatch(self.state.publish_status())
            except asyncio.CancelledError:
                logger.debug("[STATUS] Status loop cancelled")
                break
            except Exception as e:
                logger.error(f"[STATUS] Loop error: {e}")

    def get_health_stats(self) -> dict:
        """Summary used by the /health endpoint."""
        state = self.state
        snapshot = state.snapshot()
        return {
            "status": "ok",
            "uptime_seconds": round(time.time() - self._start_time, 2),
            "connections": len(state.connections),
            "visualizers": snapshot.connected_clients,
            "admin_connected": snapshot.admin_connected,
            "is_playing": state.audio.is_playing,
            "audio_id": state.audio.audio_id,
        }

    async def run(self):
        """Start the relay and block until ``stop()`` is called."""
        config = self.config
        self._running = True

        if config.http_port:
            try:
                self._httpd, self._http_thread = start_http_server(
                    config.http_port, config.static_dir, config.host, ws_port=config.ws_port
                )
                logger.info(f"Main Visualizer: http://localhost:{config.http_port}/")
                logger.info(f"Admin Console: http://localhost:{config.http_port}/admin")
            except OSError as e:
                logger.error(f"HTTP server failed to start on port {config.http_port}: {e}")
                logger.error("Another instance may be running. Kill it or use a different port.")

        relay_server = await ws_serve(
            self._handle_client,
            config.host,
            config.ws_port,
            max_size=config.max_message_size,
        )
        logger.info(f"Relay WebSocket: ws://localhost:{config.ws_port}")

        metrics_server = None
        if config.metrics_port is not None:
            from viz_relay.metrics import start_metrics_server

            metrics_server = await start_metrics_server(self, config.metrics_port, config.host)

        self._status_task = asyncio.create_task(self._status_loop())
        logger.info("Relay ready. Waiting for clients...")

        try:
            while self._running:
                await asyncio.sleep(0.1)
        finally:
            if self._status_task:
                self._status_task.cancel()
                try:
                    await self._status_task
                except asyncio.CancelledError:
                    pass
            relay_server.close()
            if metrics_server:
                metrics_server.close()
                await metrics_server.wait_closed()
            await relay_server.wait_closed()

    def stop(self):
        """Stop the server."""
        self._running = False

    async def cleanup(self):
        """Clean up resources."""
        if self._status_task and not self._status_task.done():
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass

        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None


if __name__ == "__main__":
    from viz_relay.cli import relay_server

    raise SystemExit(relay_server())
