"""
Static HTTP server for the two entry pages.

    /        -> index.html  (visualizer)
    /admin   -> admin.html  (admin console)
    /config  -> JSON with the relay WebSocket port

Everything else is served from the static directory.
"""

import http.server
import json
import logging
import socketserver
import threading
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

ENTRY_PAGES = {
    "/": "index.html",
    "/admin": "admin.html",
}


def _make_static_handler(directory: str, ws_port: Optional[int] = None):
    """Create a handler class bound to ``directory`` to avoid shared mutable state."""

    class _Handler(http.server.SimpleHTTPRequestHandler):
        """HTTP handler for the entry pages and static assets."""

        def __init__(self, *args, **kwargs):
            super().__init__(*args, directory=directory, **kwargs)

        def do_GET(self):
            path = self.path.split("?", 1)[0].split("#", 1)[0]
            if path == "/config":
                body = json.dumps({"wsPort": ws_port}).encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
                return
            super().do_GET()

        def translate_path(self, path):
            clean = path.split("?", 1)[0].split("#", 1)[0]
            if clean != "/":
                clean = clean.rstrip("/")
            page = ENTRY_PAGES.get(clean)
            if page is not None:
                return super().translate_path(f"/{page}")
            return super().translate_path(path)

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

    return _Handler


class ReusableTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    # Allow port reuse so restarts don't fail with "Address already in use"
    allow_reuse_address = True
    daemon_threads = True


def start_http_server(
    port: int,
    directory: str,
    host: str = "0.0.0.0",
    ws_port: Optional[int] = None,
) -> Tuple[ReusableTCPServer, threading.Thread]:
    """Serve the entry pages from a daemon thread.

    Returns:
        The server (call ``shutdown()`` to stop it) and its thread.
    """
    handler_cls = _make_static_handler(directory, ws_port)
    httpd = ReusableTCPServer((host, port), handler_cls)
    thread = threading.Thread(target=httpd.serve_forever, name="viz-relay-http", daemon=True)
    thread.start()
    return httpd, thread
