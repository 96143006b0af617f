"""
Viz Relay - real-time relay for browser audio visualizers.

Forwards analyser output from a single admin console to any number of
visualizer clients, keeps late joiners in sync with playback state and
publishes connection status.
"""

from .client import RelayClient
from .config import RelayConfig, load_config, save_config
from .server import RelayServer
from .state import (
    AudioTransportState,
    ClientRole,
    Connection,
    ConnectionSnapshot,
    Delivery,
    RelayState,
)

__all__ = [
    "RelayServer",
    "RelayState",
    "RelayClient",
    "RelayConfig",
    "ClientRole",
    "Connection",
    "ConnectionSnapshot",
    "AudioTransportState",
    "Delivery",
    "load_config",
    "save_config",
]
