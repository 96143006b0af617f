"""
Relay state - connection registry, admin slot and audio transport cache.

All methods are synchronous and never await, so each inbound event is applied
to the state atomically with respect to the asyncio event loop. Methods that
produce traffic return a list of ``Delivery`` objects; sending them is the
transport's job (see ``viz_relay.server``).
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from viz_relay.messages import (
    AUDIO_PAUSE,
    AUDIO_PLAY,
    CLIENT_METRICS,
    RELAYED_EVENTS,
    SERVER_STATUS,
    AudioPause,
    AudioPlay,
    ClientReady,
    InboundEvent,
    PerformanceMetrics,
    parse_event,
)

logger = logging.getLogger(__name__)


class ClientRole(str, Enum):
    """Declared client role. Values are the strings used on the wire."""

    UNKNOWN = "unknown"
    ADMIN = "admin"
    VISUALIZER = "visualization"

    @classmethod
    def from_wire(cls, value: Optional[str]) -> "ClientRole":
        """Map an announced ``type``; a missing value means a visualizer."""
        if value is None:
            return cls.VISUALIZER
        try:
            return cls(value)
        except ValueError:
            logger.warning(f"Unrecognised client type {value!r}, keeping role unknown")
            return cls.UNKNOWN


@dataclass
class Connection:
    """One live transport session."""

    connection_id: str
    role: ClientRole = ClientRole.UNKNOWN
    client_id: Optional[str] = None  # Client-supplied, for log correlation only
    joined_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "role": self.role.value,
            "client_id": self.client_id,
            "joined_at": self.joined_at,
        }


@dataclass
class AudioTransportState:
    """Last observed play/pause state, replayed to late joiners."""

    is_playing: bool = False
    audio_id: Any = None
    timestamp: Any = None

    def to_payload(self) -> dict:
        return {
            "isPlaying": self.is_playing,
            "audioId": self.audio_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ConnectionSnapshot:
    """Aggregate status pushed to every client. Derived, never stored."""

    connected_clients: int
    admin_connected: bool
    server_time: int

    def to_payload(self) -> dict:
        return {
            "connectedClients": self.connected_clients,
            "adminConnected": self.admin_connected,
            "serverTime": self.server_time,
        }


@dataclass(frozen=True)
class Delivery:
    """A single outbound message addressed to one connection."""

    target: str
    event: str
    payload: Any


class RelayState:
    """
    Single owner of all relay state.

    Holds the connection registry, the admin slot and the audio transport
    cache, and turns inbound events into outbound deliveries.
    """

    def __init__(
        self,
        pause_on_admin_loss: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.pause_on_admin_loss = pause_on_admin_loss
        self._clock = clock

        self.connections: Dict[str, Connection] = {}
        self.admin_id: Optional[str] = None
        self.audio = AudioTransportState()

        # Counters for the metrics endpoint
        self.connects = 0
        self.disconnects = 0
        self.messages_relayed = 0
        self.metrics_routed = 0
        self.metrics_dropped = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Connection registry
    # ------------------------------------------------------------------

    def register(self, connection_id: str) -> List[Delivery]:
        """Add a new connection with role unknown and publish status."""
        if connection_id in self.connections:
            logger.warning(f"Connection {connection_id} already registered")
            return []

        self.connections[connection_id] = Connection(
            connection_id=connection_id, joined_at=self._clock()
        )
        self.connects += 1
        logger.info(f"Client connected: {connection_id} (total: {len(self.connections)})")
        return self.publish_status()

    def update_role(
        self, connection_id: str, role: ClientRole, client_id: Optional[str] = None
    ) -> bool:
        """Set a connection's role and declared id.

        Announcing as admin takes the admin slot from any previous holder.
        Moving away from admin does not release the slot; only closing the
        connection does. Returns False if the connection is not registered.
        """
        conn = self.connections.get(connection_id)
        if conn is None:
            logger.warning(f"Role update for unregistered connection {connection_id}")
            return False

        conn.role = role
        conn.client_id = client_id

        if role is ClientRole.ADMIN and self.admin_id != connection_id:
            if self.admin_id is not None:
                logger.info(f"Admin slot taken over: {self.admin_id} -> {connection_id}")
            else:
                logger.info(f"Admin console connected: {connection_id}")
            self.admin_id = connection_id
        return True

    def unregister(self, connection_id: str) -> List[Delivery]:
        """Remove a connection, release the admin slot if held, publish status."""
        if self.connections.pop(connection_id, None) is None:
            return []

        self.disconnects += 1
        logger.info(f"Client disconnected: {connection_id} (total: {len(self.connections)})")

        deliveries: List[Delivery] = []
        if self.admin_id == connection_id:
            self.admin_id = None
            was_playing = self.audio.is_playing
            self.audio.is_playing = False
            logger.info("Admin console disconnected")

            if was_playing and self.pause_on_admin_loss:
                pause = {"timestamp": self._now_ms(), "reason": "admin-disconnected"}
                deliveries.extend(
                    Delivery(cid, AUDIO_PAUSE, pause) for cid in self.connections
                )

        deliveries.extend(self.publish_status())
        return deliveries

    def snapshot(self) -> ConnectionSnapshot:
        """Count visualizers and report admin presence."""
        visualizers = sum(
            1 for conn in self.connections.values() if conn.role is ClientRole.VISUALIZER
        )
        return ConnectionSnapshot(
            connected_clients=visualizers,
            admin_connected=self.admin_id is not None,
            server_time=self._now_ms(),
        )

    def publish_status(self) -> List[Delivery]:
        """Address the current snapshot to every registered connection."""
        payload = self.snapshot().to_payload()
        return [Delivery(cid, SERVER_STATUS, payload) for cid in self.connections]

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle(self, sender: str, event: str, payload: Any) -> List[Delivery]:
        """Dispatch one inbound event from ``sender``."""
        message = parse_event(event, payload)
        if message is None:
            logger.debug(f"Ignoring unknown event {event!r} from {sender}")
            return []

        if isinstance(message, ClientReady):
            return self.announce(sender, message)
        if isinstance(message, PerformanceMetrics):
            return self.route_metrics(sender, message)
        return self.relay(sender, message)

    def announce(self, sender: str, ready: ClientReady) -> List[Delivery]:
        """Apply a role announcement, resync a late joiner, publish status."""
        role = ClientRole.from_wire(ready.type)
        if not self.update_role(sender, role, ready.client_id):
            return []
        logger.info(
            f"Client ready: {sender} as {role.value} "
            f"(client_id={ready.client_id}, sent_at={ready.timestamp})"
        )

        deliveries: List[Delivery] = []
        if self.audio.is_playing:
            deliveries.append(Delivery(sender, AUDIO_PLAY, self.audio.to_payload()))
        deliveries.extend(self.publish_status())
        return deliveries

    def relay(self, sender: str, message: InboundEvent) -> List[Delivery]:
        """Fan the original payload out to every connection except the sender."""
        event = message.event
        if sender not in self.connections:
            logger.warning(f"Dropping {event} from unregistered connection {sender}")
            return []

        if event not in RELAYED_EVENTS:
            logger.debug(f"Refusing to relay {event!r} from {sender}")
            return []

        if isinstance(message, AudioPlay):
            self.audio = AudioTransportState(
                is_playing=True, audio_id=message.audio_id, timestamp=message.timestamp
            )
            logger.info(f"Audio play from {sender}: {message.audio_id} @ {message.timestamp}")
        elif isinstance(message, AudioPause):
            self.audio.is_playing = False
            logger.info(f"Audio pause from {sender} @ {message.timestamp} (position {message.position})")

        payload = message.raw
        deliveries = [Delivery(cid, event, payload) for cid in self.connections if cid != sender]
        self.messages_relayed += 1
        return deliveries

    def route_metrics(self, sender: str, metrics: PerformanceMetrics) -> List[Delivery]:
        """Send a client's performance metrics to the admin only."""
        if self.admin_id is None or self.admin_id == sender:
            self.metrics_dropped += 1
            return []

        logger.debug(
            f"Performance metrics from {sender} ({metrics.client_id}): "
            f"fps={metrics.fps} latency={metrics.latency}"
        )
        self.metrics_routed += 1
        fields = metrics.raw if isinstance(metrics.raw, dict) else {}
        return [Delivery(self.admin_id, CLIENT_METRICS, {**fields, "socketId": sender})]
