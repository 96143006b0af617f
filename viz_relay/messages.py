"""
Relay wire protocol.

Every text frame is a JSON envelope ``{"type": <event>, "data": <payload>}``.
Binary frames are raw ``audio:stream`` chunks.

Inbound payloads are parsed into tagged event variants with explicit
defaults so that a missing field always means the same thing. Parsing never
rejects a message: the relay forwards the original payload untouched, the
variants only drive the relay's own bookkeeping.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Union

# Inbound (client -> relay)
CLIENT_READY = "client:ready"
AUDIO_PLAY = "audio:play"
AUDIO_PAUSE = "audio:pause"
AUDIO_DATA = "audio:data"
AUDIO_STREAM = "audio:stream"
PERFORMANCE_METRICS = "performance:metrics"

# Outbound (relay -> client)
SERVER_STATUS = "server:status"
CLIENT_METRICS = "client:metrics"

# Events fanned out to every connection except the sender
RELAYED_EVENTS = frozenset({AUDIO_DATA, AUDIO_STREAM, AUDIO_PLAY, AUDIO_PAUSE})


class MessageError(ValueError):
    """Raised when a text frame is valid JSON but not a relay envelope."""


def _number(val, default):
    """Return val if it is a finite number, otherwise default."""
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return default
    if not math.isfinite(val):
        return default
    return val


def _int(val, default: Optional[int] = None) -> Optional[int]:
    val = _number(val, None)
    return default if val is None else int(val)


def _str(val, default: Optional[str] = None) -> Optional[str]:
    return val if isinstance(val, str) else default


def _list(val) -> list:
    return val if isinstance(val, list) else []


def _fields(payload: Any) -> dict:
    return payload if isinstance(payload, dict) else {}


@dataclass(frozen=True)
class InboundEvent:
    """Base class for parsed inbound events.

    ``raw`` is the payload exactly as it arrived, which may be None, a
    non-object JSON value or binary data. It is what gets forwarded.
    """

    event: ClassVar[str] = ""

    raw: Any = field(default=None, repr=False)


@dataclass(frozen=True)
class ClientReady(InboundEvent):
    """Role announcement. A missing ``type`` means a visualization client."""

    event: ClassVar[str] = CLIENT_READY

    client_id: Optional[str] = None
    type: str = "visualization"
    timestamp: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ClientReady":
        data = _fields(payload)
        return cls(
            raw=payload,
            client_id=_str(data.get("clientId")),
            type=_str(data.get("type")) or "visualization",
            timestamp=_int(data.get("timestamp")),
        )


@dataclass(frozen=True)
class AudioPlay(InboundEvent):
    """Play control. ``audio_id`` and ``timestamp`` are opaque and kept as sent."""

    event: ClassVar[str] = AUDIO_PLAY

    audio_id: Any = None
    timestamp: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> "AudioPlay":
        data = _fields(payload)
        return cls(raw=payload, audio_id=data.get("audioId"), timestamp=data.get("timestamp"))


@dataclass(frozen=True)
class AudioPause(InboundEvent):
    event: ClassVar[str] = AUDIO_PAUSE

    timestamp: Optional[int] = None
    position: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any) -> "AudioPause":
        data = _fields(payload)
        return cls(
            raw=payload,
            timestamp=_int(data.get("timestamp")),
            position=float(_number(data.get("position"), 0.0)),
        )


@dataclass(frozen=True)
class AudioData(InboundEvent):
    """One analyser frame. ``amplitude`` defaults to 0.0.

    The sample arrays are referenced, not copied or checked element by
    element; receivers get them as the sender wrote them.
    """

    event: ClassVar[str] = AUDIO_DATA

    frequency_data: list = field(default_factory=list)
    waveform_data: list = field(default_factory=list)
    amplitude: float = 0.0
    bands: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "AudioData":
        data = _fields(payload)
        bands = data.get("bands")
        return cls(
            raw=payload,
            frequency_data=_list(data.get("frequencyData")),
            waveform_data=_list(data.get("waveformData")),
            amplitude=float(_number(data.get("amplitude"), 0.0)),
            bands=bands if isinstance(bands, dict) else {},
            timestamp=_int(data.get("timestamp")),
        )


@dataclass(frozen=True)
class AudioStream(InboundEvent):
    """Raw audio chunk, either a JSON payload or a binary frame."""

    event: ClassVar[str] = AUDIO_STREAM

    chunk: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> "AudioStream":
        if isinstance(payload, (bytes, bytearray)):
            return cls(raw=payload, chunk=payload)
        return cls(raw=payload, chunk=_fields(payload).get("chunk"))


@dataclass(frozen=True)
class PerformanceMetrics(InboundEvent):
    event: ClassVar[str] = PERFORMANCE_METRICS

    client_id: Optional[str] = None
    fps: float = 0.0
    latency: float = 0.0
    memory_usage: Any = None
    timestamp: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "PerformanceMetrics":
        data = _fields(payload)
        return cls(
            raw=payload,
            client_id=_str(data.get("clientId")),
            fps=float(_number(data.get("fps"), 0.0)),
            latency=float(_number(data.get("latency"), 0.0)),
            memory_usage=data.get("memoryUsage"),
            timestamp=_int(data.get("timestamp")),
        )


_VARIANTS = {
    variant.event: variant
    for variant in (ClientReady, AudioPlay, AudioPause, AudioData, AudioStream, PerformanceMetrics)
}


def parse_event(event: str, payload: Any) -> Optional[InboundEvent]:
    """Parse an inbound payload into its tagged variant.

    Returns None for event names the relay does not know. A payload that is
    not a JSON object yields the variant's defaults.
    """
    variant = _VARIANTS.get(event)
    if variant is None:
        return None
    return variant.from_payload(payload)


def decode_message(message: Union[str, bytes]) -> tuple:
    """Decode a frame into ``(event, payload)``.

    Binary frames decode to ``(AUDIO_STREAM, bytes)``. Text frames must be a
    JSON object with a string ``type``; a missing ``data`` decodes as None.

    Raises:
        json.JSONDecodeError: text frame is not JSON
        MessageError: JSON is not a relay envelope
    """
    if isinstance(message, (bytes, bytearray, memoryview)):
        return AUDIO_STREAM, bytes(message)

    envelope = json.loads(message)
    if not isinstance(envelope, dict):
        raise MessageError("Envelope must be a JSON object")
    event = envelope.get("type")
    if not isinstance(event, str) or not event:
        raise MessageError("Envelope is missing a string 'type'")
    return event, envelope.get("data")


def encode_message(event: str, payload: Any) -> Union[str, bytes]:
    """Encode an outbound event. Bytes payloads are sent as binary frames."""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return json.dumps({"type": event, "data": payload})
