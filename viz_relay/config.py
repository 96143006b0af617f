"""
Relay Configuration - Centralized configuration management.

Provides:
- Type-safe configuration dataclass
- Loading from environment variables
- Loading/saving from JSON
"""

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

STATIC_DIR = Path(__file__).parent / "static"

_TRUTHY = ("1", "true", "yes", "on")


@dataclass
class RelayConfig:
    """Relay server configuration."""

    host: str = "0.0.0.0"

    # Static entry pages (/ and /admin)
    http_port: int = 8888
    static_dir: str = str(STATIC_DIR)

    # WebSocket relay
    ws_port: int = 8889
    max_message_size: int = 1_048_576  # audio:data frames carry full FFT arrays
    send_timeout: float = 0.5  # Per-receiver send timeout during fan-out

    # Health/metrics endpoint (None = disabled)
    metrics_port: Optional[int] = 8890

    # Status publisher period in seconds
    status_interval: float = 5.0

    # Broadcast a synthetic audio:pause when the admin drops mid-playback
    pause_on_admin_loss: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RelayConfig":
        """Create from dictionary."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Load configuration from environment variables."""
        metrics_port = os.environ.get("METRICS_PORT", "8890")
        return cls(
            host=os.environ.get("HOST", "0.0.0.0"),
            http_port=int(os.environ.get("PORT", "8888")),
            static_dir=os.environ.get("STATIC_DIR", str(STATIC_DIR)),
            ws_port=int(os.environ.get("WS_PORT", "8889")),
            metrics_port=int(metrics_port) if metrics_port else None,
            status_interval=float(os.environ.get("STATUS_INTERVAL", "5.0")),
            pause_on_admin_loss=os.environ.get("PAUSE_ON_ADMIN_LOSS", "").lower() in _TRUTHY,
        )

    def save(self, path: Path) -> None:
        """Save configuration to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "RelayConfig":
        """Load configuration from JSON file, falling back to the environment."""
        if not path.exists():
            return cls.from_env()

        with open(path) as f:
            data = json.load(f)

        config = cls.from_env()
        for key, value in data.items():
            if key in cls.__dataclass_fields__:
                setattr(config, key, value)
        return config


# Default config file location
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "viz-relay" / "config.json"


def load_config(path: Optional[Path] = None) -> RelayConfig:
    """Load configuration from file or return environment defaults."""
    if path is None:
        path = DEFAULT_CONFIG_PATH
    return RelayConfig.load(path)


def save_config(config: RelayConfig, path: Optional[Path] = None) -> None:
    """Save configuration to file."""
    if path is None:
        path = DEFAULT_CONFIG_PATH
    config.save(path)
