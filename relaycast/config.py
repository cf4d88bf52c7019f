"""
Configuration management for relaycast.

Handles:
- Transfer settings (buffer size, compression)
- Broadcast server settings (bind host, port, published URI)
- Cleanup TTL
- Authentication toggle
"""

import json
import os
import tempfile
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional, Any
import logging

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".relaycast"

DEFAULT_BUFFER_SIZE = 65536
DEFAULT_BROADCAST_PORT = 0  # ephemeral

ENV_PREFIX = "RELAYCAST_"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class BroadcastConfig:
    """
    Process-wide broadcast configuration.

    The origin node writes ``server_uri`` once its file server is up;
    workers must be handed a config carrying the same value (and the same
    compression settings, which are not negotiated on the wire).

    Stored at ~/.relaycast/config.json
    """
    # Transfer
    buffer_size: int = DEFAULT_BUFFER_SIZE
    compress: bool = True
    compression_codec: str = "gzip"
    compression_level: int = 6

    # Server
    bind_host: str = "127.0.0.1"
    broadcast_port: int = DEFAULT_BROADCAST_PORT
    server_uri: Optional[str] = None

    # Cleanup (seconds; <= 0 disables the sweeper)
    cleaner_ttl: float = 0.0
    cleaner_period: Optional[float] = None

    # Security
    authenticate: bool = False
    token_ttl: int = 300

    # Paths
    local_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    def copy(self, **changes: Any) -> "BroadcastConfig":
        """Return an independent copy, e.g. to hand to a worker node."""
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "buffer_size": self.buffer_size,
            "compress": self.compress,
            "compression_codec": self.compression_codec,
            "compression_level": self.compression_level,
            "bind_host": self.bind_host,
            "broadcast_port": self.broadcast_port,
            "server_uri": self.server_uri,
            "cleaner_ttl": self.cleaner_ttl,
            "cleaner_period": self.cleaner_period,
            "authenticate": self.authenticate,
            "token_ttl": self.token_ttl,
            "local_dir": str(self.local_dir),
        }

    @classmethod
    def from_dict(cls, data: dict, data_dir: Optional[Path] = None) -> "BroadcastConfig":
        # Filter to only known fields to handle config evolution
        known_fields = {f.name for f in fields(cls)} - {"data_dir"}
        filtered = {k: v for k, v in data.items() if k in known_fields}
        if "local_dir" in filtered:
            filtered["local_dir"] = Path(filtered["local_dir"])
        config = cls(**filtered)
        if data_dir is not None:
            config.data_dir = data_dir
        return config

    def apply_env(self, environ: Optional[dict] = None) -> "BroadcastConfig":
        """Override fields from RELAYCAST_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ

        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue

            current = getattr(self, f.name)
            if isinstance(current, bool):
                value = _parse_bool(raw)
            elif isinstance(current, int):
                value = int(raw)
            elif isinstance(current, float) or f.name == "cleaner_period":
                value = float(raw)
            elif isinstance(current, Path):
                value = Path(raw)
            else:
                value = raw

            setattr(self, f.name, value)
            logger.debug(f"Config override from environment: {f.name}={value!r}")

        return self

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "BroadcastConfig":
        return cls().apply_env(environ)

    def ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def save(self) -> None:
        """Save configuration to disk."""
        self.ensure_data_dir()

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "BroadcastConfig":
        """Load configuration from disk, then apply environment overrides."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        if not config_path.exists():
            return cls(data_dir=data_dir).apply_env()

        with open(config_path, 'r') as f:
            data = json.load(f)

        return cls.from_dict(data, data_dir=data_dir).apply_env()

    @classmethod
    def exists(cls, data_dir: Optional[Path] = None) -> bool:
        """Check if configuration exists."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        return (data_dir / "config.json").exists()


# Global config instance
_config: Optional[BroadcastConfig] = None


def get_config(data_dir: Optional[Path] = None) -> BroadcastConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = BroadcastConfig.load(data_dir)
    return _config


def set_config(config: BroadcastConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
