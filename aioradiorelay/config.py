"""Configuration of the relay process."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .server.catalog import DEFAULT_EXTENSIONS
from .server.hub import MAX_PENDING_CHUNKS
from .server.pacer import DEFAULT_CHUNK_DURATION_S
from .server.server import DEFAULT_PORT

_LOGGER = logging.getLogger(__name__)


@dataclass
class RelayConfig(DataClassORJSONMixin):
    """Settings of a relay instance."""

    music_dir: str = "tracks"
    """Directory holding the catalog."""
    host: str = "0.0.0.0"
    """Address the HTTP server binds to."""
    port: int = DEFAULT_PORT
    """Port the HTTP server binds to."""
    extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    """File extensions treated as playable."""
    chunk_duration: float = DEFAULT_CHUNK_DURATION_S
    """Playback seconds per broadcast chunk."""
    max_pending_chunks: int = MAX_PENDING_CHUNKS
    """Chunks a listener may lag behind before it is dropped."""
    advertise: bool = False
    """Advertise the stream via mDNS."""
    name: str = "aioradiorelay"
    """Service name used for mDNS advertisement."""
    log_file: str | None = None
    """Optional file receiving a copy of the log."""
    debug: bool = False
    """Enable debug logging."""

    class Config(BaseConfig):
        """Config for parsing json files."""

        forbid_extra_keys = True

    def __post_init__(self) -> None:
        """Validate field values."""
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be in range 0..65535, got {self.port}")
        if self.chunk_duration <= 0:
            raise ValueError(f"chunk_duration must be positive, got {self.chunk_duration}")
        if self.max_pending_chunks <= 0:
            raise ValueError(
                f"max_pending_chunks must be positive, got {self.max_pending_chunks}"
            )
        if not self.extensions:
            raise ValueError("extensions cannot be empty")

    @classmethod
    def load(cls, path: str | Path) -> RelayConfig:
        """Load a configuration from a JSON file."""
        config = cls.from_json(Path(path).read_text(encoding="utf-8"))
        _LOGGER.debug("Loaded configuration from %s", path)
        return config
