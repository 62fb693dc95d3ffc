"""
Core records and messages of the relay.

Tracks are created once when the catalog is loaded and never change. The
messages in this module are exchanged as JSON on the control websocket and
returned by the status endpoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import ClientMessage, PlaybackStateType, RelayCommand, ServerMessage

DEFAULT_BITRATE = 128_000
"""Bitrate in bits per second used when a track cannot be probed."""


@dataclass(frozen=True)
class Track(DataClassORJSONMixin):
    """A playable audio file and the bitrate it is paced at."""

    path: str
    """Location of the file, relative to the working directory of the relay."""
    bitrate: int = DEFAULT_BITRATE
    """Bitrate in bits per second."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.bitrate <= 0:
            raise ValueError(f"bitrate must be positive, got {self.bitrate}")

    @property
    def byte_rate(self) -> float:
        """Bytes per second of real-time playback."""
        return self.bitrate / 8


# Client -> Server: client/command
@dataclass
class ClientCommandPayload(DataClassORJSONMixin):
    """Command sent by a listener."""

    command: RelayCommand
    """The playback command to execute."""


@dataclass
class ClientCommandMessage(ClientMessage):
    """Message sent by a listener to control playback."""

    payload: ClientCommandPayload
    type: Literal["client/command"] = "client/command"


# Server -> Client: server/status
@dataclass
class StatusPayload(DataClassORJSONMixin):
    """Snapshot of the broadcast."""

    state: PlaybackStateType
    """State of the playback controller."""
    listeners: int
    """Number of connected stream listeners."""
    playlist_size: int
    """Number of tracks in the playlist."""
    track: Track | None = None
    """Track currently open, None while idle."""
    position: int | None = None
    """Playlist index of the current track, None while idle."""

    class Config(BaseConfig):
        """Config for serializing json messages."""

        omit_none = True


@dataclass
class ServerStatusMessage(ServerMessage):
    """Message sent by the relay whenever the broadcast changes."""

    payload: StatusPayload
    type: Literal["server/status"] = "server/status"
