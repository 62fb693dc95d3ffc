"""Models for the relay: tracks, playback states and websocket messages."""

from __future__ import annotations

__all__ = [
    "DEFAULT_BITRATE",
    "ClientCommandMessage",
    "ClientCommandPayload",
    "ClientMessage",
    "PlaybackStateType",
    "RelayCommand",
    "ServerMessage",
    "ServerStatusMessage",
    "StatusPayload",
    "Track",
    "core",
    "types",
]

from . import core, types
from .core import (
    DEFAULT_BITRATE,
    ClientCommandMessage,
    ClientCommandPayload,
    ServerStatusMessage,
    StatusPayload,
    Track,
)
from .types import ClientMessage, PlaybackStateType, RelayCommand, ServerMessage
