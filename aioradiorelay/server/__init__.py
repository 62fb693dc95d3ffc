"""Broadcast engine and HTTP server of the relay."""

from .catalog import TrackCatalog, probe_bitrate
from .controller import PlaybackController, Session
from .events import (
    ClientAddedEvent,
    ClientRemovedEvent,
    HubEvent,
    PlaybackEvent,
    PlaybackStateChangedEvent,
    TrackErrorEvent,
    TrackStartedEvent,
)
from .hub import BroadcastHub, ClientSink
from .pacer import ByteSource, FileSource, Pacer
from .server import RadioServer

__all__ = [
    "BroadcastHub",
    "ByteSource",
    "ClientAddedEvent",
    "ClientRemovedEvent",
    "ClientSink",
    "FileSource",
    "HubEvent",
    "Pacer",
    "PlaybackController",
    "PlaybackEvent",
    "PlaybackStateChangedEvent",
    "RadioServer",
    "Session",
    "TrackCatalog",
    "TrackErrorEvent",
    "TrackStartedEvent",
    "probe_bitrate",
]
