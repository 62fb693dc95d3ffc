"""Events emitted by the broadcast hub and the playback controller."""

from __future__ import annotations

from dataclasses import dataclass

from aioradiorelay.models import PlaybackStateType, Track


class HubEvent:
    """Base event type used by BroadcastHub.add_event_listener()."""


@dataclass
class ClientAddedEvent(HubEvent):
    """A listener sink was registered."""

    client_id: str


@dataclass
class ClientRemovedEvent(HubEvent):
    """A listener sink was removed."""

    client_id: str


class PlaybackEvent:
    """Base event type used by PlaybackController.add_event_listener()."""


@dataclass
class PlaybackStateChangedEvent(PlaybackEvent):
    """The controller changed state."""

    state: PlaybackStateType
    """The new state."""


@dataclass
class TrackStartedEvent(PlaybackEvent):
    """A new track started streaming."""

    track: Track
    """The track that started."""
    position: int
    """Playlist index of the track."""


@dataclass
class TrackErrorEvent(PlaybackEvent):
    """A track failed to open or read and was skipped."""

    track: Track
    """The failing track."""
    error: Exception
    """The SourceError raised for the track."""
