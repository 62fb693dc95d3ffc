"""Models for enum types used by the relay."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


# Base message classes
@dataclass
class ClientMessage(DataClassORJSONMixin):
    """Base class for messages sent by listeners over the control websocket."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for messages sent by the relay."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


# Enums


class PlaybackStateType(Enum):
    """Enum for the states of the playback controller."""

    IDLE = "idle"
    """No track has been opened yet."""
    LOADING = "loading"
    """A track was selected and its source is being opened."""
    PLAYING = "playing"
    """Chunks are flowing to the listeners."""
    PAUSED = "paused"
    """A track is open but the pacer is stopped."""


class RelayCommand(Enum):
    """Commands accepted by the playback controller."""

    PLAY = "play"
    PAUSE = "pause"
    RESUME = "resume"
    SKIP = "skip"
