"""Exceptions raised by the broadcast engine."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay errors."""


class CatalogError(RelayError):
    """The track catalog could not be read."""


class ProbeError(RelayError):
    """The bitrate of a track could not be determined."""


class SourceError(RelayError):
    """A track could not be opened or read."""


class SinkWriteError(RelayError):
    """A listener sink did not accept a chunk."""
