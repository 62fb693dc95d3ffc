"""Track catalog: enumerate playable files and probe their bitrates."""

from __future__ import annotations

import asyncio
import logging
import os
import types
from collections.abc import Callable, Iterable

from aioradiorelay.errors import CatalogError, ProbeError
from aioradiorelay.models import DEFAULT_BITRATE, Track

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".mp3",)

BitrateProbe = Callable[[str], "int | None"]
"""Callable returning the bitrate of a file in bits per second, or None if unknown."""


def _get_av() -> types.ModuleType:
    """Lazy import of av module to avoid slow startup."""
    import av as _av  # noqa: PLC0415

    return _av


def probe_bitrate(path: str) -> int | None:
    """
    Read the container bitrate of an audio file with PyAV.

    Raises:
        ProbeError: If the file cannot be opened or parsed.
    """
    av = _get_av()
    try:
        with av.open(path) as container:
            bit_rate: int | None = container.bit_rate
    except (OSError, ValueError, av.error.FFmpegError) as err:
        raise ProbeError(f"Unable to probe {path}: {err}") from err
    return bit_rate


def _list_files(directory: str) -> list[str]:
    """Return the names of the regular files in directory, in listing order."""
    with os.scandir(directory) as entries:
        return [entry.name for entry in entries if entry.is_file()]


class TrackCatalog:
    """
    Enumerates the playable tracks of a directory.

    The catalog is loaded once at startup. Tracks keep the order in which the
    filesystem lists them.
    """

    _extensions: frozenset[str]
    """Lower-cased file extensions (with leading dot) that count as playable."""
    _probe: BitrateProbe
    """Bitrate probe used for every playable file."""
    _tracks: list[Track]
    """Tracks found by the last load()."""

    def __init__(
        self,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        probe: BitrateProbe = probe_bitrate,
    ) -> None:
        """
        Initialize the catalog.

        Args:
            extensions: File extensions to accept, e.g. ".mp3". Case is ignored.
            probe: Bitrate probe, defaults to probing with PyAV.
        """
        self._extensions = frozenset(ext.lower() for ext in extensions)
        self._probe = probe
        self._tracks = []

    @property
    def tracks(self) -> list[Track]:
        """Tracks found by the last load()."""
        return list(self._tracks)

    def is_playable(self, filename: str) -> bool:
        """Return True if the file name has one of the accepted extensions."""
        return os.path.splitext(filename)[1].lower() in self._extensions

    async def load(self, directory: str) -> list[Track]:
        """
        Load all playable tracks of a directory.

        Raises:
            CatalogError: If the directory cannot be read.
        """
        try:
            filenames = await asyncio.to_thread(_list_files, directory)
        except OSError as err:
            raise CatalogError(f"Unable to read catalog directory {directory}: {err}") from err

        filepaths = [
            os.path.join(directory, filename)
            for filename in filenames
            if self.is_playable(filename)
        ]
        bitrates = await asyncio.gather(*(self._probe_with_default(path) for path in filepaths))
        self._tracks = [
            Track(path=path, bitrate=bitrate)
            for path, bitrate in zip(filepaths, bitrates, strict=True)
        ]
        logger.info("Loaded %d tracks", len(self._tracks))
        return self.tracks

    async def _probe_with_default(self, path: str) -> int:
        """Probe a file, falling back to DEFAULT_BITRATE."""
        try:
            bitrate = await asyncio.to_thread(self._probe, path)
        except ProbeError as err:
            logger.debug("Bitrate probe failed, using default: %s", err)
            return DEFAULT_BITRATE
        if not bitrate or bitrate <= 0:
            logger.debug("No bitrate for %s, using %d", path, DEFAULT_BITRATE)
            return DEFAULT_BITRATE
        return int(bitrate)
