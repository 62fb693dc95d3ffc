"""Real-time pacing of a byte source."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from typing import BinaryIO, Protocol

from aioradiorelay.errors import SourceError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_DURATION_S = 0.1
"""Playback duration covered by one chunk."""


class ByteSource(Protocol):
    """An open, sequentially readable stream of encoded audio."""

    @property
    def position(self) -> int:
        """Number of bytes consumed so far."""
        ...

    async def read(self, size: int) -> bytes:
        """Read up to size bytes, returning b"" at the end of the source."""
        ...

    def close(self) -> None:
        """Release the underlying resource."""
        ...


class FileSource:
    """Byte source reading a file from disk without blocking the event loop."""

    def __init__(self, path: str) -> None:
        """Create a source for path. Call open() before reading."""
        self.path = path
        self._file: BinaryIO | None = None
        self._position = 0

    @property
    def position(self) -> int:
        """Number of bytes consumed so far."""
        return self._position

    @property
    def closed(self) -> bool:
        """True if the file is not open."""
        return self._file is None

    async def open(self) -> None:
        """
        Open the file for reading.

        Raises:
            SourceError: If the file cannot be opened.
        """
        try:
            self._file = await asyncio.to_thread(open, self.path, "rb")
        except OSError as err:
            raise SourceError(f"Unable to open {self.path}: {err}") from err

    async def read(self, size: int) -> bytes:
        """
        Read up to size bytes.

        Raises:
            SourceError: If the source is not open or the read fails.
        """
        if self._file is None:
            raise SourceError(f"{self.path} is not open")
        try:
            data = await asyncio.to_thread(self._file.read, size)
        except (OSError, ValueError) as err:
            raise SourceError(f"Unable to read {self.path}: {err}") from err
        self._position += len(data)
        return data

    def close(self) -> None:
        """Close the file. Closing twice is a no-op."""
        if self._file is not None:
            self._file.close()
            self._file = None


class Pacer:
    """
    Releases the bytes of a source no faster than real-time playback.

    A track of N bytes at B bits per second takes about 8N/B seconds to pass
    through the pacer. The pacer can be stopped and started again; each start
    continues from the current read position of the source.
    """

    def __init__(
        self,
        source: ByteSource,
        bitrate: int,
        *,
        chunk_duration: float = DEFAULT_CHUNK_DURATION_S,
    ) -> None:
        """
        Initialize the pacer.

        Args:
            source: The byte source to pace. The pacer never closes it.
            bitrate: Pacing rate in bits per second, fixed for the pacer lifetime.
            chunk_duration: Playback duration in seconds covered by one chunk.
        """
        if bitrate <= 0:
            raise ValueError(f"bitrate must be positive, got {bitrate}")
        if chunk_duration <= 0:
            raise ValueError(f"chunk_duration must be positive, got {chunk_duration}")
        self._source = source
        self._bitrate = bitrate
        self._chunk_size = max(1, int(bitrate / 8 * chunk_duration))
        self._stop_event = asyncio.Event()
        self._exhausted = False
        self._bytes_sent = 0

    @property
    def source(self) -> ByteSource:
        """The paced byte source."""
        return self._source

    @property
    def bitrate(self) -> int:
        """Pacing rate in bits per second."""
        return self._bitrate

    @property
    def chunk_size(self) -> int:
        """Maximum number of bytes per chunk."""
        return self._chunk_size

    @property
    def bytes_sent(self) -> int:
        """Total bytes emitted over all runs of this pacer."""
        return self._bytes_sent

    @property
    def exhausted(self) -> bool:
        """True once the source reached its end."""
        return self._exhausted

    @property
    def stopped(self) -> bool:
        """True if stop() was called since the last start()."""
        return self._stop_event.is_set()

    def stop(self) -> None:
        """End the emission loop at the next chunk boundary."""
        self._stop_event.set()

    def start(self) -> AsyncGenerator[bytes, None]:
        """
        Start emitting chunks from the current source position.

        The returned generator finishes when the source is exhausted or when
        stop() is called. Read failures raise SourceError.
        """
        self._stop_event.clear()
        return self._run()

    async def _run(self) -> AsyncGenerator[bytes, None]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        sent = 0
        while not self._exhausted:
            due = start_time + sent * 8 / self._bitrate
            if await self._wait_until(loop, due):
                return
            chunk = await self._source.read(self._chunk_size)
            if not chunk:
                self._exhausted = True
                logger.debug("Source exhausted after %d bytes", self._bytes_sent)
                return
            sent += len(chunk)
            self._bytes_sent += len(chunk)
            # Bytes already read are always handed out so a stop never drops data.
            yield chunk
            if self._stop_event.is_set():
                return

    async def _wait_until(self, loop: asyncio.AbstractEventLoop, due: float) -> bool:
        """Sleep until due, returning True if stop() was called meanwhile."""
        if self._stop_event.is_set():
            return True
        delay = due - loop.time()
        if delay <= 0:
            # Still yield so listener management can run between chunks.
            await asyncio.sleep(0)
            return self._stop_event.is_set()
        try:
            async with asyncio.timeout(delay):
                await self._stop_event.wait()
        except TimeoutError:
            return False
        return True
