from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from aioradiorelay.errors import SourceError
from aioradiorelay.models import Track


class MemorySource:
    """Byte source over an in-memory buffer, optionally failing at an offset."""

    def __init__(self, data: bytes, *, fail_at: int | None = None) -> None:
        self._data = data
        self._fail_at = fail_at
        self._position = 0
        self.closed = False

    @property
    def position(self) -> int:
        return self._position

    async def read(self, size: int) -> bytes:
        if self.closed:
            raise SourceError("source is closed")
        if self._fail_at is not None and self._position >= self._fail_at:
            raise SourceError("corrupt frame")
        end = self._position + size
        if self._fail_at is not None:
            end = min(end, self._fail_at)
        chunk = self._data[self._position : end]
        self._position += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed = True


@dataclass
class SourceRegistry:
    """Maps tracks to in-memory content and records every opened source."""

    contents: dict[str, bytes] = field(default_factory=dict)
    fail_at: dict[str, int] = field(default_factory=dict)
    unopenable: set[str] = field(default_factory=set)
    opened: list[tuple[str, MemorySource]] = field(default_factory=list)
    open_attempts: list[str] = field(default_factory=list)

    def add(
        self,
        path: str,
        data: bytes,
        bitrate: int,
        *,
        fail_at: int | None = None,
        unopenable: bool = False,
    ) -> Track:
        self.contents[path] = data
        if fail_at is not None:
            self.fail_at[path] = fail_at
        if unopenable:
            self.unopenable.add(path)
        return Track(path=path, bitrate=bitrate)

    async def factory(self, track: Track) -> MemorySource:
        self.open_attempts.append(track.path)
        if track.path in self.unopenable:
            raise SourceError(f"Unable to open {track.path}")
        source = MemorySource(self.contents[track.path], fail_at=self.fail_at.get(track.path))
        self.opened.append((track.path, source))
        return source


@pytest.fixture
def sources() -> SourceRegistry:
    return SourceRegistry()
