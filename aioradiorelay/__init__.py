"""Single-source internet radio relay built on asyncio."""

from .errors import CatalogError, ProbeError, RelayError, SinkWriteError, SourceError

__all__ = [
    "CatalogError",
    "ProbeError",
    "RelayError",
    "SinkWriteError",
    "SourceError",
]
