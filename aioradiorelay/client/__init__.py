"""Public interface for the relay client package."""

from .client import RadioClient

__all__ = ["RadioClient"]
