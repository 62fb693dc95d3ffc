"""Client for listening to and controlling a running relay."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import cast

from aiohttp import ClientSession, ClientTimeout

from aioradiorelay.models import (
    ClientCommandMessage,
    ClientCommandPayload,
    RelayCommand,
    ServerMessage,
    ServerStatusMessage,
    StatusPayload,
)

DEFAULT_CHUNK_SIZE = 4096

logger = logging.getLogger(__name__)


class RadioClient:
    """
    Connects to a relay over HTTP.

    Usage:
        async with RadioClient("http://localhost:3000") as client:
            async for chunk in client.listen():
                player.feed(chunk)
    """

    _session: ClientSession
    _owns_session: bool
    """Whether this client owns the session and has to close it."""

    def __init__(self, base_url: str, session: ClientSession | None = None) -> None:
        """
        Initialize the client.

        Args:
            base_url: Root URL of the relay, e.g. "http://localhost:3000".
            session: Optional ClientSession to use. If None, a new session is created.
        """
        self._base_url = base_url.rstrip("/")
        if session is None:
            # No total timeout, the stream never ends on its own.
            self._session = ClientSession(timeout=ClientTimeout(total=None, sock_connect=10))
            self._owns_session = True
        else:
            self._session = session
            self._owns_session = False

    async def __aenter__(self) -> RadioClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def listen(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncGenerator[bytes, None]:
        """Yield the bytes of the live stream as they arrive."""
        async with self._session.get(f"{self._base_url}/stream") as response:
            response.raise_for_status()
            logger.debug("Listening to %s (%s)", response.url, response.content_type)
            async for chunk in response.content.iter_chunked(chunk_size):
                yield chunk

    async def status(self) -> StatusPayload:
        """Fetch the current status of the broadcast."""
        async with self._session.get(f"{self._base_url}/status") as response:
            response.raise_for_status()
            return _parse_status(await response.text())

    async def send_command(self, command: RelayCommand) -> StatusPayload:
        """
        Send a playback command over the control websocket.

        Returns the status the relay reported when the connection opened.
        """
        async with self._session.ws_connect(f"{self._base_url}/ws") as wsock:
            status = _parse_status(cast("str", await wsock.receive_str()))
            await wsock.send_str(
                ClientCommandMessage(payload=ClientCommandPayload(command=command)).to_json()
            )
            logger.debug("Sent command %s", command.value)
        return status

    async def close(self) -> None:
        """Close the owned session."""
        if self._owns_session and not self._session.closed:
            await self._session.close()


def _parse_status(data: str) -> StatusPayload:
    """
    Parse a status message sent by the relay.

    Raises:
        ValueError: If data is not a valid server/status message.
    """
    try:
        message = ServerMessage.from_json(data)
    except ValueError as err:
        raise ValueError(f"Invalid message from relay: {err}") from err
    if not isinstance(message, ServerStatusMessage):
        raise ValueError(f"Unexpected message type: {type(message).__name__}")
    return message.payload
