"""Fan-out of the paced stream to every connected listener."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import suppress

from aioradiorelay.errors import SinkWriteError

from .events import ClientAddedEvent, ClientRemovedEvent, HubEvent

MAX_PENDING_CHUNKS = 256
"""Chunks a sink may hold before its listener is considered too slow."""

logger = logging.getLogger(__name__)


class ClientSink:
    """
    Output channel of a single listener.

    The hub writes chunks without waiting; the transport layer drains them
    by iterating over the sink. Iteration ends once the sink is closed and
    all chunks queued before closing were consumed.
    """

    _queue: asyncio.Queue[bytes | None]
    """Pending chunks, None marks the end of the stream."""
    _closed: bool = False

    def __init__(self, client_id: str, max_pending: int = MAX_PENDING_CHUNKS) -> None:
        """Create an open sink for client_id holding at most max_pending chunks."""
        self.client_id = client_id
        # One extra slot so close() can always enqueue the end marker.
        self._queue = asyncio.Queue(maxsize=max_pending + 1)
        self._max_pending = max_pending

    @property
    def closed(self) -> bool:
        """True once close() was called."""
        return self._closed

    @property
    def pending(self) -> int:
        """Number of chunks waiting to be consumed."""
        return self._queue.qsize()

    def write(self, chunk: bytes) -> None:
        """
        Queue a chunk for the listener.

        Raises:
            SinkWriteError: If the sink is closed or the listener fell too far behind.
        """
        if self._closed:
            raise SinkWriteError(f"Sink {self.client_id} is closed")
        if self._queue.qsize() >= self._max_pending:
            raise SinkWriteError(
                f"Sink {self.client_id} has {self._max_pending} pending chunks, listener too slow"
            )
        self._queue.put_nowait(chunk)

    def close(self) -> None:
        """Close the sink. Closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def read(self) -> bytes | None:
        """Wait for the next chunk, returning None at the end of the stream."""
        chunk = await self._queue.get()
        if chunk is None:
            # Keep the marker so further reads also see the end.
            with suppress(asyncio.QueueFull):
                self._queue.put_nowait(None)
        return chunk

    def __aiter__(self) -> AsyncIterator[bytes]:
        """Iterate over the chunks of the sink until it is closed."""
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        while (chunk := await self.read()) is not None:
            yield chunk


class BroadcastHub:
    """
    Duplicates every broadcast chunk to all registered sinks.

    All methods are synchronous and run on the event loop, so registering,
    removing and broadcasting never interleave. A sink that fails to accept
    a chunk is removed immediately; the other sinks still receive it.
    """

    _clients: dict[str, ClientSink]
    """Registered sinks by client id."""
    _event_cbs: list[Callable[[BroadcastHub, HubEvent], None]]

    def __init__(self, max_pending: int = MAX_PENDING_CHUNKS) -> None:
        """
        Initialize an empty hub.

        Args:
            max_pending: Chunks each sink may buffer before it is dropped.
        """
        self._clients = {}
        self._event_cbs = []
        self._max_pending = max_pending

    @property
    def client_count(self) -> int:
        """Number of registered sinks."""
        return len(self._clients)

    @property
    def client_ids(self) -> list[str]:
        """Ids of all registered sinks."""
        return list(self._clients)

    def get_client(self, client_id: str) -> ClientSink | None:
        """Get the sink registered under client_id."""
        return self._clients.get(client_id)

    def add_client(self) -> tuple[str, ClientSink]:
        """Register a new sink that receives every chunk broadcast from now on."""
        client_id = str(uuid.uuid4())
        sink = ClientSink(client_id, self._max_pending)
        self._clients[client_id] = sink
        logger.info("New client connected: %s", client_id)
        self._signal_event(ClientAddedEvent(client_id))
        return client_id, sink

    def remove_client(self, client_id: str) -> None:
        """Unregister and close a sink. Unknown ids are ignored."""
        sink = self._clients.pop(client_id, None)
        if sink is None:
            logger.debug("Client %s already removed", client_id)
            return
        sink.close()
        logger.info("Client disconnected: %s", client_id)
        self._signal_event(ClientRemovedEvent(client_id))

    def broadcast(self, chunk: bytes) -> None:
        """Write chunk to every registered sink."""
        failed: list[str] = []
        for client_id, sink in list(self._clients.items()):
            try:
                sink.write(chunk)
            except SinkWriteError as err:
                logger.warning("Dropping client %s: %s", client_id, err)
                failed.append(client_id)
        for client_id in failed:
            self.remove_client(client_id)

    def close(self) -> None:
        """Close and unregister all sinks."""
        for client_id in list(self._clients):
            self.remove_client(client_id)

    def add_event_listener(
        self, callback: Callable[[BroadcastHub, HubEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for listener churn.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: HubEvent) -> None:
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")
