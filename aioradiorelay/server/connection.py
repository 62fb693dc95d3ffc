"""A control websocket connected to the relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import cast

from aiohttp import WSMsgType, web

from aioradiorelay.models import ClientCommandMessage, ClientMessage, RelayCommand, ServerMessage

MAX_PENDING_MSG = 64

logger = logging.getLogger(__name__)

CommandHandler = Callable[[RelayCommand], Awaitable[None]]


class ControlConnection:
    """
    A websocket used by a listener to follow and control the broadcast.

    Outgoing messages go through a queue drained by a writer task, so the
    engine can post status updates without waiting for the network.
    """

    _wsock: web.WebSocketResponse
    _request: web.Request
    _to_write: asyncio.Queue[ServerMessage]
    """Queue for messages to be sent to the listener through the WebSocket."""
    _writer_task: asyncio.Task[None] | None = None
    """Task responsible for sending JSON messages."""
    _closing: bool = False

    def __init__(
        self,
        request: web.Request,
        handle_command: CommandHandler,
        connection_id: str,
    ) -> None:
        """
        Initialize the connection for an incoming websocket request.

        Args:
            request: The upgrade request.
            handle_command: Coroutine executing commands sent by the listener.
            connection_id: Identifier used in log messages.
        """
        self._request = request
        self._handle_command = handle_command
        self._wsock = web.WebSocketResponse(heartbeat=55)
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_MSG)
        self.connection_id = connection_id
        self._logger = logger.getChild(connection_id)

    @property
    def websocket(self) -> web.WebSocketResponse:
        """The websocket response of this connection."""
        return self._wsock

    def send_message(self, message: ServerMessage) -> None:
        """Enqueue a message; drops the connection if the listener is too slow."""
        if self._closing:
            return
        try:
            self._to_write.put_nowait(message)
        except asyncio.QueueFull:
            self._logger.error("Message queue full, listener too slow - disconnecting")
            self._closing = True
            task = asyncio.get_running_loop().create_task(self._wsock.close())
            task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)

    async def handle(self, on_ready: Callable[[ControlConnection], None]) -> None:
        """Run the connection until the websocket closes."""
        await self._wsock.prepare(self._request)
        self._logger.info("New listener connected")
        self._writer_task = asyncio.get_running_loop().create_task(self._writer())
        on_ready(self)
        try:
            await self._run_message_loop()
        finally:
            self._closing = True
            if self._writer_task and not self._writer_task.done():
                self._writer_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._writer_task
            if not self._wsock.closed:
                await self._wsock.close()
            self._logger.info("Listener disconnected")

    async def close(self) -> None:
        """Close the websocket."""
        self._closing = True
        if not self._wsock.closed:
            await self._wsock.close()

    async def _run_message_loop(self) -> None:
        async for msg in self._wsock:
            if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                break
            if msg.type != WSMsgType.TEXT:
                self._logger.warning("Ignoring non-text message of type %s", msg.type)
                continue
            try:
                message = ClientMessage.from_json(cast("str", msg.data))
            except Exception:  # noqa: BLE001
                self._logger.warning("Ignoring invalid message: %s", msg.data)
                continue
            if isinstance(message, ClientCommandMessage):
                self._logger.debug("Received command %s", message.payload.command.value)
                try:
                    await self._handle_command(message.payload.command)
                except RuntimeError as err:
                    self._logger.warning(
                        "Command %s failed: %s", message.payload.command.value, err
                    )

    async def _writer(self) -> None:
        """Write outgoing messages from the queue."""
        try:
            while not self._wsock.closed:
                item = await self._to_write.get()
                try:
                    await self._wsock.send_str(item.to_json())
                except ConnectionError:
                    self._logger.warning("Connection error sending JSON data, ending writer task")
                    break
        except Exception:
            self._logger.exception("Error in writer task for listener")
