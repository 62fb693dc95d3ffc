"""HTTP front of the relay: serves the live stream and the control websocket."""

from __future__ import annotations

import asyncio
import logging
import uuid

from aiohttp import web
from zeroconf import IPVersion, NonUniqueNameException
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

from aioradiorelay.models import RelayCommand, ServerStatusMessage
from aioradiorelay.util import get_local_ip

from .connection import ControlConnection
from .controller import PlaybackController
from .events import HubEvent, PlaybackEvent
from .hub import BroadcastHub, ClientSink

DEFAULT_PORT = 3000

IDLE_CHECK_INTERVAL_S = 5.0
"""How often an idle stream response checks whether its listener is still there."""

_CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}

logger = logging.getLogger(__name__)


class RadioServer:
    """
    Serves the broadcast of a PlaybackController over HTTP.

    Endpoints:
    - GET /stream: the live audio stream (audio/mpeg, chunked).
    - GET /status: JSON snapshot of the broadcast.
    - GET /ws: websocket pushing status updates and accepting commands.
    """

    STREAM_PATH = "/stream"
    STATUS_PATH = "/status"
    CONTROL_PATH = "/ws"

    _controller: PlaybackController
    _connections: set[ControlConnection]
    """Open control websockets."""
    _app: web.Application | None
    """Web application instance for the server."""
    _app_runner: web.AppRunner | None
    """App runner for the web application."""
    _tcp_site: web.TCPSite | None
    """TCP site for the web application."""
    _zc: AsyncZeroconf | None
    """AsyncZeroconf instance, None unless the stream is advertised."""
    _mdns_service: AsyncServiceInfo | None
    """Registered mDNS service."""

    def __init__(self, controller: PlaybackController, name: str = "aioradiorelay") -> None:
        """
        Initialize the server.

        Args:
            controller: Controller whose broadcast is served.
            name: Service name used for mDNS advertisement.
        """
        self._controller = controller
        self._name = name
        self._connections = set()
        self._app = None
        self._app_runner = None
        self._tcp_site = None
        self._zc = None
        self._mdns_service = None
        self._unsubscribers = [
            controller.add_event_listener(self._on_playback_event),
            controller.hub.add_event_listener(self._on_hub_event),
        ]

    @property
    def hub(self) -> BroadcastHub:
        """Hub of the served controller."""
        return self._controller.hub

    @property
    def port(self) -> int | None:
        """Port the server is bound to, None when not running."""
        if self._app_runner is None or not self._app_runner.addresses:
            return None
        port: int = self._app_runner.addresses[0][1]
        return port

    def create_web_application(self) -> web.Application:
        """Create and configure the aiohttp web application."""
        app = web.Application()
        app.router.add_get(self.STREAM_PATH, self.on_stream_request)
        app.router.add_get(self.STATUS_PATH, self.on_status_request)
        app.router.add_get(self.CONTROL_PATH, self.on_control_connect)
        return app

    async def on_stream_request(self, request: web.Request) -> web.StreamResponse:
        """Register a listener and pipe the broadcast to it until it goes away."""
        client_id, sink = self.hub.add_client()
        client_logger = logger.getChild(client_id)
        client_logger.debug("Stream requested by %s", request.remote)
        response = web.StreamResponse(
            status=200,
            headers={"Content-Type": "audio/mpeg", "Cache-Control": "no-cache", **_CORS_HEADERS},
        )
        response.enable_chunked_encoding()
        try:
            await response.prepare(request)
            await self._pipe_sink(request, response, sink)
        except ConnectionResetError as err:
            client_logger.debug("Listener connection lost: %s", err)
        finally:
            self.hub.remove_client(client_id)
        return response

    async def _pipe_sink(
        self, request: web.Request, response: web.StreamResponse, sink: ClientSink
    ) -> None:
        while True:
            try:
                async with asyncio.timeout(IDLE_CHECK_INTERVAL_S):
                    chunk = await sink.read()
            except TimeoutError:
                transport = request.transport
                if transport is None or transport.is_closing():
                    return
                continue
            if chunk is None:
                return
            await response.write(chunk)

    async def on_status_request(self, request: web.Request) -> web.Response:
        """Return the current status as JSON."""
        message = ServerStatusMessage(payload=self._controller.status())
        return web.Response(
            text=message.to_json(), content_type="application/json", headers=_CORS_HEADERS
        )

    async def on_control_connect(self, request: web.Request) -> web.WebSocketResponse:
        """Handle a control websocket."""
        connection = ControlConnection(
            request,
            handle_command=self.execute_command,
            connection_id=str(uuid.uuid4()),
        )
        try:
            await connection.handle(self._on_connection_ready)
        finally:
            self._connections.discard(connection)
        return connection.websocket

    def _on_connection_ready(self, connection: ControlConnection) -> None:
        self._connections.add(connection)
        connection.send_message(ServerStatusMessage(payload=self._controller.status()))

    async def execute_command(self, command: RelayCommand) -> None:
        """Run a playback command on the controller."""
        if command == RelayCommand.PLAY:
            await self._controller.play()
        elif command == RelayCommand.PAUSE:
            await self._controller.pause()
        elif command == RelayCommand.RESUME:
            await self._controller.resume()
        elif command == RelayCommand.SKIP:
            await self._controller.skip()

    def _send_status_to_connections(self) -> None:
        if not self._connections:
            return
        message = ServerStatusMessage(payload=self._controller.status())
        for connection in list(self._connections):
            connection.send_message(message)

    def _on_playback_event(self, _controller: PlaybackController, _event: PlaybackEvent) -> None:
        self._send_status_to_connections()

    def _on_hub_event(self, _hub: BroadcastHub, _event: HubEvent) -> None:
        self._send_status_to_connections()

    async def start_server(
        self,
        port: int = DEFAULT_PORT,
        host: str = "0.0.0.0",
        *,
        advertise: bool = False,
    ) -> None:
        """
        Start serving.

        :param port: The TCP port to bind to, 0 picks a free port.
        :param host: The IP address to listen on (e.g., "0.0.0.0" for all interfaces).
        :param advertise: If True, advertise the stream via mDNS as an _http._tcp service.
        """
        if self._app is not None:
            logger.warning("Server is already running")
            return

        logger.info("Starting radio server on port %d", port)
        self._app = self.create_web_application()
        self._app_runner = web.AppRunner(self._app)
        await self._app_runner.setup()

        try:
            self._tcp_site = web.TCPSite(
                self._app_runner,
                host=host if host != "0.0.0.0" else None,
                port=port,
            )
            await self._tcp_site.start()
            logger.info("Server listening on %s:%d", host, self.port or port)
            if advertise:
                await self._start_mdns_advertising(host, self.port or port)
        except OSError as e:
            logger.error("Failed to start server on %s:%d: %s", host, port, e)
            await self.stop_server()
            raise

    async def stop_server(self) -> None:
        """Stop the HTTP server."""
        await self._stop_mdns()

        if self._tcp_site:
            await self._tcp_site.stop()
            self._tcp_site = None
            logger.debug("TCP site stopped")

        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
            logger.debug("App runner cleaned up")

        if self._app:
            await self._app.shutdown()
            self._app = None

    async def close(self) -> None:
        """Disconnect all listeners and stop the server."""
        for unsub in self._unsubscribers:
            unsub()
        self._unsubscribers.clear()

        # Ending the sinks lets the stream handlers return before the site stops
        self.hub.close()
        connections = list(self._connections)
        if connections:
            results = await asyncio.gather(
                *(connection.close() for connection in connections), return_exceptions=True
            )
            for connection, result in zip(connections, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning(
                        "Error closing control connection %s: %s",
                        connection.connection_id,
                        result,
                    )
        await self.stop_server()

    async def _start_mdns_advertising(self, host: str, port: int) -> None:
        """Advertise the stream endpoint via mDNS."""
        if host != "0.0.0.0":
            addresses = [host]
        elif local_ip := get_local_ip():
            addresses = [local_ip]
        else:
            logger.warning("No IP address available for mDNS advertising")
            return

        self._zc = AsyncZeroconf(ip_version=IPVersion.V4Only)
        service_type = "_http._tcp.local."
        info = AsyncServiceInfo(
            type_=service_type,
            name=f"{self._name}.{service_type}",
            server=f"{self._name}.local.",
            parsed_addresses=addresses,
            port=port,
            properties={"path": self.STREAM_PATH},
        )
        try:
            await self._zc.async_register_service(info)
            self._mdns_service = info
            logger.debug("mDNS advertising stream on %s:%d", addresses[0], port)
        except NonUniqueNameException:
            logger.error("A radio relay named %s is already advertised on the network", self._name)

    async def _stop_mdns(self) -> None:
        """Stop mDNS advertisement if active."""
        if self._zc is None:
            return
        try:
            if self._mdns_service is not None:
                await self._zc.async_unregister_service(self._mdns_service)
        finally:
            await self._zc.async_close()
            self._zc = None
            self._mdns_service = None
