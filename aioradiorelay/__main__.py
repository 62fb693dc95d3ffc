"""Run the relay: python -m aioradiorelay [music_dir]."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import replace

from .config import RelayConfig
from .errors import CatalogError
from .server import BroadcastHub, PlaybackController, RadioServer, TrackCatalog
from .util import stream_url

_LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_args(argv: Sequence[str] | None = None) -> RelayConfig:
    """Build the configuration from the command line and an optional JSON file."""
    parser = argparse.ArgumentParser(
        prog="aioradiorelay", description="Broadcast a folder of audio files as a live stream."
    )
    parser.add_argument("music_dir", nargs="?", help="Directory holding the tracks")
    parser.add_argument("-c", "--config", help="Path to a JSON configuration file")
    parser.add_argument("--host", help="Address to listen on")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--log-file", help="Also append log messages to this file")
    parser.add_argument(
        "--advertise", action="store_true", default=None, help="Advertise the stream via mDNS"
    )
    parser.add_argument("--debug", action="store_true", default=None, help="Enable debug logging")
    args = parser.parse_args(argv)

    config = RelayConfig.load(args.config) if args.config else RelayConfig()
    overrides = {
        "music_dir": args.music_dir,
        "host": args.host,
        "port": args.port,
        "log_file": args.log_file,
        "advertise": args.advertise,
        "debug": args.debug,
    }
    return replace(config, **{key: value for key, value in overrides.items() if value is not None})


def setup_logging(config: RelayConfig) -> None:
    """Log to stderr and, if configured, to a file."""
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
    if config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logging.getLogger().addHandler(handler)
    # Keep third-party chatter out of debug sessions
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def run(config: RelayConfig) -> int:
    """Load the catalog, start playback and serve until interrupted."""
    catalog = TrackCatalog(extensions=config.extensions)
    try:
        tracks = await catalog.load(config.music_dir)
    except CatalogError as err:
        _LOGGER.error("%s", err)
        return 1
    if not tracks:
        _LOGGER.error("No playable tracks found in %s", config.music_dir)
        return 1

    hub = BroadcastHub(max_pending=config.max_pending_chunks)
    controller = PlaybackController(hub, tracks, chunk_duration=config.chunk_duration)
    server = RadioServer(controller, name=config.name)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await controller.play()
        await server.start_server(port=config.port, host=config.host, advertise=config.advertise)
        _LOGGER.info(
            "Streaming at %s", stream_url(config.host, server.port or config.port, server.STREAM_PATH)
        )
        await stop_event.wait()
    except OSError:
        return 1
    finally:
        _LOGGER.debug("Shutting down...")
        await server.close()
        await controller.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of the relay process."""
    config = parse_args(argv)
    setup_logging(config)
    return asyncio.run(run(config))


if __name__ == "__main__":
    sys.exit(main())
