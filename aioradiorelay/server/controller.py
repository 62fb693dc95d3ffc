"""Playback controller: owns the playlist and drives the paced stream into the hub."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from contextlib import aclosing, suppress
from dataclasses import dataclass

from aioradiorelay.errors import SourceError
from aioradiorelay.models import PlaybackStateType, StatusPayload, Track

from .events import (
    PlaybackEvent,
    PlaybackStateChangedEvent,
    TrackErrorEvent,
    TrackStartedEvent,
)
from .hub import BroadcastHub
from .pacer import DEFAULT_CHUNK_DURATION_S, ByteSource, FileSource, Pacer

DEFAULT_RETRY_DELAY_S = 1.0
"""Pause before retrying after every track of the playlist failed in a row."""

logger = logging.getLogger(__name__)

SourceFactory = Callable[[Track], Awaitable[ByteSource]]
"""Opens the byte source of a track, raising SourceError on failure."""


async def open_file_source(track: Track) -> ByteSource:
    """Open the file of a track from disk."""
    source = FileSource(track.path)
    await source.open()
    return source


@dataclass
class Session:
    """The track currently on air, its open source and its pacer."""

    track: Track
    position: int
    """Playlist index of the track."""
    source: ByteSource
    pacer: Pacer
    finished: bool = False
    """True once the track reached its end or failed."""

    def close(self) -> None:
        """Stop the pacer and release the source."""
        self.pacer.stop()
        self.source.close()


class PlaybackController:
    """
    Plays the playlist in a loop and feeds the paced bytes to the hub.

    There is a single playback position shared by every listener. The chunk
    pump runs on its own task; ending or failing tracks advance the playlist
    from that task without touching the listeners. Public methods are
    serialized by a lock.
    """

    _hub: BroadcastHub
    _playlist: list[Track]
    _cursor: int
    """Index of the track the next advance selects, always within the playlist."""
    _session: Session | None
    """Open session, None while idle."""
    _state: PlaybackStateType
    _playback_task: asyncio.Task[None] | None
    """Task pumping chunks into the hub, None when not playing."""
    _halt_event: asyncio.Event
    """Set to ask the playback task to return at the next chunk boundary."""
    _playback_lock: asyncio.Lock
    """Lock to serialize play(), pause(), resume(), skip() and close()."""
    _consecutive_failures: int
    """Tracks that failed since the last chunk was delivered."""
    _event_cbs: list[Callable[[PlaybackController, PlaybackEvent], None]]

    def __init__(
        self,
        hub: BroadcastHub,
        tracks: Sequence[Track] | None = None,
        *,
        source_factory: SourceFactory = open_file_source,
        chunk_duration: float = DEFAULT_CHUNK_DURATION_S,
        retry_delay: float = DEFAULT_RETRY_DELAY_S,
    ) -> None:
        """
        Initialize the controller.

        Args:
            hub: Hub receiving every paced chunk.
            tracks: Initial playlist, can also be set later with load_playlist().
            source_factory: Coroutine opening the byte source of a track.
            chunk_duration: Playback duration in seconds of one broadcast chunk.
            retry_delay: Seconds to wait after the whole playlist failed in a row.
        """
        self._hub = hub
        self._playlist = []
        self._cursor = 0
        self._session = None
        self._state = PlaybackStateType.IDLE
        self._playback_task = None
        self._halt_event = asyncio.Event()
        self._playback_lock = asyncio.Lock()
        self._consecutive_failures = 0
        self._event_cbs = []
        self._source_factory = source_factory
        self._chunk_duration = chunk_duration
        self._retry_delay = retry_delay
        self._closed = False
        if tracks is not None:
            self.load_playlist(tracks)

    def load_playlist(self, tracks: Sequence[Track]) -> None:
        """
        Replace the playlist. Only allowed while idle.

        Raises:
            ValueError: If tracks is empty.
            RuntimeError: If a track is currently open.
        """
        if not tracks:
            raise ValueError("Playlist cannot be empty")
        if self._session is not None or self._playback_task is not None:
            raise RuntimeError("Cannot replace the playlist during playback")
        self._playlist = list(tracks)
        self._cursor = 0
        logger.debug("Playlist loaded with %d tracks", len(self._playlist))

    @property
    def hub(self) -> BroadcastHub:
        """Hub the controller broadcasts to."""
        return self._hub

    @property
    def playlist(self) -> list[Track]:
        """Tracks in playback order."""
        return list(self._playlist)

    @property
    def state(self) -> PlaybackStateType:
        """Current playback state."""
        return self._state

    @property
    def current_track(self) -> Track | None:
        """Track of the open session, None while idle."""
        return self._session.track if self._session is not None else None

    @property
    def position(self) -> int | None:
        """Playlist index of the current track, None while idle."""
        return self._session.position if self._session is not None else None

    def status(self) -> StatusPayload:
        """Build a status snapshot of the broadcast."""
        return StatusPayload(
            state=self._state,
            listeners=self._hub.client_count,
            playlist_size=len(self._playlist),
            track=self.current_track,
            position=self.position,
        )

    async def play(self) -> None:
        """
        Start playback.

        Without an open track this advances to the next track of the playlist.
        With a paused track this resumes it.
        """
        async with self._playback_lock:
            self._ensure_not_closed()
            if self._session is None:
                if not self._playlist:
                    raise RuntimeError("No tracks loaded")
                logger.info("Playing new track")
                self._start_playback_task()
            elif self._state == PlaybackStateType.PAUSED:
                self._resume()
            else:
                logger.debug("play() ignored, state is %s", self._state.value)

    async def pause(self) -> None:
        """Stop the stream without closing the track, keeping its read position."""
        async with self._playback_lock:
            if self._playback_task is None or self._state not in (
                PlaybackStateType.PLAYING,
                PlaybackStateType.LOADING,
            ):
                logger.debug("pause() ignored, state is %s", self._state.value)
                return
            await self._halt_playback()
            self._set_state(
                PlaybackStateType.PAUSED if self._session is not None else PlaybackStateType.IDLE
            )
            logger.info("Playback paused")

    async def resume(self) -> None:
        """Continue a paused track from where it stopped."""
        async with self._playback_lock:
            if self._session is None or self._state != PlaybackStateType.PAUSED:
                logger.debug("resume() ignored, state is %s", self._state.value)
                return
            self._resume()

    async def skip(self) -> None:
        """Advance to the next track, starting playback if needed."""
        async with self._playback_lock:
            self._ensure_not_closed()
            if not self._playlist:
                raise RuntimeError("No tracks loaded")
            await self._halt_playback()
            if self._session is not None:
                self._session.finished = True
            logger.info("Skipping to next track")
            self._start_playback_task()

    async def close(self) -> None:
        """Stop playback, release the track and close every listener sink."""
        async with self._playback_lock:
            self._closed = True
            await self._halt_playback()
            self._close_session()
            self._set_state(PlaybackStateType.IDLE)
            self._hub.close()
            logger.debug("Playback controller closed")

    def add_event_listener(
        self, callback: Callable[[PlaybackController, PlaybackEvent], None]
    ) -> Callable[[], None]:
        """
        Register a callback to listen for playback changes.

        Changes include:
        - The state changed (loading, playing, paused, idle)
        - A new track started
        - A track failed and was skipped

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def _signal_event(self, event: PlaybackEvent) -> None:
        for cb in self._event_cbs:
            try:
                cb(self, event)
            except Exception:
                logger.exception("Error in event listener")

    def _set_state(self, state: PlaybackStateType) -> None:
        if state == self._state:
            return
        logger.debug("Playback state %s -> %s", self._state.value, state.value)
        self._state = state
        self._signal_event(PlaybackStateChangedEvent(state))

    def _ensure_not_closed(self) -> None:
        if self._closed:
            raise RuntimeError("Playback controller is closed")

    def _resume(self) -> None:
        logger.info("Playback resumed")
        self._start_playback_task()

    def _start_playback_task(self) -> None:
        """Start the task pumping the current (or next) track into the hub."""
        session = self._session
        self._set_state(
            PlaybackStateType.PLAYING
            if session is not None and not session.finished
            else PlaybackStateType.LOADING
        )
        self._halt_event.clear()
        task = asyncio.get_running_loop().create_task(self._run_playback())
        task.add_done_callback(self._on_playback_task_done)
        self._playback_task = task

    def _on_playback_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        if (err := task.exception()) is None:
            return
        logger.error("Playback task failed", exc_info=err)
        if self._playback_task is task:
            # Nothing drives the session anymore, the next play() opens a fresh track
            self._playback_task = None
            self._close_session()
            self._set_state(PlaybackStateType.IDLE)

    async def _halt_playback(self) -> None:
        """Ask the playback task to return and wait until it did."""
        task = self._playback_task
        if task is None:
            return
        self._halt_event.set()
        if self._session is not None:
            self._session.pacer.stop()
        try:
            await task
        except Exception:  # noqa: BLE001
            # Already logged by _on_playback_task_done
            pass
        finally:
            if self._playback_task is task:
                self._playback_task = None

    async def _run_playback(self) -> None:
        """Stream tracks one after another until halted."""
        while True:
            session = self._session
            if session is None or session.finished:
                session = await self._open_next_session()
                if session is None:
                    return
            if self._halt_event.is_set():
                return
            self._set_state(PlaybackStateType.PLAYING)
            await self._stream_session(session)
            if not session.finished or self._halt_event.is_set():
                return

    async def _stream_session(self, session: Session) -> None:
        """Broadcast the chunks of a session until its pacer stops or the track ends."""
        try:
            async with aclosing(session.pacer.start()) as chunks:
                async for chunk in chunks:
                    self._hub.broadcast(chunk)
                    self._consecutive_failures = 0
        except SourceError as err:
            session.finished = True
            self._handle_track_error(session.track, err)
            return
        if session.pacer.exhausted:
            session.finished = True
            logger.debug("End of track: %s", session.track.path)

    async def _open_next_session(self) -> Session | None:
        """
        Close the current session and open the next track of the playlist.

        Tracks that fail to open are skipped. Returns None if the playback task
        was halted while waiting to retry a failing playlist.
        """
        while True:
            self._close_session()
            if self._consecutive_failures >= len(self._playlist):
                logger.warning(
                    "All %d tracks failed, retrying in %.1fs",
                    len(self._playlist),
                    self._retry_delay,
                )
                self._consecutive_failures = 0
                with suppress(TimeoutError):
                    async with asyncio.timeout(self._retry_delay):
                        await self._halt_event.wait()
                if self._halt_event.is_set():
                    return None

            track, position = self._select_next_track()
            self._set_state(PlaybackStateType.LOADING)
            try:
                source = await self._source_factory(track)
            except SourceError as err:
                self._handle_track_error(track, err)
                continue

            pacer = Pacer(source, track.bitrate, chunk_duration=self._chunk_duration)
            session = Session(track=track, position=position, source=source, pacer=pacer)
            self._session = session
            logger.info("Now playing: %s", track.path)
            self._signal_event(TrackStartedEvent(track, position))
            return session

    def _select_next_track(self) -> tuple[Track, int]:
        """Return the track under the cursor and advance the cursor, wrapping around."""
        position = self._cursor
        self._cursor = (self._cursor + 1) % len(self._playlist)
        return self._playlist[position], position

    def _handle_track_error(self, track: Track, err: SourceError) -> None:
        logger.error("Error playing track %s: %s", track.path, err)
        self._consecutive_failures += 1
        self._signal_event(TrackErrorEvent(track, err))

    def _close_session(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
