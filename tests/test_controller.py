from __future__ import annotations

import asyncio
import hashlib
import re
from collections.abc import Callable

import pytest

from aioradiorelay.models import PlaybackStateType, Track
from aioradiorelay.server.controller import PlaybackController
from aioradiorelay.server.events import (
    PlaybackEvent,
    PlaybackStateChangedEvent,
    TrackErrorEvent,
    TrackStartedEvent,
)
from aioradiorelay.server.hub import BroadcastHub, ClientSink

from conftest import MemorySource, SourceRegistry

# 8000 bps is 1000 bytes per second; 0.02s chunks are 20 bytes.
SLOW = 8_000
CHUNK_S = 0.02


async def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


async def _record(sink: ClientSink, out: bytearray) -> None:
    async for chunk in sink:
        out.extend(chunk)


def _listen(hub: BroadcastHub) -> tuple[ClientSink, bytearray, asyncio.Task[None]]:
    _, sink = hub.add_client()
    received = bytearray()
    return sink, received, asyncio.create_task(_record(sink, received))


class _Recorder:
    """Collects controller events."""

    def __init__(self, controller: PlaybackController) -> None:
        self.events: list[PlaybackEvent] = []
        controller.add_event_listener(lambda _controller, event: self.events.append(event))

    @property
    def started(self) -> list[int]:
        return [e.position for e in self.events if isinstance(e, TrackStartedEvent)]

    @property
    def errors(self) -> list[TrackErrorEvent]:
        return [e for e in self.events if isinstance(e, TrackErrorEvent)]

    @property
    def states(self) -> list[PlaybackStateType]:
        return [e.state for e in self.events if isinstance(e, PlaybackStateChangedEvent)]


def _controller(
    hub: BroadcastHub, tracks: list[Track], sources: SourceRegistry, **kwargs: float
) -> PlaybackController:
    kwargs.setdefault("chunk_duration", CHUNK_S)
    return PlaybackController(hub, tracks, source_factory=sources.factory, **kwargs)


@pytest.mark.asyncio
async def test_plays_playlist_in_order_and_wraps(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track_a = sources.add("a.mp3", b"a" * 200, SLOW)
    track_b = sources.add("b.mp3", b"b" * 100, SLOW)
    controller = _controller(hub, [track_a, track_b], sources)
    recorder = _Recorder(controller)
    sink, received, task = _listen(hub)

    await controller.play()
    assert controller.state == PlaybackStateType.LOADING
    await _wait_for(lambda: len(recorder.started) >= 3)
    await _wait_for(lambda: len(received) > 300)

    assert recorder.started[:3] == [0, 1, 0]
    assert recorder.states[:2] == [PlaybackStateType.LOADING, PlaybackStateType.PLAYING]
    assert controller.current_track == track_a
    assert bytes(received[:300]) == b"a" * 200 + b"b" * 100
    assert received[300:301] == b"a"
    # Sources of finished tracks are released
    assert all(source.closed for _, source in sources.opened[:-1])

    await controller.close()
    await task
    assert sink.closed


@pytest.mark.asyncio
async def test_single_track_playlist_repeats(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track = sources.add("only.mp3", b"o" * 40, SLOW)
    controller = _controller(hub, [track], sources)
    recorder = _Recorder(controller)

    await controller.play()
    await _wait_for(lambda: len(recorder.started) >= 3)

    assert set(recorder.started) == {0}
    assert [path for path, _ in sources.opened][:3] == ["only.mp3"] * 3
    await controller.close()


@pytest.mark.asyncio
async def test_skip_cursor_stays_in_range_and_visits_every_track(
    sources: SourceRegistry,
) -> None:
    hub = BroadcastHub()
    tracks = [sources.add(f"{index}.mp3", b"x" * 10_000, SLOW) for index in range(3)]
    controller = _controller(hub, tracks, sources)
    recorder = _Recorder(controller)

    await controller.play()
    await _wait_for(lambda: len(recorder.started) == 1)
    for expected in range(2, 9):
        await controller.skip()
        await _wait_for(lambda: len(recorder.started) == expected)
        assert controller.position is not None
        assert 0 <= controller.position < len(tracks)

    assert recorder.started == [0, 1, 2, 0, 1, 2, 0, 1]
    assert controller.state == PlaybackStateType.PLAYING
    await controller.close()


@pytest.mark.asyncio
async def test_late_listener_never_receives_earlier_chunks(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    data = bytes(range(256)) * 2
    track = sources.add("a.mp3", data, SLOW)
    controller = _controller(hub, [track], sources)
    _, early, early_task = _listen(hub)

    await controller.play()
    await _wait_for(lambda: len(early) >= 100)
    _, late, late_task = _listen(hub)
    joined_at = len(early)
    await _wait_for(lambda: len(late) >= 100)
    await controller.close()
    await asyncio.gather(early_task, late_task)

    assert len(late) <= len(early) - joined_at
    assert bytes(early).endswith(bytes(late))
    assert bytes(late) != bytes(early[: len(late)])


@pytest.mark.asyncio
async def test_pause_resume_is_byte_exact(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    data = bytes((index * 7) % 251 for index in range(600))
    track_a = sources.add("a.mp3", data, SLOW)
    track_b = sources.add("b.mp3", b"b" * 1_000, SLOW)
    controller = _controller(hub, [track_a, track_b], sources)
    recorder = _Recorder(controller)
    _, received, task = _listen(hub)

    await controller.play()
    await _wait_for(lambda: len(received) >= 100)
    await controller.pause()
    assert controller.state == PlaybackStateType.PAUSED
    paused_at = len(received)
    await asyncio.sleep(0.15)
    assert len(received) == paused_at
    assert controller.current_track == track_a

    await controller.pause()
    assert controller.state == PlaybackStateType.PAUSED

    await controller.resume()
    assert controller.state == PlaybackStateType.PLAYING
    await controller.resume()
    await _wait_for(lambda: len(received) >= 650)
    await controller.close()
    await task

    assert recorder.started[:2] == [0, 1]
    assert hashlib.sha256(bytes(received[:600])).digest() == hashlib.sha256(data).digest()
    assert bytes(received[600:650]) == b"b" * 50
    # Only one source was opened for track A
    assert [path for path, _ in sources.opened].count("a.mp3") == 1


@pytest.mark.asyncio
async def test_play_on_paused_track_resumes_without_advancing(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track_a = sources.add("a.mp3", b"a" * 1_000, SLOW)
    track_b = sources.add("b.mp3", b"b" * 1_000, SLOW)
    controller = _controller(hub, [track_a, track_b], sources)
    recorder = _Recorder(controller)
    _, received, task = _listen(hub)

    await controller.play()
    await _wait_for(lambda: len(received) >= 60)
    await controller.pause()
    await controller.play()
    await controller.play()
    await _wait_for(lambda: len(received) >= 200)
    await controller.close()
    await task

    assert recorder.started == [0]
    assert set(bytes(received)) == {ord("a")}


@pytest.mark.asyncio
async def test_pause_and_resume_are_noops_when_idle(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track = sources.add("a.mp3", b"a" * 100, SLOW)
    controller = _controller(hub, [track], sources)

    await controller.pause()
    await controller.resume()

    assert controller.state == PlaybackStateType.IDLE
    assert controller.current_track is None
    assert sources.opened == []
    await controller.close()


@pytest.mark.asyncio
async def test_source_error_advances_and_keeps_listeners(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track_a = sources.add("a.mp3", b"a" * 800, 16_000, fail_at=200)
    track_b = sources.add("b.mp3", b"b" * 400, SLOW)
    controller = _controller(hub, [track_a, track_b], sources, chunk_duration=0.05)
    recorder = _Recorder(controller)
    first_sink, first, first_task = _listen(hub)
    second_sink, second, second_task = _listen(hub)

    await controller.play()
    await _wait_for(lambda: len(first) >= 300 and len(second) >= 300)

    assert recorder.started[:2] == [0, 1]
    assert [event.track for event in recorder.errors] == [track_a]
    assert not first_sink.closed
    assert not second_sink.closed
    assert hub.client_count == 2
    assert controller.state == PlaybackStateType.PLAYING

    await controller.close()
    await asyncio.gather(first_task, second_task)
    assert bytes(first[:300]) == bytes(second[:300]) == b"a" * 200 + b"b" * 100


@pytest.mark.asyncio
async def test_unopenable_track_is_skipped(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track_a = sources.add("a.mp3", b"a" * 100, SLOW, unopenable=True)
    track_b = sources.add("b.mp3", b"b" * 1_000, SLOW)
    controller = _controller(hub, [track_a, track_b], sources)
    recorder = _Recorder(controller)

    await controller.play()
    await _wait_for(lambda: len(recorder.started) >= 1)

    assert recorder.started == [1]
    assert [event.track for event in recorder.errors] == [track_a]
    assert controller.current_track == track_b
    await controller.close()


@pytest.mark.asyncio
async def test_failing_playlist_waits_before_retrying(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    tracks = [
        sources.add("a.mp3", b"", SLOW, unopenable=True),
        sources.add("b.mp3", b"", SLOW, unopenable=True),
    ]
    controller = _controller(hub, tracks, sources, retry_delay=0.2)

    await controller.play()
    await asyncio.sleep(0.5)

    # One round of two attempts per retry window
    assert 2 <= len(sources.open_attempts) <= 8
    assert controller.state == PlaybackStateType.LOADING
    await asyncio.wait_for(controller.close(), timeout=1)
    assert controller.state == PlaybackStateType.IDLE


@pytest.mark.asyncio
async def test_scenario_listener_joining_mid_track_hears_rest_then_next(
    sources: SourceRegistry,
) -> None:
    # A: 0.4s at 16 kbps, B: 0.2s at 8 kbps
    hub = BroadcastHub()
    track_a = sources.add("a.mp3", b"a" * 800, 16_000)
    track_b = sources.add("b.mp3", b"b" * 200, SLOW)
    controller = _controller(hub, [track_a, track_b], sources, chunk_duration=0.05)
    recorder = _Recorder(controller)

    await controller.play()
    await asyncio.sleep(0.1)
    _, received, task = _listen(hub)
    await _wait_for(lambda: len(recorder.started) >= 3)
    await _wait_for(lambda: received.endswith(b"a"))
    await controller.close()
    await task

    match = re.fullmatch(rb"(a+)(b+)(a+)", bytes(received))
    assert match is not None
    assert 0 < len(match.group(1)) < 800
    assert len(match.group(2)) == 200


@pytest.mark.asyncio
async def test_close_drains_sinks_and_rejects_play(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track = sources.add("a.mp3", b"a" * 1_000, SLOW)
    controller = _controller(hub, [track], sources)
    sink, _, task = _listen(hub)

    await controller.play()
    await _wait_for(lambda: controller.state == PlaybackStateType.PLAYING)
    await controller.close()
    await task

    assert sink.closed
    assert hub.client_count == 0
    assert sources.opened[0][1].closed
    assert controller.state == PlaybackStateType.IDLE
    with pytest.raises(RuntimeError):
        await controller.play()


@pytest.mark.asyncio
async def test_status_snapshot(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track = sources.add("a.mp3", b"a" * 1_000, SLOW)
    controller = _controller(hub, [track], sources)
    hub.add_client()

    idle = controller.status()
    assert idle.state == PlaybackStateType.IDLE
    assert idle.track is None
    assert idle.listeners == 1
    assert idle.playlist_size == 1

    await controller.play()
    await _wait_for(lambda: controller.state == PlaybackStateType.PLAYING)
    playing = controller.status()
    assert playing.track == track
    assert playing.position == 0
    await controller.close()


def test_playlist_validation(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    controller = PlaybackController(hub)
    with pytest.raises(ValueError):
        controller.load_playlist([])
    controller.load_playlist([sources.add("a.mp3", b"a", SLOW)])
    assert controller.playlist == [Track(path="a.mp3", bitrate=SLOW)]


@pytest.mark.asyncio
async def test_play_without_tracks_raises() -> None:
    controller = PlaybackController(BroadcastHub())
    with pytest.raises(RuntimeError):
        await controller.play()


@pytest.mark.asyncio
async def test_pause_while_loading_keeps_opened_track(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    data = bytes(range(200))
    track_a = sources.add("a.mp3", data, SLOW)
    track_b = sources.add("b.mp3", b"b" * 1_000, SLOW)
    gate = asyncio.Event()

    async def _slow_factory(track: Track) -> MemorySource:
        await gate.wait()
        return await sources.factory(track)

    controller = PlaybackController(
        hub, [track_a, track_b], source_factory=_slow_factory, chunk_duration=CHUNK_S
    )
    _, received, task = _listen(hub)

    await controller.play()
    await asyncio.sleep(0.05)
    assert controller.state == PlaybackStateType.LOADING
    pausing = asyncio.create_task(controller.pause())
    await asyncio.sleep(0.05)
    assert not pausing.done()
    gate.set()
    await asyncio.wait_for(pausing, timeout=1)

    assert controller.state == PlaybackStateType.PAUSED
    assert controller.current_track == track_a
    await asyncio.sleep(0.05)
    assert received == b""

    await controller.resume()
    assert controller.state == PlaybackStateType.PLAYING
    await _wait_for(lambda: len(received) >= 100)
    await controller.close()
    await task
    assert bytes(received[:100]) == data[:100]


@pytest.mark.asyncio
async def test_pause_during_retry_wait_returns_to_idle(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    tracks = [
        sources.add("a.mp3", b"", SLOW, unopenable=True),
        sources.add("b.mp3", b"", SLOW, unopenable=True),
    ]
    controller = _controller(hub, tracks, sources, retry_delay=5.0)

    await controller.play()
    await _wait_for(lambda: len(sources.open_attempts) == 2)
    await asyncio.wait_for(controller.pause(), timeout=1)

    assert controller.state == PlaybackStateType.IDLE
    assert controller.current_track is None
    assert len(sources.open_attempts) == 2
    await controller.close()


@pytest.mark.asyncio
async def test_skip_while_paused_plays_next_track(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track_a = sources.add("a.mp3", b"a" * 1_000, SLOW)
    track_b = sources.add("b.mp3", b"b" * 1_000, SLOW)
    controller = _controller(hub, [track_a, track_b], sources)
    recorder = _Recorder(controller)
    _, received, task = _listen(hub)

    await controller.play()
    await _wait_for(lambda: len(received) >= 60)
    await controller.pause()
    paused_at = len(received)

    await controller.skip()
    await _wait_for(lambda: len(received) >= paused_at + 60)

    assert recorder.started == [0, 1]
    assert controller.state == PlaybackStateType.PLAYING
    assert controller.current_track == track_b
    assert sources.opened[0][1].closed
    await controller.close()
    await task
    assert set(bytes(received[:paused_at])) == {ord("a")}
    assert set(bytes(received[paused_at:])) == {ord("b")}


@pytest.mark.asyncio
async def test_resume_at_end_of_track_advances_to_next(sources: SourceRegistry) -> None:
    # One 200 byte chunk per track, the next read is due 0.2s later.
    hub = BroadcastHub()
    track_a = sources.add("a.mp3", b"a" * 200, SLOW)
    track_b = sources.add("b.mp3", b"b" * 1_000, SLOW)
    controller = _controller(hub, [track_a, track_b], sources, chunk_duration=0.2)
    recorder = _Recorder(controller)
    _, received, task = _listen(hub)

    await controller.play()
    await _wait_for(lambda: len(received) >= 200)
    await controller.pause()
    assert controller.state == PlaybackStateType.PAUSED
    assert controller.current_track == track_a

    await controller.resume()
    await _wait_for(lambda: len(recorder.started) >= 2)
    await _wait_for(lambda: len(received) > 200)

    assert recorder.started == [0, 1]
    assert controller.current_track == track_b
    await controller.close()
    await task
    assert bytes(received[:200]) == b"a" * 200
    assert received[200:201] == b"b"


class _CrashingSource(MemorySource):
    async def read(self, size: int) -> bytes:
        raise RuntimeError("decoder crashed")


@pytest.mark.asyncio
async def test_unexpected_source_failure_returns_to_idle(sources: SourceRegistry) -> None:
    hub = BroadcastHub()
    track_a = sources.add("a.mp3", b"a" * 1_000, SLOW)
    track_b = sources.add("b.mp3", b"b" * 1_000, SLOW)
    crashing = _CrashingSource(b"")

    async def _factory(track: Track) -> MemorySource:
        if track == track_a:
            return crashing
        return await sources.factory(track)

    controller = PlaybackController(
        hub, [track_a, track_b], source_factory=_factory, chunk_duration=CHUNK_S
    )
    recorder = _Recorder(controller)

    await controller.play()
    await _wait_for(lambda: controller.state == PlaybackStateType.IDLE)

    assert controller.current_track is None
    assert crashing.closed

    await controller.play()
    await _wait_for(lambda: controller.state == PlaybackStateType.PLAYING)
    assert recorder.started == [0, 1]
    assert controller.current_track == track_b
    await controller.close()
