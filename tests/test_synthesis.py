"""Tests for the speech synthesis stream: queueing, barge-in and reconnects."""

import asyncio
import struct

import pytest

from conftest import FakeTTSFactory, settle
from outdial.pipeline.synthesis import SynthesisStream
from outdial.session import LogSource


class Sink:
    def __init__(self):
        self.audio: list[bytes] = []

    async def __call__(self, audio: bytes) -> None:
        self.audio.append(audio)


async def _started(factory, session=None, **kwargs):
    sink = Sink()
    stream = SynthesisStream(factory, sink, session, **kwargs)
    stream.start()
    await settle()
    return stream, sink


class TestTextFlow:

    @pytest.mark.asyncio
    async def test_connects_on_start(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory)
        assert stream.is_connected
        assert factory.live is factory.instances[0]
        await stream.stop()

    @pytest.mark.asyncio
    async def test_fragments_forwarded_when_connected(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory)
        await stream.send_text("Hello ")
        await stream.send_text("there!")
        await stream.flush()
        assert factory.live.sent == ["Hello ", "there!"]
        assert factory.live.flushes == 1
        await stream.stop()

    @pytest.mark.asyncio
    async def test_text_queued_until_connected(self):
        factory = FakeTTSFactory()
        stream = SynthesisStream(factory, Sink())
        await stream.send_text("one ")
        await stream.send_text("two")
        await stream.flush()
        assert stream.pending_text == ["one ", "two"]

        stream.start()
        await settle()
        assert factory.live.sent == ["one ", "two"]
        assert factory.live.flushes == 1
        assert stream.pending_text == []
        await stream.stop()

    @pytest.mark.asyncio
    async def test_empty_fragment_ignored(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory)
        await stream.send_text("")
        assert factory.live.sent == []
        await stream.stop()

    @pytest.mark.asyncio
    async def test_failed_send_is_requeued(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory, reconnect_backoff_seconds=10)
        factory.live.closed = True  # next send raises
        tts = factory.instances[0]
        await stream.send_text("keep me")
        assert stream.pending_text == ["keep me"]
        assert tts.sent == []
        await stream.stop()


class TestAudioFlow:

    @pytest.mark.asyncio
    async def test_audio_forwarded_and_playing_tracked(self):
        factory = FakeTTSFactory()
        stream, sink = await _started(factory)
        assert not stream.is_playing()

        factory.live.emit(b"\x01" * 160)
        await settle()
        assert stream.is_playing()
        assert sink.audio == [b"\x01" * 160]

        factory.live.emit(b"", is_final=True)
        await settle()
        assert not stream.is_playing()
        await stream.stop()

    @pytest.mark.asyncio
    async def test_pcm_is_transcoded(self):
        factory = FakeTTSFactory(codec="pcm16")
        stream, sink = await _started(factory)
        pcm = struct.pack("<480h", *([0] * 480))  # 20 ms at 24 kHz
        factory.live.emit(pcm, sample_rate=24000)
        await settle()
        assert sink.audio == [b"\xff" * 160]
        await stream.stop()

    @pytest.mark.asyncio
    async def test_sink_errors_do_not_kill_stream(self):
        async def broken_sink(audio):
            raise ConnectionError("socket gone")

        factory = FakeTTSFactory()
        stream = SynthesisStream(factory, broken_sink)
        stream.start()
        await settle()
        factory.live.emit(b"\x01" * 160)
        await settle()
        assert stream.is_connected
        await stream.stop()


class TestInterrupt:

    @pytest.mark.asyncio
    async def test_interrupt_clears_and_reconnects(self):
        interrupts = []
        factory = FakeTTSFactory()
        stream, sink = await _started(factory, on_interrupt=lambda: interrupts.append(1))
        first = factory.live
        first.emit(b"\x01" * 160)
        await settle()
        assert stream.is_playing()

        stream.interrupt()
        assert not stream.is_playing()
        assert stream.generation == 1
        assert interrupts == [1]

        await settle()
        assert first.closed
        assert len(factory.instances) == 2
        assert factory.live is factory.instances[1]
        await stream.stop()

    @pytest.mark.asyncio
    async def test_audio_after_interrupt_discarded(self):
        factory = FakeTTSFactory()
        stream, sink = await _started(factory)
        first = factory.live
        first.emit(b"\x01" * 160)
        await settle()

        stream.interrupt()
        first._queue.put_nowait(None)
        await settle()
        assert sink.audio == [b"\x01" * 160]
        assert not stream.is_playing()
        await stream.stop()

    @pytest.mark.asyncio
    async def test_interrupt_drops_queued_text(self):
        factory = FakeTTSFactory()
        stream = SynthesisStream(factory, Sink())
        await stream.send_text("stale")
        await stream.flush()
        stream.interrupt()
        assert stream.pending_text == []

        stream.start()
        await settle()
        assert factory.live.sent == []
        assert factory.live.flushes == 0
        await stream.stop()

    @pytest.mark.asyncio
    async def test_new_turn_after_interrupt(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory)
        stream.interrupt()
        await stream.send_text("Goodbye.")
        await stream.flush()
        await settle()
        assert factory.live.sent == ["Goodbye."]
        assert factory.live.flushes == 1
        await stream.stop()


class TestReconnect:

    @pytest.mark.asyncio
    async def test_unexpected_close_reconnects(self, session):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory, session, reconnect_backoff_seconds=0.001)
        factory.instances[0].drop()
        await asyncio.sleep(0.05)

        assert len(factory.instances) == 2
        assert stream.is_connected
        assert stream.reconnect_attempts == 0
        await stream.stop()

    @pytest.mark.asyncio
    async def test_text_sent_while_down_is_delivered(self, session):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory, session, reconnect_backoff_seconds=0.01)
        factory.instances[0].drop()
        await settle()
        assert not stream.is_connected

        await stream.send_text("still here")
        await stream.flush()
        await asyncio.sleep(0.05)
        assert factory.live.sent == ["still here"]
        assert factory.live.flushes == 1
        await stream.stop()

    @pytest.mark.asyncio
    async def test_close_after_finished_turn_is_expected(self, session):
        factory = FakeTTSFactory(auto_final=True)
        stream, _ = await _started(factory, session, reconnect_backoff_seconds=10)
        await stream.send_text("Hi")
        await stream.flush()
        await settle()
        factory.instances[0].drop()
        await settle()

        # Reconnected at once, without the 10 s backoff.
        assert len(factory.instances) == 2
        assert stream.is_connected
        await stream.stop()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session):
        factory = FakeTTSFactory(failures=100)
        stream, _ = await _started(
            factory, session, max_reconnect_attempts=3, reconnect_backoff_seconds=0.001
        )
        await asyncio.sleep(0.1)

        assert stream.is_exhausted
        assert not stream.is_connected
        assert len(factory.instances) == 4  # first try plus three reconnects
        assert session.logs[-1].source == LogSource.SYSTEM
        assert "gave up after 3 reconnect attempts" in session.logs[-1].text

        # Text is queued silently from now on.
        await stream.send_text("nobody hears this")
        assert stream.pending_text == ["nobody hears this"]
        await stream.stop()

    @pytest.mark.asyncio
    async def test_connect_failure_then_success(self, session):
        factory = FakeTTSFactory(failures=2)
        stream, _ = await _started(factory, session, reconnect_backoff_seconds=0.001)
        await asyncio.sleep(0.05)
        assert stream.is_connected
        assert stream.reconnect_attempts == 0
        assert not stream.is_exhausted
        await stream.stop()


class TestIdle:

    @pytest.mark.asyncio
    async def test_idle_without_turns(self):
        stream = SynthesisStream(FakeTTSFactory(), Sink())
        assert await stream.wait_until_idle(0.01) is True

    @pytest.mark.asyncio
    async def test_idle_after_final_chunk(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory)
        await stream.send_text("Hello")
        await stream.flush()
        assert await stream.wait_until_idle(0.01) is False

        factory.live.emit(b"\x01" * 160)
        factory.live.emit(b"", is_final=True)
        assert await stream.wait_until_idle(0.5) is True
        await stream.stop()

    @pytest.mark.asyncio
    async def test_interrupt_releases_waiters(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory)
        await stream.send_text("Hello")
        await stream.flush()
        waiter = asyncio.create_task(stream.wait_until_idle(1.0))
        await settle()
        stream.interrupt()
        assert await waiter is True
        await stream.stop()


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_closes_connection(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory)
        tts = factory.live
        await stream.stop()
        assert tts.closed
        assert not stream.is_connected

    @pytest.mark.asyncio
    async def test_no_reconnect_after_stop(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory, reconnect_backoff_seconds=0.001)
        await stream.stop()
        await asyncio.sleep(0.02)
        assert len(factory.instances) == 1

    @pytest.mark.asyncio
    async def test_send_after_stop_ignored(self):
        factory = FakeTTSFactory()
        stream, _ = await _started(factory)
        await stream.stop()
        await stream.send_text("late")
        assert stream.pending_text == []
