"""Tests for the capture pipeline and its segment buffer."""

import asyncio

import pytest

from conftest import encoder_factory
from dashmark.capture import CapturePipeline, SegmentBuffer
from dashmark.editors.overlay import FrameBuffer
from dashmark.manifest import CaptureConfig
from dashmark.models import EncodingProfile

PROFILE = EncodingProfile("webm", "video/webm; codecs=vp8", "webm", "libvpx")
CONFIG = CaptureConfig(frame_rate=20, timeslice=0.1, grace_period=0.5)


class TestSegmentBuffer:
    def test_keeps_arrival_order(self):
        buf = SegmentBuffer()
        for data in (b"a", b"bb", b"ccc"):
            assert buf.append(data) is True
        assert list(buf) == [b"a", b"bb", b"ccc"]
        assert len(buf) == 3
        assert buf.nbytes == 6

    def test_drops_empty_units(self):
        buf = SegmentBuffer()
        assert buf.append(b"") is False
        assert len(buf) == 0

    def test_sealed_buffer_rejects_appends(self):
        buf = SegmentBuffer()
        buf.append(b"a")
        assert buf.seal() == [b"a"]
        with pytest.raises(RuntimeError, match="handed off"):
            buf.append(b"b")


async def _capture_for(seconds: float, open_encoder, config: CaptureConfig = CONFIG) -> CapturePipeline:
    capture = CapturePipeline(FrameBuffer(32, 18), PROFILE, config, open_encoder)
    await capture.start()
    await asyncio.sleep(seconds)
    await capture.stop()
    await capture.wait_flushed(config.grace_period)
    return capture


class TestCapturePipeline:
    def test_segments_reconstruct_encoder_output(self):
        open_encoder = encoder_factory()

        capture = asyncio.run(_capture_for(0.35, open_encoder))

        encoder = open_encoder.opened[0]
        assert capture.flushed.is_set()
        assert len(capture.segments) >= 2
        assert b"".join(capture.segments) == b"enc" * encoder.frames + b"tail"
        assert encoder.frames == capture.frames_sent

    def test_feeds_at_fixed_rate(self):
        open_encoder = encoder_factory()
        capture = asyncio.run(_capture_for(0.5, open_encoder))
        # 20 fps for half a second, plus the frame at t=0.
        assert 8 <= capture.frames_sent <= 14

    def test_sends_frame_buffer_contents(self):
        written: list[bytes] = []
        open_encoder = encoder_factory()

        async def run():
            capture = CapturePipeline(FrameBuffer(2, 2), PROFILE, CONFIG, open_encoder)
            await capture.start()
            encoder = open_encoder.opened[0]
            original = encoder.write

            async def spy(frame):
                written.append(frame)
                await original(frame)

            encoder.write = spy
            await asyncio.sleep(0.12)
            await capture.stop()
            await capture.abort()

        asyncio.run(run())
        assert written
        assert all(frame == bytes(2 * 2 * 3) for frame in written)

    def test_stop_twice_is_a_noop(self):
        open_encoder = encoder_factory()

        async def run():
            capture = await _capture_for(0.2, open_encoder)
            before = list(capture.segments)
            await capture.stop()
            await asyncio.sleep(0.25)
            return capture, before

        capture, before = asyncio.run(run())
        assert list(capture.segments) == before
        assert capture.active is False

    def test_stop_before_start_is_a_noop(self):
        capture = CapturePipeline(FrameBuffer(32, 18), PROFILE, CONFIG, encoder_factory())
        asyncio.run(capture.stop())
        assert len(capture.segments) == 0

    def test_silent_encoder_leaves_buffer_empty(self):
        open_encoder = encoder_factory(chunk=b"", tail=b"")
        capture = asyncio.run(_capture_for(0.25, open_encoder))
        assert len(capture.segments) == 0
        assert capture.flushed.is_set()

    def test_start_twice_rejected(self):
        async def run():
            capture = CapturePipeline(FrameBuffer(32, 18), PROFILE, CONFIG, encoder_factory())
            await capture.start()
            try:
                with pytest.raises(RuntimeError, match="already started"):
                    await capture.start()
            finally:
                await capture.abort()

        asyncio.run(run())

    def test_abort_kills_encoder(self):
        open_encoder = encoder_factory()

        async def run():
            capture = CapturePipeline(FrameBuffer(32, 18), PROFILE, CONFIG, open_encoder)
            await capture.start()
            await asyncio.sleep(0.05)
            await capture.abort()
            await capture.abort()
            return capture

        capture = asyncio.run(run())
        assert open_encoder.opened[0].killed is True
        assert capture.active is False

    def test_encoder_death_is_recorded(self):
        open_encoder = encoder_factory(crash_after=2, returncode=1)

        async def run():
            capture = CapturePipeline(FrameBuffer(32, 18), PROFILE, CONFIG, open_encoder)
            await capture.start()
            await asyncio.wait_for(capture.failed.wait(), 1.0)
            await asyncio.wait_for(capture.flushed.wait(), 1.0)
            await capture.abort()
            return capture

        capture = asyncio.run(run())
        assert "encoder stopped accepting frames" in capture.failure
        assert capture.frames_sent == 2
        assert capture.exit_code == 1

    def test_clean_stop_is_not_a_failure(self):
        capture = asyncio.run(_capture_for(0.2, encoder_factory()))
        assert capture.failure is None
        assert not capture.failed.is_set()
        assert capture.exit_code == 0
