"""Capture pipeline: feeds the frame buffer to an encoder and buffers its output.

Three tasks run while capturing:

* the sampler writes a frame buffer snapshot to the encoder at the fixed
  capture rate, repeating the latest frame to catch up after a late tick;
* the reader drains encoded bytes from the encoder;
* the emitter turns whatever the reader collected into one segment per
  timeslice.

Segments are appended in arrival order; the final partial unit is appended
when the encoder reaches end of stream after ``stop()``.
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Iterator, Protocol

from dashmark.editors.overlay import FrameBuffer
from dashmark.ffutil import StreamEncoder
from dashmark.manifest import CaptureConfig
from dashmark.models import EncodingProfile

LOG = logging.getLogger(__name__)


class Encoder(Protocol):
    async def write(self, frame: bytes) -> None: ...

    async def read(self, n: int = ...) -> bytes: ...

    def close_input(self) -> None: ...

    async def wait(self) -> int: ...

    async def kill(self) -> None: ...


class SegmentBuffer:
    """Append-only, ordered list of encoded byte segments."""

    def __init__(self) -> None:
        self._segments: list[bytes] = []
        self._sealed = False

    def append(self, data: bytes) -> bool:
        """Append one segment. Empty data is dropped and returns False."""
        if self._sealed:
            raise RuntimeError("segment buffer has already been handed off")
        if not data:
            return False
        self._segments.append(bytes(data))
        return True

    def seal(self) -> list[bytes]:
        """Stop accepting segments and hand the current list to the caller."""
        self._sealed = True
        return list(self._segments)

    def clear(self) -> None:
        self._segments.clear()

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def nbytes(self) -> int:
        return sum(len(s) for s in self._segments)

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._segments)


OpenEncoder = Callable[[EncodingProfile, int, int, float], Awaitable[Encoder]]


class CapturePipeline:
    def __init__(
        self,
        frame_buffer: FrameBuffer,
        profile: EncodingProfile,
        config: CaptureConfig | None = None,
        open_encoder: OpenEncoder | None = None,
    ):
        self.frame_buffer = frame_buffer
        self.profile = profile
        self.config = config or CaptureConfig()
        self._open_encoder = open_encoder or StreamEncoder.open
        self.segments = SegmentBuffer()
        self.active = False
        self.flushed = asyncio.Event()
        self.frames_sent = 0
        self.exit_code: int | None = None
        self.failed = asyncio.Event()
        self.failure: str | None = None
        self._encoder: Encoder | None = None
        self._pending = bytearray()
        self._sampler: asyncio.Task | None = None
        self._reader: asyncio.Task | None = None
        self._emitter: asyncio.Task | None = None

    async def start(self) -> None:
        if self._encoder is not None:
            raise RuntimeError("capture pipeline was already started")
        fb = self.frame_buffer
        self._encoder = await self._open_encoder(
            self.profile, fb.width, fb.height, self.config.frame_rate
        )
        self.active = True
        self._sampler = asyncio.create_task(self._sample())
        self._reader = asyncio.create_task(self._read())
        self._emitter = asyncio.create_task(self._emit())
        LOG.info(
            "Capturing at %g fps, %gs segments, %s",
            self.config.frame_rate, self.config.timeslice, self.profile.mime_type,
        )

    async def _sample(self) -> None:
        loop = asyncio.get_running_loop()
        interval = 1.0 / self.config.frame_rate
        start = loop.time()
        try:
            while self.active:
                due = int((loop.time() - start) / interval) + 1
                frame = self.frame_buffer.snapshot()
                while self.frames_sent < due:
                    await self._encoder.write(frame)
                    self.frames_sent += 1
                next_tick = start + self.frames_sent * interval
                await asyncio.sleep(max(next_tick - loop.time(), 0))
        except (BrokenPipeError, ConnectionResetError) as e:
            self._fail(f"encoder stopped accepting frames: {e}")

    async def _read(self) -> None:
        try:
            while True:
                chunk = await self._encoder.read()
                if not chunk:
                    break
                self._pending += chunk
            self._emit_pending()
            self.exit_code = await self._encoder.wait()
            if self.active:
                self._fail(f"encoder exited early with rc={self.exit_code}")
        finally:
            if self._emitter is not None:
                self._emitter.cancel()
            self.flushed.set()

    def _fail(self, reason: str) -> None:
        """Record the first encoder failure seen while capturing."""
        if self.failure is None:
            self.failure = reason
            LOG.error("Capture failed: %s", reason)
        self.failed.set()

    async def _emit(self) -> None:
        while True:
            await asyncio.sleep(self.config.timeslice)
            self._emit_pending()

    def _emit_pending(self) -> None:
        if self._pending and not self.segments.sealed:
            self.segments.append(bytes(self._pending))
            LOG.debug("Segment %d: %d bytes", len(self.segments), len(self._pending))
            self._pending.clear()

    async def stop(self) -> None:
        """Stop feeding frames and let the encoder flush. No-op when inactive."""
        if not self.active:
            return
        self.active = False
        await _cancel(self._sampler)
        self._encoder.close_input()
        LOG.debug("Capture stopped after %d frames", self.frames_sent)

    async def wait_flushed(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for the encoder's final segment."""
        try:
            await asyncio.wait_for(self.flushed.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def release_segments(self) -> list[bytes]:
        return self.segments.seal()

    async def abort(self) -> None:
        """Tear everything down; safe to call at any point, any number of times."""
        self.active = False
        for task in (self._sampler, self._emitter, self._reader):
            await _cancel(task)
        if self._encoder is not None:
            self._encoder.close_input()
            await self._encoder.kill()
        self._pending.clear()


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
