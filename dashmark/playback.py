"""Real-time source playback and the frame pump that watermarks each frame."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Protocol

from dashmark.editors.overlay import Compositor
from dashmark.errors import PlaybackError
from dashmark.ffutil import FrameDecoder
from dashmark.models import SourceMedia, VideoFrame

LOG = logging.getLogger(__name__)


class Decoder(Protocol):
    async def read_frame(self) -> bytes | None: ...

    async def close(self) -> None: ...


class Playback:
    """Presents decoded frames at their nominal times on the event loop clock.

    Frame *i* is handed out no earlier than ``start + i / fps``. Once the
    decoder runs dry and the last frame has had its display interval,
    ``ended`` is set.
    """

    def __init__(
        self,
        source: SourceMedia,
        open_decoder: Callable[[SourceMedia], Awaitable[Decoder]] | None = None,
    ):
        self.source = source
        self._open_decoder = open_decoder or FrameDecoder.open
        self._decoder: Decoder | None = None
        self._pending: bytes | None = None
        self._index = 0
        self._t0 = 0.0
        self.current_time = 0.0
        self.playing = False
        self.ended = asyncio.Event()

    @property
    def is_playing(self) -> bool:
        return self.playing and not self.ended.is_set()

    @property
    def duration(self) -> float:
        return self.source.duration

    async def start(self) -> None:
        """Begin muted playback from position 0.

        Raises PlaybackError when the decoder cannot be started or yields no
        frame at all.
        """
        if self._decoder is not None:
            raise PlaybackError("playback was already started")
        try:
            self._decoder = await self._open_decoder(self.source)
            self._pending = await self._decoder.read_frame()
        except PlaybackError:
            raise
        except Exception as e:
            raise PlaybackError(str(e) or type(e).__name__) from e
        if self._pending is None:
            raise PlaybackError("source contains no video frames")

        self._t0 = asyncio.get_running_loop().time()
        self.current_time = 0.0
        self.playing = True
        LOG.info(
            "Playing %s (%dx%d, %.2f fps, %.1fs)",
            self.source.path, self.source.width, self.source.height,
            self.source.fps, self.source.duration,
        )

    async def _wait_until(self, pts: float) -> None:
        delay = self._t0 + pts - asyncio.get_running_loop().time()
        await asyncio.sleep(max(delay, 0))

    async def next_frame(self) -> VideoFrame | None:
        """Wait for the next presentation boundary and return that frame.

        Returns None when playback is paused or has reached end of stream.
        """
        if not self.is_playing:
            return None
        if self._pending is None:
            self._pending = await self._decoder.read_frame()

        if self._pending is None:
            end = self._index / self.source.fps
            await self._wait_until(end)
            if self.is_playing:
                self.current_time = end
                self.playing = False
                self.ended.set()
                LOG.info("End of stream after %d frames", self._index)
            return None

        pts = self._index / self.source.fps
        await self._wait_until(pts)
        if not self.is_playing:
            return None
        frame = VideoFrame(index=self._index, pts=pts, data=self._pending)
        self._pending = None
        self._index += 1
        self.current_time = pts
        return frame

    def pause(self) -> None:
        self.playing = False

    async def close(self) -> None:
        self.pause()
        if self._decoder is not None:
            await self._decoder.close()


class FramePump:
    """Composites every presented frame; stops silently once playback stops."""

    def __init__(self, playback: Playback, compositor: Compositor, time_origin: datetime):
        self.playback = playback
        self.compositor = compositor
        self.time_origin = time_origin
        self.frames = 0
        self.first_text: str | None = None
        self.last_text: str | None = None

    async def run(self) -> int:
        while self.playback.is_playing:
            frame = await self.playback.next_frame()
            if frame is None:
                break
            instant = self.time_origin + timedelta(seconds=frame.pts)
            text = self.compositor.composite(frame.data, instant)
            if self.first_text is None:
                self.first_text = text
            self.last_text = text
            self.frames += 1
        LOG.debug("Frame pump stopped after %d frames", self.frames)
        return self.frames
