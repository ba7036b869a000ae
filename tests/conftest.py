"""Shared test fixtures and in-process stand-ins for the ffmpeg processes."""

import asyncio
import shutil
import subprocess
from pathlib import Path

import pytest

from dashmark.models import SourceMedia

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def sample_manifest_path() -> Path:
    return FIXTURES_DIR / "sample_manifest.json"


def make_source(
    width: int = 320,
    height: int = 180,
    fps: float = 10.0,
    frames: int = 10,
    name: str = "2024-01-01_00-00-00-000.mp4",
) -> SourceMedia:
    return SourceMedia(
        path=Path(name), width=width, height=height, duration=frames / fps, fps=fps
    )


class FakeDecoder:
    """Hands out a fixed list of raw frames, then end of stream."""

    def __init__(self, frames: list[bytes]):
        self.frames = list(frames)
        self.closed = False

    async def read_frame(self) -> bytes | None:
        if self.frames:
            return self.frames.pop(0)
        return None

    async def close(self) -> None:
        self.closed = True


def decoder_factory(frames: int, fail: Exception | None = None):
    """``open_decoder`` producing *frames* mid-gray frames."""
    opened: list[FakeDecoder] = []

    async def open_decoder(source: SourceMedia) -> FakeDecoder:
        if fail is not None:
            raise fail
        decoder = FakeDecoder([bytes([128]) * source.frame_size for _ in range(frames)])
        opened.append(decoder)
        return decoder

    open_decoder.opened = opened
    return open_decoder


class FakeEncoder:
    """Emits ``chunk`` per frame written and ``tail`` once input is closed.

    With ``crash_after`` set, the encoder dies once that many frames were
    written: stdout hits EOF and further writes raise BrokenPipeError.
    """

    def __init__(
        self,
        chunk: bytes = b"enc",
        tail: bytes = b"tail",
        crash_after: int | None = None,
        returncode: int = 0,
    ):
        self.chunk = chunk
        self.tail = tail
        self.crash_after = crash_after
        self.returncode = returncode
        self.frames = 0
        self.input_closed = False
        self.killed = False
        self.queue: asyncio.Queue = asyncio.Queue()

    async def write(self, frame: bytes) -> None:
        if self.input_closed:
            raise BrokenPipeError("input closed")
        if self.crash_after is not None and self.frames >= self.crash_after:
            self.input_closed = True
            self.queue.put_nowait(b"")
            raise BrokenPipeError("encoder died")
        self.frames += 1
        if self.chunk:
            self.queue.put_nowait(self.chunk)

    async def read(self, n: int = 65536) -> bytes:
        return await self.queue.get()

    def close_input(self) -> None:
        if self.input_closed:
            return
        self.input_closed = True
        if self.tail:
            self.queue.put_nowait(self.tail)
        self.queue.put_nowait(b"")

    async def wait(self) -> int:
        return self.returncode

    async def kill(self) -> None:
        self.killed = True
        self.queue.put_nowait(b"")


def encoder_factory(chunk: bytes = b"enc", tail: bytes = b"tail", **kwargs):
    """``open_encoder`` that records the FakeEncoders it creates."""
    opened: list[FakeEncoder] = []

    async def open_encoder(profile, width, height, frame_rate) -> FakeEncoder:
        encoder = FakeEncoder(chunk, tail, **kwargs)
        opened.append(encoder)
        return encoder

    open_encoder.opened = opened
    return open_encoder


def supports_everything(muxer: str, encoder: str | None) -> bool:
    return True


needs_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not on PATH",
)


@pytest.fixture
def dashcam_video(tmp_path: Path) -> Path:
    """A real 10-second silent clip named like a dashcam recording."""
    output = tmp_path / "2024-01-01_00-00-00-000.mp4"
    cmd = [
        "ffmpeg", "-y", "-v", "error",
        "-f", "lavfi",
        "-i", "testsrc2=s=320x240:r=25:d=10",
        "-c:v", "mpeg4",
        "-pix_fmt", "yuv420p",
        str(output),
    ]
    subprocess.run(cmd, check=True, capture_output=True)
    return output
