"""FFmpeg/ffprobe subprocess helpers."""

import asyncio
import json
import logging
import re
import shutil
import subprocess
from functools import lru_cache
from pathlib import Path

from dashmark.models import EncodingProfile, SourceMedia

LOG = logging.getLogger(__name__)

DEFAULT_FPS = 30.0
READ_CHUNK = 64 * 1024
CODEC_RE = re.compile(r"\(codec (\w+)\)")
DEFAULT_VIDEO_CODEC_RE = re.compile(r"Default video codec:\s*(\w+)")

# Fragmented MP4 can be written to a non-seekable pipe.
MP4_PIPE_FLAGS = ["-movflags", "frag_keyframe+empty_moov+default_base_moof"]


class FFmpegNotFoundError(RuntimeError):
    pass


def check_ffmpeg() -> None:
    """Raise FFmpegNotFoundError if ffmpeg/ffprobe are not on PATH."""
    for cmd in ("ffmpeg", "ffprobe"):
        if shutil.which(cmd) is None:
            raise FFmpegNotFoundError(f"{cmd} not found on PATH")


def _parse_rate(rate: str | None) -> float | None:
    if not rate:
        return None
    num, _, den = rate.partition("/")
    try:
        value = float(num) / float(den or 1)
    except (ValueError, ZeroDivisionError):
        return None
    return value if value > 0 else None


def probe(input_path: Path) -> SourceMedia:
    """Extract video metadata via ffprobe. Audio streams are ignored."""
    cmd = [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(input_path),
    ]
    result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    data = json.loads(result.stdout)

    video_stream = next(
        (s for s in data.get("streams", []) if s.get("codec_type") == "video"), None
    )
    if video_stream is None:
        raise ValueError(f"No video stream found in {input_path}")

    fps = (
        _parse_rate(video_stream.get("r_frame_rate"))
        or _parse_rate(video_stream.get("avg_frame_rate"))
        or DEFAULT_FPS
    )
    duration = data.get("format", {}).get("duration") or video_stream.get("duration") or 0.0

    return SourceMedia(
        path=Path(input_path),
        width=int(video_stream["width"]),
        height=int(video_stream["height"]),
        duration=float(duration),
        fps=fps,
        codec_video=video_stream.get("codec_name", ""),
    )


# ---------------------------------------------------------------------------
# Capability query
# ---------------------------------------------------------------------------

def _table_rows(stdout: str) -> list[list[str]]:
    """Split the rows following the dashed separator of an ffmpeg listing."""
    rows: list[list[str]] = []
    in_table = False
    for line in stdout.splitlines():
        stripped = line.strip()
        if not in_table:
            in_table = bool(stripped) and set(stripped) == {"-"}
            continue
        parts = stripped.split(None, 2)
        if len(parts) >= 2:
            rows.append(parts)
    return rows


def parse_muxers(stdout: str) -> set[str]:
    """Names of formats ffmpeg can write, from ``ffmpeg -muxers``."""
    names: set[str] = set()
    for flags, name, *_ in _table_rows(stdout):
        if "E" in flags:
            names.update(n for n in name.split(",") if n)
    return names


def parse_encoders(stdout: str) -> set[str]:
    """Names of video encoders, from ``ffmpeg -encoders``."""
    return {name for flags, name, *_ in _table_rows(stdout) if flags.startswith("V")}


def parse_encodable_codecs(stdout: str) -> set[str]:
    """Video codecs with at least one encoder, from ``ffmpeg -encoders``.

    Wrapper encoders name their codec as ``(codec vp9)``; native encoders
    are named after the codec itself.
    """
    codecs: set[str] = set()
    for flags, name, *desc in _table_rows(stdout):
        if not flags.startswith("V"):
            continue
        m = CODEC_RE.search(" ".join(desc))
        codecs.add(m.group(1) if m else name)
    return codecs


def parse_default_video_codec(stdout: str) -> str | None:
    """The muxer's default video codec, from ``ffmpeg -h muxer=NAME``."""
    m = DEFAULT_VIDEO_CODEC_RE.search(stdout)
    return m.group(1) if m else None


@lru_cache(maxsize=None)
def list_muxers() -> frozenset[str]:
    result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-muxers"], capture_output=True, text=True, check=True
    )
    return frozenset(parse_muxers(result.stdout))


@lru_cache(maxsize=None)
def list_encoders() -> frozenset[str]:
    result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-encoders"], capture_output=True, text=True, check=True
    )
    return frozenset(parse_encoders(result.stdout))


@lru_cache(maxsize=None)
def list_encodable_codecs() -> frozenset[str]:
    result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-encoders"], capture_output=True, text=True, check=True
    )
    return frozenset(parse_encodable_codecs(result.stdout))


@lru_cache(maxsize=None)
def muxer_default_codec(muxer: str) -> str | None:
    result = subprocess.run(
        ["ffmpeg", "-hide_banner", "-h", f"muxer={muxer}"],
        capture_output=True, text=True, check=True,
    )
    return parse_default_video_codec(result.stdout)


def is_format_supported(muxer: str, encoder: str | None) -> bool:
    """True when this ffmpeg build can write *muxer* with *encoder*.

    With no *encoder*, the muxer's default video codec must be encodable.
    """
    try:
        if muxer not in list_muxers():
            return False
        if encoder is not None:
            return encoder in list_encoders()
        default = muxer_default_codec(muxer)
        return default is not None and default in list_encodable_codecs()
    except (OSError, subprocess.CalledProcessError) as e:
        LOG.warning("ffmpeg capability query failed: %s", e)
        return False


# ---------------------------------------------------------------------------
# Decode / encode commands
# ---------------------------------------------------------------------------

def decode_command(source: SourceMedia) -> list[str]:
    """Decode the source, muted, to raw rgb24 frames on stdout."""
    return [
        "ffmpeg",
        "-v", "error",
        "-nostdin",
        "-i", str(source.path),
        "-an",
        "-f", "rawvideo",
        "-pix_fmt", "rgb24",
        "-s", f"{source.width}x{source.height}",
        "-r", f"{source.fps:g}",
        "pipe:1",
    ]


def encode_command(
    profile: EncodingProfile, width: int, height: int, frame_rate: float
) -> list[str]:
    """Encode raw rgb24 frames from stdin into *profile*'s container on stdout."""
    cmd = [
        "ffmpeg",
        "-v", "error",
        "-f", "rawvideo",
        "-pix_fmt", "rgb24",
        "-s", f"{width}x{height}",
        "-r", f"{frame_rate:g}",
        "-i", "pipe:0",
        "-an",
    ]
    if profile.encoder:
        cmd += ["-c:v", profile.encoder]
    cmd += ["-b:v", str(profile.bitrate), "-pix_fmt", "yuv420p"]
    if profile.muxer == "mp4":
        cmd += MP4_PIPE_FLAGS
    cmd += ["-f", profile.muxer, "pipe:1"]
    return cmd


def _stderr_tail(data: bytes, limit: int = 500) -> str:
    return data.decode(errors="replace").strip()[-limit:]


class FrameDecoder:
    """Async reader of fixed-size raw frames from an ffmpeg decode process."""

    def __init__(self, process: asyncio.subprocess.Process, frame_size: int):
        self._process = process
        self._frame_size = frame_size
        self.frames_read = 0

    @classmethod
    async def open(cls, source: SourceMedia) -> "FrameDecoder":
        process = await asyncio.create_subprocess_exec(
            *decode_command(source),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return cls(process, source.frame_size)

    async def read_frame(self) -> bytes | None:
        """Return the next frame, or None at end of stream."""
        try:
            data = await self._process.stdout.readexactly(self._frame_size)
        except asyncio.IncompleteReadError as e:
            if e.partial:
                LOG.warning("Dropping truncated trailing frame (%d bytes)", len(e.partial))
            return await self._finish()
        self.frames_read += 1
        return data

    async def _finish(self) -> None:
        rc = await self._process.wait()
        stderr = await self._process.stderr.read()
        if rc != 0:
            if self.frames_read == 0:
                raise RuntimeError(
                    f"ffmpeg decode failed (rc={rc}): {_stderr_tail(stderr) or 'no output'}"
                )
            LOG.warning("ffmpeg decode exited with rc=%d after %d frames", rc, self.frames_read)
        return None

    async def close(self) -> None:
        if self._process.returncode is None:
            self._process.kill()
            await self._process.wait()


class StreamEncoder:
    """An ffmpeg encode process fed raw frames on stdin, emitting on stdout."""

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process

    @classmethod
    async def open(
        cls, profile: EncodingProfile, width: int, height: int, frame_rate: float
    ) -> "StreamEncoder":
        cmd = encode_command(profile, width, height, frame_rate)
        LOG.debug("Starting encoder: %s", " ".join(cmd))
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return cls(process)

    async def write(self, frame: bytes) -> None:
        self._process.stdin.write(frame)
        await self._process.stdin.drain()

    async def read(self, n: int = READ_CHUNK) -> bytes:
        return await self._process.stdout.read(n)

    def close_input(self) -> None:
        if not self._process.stdin.is_closing():
            self._process.stdin.close()

    async def wait(self) -> int:
        rc = await self._process.wait()
        if rc != 0:
            stderr = await self._process.stderr.read()
            LOG.error("ffmpeg encode failed (rc=%d): %s", rc, _stderr_tail(stderr))
        return rc

    async def kill(self) -> None:
        if self._process.returncode is None:
            self._process.kill()
            await self._process.wait()
