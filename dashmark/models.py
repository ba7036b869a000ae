"""Shared data types used across dashmark."""

import enum
from dataclasses import dataclass, field
from pathlib import Path

ERROR_DISPLAY_SECONDS = 5.0


class RunState(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CAPTURING = "capturing"
    FINALIZING = "finalizing"
    READY = "ready"
    FAILED = "failed"

    @property
    def busy(self) -> bool:
        return self in (RunState.NEGOTIATING, RunState.CAPTURING, RunState.FINALIZING)


@dataclass
class SourceMedia:
    """An opened video source and the metadata ffprobe reported for it."""

    path: Path
    width: int
    height: int
    duration: float
    fps: float
    codec_video: str = ""

    @property
    def frame_size(self) -> int:
        """Bytes in one decoded rgb24 frame."""
        return self.width * self.height * 3


@dataclass(frozen=True)
class EncodingProfile:
    """Container/codec/bitrate choice for one run.

    ``encoder`` is the ffmpeg encoder name; ``None`` leaves the choice to the
    muxer's default video codec.
    """

    extension: str
    mime_type: str
    muxer: str
    encoder: str | None
    bitrate: int = 10_000_000

    @property
    def codec(self) -> str | None:
        _, _, codecs = self.mime_type.partition("codecs=")
        return codecs.strip() or None


@dataclass
class OutputArtifact:
    """The finished byte stream plus its container extension."""

    data: bytes
    extension: str
    mime_type: str
    released: bool = False

    @property
    def size(self) -> int:
        return len(self.data)

    def write_to(self, path: Path) -> Path:
        if self.released:
            raise ValueError("artifact has been released")
        path = Path(path)
        path.write_bytes(self.data)
        return path

    def release(self) -> None:
        self.data = b""
        self.released = True


def strip_extension(filename: str) -> str:
    """Drop the final ``.ext`` from a filename, if there is one."""
    name = Path(filename).name
    stem, dot, _ = name.rpartition(".")
    return stem if dot and stem else name


def suggested_filename(original: str, extension: str) -> str:
    return f"{strip_extension(original)}_watermarked.{extension}"


@dataclass
class ErrorReport:
    """One user-facing message; display timing is the UI's business."""

    kind: str
    message: str
    display_seconds: float = ERROR_DISPLAY_SECONDS


@dataclass
class VideoFrame:
    """A decoded rgb24 frame and its presentation time in seconds."""

    index: int
    pts: float
    data: bytes = field(repr=False)
