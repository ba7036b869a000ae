"""Orchestrator: runs the watermarking pipeline for one source.

One run: negotiate an encoding, start capture, play the source in real time
while the frame pump watermarks every frame, then on end of stream stop
everything and join the encoded segments into the output artifact.
"""

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from dashmark import ffutil
from dashmark.analyzers.capability import negotiate
from dashmark.analyzers.filename import resolve_time_origin
from dashmark.capture import CapturePipeline, OpenEncoder
from dashmark.editors.overlay import Compositor, FrameBuffer
from dashmark.errors import (
    DashmarkError,
    EmptyCaptureError,
    FinalizationError,
    FinishError,
    NoArtifactError,
    NoFileSelectedError,
    PlaybackError,
    RunInProgressError,
    WrongFileTypeError,
)
from dashmark.manifest import CaptureConfig, Manifest, OverlayConfig
from dashmark.models import (
    EncodingProfile,
    ErrorReport,
    OutputArtifact,
    RunState,
    SourceMedia,
    suggested_filename,
)
from dashmark.playback import FramePump, Playback
from dashmark.progress import ProgressTracker

LOG = logging.getLogger(__name__)


@dataclass
class EngineResult:
    artifact: OutputArtifact
    profile: EncodingProfile
    time_origin: datetime
    degraded_origin: bool = False
    frames_composited: int = 0
    segments: int = 0
    first_overlay: str | None = None
    last_overlay: str | None = None
    output_path: Path | None = None


class RunContext:
    """Everything one run owns; built per run and torn down when it ends."""

    def __init__(
        self,
        source: SourceMedia,
        time_origin: datetime,
        policy: str = "mp4-first",
        capture_config: CaptureConfig | None = None,
        overlay_config: OverlayConfig | None = None,
        progress_interval: float = 0.2,
        open_decoder=None,
        open_encoder: OpenEncoder | None = None,
        is_supported: Callable[[str, str | None], bool] | None = None,
        on_state: Callable[[RunState], None] | None = None,
        on_progress: Callable[[float], None] | None = None,
    ):
        self.source = source
        self.time_origin = time_origin
        self.policy = policy
        self.capture_config = capture_config or CaptureConfig()
        self.overlay_config = overlay_config or OverlayConfig()
        self.progress_interval = progress_interval
        self.open_encoder = open_encoder
        self.is_supported = is_supported
        self.on_state = on_state
        self.on_progress = on_progress

        self.state = RunState.IDLE
        self.profile: EncodingProfile | None = None
        self.frame_buffer: FrameBuffer | None = None
        self.playback = Playback(source, open_decoder)
        self.capture: CapturePipeline | None = None
        self.tracker: ProgressTracker | None = None
        self.pump: FramePump | None = None
        self.pump_task: asyncio.Task | None = None
        self.segment_count = 0
        self._finalized = False

    def set_state(self, state: RunState) -> None:
        LOG.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_state:
            self.on_state(state)

    async def teardown(self) -> None:
        """Stop playback, capture and sampling. Idempotent."""
        if self.pump_task is not None and not self.pump_task.done():
            self.pump_task.cancel()
            try:
                await self.pump_task
            except asyncio.CancelledError:
                pass
        if self.tracker is not None:
            await self.tracker.stop()
        await self.playback.close()
        if self.capture is not None:
            await self.capture.abort()
            self.capture.segments.clear()


async def _wait_for_end(ctx: RunContext) -> None:
    """Return once the source reports end of stream.

    Raises PlaybackError as soon as the frame pump crashes or the encoder dies.
    """
    ended = asyncio.create_task(ctx.playback.ended.wait())
    broken = asyncio.create_task(ctx.capture.failed.wait())
    try:
        done, _ = await asyncio.wait(
            {ended, broken, ctx.pump_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        ended.cancel()
        broken.cancel()
    if ctx.pump_task in done:
        exc = ctx.pump_task.exception()
        if exc is not None:
            raise PlaybackError(str(exc) or type(exc).__name__) from exc
    if ctx.capture.failure:
        raise PlaybackError(ctx.capture.failure)
    if not ctx.playback.ended.is_set():
        raise PlaybackError("playback stopped before the end of the video")


def build_artifact(segments: list[bytes], profile: EncodingProfile) -> OutputArtifact:
    return OutputArtifact(
        data=b"".join(segments),
        extension=profile.extension,
        mime_type=profile.mime_type or f"video/{profile.extension}",
    )


async def finalize(ctx: RunContext) -> OutputArtifact:
    """Pause, stop capture, allow the encoder to flush, then join segments."""
    if ctx._finalized:
        raise RuntimeError("run was already finalized")
    ctx._finalized = True
    ctx.set_state(RunState.FINALIZING)

    try:
        await ctx.tracker.stop()
        ctx.tracker.complete()
        ctx.playback.pause()
        await ctx.capture.stop()
        grace = ctx.capture_config.grace_period
        if not await ctx.capture.wait_flushed(grace):
            LOG.warning("Encoder did not flush within %.1fs; output may be truncated", grace)
        if ctx.capture.failure:
            raise FinishError(ctx.capture.failure)
        if ctx.capture.exit_code:
            raise FinishError(f"encoder exited with rc={ctx.capture.exit_code}")
        segments = ctx.capture.release_segments()
        ctx.segment_count = len(segments)
    except DashmarkError:
        raise
    except Exception as e:
        raise FinishError(str(e) or type(e).__name__) from e

    if not segments:
        raise EmptyCaptureError()

    try:
        artifact = build_artifact(segments, ctx.profile)
    except Exception as e:
        raise FinalizationError(str(e) or type(e).__name__) from e
    LOG.info("Output ready: %d segments, %d bytes (%s)", len(segments), artifact.size, artifact.mime_type)
    return artifact


async def run_pipeline(ctx: RunContext) -> EngineResult:
    """Execute one run. Raises a DashmarkError subclass on any fatal failure."""
    try:
        ctx.set_state(RunState.NEGOTIATING)
        ctx.profile = negotiate(ctx.policy, ctx.capture_config.bitrate, ctx.is_supported)

        source = ctx.source
        ctx.frame_buffer = FrameBuffer(source.width, source.height)
        compositor = Compositor(ctx.frame_buffer, ctx.overlay_config)
        ctx.capture = CapturePipeline(
            ctx.frame_buffer, ctx.profile, ctx.capture_config, ctx.open_encoder
        )
        try:
            await ctx.capture.start()
        except Exception as e:
            raise PlaybackError(f"encoder could not start: {e}") from e
        ctx.set_state(RunState.CAPTURING)

        await ctx.playback.start()
        ctx.pump = FramePump(ctx.playback, compositor, ctx.time_origin)
        ctx.pump_task = asyncio.create_task(ctx.pump.run())
        ctx.tracker = ProgressTracker(ctx.playback, ctx.progress_interval, ctx.on_progress)
        ctx.tracker.start()

        await _wait_for_end(ctx)
        artifact = await finalize(ctx)
        ctx.set_state(RunState.READY)
    except DashmarkError as e:
        LOG.error("%s", e)
        ctx.set_state(RunState.FAILED)
        raise
    except Exception as e:
        LOG.exception("Run failed")
        ctx.set_state(RunState.FAILED)
        raise PlaybackError(str(e) or type(e).__name__) from e
    finally:
        await ctx.teardown()

    return EngineResult(
        artifact=artifact,
        profile=ctx.profile,
        time_origin=ctx.time_origin,
        frames_composited=ctx.pump.frames,
        segments=ctx.segment_count,
        first_overlay=ctx.pump.first_text,
        last_overlay=ctx.pump.last_text,
    )


class WatermarkSession:
    """Owns the run state for one user: source selection, runs, output.

    At most one run is live; selecting or starting while a run is busy is
    rejected. Every failure is recorded once on ``errors``.
    """

    def __init__(
        self,
        policy: str = "mp4-first",
        capture_config: CaptureConfig | None = None,
        overlay_config: OverlayConfig | None = None,
        progress_interval: float = 0.2,
        probe: Callable[[Path], SourceMedia] = ffutil.probe,
        open_decoder=None,
        open_encoder: OpenEncoder | None = None,
        is_supported: Callable[[str, str | None], bool] | None = None,
        on_progress: Callable[[str, float], None] | None = None,
        on_error: Callable[[ErrorReport], None] | None = None,
    ):
        self.policy = policy
        self.capture_config = capture_config or CaptureConfig()
        self.overlay_config = overlay_config or OverlayConfig()
        self.progress_interval = progress_interval
        self._probe = probe
        self._open_decoder = open_decoder
        self._open_encoder = open_encoder
        self._is_supported = is_supported
        self.on_progress = on_progress
        self.on_error = on_error

        self.state = RunState.IDLE
        self.progress = 0.0
        self.errors: list[ErrorReport] = []
        self.source: SourceMedia | None = None
        self.filename: str | None = None
        self.time_origin: datetime | None = None
        self.degraded_origin = False
        self.artifact: OutputArtifact | None = None
        self.result: EngineResult | None = None

    @classmethod
    def from_manifest(cls, manifest: Manifest, **kwargs) -> "WatermarkSession":
        return cls(
            policy=manifest.policy,
            capture_config=manifest.capture,
            overlay_config=manifest.overlay,
            progress_interval=manifest.progress_interval,
            **kwargs,
        )

    def report(self, error: DashmarkError) -> ErrorReport:
        entry = ErrorReport(kind=error.kind, message=error.message)
        self.errors.append(entry)
        if self.on_error:
            self.on_error(entry)
        return entry

    def fail(self, error: DashmarkError) -> DashmarkError:
        self.report(error)
        return error

    def _set_state(self, state: RunState) -> None:
        self.state = state
        if self.on_progress:
            self.on_progress(state.value, self.progress)

    def _set_progress(self, value: float) -> None:
        self.progress = value
        if self.on_progress:
            self.on_progress(self.state.value, value)

    def select(self, path: Path | None, filename: str | None, media_type: str | None) -> SourceMedia:
        """Accept a new source: check its type, read its start time, probe it.

        A *media_type* of None means the caller could not tell; the probe then
        decides, and a file without a video stream is still the wrong type.
        """
        if self.state.busy:
            raise self.fail(RunInProgressError())
        if path is None or not filename:
            raise self.fail(NoFileSelectedError())
        if media_type is not None and not media_type.startswith("video/"):
            raise self.fail(WrongFileTypeError())

        try:
            source = self._probe(Path(path))
        except ValueError as e:
            raise self.fail(WrongFileTypeError(str(e))) from e
        except Exception as e:
            raise self.fail(PlaybackError(f"could not read {filename}: {e}")) from e

        self.time_origin, self.degraded_origin = resolve_time_origin(
            filename, on_warning=self.report
        )
        self.source = source
        self.filename = filename
        self.progress = 0.0
        self.state = RunState.IDLE
        LOG.info("Selected %s, start time %s", filename, self.time_origin)
        return source

    async def run(self) -> EngineResult:
        if self.state.busy:
            raise self.fail(RunInProgressError())
        if self.source is None:
            raise self.fail(NoFileSelectedError())

        if self.artifact is not None:
            self.artifact.release()
            self.artifact = None
        self.result = None
        self.progress = 0.0

        ctx = RunContext(
            self.source,
            self.time_origin,
            policy=self.policy,
            capture_config=self.capture_config,
            overlay_config=self.overlay_config,
            progress_interval=self.progress_interval,
            open_decoder=self._open_decoder,
            open_encoder=self._open_encoder,
            is_supported=self._is_supported,
            on_state=self._set_state,
            on_progress=self._set_progress,
        )
        try:
            result = await run_pipeline(ctx)
        except DashmarkError as e:
            self.report(e)
            raise

        result.degraded_origin = self.degraded_origin
        self.artifact = result.artifact
        self.result = result
        return result

    def download(self) -> tuple[OutputArtifact, str]:
        """Return the artifact and its suggested filename."""
        if self.artifact is None or self.artifact.released or not self.filename:
            raise self.fail(NoArtifactError())
        return self.artifact, suggested_filename(self.filename, self.artifact.extension)


# Dashcam containers that platform mime tables miss or map to non-video types.
DASHCAM_TYPES = {
    ".ts": "video/mp2t",
    ".mts": "video/mp2t",
    ".m2ts": "video/mp2t",
    ".mkv": "video/x-matroska",
}
for _ext, _media_type in DASHCAM_TYPES.items():
    mimetypes.add_type(_media_type, _ext)


def guess_media_type(path: Path) -> str | None:
    """Media type from the file extension; None when the extension is unknown."""
    media_type, _ = mimetypes.guess_type(str(path))
    return media_type


def process(
    manifest: Manifest,
    on_progress: Callable[[str, float], None] | None = None,
    on_error: Callable[[ErrorReport], None] | None = None,
) -> EngineResult:
    """Watermark ``manifest.input`` and write the result to disk.

    Args:
        manifest: Validated watermarking manifest.
        on_progress: Optional callback(state_name, percent).
        on_error: Optional callback receiving each user-facing ErrorReport.
    """
    ffutil.check_ffmpeg()

    session = WatermarkSession.from_manifest(manifest, on_progress=on_progress, on_error=on_error)
    name = manifest.source_name
    session.select(manifest.input, name, guess_media_type(Path(name)))
    result = asyncio.run(session.run())

    artifact, download_name = session.download()
    output = manifest.output or Path(manifest.input).with_name(download_name)
    result.output_path = artifact.write_to(output)
    return result
