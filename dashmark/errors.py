"""User-facing failure types.

Every failure a run can report subclasses :class:`DashmarkError` and carries a
``kind`` (the taxonomy bucket) plus a fixed human-readable message, so the
caller can surface exactly one message per failure.
"""


class DashmarkError(Exception):
    """Base class for failures that are reported to the user."""

    kind = "error"
    prefix = ""

    def __init__(self, detail: str | None = None):
        self.detail = detail
        if self.prefix and detail:
            message = f"{self.prefix}: {detail}"
        else:
            message = self.prefix or (detail or "")
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class NoFileSelectedError(DashmarkError):
    kind = "input"
    prefix = "No file selected"


class WrongFileTypeError(DashmarkError):
    kind = "input"
    prefix = "Please upload a video file"


class RunInProgressError(DashmarkError):
    kind = "input"
    prefix = "A video is already being processed"


class NoArtifactError(DashmarkError):
    kind = "input"
    prefix = "No video available for download"


class TimestampParseError(DashmarkError):
    """The filename does not carry a usable start time (recoverable)."""

    kind = "degraded"
    prefix = "Timestamp parse error"


class NoCapabilityError(DashmarkError):
    kind = "capability"
    prefix = (
        "This system cannot record video; "
        "install an ffmpeg build with an MP4 or WebM encoder"
    )


class PlaybackError(DashmarkError):
    kind = "playback"
    prefix = "Playback failed"


class EmptyCaptureError(DashmarkError):
    kind = "empty_capture"
    prefix = "No video data was collected"


class FinalizationError(DashmarkError):
    """Building the output artifact failed."""

    kind = "finalization"
    prefix = "Failed to create video"


class FinishError(FinalizationError):
    """Something other than artifact construction failed while finishing."""

    prefix = "Error while finishing processing"
