"""JSON manifest schema: the contract between CLI/API and engine."""

import json
from dataclasses import dataclass, field
from pathlib import Path

POLICIES = ("mp4-first", "webm-first")

# RGBA background, RGBA text
STYLES: dict[str, tuple[tuple[int, int, int, int], tuple[int, int, int, int]]] = {
    "solid": ((0, 0, 0, 255), (255, 255, 255, 255)),
    "translucent": ((0, 0, 0, 128), (255, 255, 255, 230)),
}


@dataclass
class CaptureConfig:
    """Encoder feed and segment buffering settings."""

    frame_rate: float = 24.0
    timeslice: float = 1.0
    bitrate: int = 10_000_000
    grace_period: float = 1.0


@dataclass
class OverlayConfig:
    """Watermark appearance."""

    style: str = "solid"
    min_font_size: int = 16
    font_divisor: int = 30
    padding_divisor: int = 50
    font_path: Path | None = None

    @property
    def background(self) -> tuple[int, int, int, int]:
        return STYLES[self.style][0]

    @property
    def text_color(self) -> tuple[int, int, int, int]:
        return STYLES[self.style][1]


@dataclass
class Manifest:
    """Top-level watermarking manifest."""

    input: Path
    output: Path | None = None
    filename: str | None = None
    version: str = "1"
    policy: str = "mp4-first"
    progress_interval: float = 0.2
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    overlay: OverlayConfig = field(default_factory=OverlayConfig)

    def __post_init__(self) -> None:
        if self.policy not in POLICIES:
            raise ValueError(f"Unknown negotiation policy {self.policy!r}")
        if self.overlay.style not in STYLES:
            raise ValueError(f"Unknown overlay style {self.overlay.style!r}")

    @property
    def source_name(self) -> str:
        """The filename the start time is read from."""
        return self.filename or Path(self.input).name


def load_manifest(path: str | Path) -> Manifest:
    """Load and validate a manifest from a JSON file."""
    path = Path(path)
    data = json.loads(path.read_text())

    if "input" not in data:
        raise ValueError("Manifest must contain an 'input' field")

    capture = CaptureConfig(**data["capture"]) if "capture" in data else CaptureConfig()
    overlay = OverlayConfig(**data["overlay"]) if "overlay" in data else OverlayConfig()
    if overlay.font_path is not None:
        overlay.font_path = Path(overlay.font_path)

    return Manifest(
        version=data.get("version", "1"),
        input=Path(data["input"]),
        output=Path(data["output"]) if data.get("output") else None,
        filename=data.get("filename"),
        policy=data.get("policy", "mp4-first"),
        progress_interval=float(data.get("progress_interval", 0.2)),
        capture=capture,
        overlay=overlay,
    )
