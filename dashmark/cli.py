"""Thin CLI entry point: builds a Manifest and calls the engine."""

import argparse
import logging
import sys
from pathlib import Path

from dashmark.engine import process
from dashmark.errors import DashmarkError
from dashmark.ffutil import FFmpegNotFoundError
from dashmark.logutil import configure_logging
from dashmark.manifest import POLICIES, STYLES, CaptureConfig, Manifest, OverlayConfig, load_manifest

NAMING_HINT = (
    "Source files must be named yyyy-MM-dd_HH-mm-ss-name (e.g. 2024-03-01_14-05-09-000.mp4); "
    "other names are stamped from the current time. Processing takes about as long as the video."
)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="dashmark",
        description="dashmark: burn a wall-clock timestamp into dashcam videos.",
        epilog=NAMING_HINT,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    proc = sub.add_parser("process", help="Watermark a video file", epilog=NAMING_HINT)
    proc.add_argument("video", nargs="?", type=Path, help="Input video file")
    proc.add_argument("--manifest", "-m", type=Path, help="Path to a JSON manifest file")
    proc.add_argument("--output", "-o", type=Path, help="Output file path")
    proc.add_argument("--policy", choices=POLICIES, default="mp4-first", help="Encoding preference order")
    proc.add_argument("--style", choices=sorted(STYLES), default="solid", help="Watermark panel style")
    proc.add_argument("--font", type=Path, help="TrueType font file for the timestamp")
    proc.add_argument("--capture-fps", type=float, default=24.0, help="Encoder frame rate")
    proc.add_argument("--timeslice", type=float, default=1.0, help="Seconds of output per buffered segment")
    proc.add_argument("--bitrate", type=int, default=10_000_000, help="Target video bitrate (bits/s)")
    proc.add_argument("--grace", type=float, default=1.0, help="Seconds to wait for the encoder to flush")

    serve = sub.add_parser("serve", help="Launch the web UI")
    serve.add_argument("--port", type=int, default=8321, help="Port to listen on")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")

    args = parser.parse_args()
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "serve":
        from dashmark.web import create_app
        app = create_app()
        print(f"dashmark web UI: http://{args.host}:{args.port}")
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
        return

    if args.manifest:
        m = load_manifest(args.manifest)
    elif args.video:
        m = Manifest(
            input=args.video,
            output=args.output,
            policy=args.policy,
            capture=CaptureConfig(
                frame_rate=args.capture_fps,
                timeslice=args.timeslice,
                bitrate=args.bitrate,
                grace_period=args.grace,
            ),
            overlay=OverlayConfig(style=args.style, font_path=args.font),
        )
    else:
        print("Error: provide either a VIDEO argument or --manifest.", file=sys.stderr)
        sys.exit(1)

    last_shown: list[int] = [-1]

    def on_progress(stage: str, percent: float) -> None:
        if int(percent) != last_shown[0]:
            last_shown[0] = int(percent)
            print(f"  [{percent:5.1f}%] {stage}")

    def on_error(report) -> None:
        label = "Warning" if report.kind == "degraded" else "Error"
        print(f"{label}: {report.message}", file=sys.stderr)

    try:
        result = process(m, on_progress=on_progress, on_error=on_error)
    except FFmpegNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except DashmarkError:
        sys.exit(1)

    print()
    print(f"Done! Output: {result.output_path}")
    print(f"  Format: {result.profile.mime_type}")
    print(f"  Start time: {result.time_origin:%Y-%m-%d %H:%M:%S}" + (" (current time)" if result.degraded_origin else ""))
    print(f"  Frames watermarked: {result.frames_composited}")
    if result.first_overlay and result.last_overlay:
        print(f"  Overlay: {result.first_overlay} -> {result.last_overlay}")
