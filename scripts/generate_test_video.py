#!/usr/bin/env python3
"""Generate a synthetic dashcam clip for dashmark pipeline testing.

Produces a silent 1280x720 test pattern named like a dashcam recording
(``2024-01-01_00-00-00-000.mp4`` by default), so the watermark should run
from 2024-01-01 00:00:00 to 00:00:10.

Usage:
    python scripts/generate_test_video.py [OUTPUT_DIR] [--duration 10] [--start 2024-01-01_00-00-00]
"""

import argparse
import subprocess
from pathlib import Path


def generate_test_video(
    output_dir: Path,
    duration: float = 10.0,
    start: str = "2024-01-01_00-00-00",
    size: str = "1280x720",
    fps: int = 30,
) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    output = output_dir / f"{start}-000.mp4"

    cmd = [
        "ffmpeg", "-y",
        "-f", "lavfi",
        "-i", f"testsrc2=s={size}:r={fps}:d={duration}",
        "-c:v", "libx264",
        "-pix_fmt", "yuv420p",
        str(output),
    ]
    subprocess.run(cmd, check=True)
    print(f"Generated: {output}")
    return output


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("output_dir", nargs="?", type=Path, default=Path("tests/fixtures"))
    parser.add_argument("--duration", type=float, default=10.0)
    parser.add_argument("--start", default="2024-01-01_00-00-00")
    args = parser.parse_args()
    generate_test_video(args.output_dir, duration=args.duration, start=args.start)
