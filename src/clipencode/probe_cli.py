"""CLI for inspecting a media file with ffprobe.

Usage:
    clipencode probe clip.mp4
    clipencode probe clip.mp4 --ffprobe /opt/ffmpeg/bin/ffprobe
"""

import argparse
import dataclasses
import json

from .probe import probe_video


def main(args=None):
    parser = argparse.ArgumentParser(
        description="Print video metadata as JSON.",
    )
    parser.add_argument("video", help="Path to a video file")
    parser.add_argument("--ffprobe", default=None, help="ffprobe executable to use")
    parsed = parser.parse_args(args)

    metadata = probe_video(parsed.video, ffprobe_path=parsed.ffprobe)
    info = dataclasses.asdict(metadata)
    info["aspect_ratio"] = round(metadata.aspect_ratio, 4)
    print(json.dumps(info, indent=2))


if __name__ == "__main__":
    main()
