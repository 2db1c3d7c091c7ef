"""clipencode.common -- shared utilities.

Contains: path variable resolution, frame/time conversion, and lookup of
the ffmpeg / ffprobe executables.
"""

import math
import os
import re
import shutil

import imageio_ffmpeg


# ── Tool lookup ────────────────────────────────────────────────────
# Environment overrides win; otherwise ffmpeg comes from imageio-ffmpeg's
# bundled binary and ffprobe from PATH (imageio-ffmpeg does NOT ship it).

FFMPEG_ENV_VAR = "CLIPENCODE_FFMPEG"
FFPROBE_ENV_VAR = "CLIPENCODE_FFPROBE"


def ffmpeg_executable() -> str:
    """Return the ffmpeg executable to spawn."""
    override = os.environ.get(FFMPEG_ENV_VAR)
    if override:
        return override
    return imageio_ffmpeg.get_ffmpeg_exe()


def ffprobe_executable() -> str | None:
    """Return the ffprobe executable, or None if none can be found."""
    override = os.environ.get(FFPROBE_ENV_VAR)
    if override:
        return override
    return shutil.which("ffprobe")


# ── Path utilities ─────────────────────────────────────────────────

def resolve_path_vars(text: str, paths: dict[str, str]) -> str:
    """Replace ${name} variables in a string using the paths dict."""
    def _replace(match):
        key = match.group(1)
        if key not in paths:
            raise ValueError(f"Unknown path variable: ${{{key}}}")
        return paths[key]
    return re.sub(r"\$\{(\w+)\}", _replace, text)


# ── Frame / time conversion ────────────────────────────────────────

def frames_to_seconds(frames: int, fps: float) -> float:
    """Convert a frame count to (fractional) seconds."""
    return frames / fps


def frames_to_ms(frames: int, fps: float) -> int:
    """Convert a frame count to whole milliseconds.

    Rounds half up, so 1 frame at 29.97fps (33.3667ms) is 33 and
    1 frame at 2000fps (0.5ms) is 1. Integer-ms results are exact.
    """
    return int(math.floor(frames * 1000 / fps + 0.5))
