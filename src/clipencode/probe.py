"""Media probing with ffprobe.

ffprobe is not bundled by imageio-ffmpeg; it is looked up through
CLIPENCODE_FFPROBE or PATH (see common.ffprobe_executable).
"""

import dataclasses
import json
import logging
import subprocess
from pathlib import Path

from .common import FFPROBE_ENV_VAR, ffprobe_executable
from .errors import ConfigurationError, ProbeFailure
from .models import EmbeddedVideoConfig, VideoMetadata


logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 60


def _parse_rate(value) -> float:
    """Parse an ffprobe frame rate ("30000/1001", "25/1", "30") to float.

    Returns 0.0 for missing or degenerate rates such as "0/0".
    """
    if value in (None, ""):
        return 0.0
    text = str(value)
    try:
        if "/" in text:
            num, den = text.split("/", 1)
            if float(den) == 0:
                return 0.0
            return float(num) / float(den)
        return float(text)
    except ValueError:
        return 0.0


def _float_or_none(value) -> float | None:
    if value in (None, "", "N/A"):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int_or_none(value) -> int | None:
    number = _float_or_none(value)
    return None if number is None else int(number)


def parse_probe_output(data: dict, video_path: str | None = None) -> VideoMetadata:
    """Build VideoMetadata from ffprobe's -show_streams -show_format JSON.

    Raises:
        ProbeFailure: No video stream in the output.
    """
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise ProbeFailure("No video stream found", video_path=video_path)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    fmt = data.get("format") or {}

    fps = _parse_rate(video.get("r_frame_rate")) or _parse_rate(video.get("avg_frame_rate"))

    duration = _float_or_none(video.get("duration"))
    if duration is None:
        duration = _float_or_none(fmt.get("duration"))
    if duration is None:
        duration = 0.0

    frame_count = _int_or_none(video.get("nb_frames"))
    if frame_count is None:
        frame_count = round(duration * fps)

    return VideoMetadata(
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        fps=fps,
        duration_seconds=duration,
        frame_count=frame_count,
        has_audio=audio is not None,
        video_codec=video.get("codec_name"),
        audio_codec=audio.get("codec_name") if audio else None,
        audio_channels=_int_or_none(audio.get("channels")) if audio else None,
        audio_sample_rate=_int_or_none(audio.get("sample_rate")) if audio else None,
        audio_bitrate=_int_or_none(audio.get("bit_rate")) if audio else None,
        bitrate=_int_or_none(fmt.get("bit_rate")),
    )


def probe_video(video_path: str | Path, ffprobe_path: str | None = None) -> VideoMetadata:
    """Run ffprobe on a video file and return its metadata.

    Raises:
        ProbeFailure: File missing, ffprobe unavailable or failing, or the
            output has no video stream.
    """
    path = Path(video_path)
    if not path.exists():
        raise ProbeFailure(f"File not found: {path}", video_path=str(path))

    exe = ffprobe_path or ffprobe_executable()
    if exe is None:
        raise ProbeFailure(
            "ffprobe is not installed or not in PATH. "
            f"Install ffmpeg or set {FFPROBE_ENV_VAR}.",
            video_path=str(path),
        )

    cmd = [
        exe, "-v", "error",
        "-print_format", "json",
        "-show_streams", "-show_format",
        str(path),
    ]
    logger.debug("Probing %s", path)
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, errors="replace",
            check=True, timeout=PROBE_TIMEOUT_SECONDS,
        )
        data = json.loads(result.stdout)
    except subprocess.TimeoutExpired as exc:
        raise ProbeFailure(
            f"ffprobe timed out after {exc.timeout}s", video_path=str(path),
        ) from exc
    except subprocess.CalledProcessError as exc:
        raise ProbeFailure(
            "ffprobe failed", video_path=str(path), details=(exc.stderr or "").strip(),
        ) from exc
    except OSError as exc:
        raise ProbeFailure(
            "Could not start ffprobe", video_path=str(path), details=str(exc),
        ) from exc
    except json.JSONDecodeError as exc:
        raise ProbeFailure(
            "Invalid ffprobe output", video_path=str(path), details=str(exc),
        ) from exc

    return parse_probe_output(data, str(path))


def check_embedded_videos(videos: list[EmbeddedVideoConfig], probe=probe_video) -> list[EmbeddedVideoConfig]:
    """Validate embedded video sources before encoding.

    Every source must exist. A source without an audio stream gets
    include_audio switched off, so the filter graph never references a
    missing [i:a] pad.

    Raises:
        ConfigurationError: A video file does not exist.
        ProbeFailure: Probing an existing file failed.
    """
    checked = []
    for i, video in enumerate(videos):
        if not Path(video.video_path).exists():
            raise ConfigurationError(
                f"Embedded video {i} ('{video.id}'): file not found: {video.video_path}",
                field="video_path", value=video.video_path,
            )
        if video.include_audio:
            metadata = probe(video.video_path)
            if not metadata.has_audio:
                logger.info(
                    "Embedded video '%s' has no audio stream; excluding its audio",
                    video.id,
                )
                video = dataclasses.replace(video, include_audio=False)
        checked.append(video)
    return checked
