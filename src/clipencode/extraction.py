"""Frame extraction -- decode frames from a video file with ffmpeg.

The frame cache only depends on the FrameExtractor protocol, so tests and
alternative decoders can stand in for FfmpegFrameExtractor.
"""

import logging
import subprocess
from typing import Protocol

from .common import ffmpeg_executable
from .errors import ExtractionFailure
from .models import ExtractedFrame


logger = logging.getLogger(__name__)

VALID_FITS = {"cover", "contain", "fill"}


class FrameExtractor(Protocol):
    def extract_frame_by_number(
        self,
        video_path: str,
        frame_number: int,
        source_fps: float,
        width: int,
        height: int,
    ) -> ExtractedFrame:
        ...

    def extract_frame_range(
        self,
        video_path: str,
        start_frame: int,
        end_frame: int,
        source_fps: float,
        width: int,
        height: int,
    ) -> list[ExtractedFrame]:
        ...


def build_scale_filter(width: int, height: int, fit: str = "cover") -> str:
    """Return the -vf chain that fits source frames into a width x height box.

    cover:   scale up until the box is filled, centre-crop the overflow.
    contain: scale down until the frame fits, pad with black.
    fill:    stretch to the box, ignoring aspect ratio.
    """
    if fit == "cover":
        return (
            f"scale={width}:{height}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height},format=rgba"
        )
    if fit == "contain":
        return (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black,format=rgba"
        )
    if fit == "fill":
        return f"scale={width}:{height}:flags=lanczos,format=rgba"
    raise ValueError(f"Unknown fit '{fit}'. Valid: {sorted(VALID_FITS)}")


class FfmpegFrameExtractor:
    """Decode frames to raw RGBA by running ffmpeg once per request."""

    def __init__(self, ffmpeg_path: str | None = None, fit: str = "cover"):
        if fit not in VALID_FITS:
            raise ValueError(f"Unknown fit '{fit}'. Valid: {sorted(VALID_FITS)}")
        self.ffmpeg_path = ffmpeg_path
        self.fit = fit

    def _run(self, video_path: str, start_seconds: float, frame_count: int,
             width: int, height: int) -> bytes:
        cmd = [
            self.ffmpeg_path or ffmpeg_executable(),
            "-v", "error",
            "-ss", f"{start_seconds:.6f}",
            "-i", video_path,
            "-vf", build_scale_filter(width, height, self.fit),
            "-frames:v", str(frame_count),
            "-f", "rawvideo",
            "-pix_fmt", "rgba",
            "-fps_mode", "passthrough",
            "-",
        ]
        logger.debug("Extracting %d frame(s): %s", frame_count, " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True)
        except OSError as exc:
            raise ExtractionFailure(
                "Could not start ffmpeg", video_path=video_path, details=str(exc),
            ) from exc
        if result.returncode != 0:
            raise ExtractionFailure(
                "Failed to extract frame(s)",
                video_path=video_path,
                details=result.stderr.decode("utf-8", errors="replace").strip(),
            )
        return result.stdout

    def extract_frame_by_number(
        self,
        video_path: str,
        frame_number: int,
        source_fps: float,
        width: int,
        height: int,
    ) -> ExtractedFrame:
        """Extract one frame, addressed by its index at source_fps."""
        data = self._run(video_path, frame_number / source_fps, 1, width, height)
        expected = width * height * 4
        if len(data) != expected:
            raise ExtractionFailure(
                "Invalid frame size",
                video_path=video_path,
                frame_number=frame_number,
                details=f"Expected {expected} bytes, got {len(data)} bytes",
            )
        return ExtractedFrame(
            frame_number=frame_number, rgba=data, width=width, height=height,
        )

    def extract_frame_range(
        self,
        video_path: str,
        start_frame: int,
        end_frame: int,
        source_fps: float,
        width: int,
        height: int,
    ) -> list[ExtractedFrame]:
        """Extract start_frame..end_frame (inclusive) in a single ffmpeg run.

        Returns fewer frames than requested when the source ends early.
        """
        if end_frame < start_frame:
            raise ValueError(
                f"end_frame ({end_frame}) must be >= start_frame ({start_frame})"
            )
        count = end_frame - start_frame + 1
        data = self._run(video_path, start_frame / source_fps, count, width, height)

        frame_size = width * height * 4
        frames = []
        for i in range(len(data) // frame_size):
            chunk = data[i * frame_size:(i + 1) * frame_size]
            frames.append(ExtractedFrame(
                frame_number=start_frame + i, rgba=chunk, width=width, height=height,
            ))
        return frames
