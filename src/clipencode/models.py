"""Declarative config model for an encoding run.

Plain dataclasses that validate themselves on construction. Every
validation failure raises ConfigurationError naming the offending field,
e.g. "Audio track: volume must be >= 0, got -1".

Frame counts are timeline frames unless the field name says otherwise
(trim_start_seconds is a seek offset into the source file).
"""

from dataclasses import dataclass, field

import numpy as np

from .common import frames_to_seconds
from .errors import ConfigurationError


# ── Enumerations ──────────────────────────────────────────────────

# quality -> (crf, preset)
QUALITY_PRESETS = {
    "low": (30, "veryfast"),
    "medium": (23, "medium"),
    "high": (18, "slow"),
    "lossless": (0, "veryslow"),
}

FRAME_FORMATS = {"raw_rgba", "png"}

AUDIO_SOURCE_TYPES = {"file", "url", "asset"}


def _require(condition: bool, message: str, field_name: str, value) -> None:
    if not condition:
        raise ConfigurationError(message, field=field_name, value=value)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _non_negative_int(owner: str, name: str, value) -> None:
    _require(
        _is_int(value) and value >= 0,
        f"{owner}: {name} must be an int >= 0, got {value!r}",
        name, value,
    )


def _flag(owner: str, name: str, value) -> None:
    _require(
        isinstance(value, bool),
        f"{owner}: {name} must be true or false, got {value!r}",
        name, value,
    )


# ── Timeline & encoding ───────────────────────────────────────────


@dataclass(frozen=True)
class TimelineConfig:
    fps: int
    width: int
    height: int
    duration_in_frames: int

    def __post_init__(self):
        for name in ("fps", "width", "height"):
            value = getattr(self, name)
            _require(
                _is_int(value) and value > 0,
                f"Timeline: {name} must be an int > 0, got {value!r}",
                name, value,
            )
        _non_negative_int("Timeline", "duration_in_frames", self.duration_in_frames)

    @property
    def frame_size_bytes(self) -> int:
        """Size of one raw RGBA frame at timeline resolution."""
        return self.width * self.height * 4


@dataclass(frozen=True)
class EncodingConfig:
    quality: str = "medium"
    crf_override: int | None = None
    preset_override: str | None = None
    frame_format: str = "raw_rgba"

    def __post_init__(self):
        _require(
            self.quality in QUALITY_PRESETS,
            f"Encoding: invalid quality '{self.quality}'. "
            f"Valid: {sorted(QUALITY_PRESETS)}",
            "quality", self.quality,
        )
        _require(
            self.frame_format in FRAME_FORMATS,
            f"Encoding: invalid frame_format '{self.frame_format}'. "
            f"Valid: {sorted(FRAME_FORMATS)}",
            "frame_format", self.frame_format,
        )
        if self.crf_override is not None:
            _require(
                _is_int(self.crf_override) and 0 <= self.crf_override <= 51,
                f"Encoding: crf_override must be an int in 0..51, got {self.crf_override!r}",
                "crf_override", self.crf_override,
            )
        if self.preset_override is not None:
            _require(
                isinstance(self.preset_override, str) and self.preset_override.strip() != "",
                "Encoding: preset_override must be a non-empty string",
                "preset_override", self.preset_override,
            )

    @property
    def crf(self) -> int:
        if self.crf_override is not None:
            return self.crf_override
        return QUALITY_PRESETS[self.quality][0]

    @property
    def preset(self) -> str:
        if self.preset_override is not None:
            return self.preset_override
        return QUALITY_PRESETS[self.quality][1]


# ── Audio tracks ──────────────────────────────────────────────────


@dataclass(frozen=True)
class AudioSourceConfig:
    uri: str
    type: str = "file"

    def __post_init__(self):
        _require(
            isinstance(self.uri, str) and self.uri != "",
            "Audio source: uri must be a non-empty string",
            "uri", self.uri,
        )
        _require(
            self.type in AUDIO_SOURCE_TYPES,
            f"Audio source: invalid type '{self.type}'. "
            f"Valid: {sorted(AUDIO_SOURCE_TYPES)}",
            "type", self.type,
        )


@dataclass(frozen=True)
class AudioTrackConfig:
    source: AudioSourceConfig
    start_frame: int = 0
    duration_in_frames: int = 0
    trim_start_frame: int = 0
    trim_end_frame: int | None = None
    fade_in_frames: int = 0
    fade_out_frames: int = 0
    volume: float = 1.0
    loop: bool = False

    def __post_init__(self):
        for name in ("start_frame", "duration_in_frames", "trim_start_frame",
                     "fade_in_frames", "fade_out_frames"):
            _non_negative_int("Audio track", name, getattr(self, name))
        if self.trim_end_frame is not None:
            _non_negative_int("Audio track", "trim_end_frame", self.trim_end_frame)
            _require(
                self.trim_end_frame > self.trim_start_frame,
                f"Audio track: trim_end_frame ({self.trim_end_frame}) must be > "
                f"trim_start_frame ({self.trim_start_frame})",
                "trim_end_frame", self.trim_end_frame,
            )
        _require(
            _is_number(self.volume) and self.volume >= 0,
            f"Audio track: volume must be >= 0, got {self.volume!r}",
            "volume", self.volume,
        )
        _flag("Audio track", "loop", self.loop)


# ── Embedded videos ───────────────────────────────────────────────


@dataclass(frozen=True)
class EmbeddedVideoConfig:
    id: str
    video_path: str
    start_frame: int
    duration_in_frames: int
    width: int
    height: int
    trim_start_seconds: float = 0.0
    position_x: float = 0.0
    position_y: float = 0.0
    include_audio: bool = True
    audio_volume: float = 1.0
    audio_fade_in_frames: int = 0
    audio_fade_out_frames: int = 0
    overlay: bool = False

    def __post_init__(self):
        _require(
            isinstance(self.id, str) and self.id.strip() != "",
            "Embedded video: id must be a non-empty string",
            "id", self.id,
        )
        owner = f"Embedded video '{self.id}'"
        _require(
            isinstance(self.video_path, str) and self.video_path != "",
            f"{owner}: video_path must be a non-empty string",
            "video_path", self.video_path,
        )
        for name in ("start_frame", "duration_in_frames",
                     "audio_fade_in_frames", "audio_fade_out_frames"):
            _non_negative_int(owner, name, getattr(self, name))
        for name in ("width", "height"):
            value = getattr(self, name)
            _require(
                _is_int(value) and value > 0,
                f"{owner}: {name} must be an int > 0, got {value!r}",
                name, value,
            )
        _require(
            _is_number(self.trim_start_seconds) and self.trim_start_seconds >= 0,
            f"{owner}: trim_start_seconds must be >= 0, got {self.trim_start_seconds!r}",
            "trim_start_seconds", self.trim_start_seconds,
        )
        _require(
            _is_number(self.audio_volume) and self.audio_volume >= 0,
            f"{owner}: audio_volume must be >= 0, got {self.audio_volume!r}",
            "audio_volume", self.audio_volume,
        )
        for name in ("include_audio", "overlay"):
            _flag(owner, name, getattr(self, name))

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.duration_in_frames

    @property
    def has_audio_contribution(self) -> bool:
        """Audio is only mixed for clips that include it and have a length."""
        return self.include_audio and self.duration_in_frames > 0

    def start_time_seconds(self, fps: int) -> float:
        return frames_to_seconds(self.start_frame, fps)

    def end_time_seconds(self, fps: int) -> float:
        return frames_to_seconds(self.end_frame, fps)

    def duration_seconds(self, fps: int) -> float:
        return frames_to_seconds(self.duration_in_frames, fps)


# ── Top-level render config ───────────────────────────────────────


@dataclass(frozen=True)
class RenderConfig:
    timeline: TimelineConfig
    encoding: EncodingConfig = field(default_factory=EncodingConfig)
    audio_tracks: list[AudioTrackConfig] = field(default_factory=list)
    embedded_videos: list[EmbeddedVideoConfig] = field(default_factory=list)

    def __post_init__(self):
        seen = set()
        for i, video in enumerate(self.embedded_videos):
            if video.id in seen:
                raise ConfigurationError(
                    f"Embedded video {i}: duplicate id '{video.id}'",
                    field="id", value=video.id,
                )
            seen.add(video.id)


# ── Builder / cache / probe values ────────────────────────────────


@dataclass(frozen=True)
class FilterGraph:
    """Result of compiling a RenderConfig into an ffmpeg filter graph."""

    graph: str
    video_output_label: str
    audio_output_label: str | None = None
    embedded_video_count: int = 0


@dataclass(frozen=True)
class ExtractedFrame:
    """One decoded frame: tightly packed RGBA rows, top to bottom."""

    frame_number: int
    rgba: bytes
    width: int
    height: int

    @property
    def size_in_bytes(self) -> int:
        return self.width * self.height * 4

    def to_array(self) -> np.ndarray:
        """Read-only (height, width, 4) uint8 view over the pixel data."""
        return np.frombuffer(self.rgba, dtype=np.uint8).reshape(
            self.height, self.width, 4,
        )


@dataclass(frozen=True)
class VideoMetadata:
    width: int
    height: int
    fps: float
    duration_seconds: float
    frame_count: int
    has_audio: bool
    video_codec: str | None = None
    audio_codec: str | None = None
    audio_channels: int | None = None
    audio_sample_rate: int | None = None
    audio_bitrate: int | None = None
    bitrate: int | None = None

    @property
    def aspect_ratio(self) -> float:
        if self.width > 0 and self.height > 0:
            return self.width / self.height
        return 1.0
