"""Render manifest loader -- YAML description of one encoding run.

Render manifest schema:
  video:
    fps: 30
    resolution: [1920, 1080]
    duration_frames: 300
  encoding:                     # optional, defaults shown
    quality: medium             # low | medium | high | lossless
    crf: 15                     # optional, overrides the quality's crf
    preset: slow                # optional, overrides the quality's preset
    frame_format: raw_rgba      # raw_rgba | png
  paths:
    media: "/path/to/media"
  audio:
    - source: "${media}/music.mp3"
      type: file                # file | url | asset
      start_frame: 0
      duration_frames: 300
      trim_start_frame: 0
      trim_end_frame: 600       # optional
      fade_in_frames: 15
      fade_out_frames: 30
      volume: 0.8
      loop: true
  embedded_videos:
    - id: intro
      path: "${media}/intro.mp4"
      start_frame: 90
      duration_frames: 120
      size: [640, 360]
      position: [100, 50]       # optional
      trim_start: 2.5           # seconds into the source
      include_audio: true
      audio_volume: 1.0
      audio_fade_in_frames: 0
      audio_fade_out_frames: 0
      overlay: false
"""

from pathlib import Path

import yaml

from .common import resolve_path_vars
from .errors import ConfigurationError
from .models import (
    AudioSourceConfig,
    AudioTrackConfig,
    EmbeddedVideoConfig,
    EncodingConfig,
    RenderConfig,
    TimelineConfig,
)


def _pair(value, what: str, context: str) -> tuple:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ConfigurationError(
            f"{context}: {what} must be a [x, y] pair, got {value!r}",
            field=what, value=value,
        )
    return value[0], value[1]


def _with_context(context: str, exc: ConfigurationError) -> ConfigurationError:
    # Model errors read "Owner: detail"; swap the owner for the manifest position.
    detail = str(exc).split(": ", 1)[-1]
    return ConfigurationError(f"{context}: {detail}", field=exc.field, value=exc.value)


def _load_timeline(raw: dict) -> TimelineConfig:
    if "video" not in raw:
        raise ConfigurationError("Render manifest: missing required 'video' section")
    video = raw["video"]
    for key in ("fps", "resolution", "duration_frames"):
        if key not in video:
            raise ConfigurationError(f"Render manifest: video.{key} is required", field=key)
    width, height = _pair(video["resolution"], "resolution", "Render manifest")
    try:
        return TimelineConfig(
            fps=video["fps"], width=width, height=height,
            duration_in_frames=video["duration_frames"],
        )
    except ConfigurationError as exc:
        raise _with_context("Render manifest", exc) from exc


def _load_encoding(raw: dict) -> EncodingConfig:
    encoding = raw.get("encoding") or {}
    try:
        return EncodingConfig(
            quality=encoding.get("quality", "medium"),
            crf_override=encoding.get("crf"),
            preset_override=encoding.get("preset"),
            frame_format=encoding.get("frame_format", "raw_rgba"),
        )
    except ConfigurationError as exc:
        raise _with_context("Render manifest", exc) from exc


def _load_audio_track(i: int, track: dict, paths: dict) -> AudioTrackConfig:
    context = f"Audio track {i}"
    if "source" not in track:
        raise ConfigurationError(f"{context}: missing required field 'source'", field="source")
    try:
        source = AudioSourceConfig(
            uri=resolve_path_vars(str(track["source"]), paths),
            type=track.get("type", "file"),
        )
        return AudioTrackConfig(
            source=source,
            start_frame=track.get("start_frame", 0),
            duration_in_frames=track.get("duration_frames", 0),
            trim_start_frame=track.get("trim_start_frame", 0),
            trim_end_frame=track.get("trim_end_frame"),
            fade_in_frames=track.get("fade_in_frames", 0),
            fade_out_frames=track.get("fade_out_frames", 0),
            volume=track.get("volume", 1.0),
            loop=track.get("loop", False),
        )
    except ConfigurationError as exc:
        raise _with_context(context, exc) from exc


def _load_embedded_video(i: int, entry: dict, paths: dict) -> EmbeddedVideoConfig:
    context = f"Embedded video {i}"
    for key in ("id", "path", "start_frame", "duration_frames", "size"):
        if key not in entry:
            raise ConfigurationError(f"{context}: missing required field '{key}'", field=key)
    width, height = _pair(entry["size"], "size", context)
    x, y = _pair(entry.get("position", [0, 0]), "position", context)
    try:
        return EmbeddedVideoConfig(
            id=str(entry["id"]),
            video_path=resolve_path_vars(str(entry["path"]), paths),
            start_frame=entry["start_frame"],
            duration_in_frames=entry["duration_frames"],
            width=width,
            height=height,
            trim_start_seconds=entry.get("trim_start", 0.0),
            position_x=x,
            position_y=y,
            include_audio=entry.get("include_audio", True),
            audio_volume=entry.get("audio_volume", 1.0),
            audio_fade_in_frames=entry.get("audio_fade_in_frames", 0),
            audio_fade_out_frames=entry.get("audio_fade_out_frames", 0),
            overlay=entry.get("overlay", False),
        )
    except ConfigurationError as exc:
        raise _with_context(context, exc) from exc


def load_render_manifest(manifest_path: str | Path) -> RenderConfig:
    """Load and validate a render manifest into a RenderConfig.

    Processing pipeline:
      1. Parse YAML.
      2. Validate video and encoding settings.
      3. Resolve ${path} variables in audio sources and video paths.
      4. Build and validate each audio track and embedded video, in order.

    Raises:
        ConfigurationError: Missing/invalid fields (a ValueError).
    """
    with open(manifest_path) as f:
        raw = yaml.safe_load(f)
    if not isinstance(raw, dict):
        raise ConfigurationError("Render manifest: expected a mapping at the top level")

    timeline = _load_timeline(raw)
    encoding = _load_encoding(raw)

    paths = raw.get("paths") or {}
    audio_tracks = [
        _load_audio_track(i, track, paths)
        for i, track in enumerate(raw.get("audio") or [])
    ]
    embedded_videos = [
        _load_embedded_video(i, entry, paths)
        for i, entry in enumerate(raw.get("embedded_videos") or [])
    ]

    return RenderConfig(
        timeline=timeline,
        encoding=encoding,
        audio_tracks=audio_tracks,
        embedded_videos=embedded_videos,
    )


def validate_media_paths(config: RenderConfig) -> None:
    """Check that all local media referenced by the config exist on disk.

    URL audio sources are not checked.

    Raises:
        FileNotFoundError: Lists all missing files.
    """
    missing = []
    for track in config.audio_tracks:
        if track.source.type != "url" and not Path(track.source.uri).exists():
            missing.append(track.source.uri)
    for video in config.embedded_videos:
        if not Path(video.video_path).exists():
            missing.append(video.video_path)

    if missing:
        msg = f"Missing {len(missing)} media file(s):\n"
        for p in missing:
            msg += f"  - {p}\n"
        raise FileNotFoundError(msg)
