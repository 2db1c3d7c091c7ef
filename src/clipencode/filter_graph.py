"""Filter graph builder -- compile a RenderConfig into ffmpeg filter text.

Input order in the ffmpeg command (see encoder.build_encoder_args):
  - Input 0: composition frames from stdin (rawvideo or png pipe).
  - Inputs 1..N: embedded video files, in declared order.
  - Inputs N+1..: separate audio tracks, in declared order.

Embedded video frames are normally already part of the composition frames
(the renderer draws them), so only their AUDIO is taken from the file.
Setting overlay=True on an embedded video composites its visual stream
onto the canvas here instead.

Each audio-producing source gets one filter chain. Stages are emitted only
when their condition holds, always in this order:
  1. trim      (trim_start_frame > 0, or trim_end_frame set)
  2. fade-in   (fade_in_frames > 0)
  3. fade-out  (fade_out_frames > 0)
  4. volume    (volume != 1.0)
  5. loop      (loop is set)
  6. delay     (start_frame > 0)
Between loop and delay every source is capped to its own duration, so a
looped or over-long source cannot outlast its slot on the timeline.

The graph is a pure function of the config: declared lists are walked in
order, never through a set or dict, so identical configs give identical
text.
"""

import logging

from .common import frames_to_ms, frames_to_seconds
from .models import FilterGraph, RenderConfig


logger = logging.getLogger(__name__)

VIDEO_OUTPUT_LABEL = "[v_out]"
AUDIO_OUTPUT_LABEL = "[a_mix_out]"

# aloop needs a finite buffer size; this is the largest ffmpeg accepts.
_LOOP_FILTER = "aloop=loop=-1:size=2e+09"
_RESET_PTS = "asetpts=PTS-STARTPTS"


def build_filter_graph(config: RenderConfig) -> FilterGraph:
    """Build the complete filter graph for a render config.

    Returns a FilterGraph whose video_output_label is always [v_out] and
    whose audio_output_label is [a_mix_out] only when at least one source
    contributes audio.
    """
    fps = config.timeline.fps
    embedded_count = len(config.embedded_videos)

    sections = _build_video_sections(config)

    # ── Audio: one chain per contributing source ─────────────────
    chains = []  # (filter_text_without_output_label, output_label)

    for i, video in enumerate(config.embedded_videos):
        if not video.has_audio_contribution:
            logger.debug(
                "Skipping audio for embedded video %d (include_audio=%s, duration=%d)",
                i, video.include_audio, video.duration_in_frames,
            )
            continue
        filters = _audio_stages(
            fps=fps,
            duration_frames=video.duration_in_frames,
            fade_in_frames=video.audio_fade_in_frames,
            fade_out_frames=video.audio_fade_out_frames,
            volume=video.audio_volume,
            start_frame=video.start_frame,
        )
        chains.append((f"[{i + 1}:a]{','.join(filters)}", f"[a_embedded_{i}]"))

    first_track_input = 1 + embedded_count
    for j, track in enumerate(config.audio_tracks):
        if track.duration_in_frames <= 0:
            logger.debug("Skipping audio track %d (duration=0)", j)
            continue
        filters = _audio_stages(
            fps=fps,
            duration_frames=track.duration_in_frames,
            fade_in_frames=track.fade_in_frames,
            fade_out_frames=track.fade_out_frames,
            volume=track.volume,
            start_frame=track.start_frame,
            trim_start_frame=track.trim_start_frame,
            trim_end_frame=track.trim_end_frame,
            loop=track.loop,
        )
        chains.append(
            (f"[{first_track_input + j}:a]{','.join(filters)}", f"[a_track_{j}]"),
        )

    # ── Mix ──────────────────────────────────────────────────────
    # One source: its chain writes straight to the sentinel, no amix node.
    audio_label = None
    if len(chains) == 1:
        sections.append(f"{chains[0][0]}{AUDIO_OUTPUT_LABEL}")
        audio_label = AUDIO_OUTPUT_LABEL
    elif len(chains) > 1:
        for text, label in chains:
            sections.append(f"{text}{label}")
        mix_inputs = "".join(label for _, label in chains)
        sections.append(
            f"{mix_inputs}amix=inputs={len(chains)}"
            f":duration=longest:dropout_transition=0{AUDIO_OUTPUT_LABEL}"
        )
        audio_label = AUDIO_OUTPUT_LABEL

    graph = FilterGraph(
        graph=";".join(sections),
        video_output_label=VIDEO_OUTPUT_LABEL,
        audio_output_label=audio_label,
        embedded_video_count=embedded_count,
    )
    logger.debug(
        "Filter graph: %d embedded video(s), %d audio track(s), "
        "%d audio source(s), audio output %s\n%s",
        embedded_count, len(config.audio_tracks), len(chains),
        audio_label or "NONE", graph.graph,
    )
    return graph


def _build_video_sections(config: RenderConfig) -> list[str]:
    """Base fps/format normalization, plus any opt-in overlays."""
    fps = config.timeline.fps
    overlaid = [
        (i, video) for i, video in enumerate(config.embedded_videos)
        if video.overlay and video.duration_in_frames > 0
    ]
    if not overlaid:
        return [f"[0:v]fps={fps},format=yuv420p{VIDEO_OUTPUT_LABEL}"]

    sections = [f"[0:v]fps={fps},format=yuv420p[v_base]"]
    previous = "[v_base]"
    for n, (i, video) in enumerate(overlaid):
        start = video.start_time_seconds(fps)
        end = video.end_time_seconds(fps)
        # Shift the clip's timestamps so its first frame lands on start.
        sections.append(
            f"[{i + 1}:v]setpts=PTS-STARTPTS+{start}/TB,"
            f"scale={video.width}:{video.height}[ov_{i}]"
        )
        overlay = (
            f"{previous}[ov_{i}]overlay=x={_position(video.position_x)}"
            f":y={_position(video.position_y)}"
            f":enable='between(t,{start},{end})'"
        )
        if n == len(overlaid) - 1:
            sections.append(f"{overlay},format=yuv420p{VIDEO_OUTPUT_LABEL}")
        else:
            sections.append(f"{overlay}[v_ov_{i}]")
            previous = f"[v_ov_{i}]"
    return sections


def _position(value: float) -> str:
    # Whole-pixel offsets print without a trailing .0
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _audio_stages(
    fps: int,
    duration_frames: int,
    fade_in_frames: int,
    fade_out_frames: int,
    volume: float,
    start_frame: int,
    trim_start_frame: int = 0,
    trim_end_frame: int | None = None,
    loop: bool = False,
) -> list[str]:
    """Return the ordered filter list for one audio source."""
    filters = []
    duration = frames_to_seconds(duration_frames, fps)

    if trim_start_frame > 0 or trim_end_frame is not None:
        trim = f"atrim=start={frames_to_seconds(trim_start_frame, fps)}"
        if trim_end_frame is not None:
            trim += f":end={frames_to_seconds(trim_end_frame, fps)}"
        filters.append(trim)
        filters.append(_RESET_PTS)

    if fade_in_frames > 0:
        filters.append(f"afade=t=in:st=0:d={frames_to_seconds(fade_in_frames, fps)}")

    if fade_out_frames > 0:
        fade_out = frames_to_seconds(fade_out_frames, fps)
        fade_start = max(frames_to_seconds(duration_frames - fade_out_frames, fps), 0.0)
        filters.append(f"afade=t=out:st={fade_start}:d={fade_out}")

    if volume != 1.0:
        filters.append(f"volume={volume}")

    if loop:
        filters.append(_LOOP_FILTER)

    filters.append(f"atrim=end={duration}")
    filters.append(_RESET_PTS)

    if start_frame > 0:
        delay_ms = frames_to_ms(start_frame, fps)
        filters.append(f"adelay={delay_ms}|{delay_ms}")

    return filters
