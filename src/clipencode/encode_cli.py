"""CLI for encoding an image sequence against a render manifest.

Usage:
    # Encode frames/0001.png, frames/0002.png, ... with the manifest's audio
    clipencode encode --manifest render.yaml --frames frames/ --output final.mp4

    # Write next to the frames instead of the temp directory
    clipencode encode --manifest render.yaml --frames frames/ \
        --output final.mp4 --output-dir renders/

    # Print the filter graph and ffmpeg arguments without encoding
    clipencode graph --manifest render.yaml
"""

import argparse
import dataclasses
import io
import logging
import shlex
from pathlib import Path

from PIL import Image

from .common import ffprobe_executable
from .encoder import EncodingOrchestrator, build_encoder_args
from .filter_graph import build_filter_graph
from .manifest import load_render_manifest, validate_media_paths
from .models import RenderConfig
from .pipeline import encode_frames
from .probe import check_embedded_videos


FRAME_EXTENSIONS = {".png", ".jpg", ".jpeg"}


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(levelname)s %(name)s: %(message)s",
        )


def list_frame_files(frames_dir: str | Path) -> list[Path]:
    """Image files in frames_dir, sorted by name."""
    frames_dir = Path(frames_dir)
    if not frames_dir.is_dir():
        raise FileNotFoundError(f"Frames directory not found: {frames_dir}")
    return sorted(
        p for p in frames_dir.iterdir()
        if p.is_file() and p.suffix.lower() in FRAME_EXTENSIONS
    )


def iter_frames(paths: list[Path], config: RenderConfig):
    """Decode frame files into the session's wire format.

    raw_rgba yields RGBA bytes; png yields PNG-encoded bytes. Every image
    must match the timeline resolution.
    """
    size = (config.timeline.width, config.timeline.height)
    for path in paths:
        with Image.open(path) as img:
            if img.size != size:
                raise ValueError(
                    f"Frame {path.name}: size {img.size[0]}x{img.size[1]} does not "
                    f"match timeline {size[0]}x{size[1]}"
                )
            rgba = img.convert("RGBA")
        if config.encoding.frame_format == "png":
            buf = io.BytesIO()
            rgba.save(buf, format="PNG")
            yield buf.getvalue()
        else:
            yield rgba.tobytes()


def main(args=None):
    parser = argparse.ArgumentParser(
        description="Encode an image sequence with the manifest's audio and embedded videos.",
    )
    parser.add_argument("--manifest", required=True, help="Path to render YAML manifest")
    parser.add_argument("--frames", required=True, help="Directory of PNG/JPEG frames")
    parser.add_argument("--output", required=True, help="Output file name (e.g. final.mp4)")
    parser.add_argument(
        "--output-dir", default=None,
        help="Directory for the output (default: system temp dir/clipencode)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parsed = parser.parse_args(args)
    _configure_logging(parsed.verbose)

    config = load_render_manifest(parsed.manifest)
    validate_media_paths(config)

    if config.embedded_videos:
        if ffprobe_executable() is None:
            print("  NOTE   ffprobe not found; embedded video audio is not checked")
        else:
            config = dataclasses.replace(
                config, embedded_videos=check_embedded_videos(config.embedded_videos),
            )

    frame_files = list_frame_files(parsed.frames)
    if not frame_files:
        raise FileNotFoundError(f"No PNG/JPEG frames in {parsed.frames}")
    if len(frame_files) != config.timeline.duration_in_frames:
        print(
            f"  NOTE   {len(frame_files)} frame file(s), manifest declares "
            f"{config.timeline.duration_in_frames}"
        )

    if parsed.output_dir:
        output_dir = Path(parsed.output_dir)
        orchestrator = EncodingOrchestrator(temp_dir_provider=lambda: output_dir)
    else:
        orchestrator = EncodingOrchestrator()

    t = config.timeline
    print(
        f"Encoding {len(frame_files)} frames at {t.width}x{t.height} @ {t.fps}fps "
        f"(quality={config.encoding.quality}, crf={config.encoding.crf}, "
        f"preset={config.encoding.preset})"
    )
    output_path = encode_frames(
        config, iter_frames(frame_files, config), parsed.output,
        orchestrator=orchestrator,
    )
    print(f"Done: {output_path}")


def graph_main(args=None):
    parser = argparse.ArgumentParser(
        description="Print the filter graph and ffmpeg arguments for a manifest.",
    )
    parser.add_argument("--manifest", required=True, help="Path to render YAML manifest")
    parser.add_argument(
        "--output", default="output.mp4",
        help="Output path shown in the argument list",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parsed = parser.parse_args(args)
    _configure_logging(parsed.verbose)

    config = load_render_manifest(parsed.manifest)
    graph = build_filter_graph(config)

    print("Filter graph:")
    for section in graph.graph.split(";"):
        print(f"  {section}")
    print(f"Video output: {graph.video_output_label}")
    print(f"Audio output: {graph.audio_output_label or 'none'}")
    print("ffmpeg arguments:")
    print(f"  {shlex.join(build_encoder_args(config, graph, parsed.output))}")


if __name__ == "__main__":
    main()
