"""Tests for the subcommand dispatcher and the CLIs behind it."""

import json

import pytest
import yaml
from PIL import Image


def _manifest(tmp_path, **extra):
    data = {"video": {"fps": 10, "resolution": [64, 48], "duration_frames": 10}}
    data.update(extra)
    p = tmp_path / "render.yaml"
    p.write_text(yaml.dump(data))
    return p


def _frames_dir(tmp_path, count=10, size=(64, 48)):
    frames = tmp_path / "frames"
    frames.mkdir()
    for i in range(count):
        Image.new("RGB", size, (i * 20, 100, 200)).save(frames / f"{i:04d}.png")
    return frames


class TestMainDispatcher:
    def test_no_subcommand_shows_help(self, capsys):
        from clipencode.main import main

        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code != 0  # should error without subcommand

    def test_encode_subcommand_exists(self):
        """Verify encode subcommand is registered (will fail on missing --manifest)."""
        from clipencode.main import main

        with pytest.raises(SystemExit):
            main(["encode"])

    def test_graph_subcommand_exists(self):
        from clipencode.main import main

        with pytest.raises(SystemExit):
            main(["graph"])

    def test_probe_subcommand_exists(self):
        from clipencode.main import main

        with pytest.raises(SystemExit):
            main(["probe"])

    def test_invalid_subcommand_errors(self, capsys):
        from clipencode.main import main

        with pytest.raises(SystemExit) as exc_info:
            main(["nonexistent"])
        assert exc_info.value.code != 0


class TestGraphCommand:
    def test_prints_graph_and_args(self, tmp_path, capsys):
        from clipencode.main import main

        manifest = _manifest(
            tmp_path,
            audio=[{"source": "music.mp3", "duration_frames": 10, "volume": 0.5}],
        )
        main(["graph", "--manifest", str(manifest), "--output", "final.mp4"])
        out = capsys.readouterr().out
        assert "[0:v]fps=10,format=yuv420p[v_out]" in out
        assert "volume=0.5" in out
        assert "Audio output: [a_mix_out]" in out
        assert "-crf 23" in out
        assert "final.mp4" in out

    def test_no_audio(self, tmp_path, capsys):
        from clipencode.main import main

        main(["graph", "--manifest", str(_manifest(tmp_path))])
        out = capsys.readouterr().out
        assert "Audio output: none" in out
        assert "-an" in out


class TestProbeCommand:
    def test_prints_json(self, source_video, capsys, monkeypatch):
        from clipencode import probe_cli
        from clipencode.models import VideoMetadata

        def fake_probe(path, ffprobe_path=None):
            return VideoMetadata(
                width=320, height=240, fps=10.0, duration_seconds=2.0,
                frame_count=20, has_audio=True, video_codec="h264",
            )

        monkeypatch.setattr(probe_cli, "probe_video", fake_probe)
        probe_cli.main([str(source_video)])
        info = json.loads(capsys.readouterr().out)
        assert info["width"] == 320
        assert info["has_audio"] is True
        assert info["aspect_ratio"] == pytest.approx(1.3333)


class TestFrameFiles:
    def test_sorted_images_only(self, tmp_path):
        from clipencode.encode_cli import list_frame_files

        frames = _frames_dir(tmp_path, count=3)
        (frames / "notes.txt").write_text("x")
        names = [p.name for p in list_frame_files(frames)]
        assert names == ["0000.png", "0001.png", "0002.png"]

    def test_missing_dir(self, tmp_path):
        from clipencode.encode_cli import list_frame_files

        with pytest.raises(FileNotFoundError, match="Frames directory not found"):
            list_frame_files(tmp_path / "nope")

    def test_raw_rgba_decoding(self, tmp_path):
        from clipencode.encode_cli import iter_frames, list_frame_files
        from clipencode.manifest import load_render_manifest

        config = load_render_manifest(_manifest(tmp_path))
        frames = list(iter_frames(list_frame_files(_frames_dir(tmp_path, count=2)), config))
        assert len(frames) == 2
        assert len(frames[0]) == 64 * 48 * 4
        assert frames[1][:4] == bytes([20, 100, 200, 255])

    def test_png_passthrough(self, tmp_path):
        from clipencode.encode_cli import iter_frames, list_frame_files
        from clipencode.manifest import load_render_manifest

        config = load_render_manifest(_manifest(tmp_path, encoding={"frame_format": "png"}))
        frames = list(iter_frames(list_frame_files(_frames_dir(tmp_path, count=1)), config))
        assert frames[0][:8] == b"\x89PNG\r\n\x1a\n"

    def test_size_mismatch(self, tmp_path):
        from clipencode.encode_cli import iter_frames, list_frame_files
        from clipencode.manifest import load_render_manifest

        config = load_render_manifest(_manifest(tmp_path))
        paths = list_frame_files(_frames_dir(tmp_path, count=1, size=(32, 32)))
        with pytest.raises(ValueError, match="does not match timeline 64x48"):
            list(iter_frames(paths, config))


class TestEncodeCommand:
    def test_encodes_image_sequence(self, tmp_path, capsys):
        from moviepy import VideoFileClip

        from clipencode.main import main

        manifest = _manifest(tmp_path)
        frames = _frames_dir(tmp_path)
        out_dir = tmp_path / "renders"

        main([
            "encode", "--manifest", str(manifest), "--frames", str(frames),
            "--output", "final.mp4", "--output-dir", str(out_dir),
        ])

        out = out_dir / "final.mp4"
        assert out.exists()
        assert f"Done: {out}" in capsys.readouterr().out
        with VideoFileClip(str(out)) as clip:
            assert 0.5 < clip.duration < 1.5

    def test_empty_frames_dir(self, tmp_path):
        from clipencode.main import main

        manifest = _manifest(tmp_path)
        (tmp_path / "frames").mkdir()
        with pytest.raises(FileNotFoundError, match="No PNG/JPEG frames"):
            main([
                "encode", "--manifest", str(manifest), "--frames", str(tmp_path / "frames"),
                "--output", "final.mp4", "--output-dir", str(tmp_path),
            ])

    def test_missing_media(self, tmp_path):
        from clipencode.main import main

        manifest = _manifest(tmp_path, audio=[{"source": "/missing/music.mp3"}])
        with pytest.raises(FileNotFoundError, match="Missing 1 media file"):
            main([
                "encode", "--manifest", str(manifest), "--frames", str(_frames_dir(tmp_path)),
                "--output", "final.mp4", "--output-dir", str(tmp_path),
            ])
