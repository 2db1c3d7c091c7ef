"""Shared test fixtures for clipencode tests."""

import io
import subprocess
import threading

import pytest
import imageio_ffmpeg

_FFMPEG = imageio_ffmpeg.get_ffmpeg_exe()


def _make_video(out, with_audio):
    cmd = [_FFMPEG, "-y", "-f", "lavfi", "-i", "color=c=blue:s=320x240:d=2:r=10"]
    if with_audio:
        cmd += ["-f", "lavfi", "-i", "sine=frequency=440:sample_rate=44100", "-shortest"]
    cmd += ["-c:v", "libx264", "-crf", "28", "-pix_fmt", "yuv420p"]
    if with_audio:
        cmd += ["-c:a", "aac", "-b:a", "32k"]
    cmd.append(str(out))
    subprocess.run(cmd, check=True, capture_output=True)
    return out


@pytest.fixture
def source_video(tmp_path):
    """Create a 2-second test video (320x240, 10fps) with a sine audio track."""
    return _make_video(tmp_path / "source.mp4", with_audio=True)


@pytest.fixture
def silent_video(tmp_path):
    """Same as source_video but without an audio stream."""
    return _make_video(tmp_path / "silent.mp4", with_audio=False)


# ── Process doubles ───────────────────────────────────────────────


class FakeStdin:
    def __init__(self, process):
        self._process = process
        self.frames = []
        self.closed = False

    def write(self, data):
        if self._process.killed or self._process.exited_early:
            raise BrokenPipeError("process is gone")
        self.frames.append(bytes(data))
        return len(data)

    def close(self):
        self.closed = True
        self._process.exit()


class FakeProcess:
    """Popen stand-in: records frames, exits once stdin is closed or killed."""

    def __init__(self, command, returncode=0, stderr=b""):
        self.command = command
        self.returncode = returncode
        self.stdin = FakeStdin(self)
        self.stderr = io.BytesIO(stderr)
        self.killed = False
        self.exited_early = False
        self._exited = threading.Event()

    def exit(self):
        self._exited.set()

    def crash(self):
        """Exit before stdin is closed, as ffmpeg does on a bad argument."""
        self.exited_early = True
        self._exited.set()

    def wait(self, timeout=None):
        self._exited.wait(timeout)
        return -9 if self.killed else self.returncode

    def kill(self):
        self.killed = True
        self._exited.set()


class FakeProcessFactory:
    def __init__(self):
        self.processes = []
        self.returncode = 0
        self.stderr = b""

    def __call__(self, command):
        process = FakeProcess(command, self.returncode, self.stderr)
        self.processes.append(process)
        return process

    @property
    def last(self):
        return self.processes[-1]


@pytest.fixture
def process_factory():
    return FakeProcessFactory()
