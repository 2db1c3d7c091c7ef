"""Encoding session orchestrator -- drive one ffmpeg process per output file.

The orchestrator compiles a RenderConfig into an ffmpeg command (frame feed
on stdin, embedded videos and audio tracks as file inputs, the filter graph
from filter_graph.build_filter_graph) and spawns it. The returned
EncodingSession is the only handle on that process:

    session = orchestrator.start(config, "out.mp4")
    for frame in frames:
        session.write(frame)
    session.close()
    path = session.wait()

An orchestrator runs at most one session at a time. The slot frees up when
the session's completion settles or when it is cancelled.
"""

import logging
import re
import subprocess
import tempfile
import threading
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path

from .common import ffmpeg_executable
from .errors import ConfigurationError, EncoderNotAvailable, ProcessFailure
from .filter_graph import build_filter_graph
from .models import FilterGraph, RenderConfig


logger = logging.getLogger(__name__)

VIDEO_CODEC = "libx264"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
OUTPUT_PIXEL_FORMAT = "yuv420p"

# How long a failed write waits for ffmpeg's exit status before giving up.
_EXIT_GRACE_SECONDS = 5.0

# Progress stays below this until ffmpeg exits successfully.
_PROGRESS_CEILING = 0.99

_STDERR_CHUNK = 4096
_LINE_BREAK = re.compile(rb"[\r\n]")
_FRAME_COUNTER = re.compile(rb"frame=\s*(\d+)")


def default_temp_dir() -> Path:
    """<system tmp>/clipencode, created on first use."""
    path = Path(tempfile.gettempdir()) / "clipencode"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _spawn(command: list[str]) -> subprocess.Popen:
    return subprocess.Popen(
        command,
        stdin=subprocess.PIPE,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
    )


def build_encoder_args(config: RenderConfig, graph: FilterGraph, output_path: str) -> list[str]:
    """Return the ffmpeg argument vector (without the executable).

    Input 0 is the frame feed on stdin, then one input per embedded video,
    then one per audio track, matching the indices the filter graph uses.
    """
    timeline = config.timeline
    encoding = config.encoding

    if encoding.frame_format == "png":
        args = ["-f", "image2pipe", "-vcodec", "png", "-r", str(timeline.fps), "-i", "-"]
    else:
        args = [
            "-f", "rawvideo",
            "-pix_fmt", "rgba",
            "-s", f"{timeline.width}x{timeline.height}",
            "-r", str(timeline.fps),
            "-i", "-",
        ]

    for video in config.embedded_videos:
        if video.trim_start_seconds != 0:
            args += ["-ss", str(video.trim_start_seconds)]
        args += ["-i", video.video_path]

    for track in config.audio_tracks:
        args += ["-i", track.source.uri]

    args += ["-filter_complex", graph.graph, "-map", graph.video_output_label]
    if graph.audio_output_label is not None:
        args += [
            "-map", graph.audio_output_label,
            "-c:a", AUDIO_CODEC,
            "-b:a", AUDIO_BITRATE,
        ]
    else:
        args.append("-an")

    args += [
        "-c:v", VIDEO_CODEC,
        "-pix_fmt", OUTPUT_PIXEL_FORMAT,
        "-preset", encoding.preset,
        "-crf", str(encoding.crf),
        "-y", output_path,
    ]
    return args


class EncodingSession:
    """One running ffmpeg process plus its frame sink.

    completed is a Future that resolves with the output path when ffmpeg
    exits with code 0, fails with ProcessFailure on any other exit code, and
    is cancelled by cancel().

    progress is a fraction of total_frames, driven by frames written and by
    the frame counter ffmpeg prints on stderr. It stays at or below 0.99
    until ffmpeg exits with code 0, then becomes 1.0. on_progress, if given,
    is called with every new value.
    """

    def __init__(self, process, output_path: str, command: list[str],
                 frame_size: int | None = None, on_settled=None,
                 total_frames: int | None = None, on_progress=None):
        self._process = process
        self.output_path = output_path
        self.command = command
        self.frame_size = frame_size
        self.total_frames = total_frames
        self.frames_written = 0
        self.stderr_text = ""
        self.completed: Future = Future()

        self._progress = 0.0
        self._on_progress = on_progress
        self._progress_lock = threading.Lock()

        self._closed = False
        self._cancelled = False
        self._released = False
        self._on_settled = on_settled
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._watcher = threading.Thread(
            target=self._watch, name="clipencode-ffmpeg-watch", daemon=True,
        )

    def _begin(self) -> None:
        self._watcher.start()

    # ── Frame sink ────────────────────────────────────────────────

    def write(self, frame) -> None:
        """Write one whole frame to ffmpeg's stdin.

        Accepts bytes-like objects or anything with tobytes() (numpy arrays).
        Frames must arrive in timeline order; nothing is reordered.
        """
        if isinstance(frame, (bytes, bytearray, memoryview)):
            data = frame
        else:
            data = frame.tobytes()
        if self.frame_size is not None and len(data) != self.frame_size:
            raise ValueError(
                f"Frame {self.frames_written}: expected {self.frame_size} bytes, "
                f"got {len(data)}"
            )

        with self._write_lock:
            if self._cancelled:
                raise RuntimeError("Cannot write frames: session was cancelled")
            if self._closed:
                raise RuntimeError("Cannot write frames: session is closed")
            try:
                self._process.stdin.write(data)
            except OSError as exc:
                logger.warning(
                    "ffmpeg stopped accepting frames after %d frame(s)",
                    self.frames_written,
                )
                failure = self._exit_failure()
                if failure is not None:
                    raise failure from exc
                raise
            self.frames_written += 1
            written = self.frames_written
        self._advance(written)

    def close(self) -> None:
        """Signal end of input so ffmpeg finalizes the file. Idempotent."""
        with self._write_lock:
            if self._closed or self._cancelled:
                return
            self._closed = True
            try:
                self._process.stdin.close()
            except OSError as exc:
                # ffmpeg already exited; completed carries the real outcome.
                logger.debug("Closing ffmpeg stdin failed: %s", exc)
        logger.debug("Frame sink closed after %d frame(s)", self.frames_written)

    def cancel(self) -> bool:
        """Kill ffmpeg. The output file is invalid afterwards.

        Returns False if the session had already settled.
        """
        with self._state_lock:
            if self.completed.done():
                return False
            self._cancelled = True
            self._release()
            self.completed.cancel()
        self._process.kill()
        with self._write_lock:
            try:
                self._process.stdin.close()
            except OSError as exc:
                logger.debug("Closing ffmpeg stdin after kill failed: %s", exc)
        logger.info("Encoding cancelled: %s", self.output_path)
        return True

    def wait(self, timeout: float | None = None) -> str:
        """Block until ffmpeg exits and return the output path.

        Raises:
            ProcessFailure: ffmpeg exited non-zero.
            CancelledError: The session was cancelled.
        """
        return self.completed.result(timeout=timeout)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def progress(self) -> float:
        with self._progress_lock:
            return self._progress

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self.cancel()
        return False

    # ── Completion ────────────────────────────────────────────────

    def _watch(self) -> None:
        # Draining stderr keeps ffmpeg from blocking on a full pipe.
        stderr = self._drain_stderr()
        returncode = self._process.wait()
        self.stderr_text = stderr.decode("utf-8", errors="replace")

        with self._state_lock:
            if self.completed.done():
                return
            # Free the orchestrator slot before any waiter wakes up.
            self._release()
            if returncode != 0:
                logger.warning("ffmpeg exited with code %d", returncode)
                self.completed.set_exception(
                    ProcessFailure(returncode, self.stderr_text, self.command)
                )
                return
            logger.info(
                "Encoding finished: %s (%d frame(s))",
                self.output_path, self.frames_written,
            )
            with self._progress_lock:
                self._progress = 1.0
            self.completed.set_result(self.output_path)
        self._report(1.0)

    def _drain_stderr(self) -> bytes:
        """Read stderr as it arrives, following ffmpeg's frame= counter."""
        stream = self._process.stderr
        if stream is None:
            return b""
        chunks = []
        partial = b""
        for chunk in iter(lambda: stream.read1(_STDERR_CHUNK), b""):
            chunks.append(chunk)
            *lines, partial = _LINE_BREAK.split(partial + chunk)
            for line in lines:
                self._parse_progress_line(line)
        self._parse_progress_line(partial)
        return b"".join(chunks)

    def _parse_progress_line(self, line: bytes) -> None:
        match = _FRAME_COUNTER.search(line)
        if match is not None:
            self._advance(int(match.group(1)))

    def _advance(self, frames: int) -> None:
        if not self.total_frames:
            return
        fraction = min(frames / self.total_frames, _PROGRESS_CEILING)
        with self._progress_lock:
            if fraction <= self._progress:
                return
            self._progress = fraction
        self._report(fraction)

    def _report(self, fraction: float) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(fraction)
        except Exception:
            # The watcher must still settle completed.
            logger.exception("Progress callback failed at %.2f", fraction)

    def _exit_failure(self) -> BaseException | None:
        try:
            return self.completed.exception(timeout=_EXIT_GRACE_SECONDS)
        except (CancelledError, FutureTimeoutError):
            return None

    def _release(self) -> None:
        # Caller holds _state_lock.
        if self._released:
            return
        self._released = True
        if self._on_settled is not None:
            self._on_settled(self)


class EncodingOrchestrator:
    """Starts encoding sessions, one at a time.

    Args:
        ffmpeg_path: Encoder executable (default: common.ffmpeg_executable()).
        temp_dir_provider: Callable returning the output directory.
        process_factory: Callable taking the command list and returning a
            Popen-like object with stdin, stderr, wait() and kill().
        filter_graph_builder: Callable compiling a RenderConfig to a FilterGraph.
    """

    def __init__(self, ffmpeg_path: str | None = None,
                 temp_dir_provider=default_temp_dir,
                 process_factory=_spawn,
                 filter_graph_builder=build_filter_graph):
        self._ffmpeg_path = ffmpeg_path
        self._temp_dir_provider = temp_dir_provider
        self._process_factory = process_factory
        self._filter_graph_builder = filter_graph_builder
        self._lock = threading.Lock()
        self._busy = False
        self._active: EncodingSession | None = None

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._busy

    @property
    def active_session(self) -> EncodingSession | None:
        with self._lock:
            return self._active

    def start(self, config: RenderConfig, output_file_name: str,
              on_progress=None) -> EncodingSession:
        """Spawn ffmpeg for config and return the session feeding it.

        on_progress is passed to the session and called with each new
        progress fraction.

        Raises:
            ConfigurationError: A session is already active, or the output
                file name is empty.
            EncoderNotAvailable: The ffmpeg executable could not be started.
        """
        if not output_file_name or not str(output_file_name).strip():
            raise ConfigurationError(
                "output_file_name must be a non-empty string",
                field="output_file_name", value=output_file_name,
            )

        with self._lock:
            if self._busy:
                raise ConfigurationError(
                    "An encoding session is already active; "
                    "close or cancel it before starting another",
                    field="session",
                )
            self._busy = True

        try:
            output_path = Path(self._temp_dir_provider()) / output_file_name
            output_path.parent.mkdir(parents=True, exist_ok=True)
            if output_path.exists():
                output_path.unlink()

            graph = self._filter_graph_builder(config)
            args = build_encoder_args(config, graph, str(output_path))
            command = [self._ffmpeg_path or ffmpeg_executable(), *args]
            logger.info(
                "Starting encoder: %dx%d @ %dfps, %d frame(s), crf=%d preset=%s -> %s",
                config.timeline.width, config.timeline.height, config.timeline.fps,
                config.timeline.duration_in_frames, config.encoding.crf,
                config.encoding.preset, output_path,
            )
            logger.debug("ffmpeg command: %s", command)

            try:
                process = self._process_factory(command)
            except OSError as exc:
                raise EncoderNotAvailable(command[0], details=str(exc)) from exc
        except BaseException:
            with self._lock:
                self._busy = False
            raise

        frame_size = None
        if config.encoding.frame_format == "raw_rgba":
            frame_size = config.timeline.frame_size_bytes
        session = EncodingSession(
            process, str(output_path), command,
            frame_size=frame_size, on_settled=self._session_settled,
            total_frames=config.timeline.duration_in_frames, on_progress=on_progress,
        )
        with self._lock:
            self._active = session
        session._begin()
        return session

    def _session_settled(self, session: EncodingSession) -> None:
        with self._lock:
            if self._active is session:
                self._active = None
                self._busy = False
