"""Exception types raised by clipencode.

ConfigurationError subclasses ValueError so callers that already catch
manifest errors as ValueError keep working.
"""


class ClipEncodeError(Exception):
    """Base class for all clipencode errors."""


class ConfigurationError(ClipEncodeError, ValueError):
    """Structurally invalid config, or a second concurrent session start."""

    def __init__(self, message: str, field: str | None = None, value=None):
        super().__init__(message)
        self.field = field
        self.value = value


class ProcessFailure(ClipEncodeError, RuntimeError):
    """The encoder process exited with a non-zero code."""

    def __init__(self, returncode: int, stderr: str, command: list[str] | None = None):
        self.returncode = returncode
        self.stderr = stderr
        self.command = command
        message = f"ffmpeg exited with code {returncode}"
        if stderr.strip():
            message += f":\n{stderr.strip()}"
        super().__init__(message)


class ExtractionFailure(ClipEncodeError, RuntimeError):
    """Extracting a frame from a video file failed."""

    def __init__(self, message: str, video_path: str | None = None,
                 frame_number: int | None = None, details: str | None = None):
        self.video_path = video_path
        self.frame_number = frame_number
        self.details = details
        full = message
        if details:
            full += f"\nDetails: {details}"
        super().__init__(full)


class ProbeFailure(ClipEncodeError, RuntimeError):
    """Probing a media file for metadata failed."""

    def __init__(self, message: str, video_path: str | None = None,
                 details: str | None = None):
        self.video_path = video_path
        self.details = details
        full = message
        if details:
            full += f"\nDetails: {details}"
        super().__init__(full)


class EncoderNotAvailable(ClipEncodeError, RuntimeError):
    """The ffmpeg executable could not be started."""

    def __init__(self, executable: str, details: str | None = None):
        self.executable = executable
        self.details = details
        message = f"ffmpeg is not available at {executable!r}"
        if details:
            message += f"\nDetails: {details}"
        super().__init__(message)
