"""Frame-feed helpers for render loops.

encode_frames() pushes an iterable of frames through one encoding session.
source_frame_for() and fetch_embedded_frame() map a composition frame to
the matching frame of an embedded clip, going through the frame cache.
"""

import logging
import math
from collections.abc import Iterable

from .encoder import EncodingOrchestrator
from .extraction import FrameExtractor
from .frame_cache import FrameCache, shared_cache
from .models import EmbeddedVideoConfig, ExtractedFrame, RenderConfig


logger = logging.getLogger(__name__)


def encode_frames(
    config: RenderConfig,
    frames: Iterable,
    output_file_name: str,
    orchestrator: EncodingOrchestrator | None = None,
    on_progress=None,
) -> str:
    """Encode frames (in timeline order) and return the output path.

    on_progress, if given, receives the session's progress fraction.

    Any error while producing or writing frames cancels the session and
    is re-raised; the partial output is discarded by ffmpeg's kill.

    Raises:
        ProcessFailure: ffmpeg exited non-zero.
    """
    orchestrator = orchestrator or EncodingOrchestrator()
    session = orchestrator.start(config, output_file_name, on_progress=on_progress)
    try:
        for frame in frames:
            session.write(frame)
    except BaseException:
        logger.warning(
            "Aborting encode of %s after %d frame(s)",
            output_file_name, session.frames_written,
        )
        session.cancel()
        raise
    session.close()
    return session.wait()


def source_frame_for(
    video: EmbeddedVideoConfig,
    timeline_frame: int,
    timeline_fps: int,
    source_fps: float,
) -> int | None:
    """Source frame number shown at timeline_frame, or None outside the clip."""
    if timeline_frame < video.start_frame or timeline_frame >= video.end_frame:
        return None
    seconds = (timeline_frame - video.start_frame) / timeline_fps + video.trim_start_seconds
    # Nudge so exact multiples don't land one frame early from float error.
    return int(math.floor(seconds * source_fps + 1e-9))


def fetch_embedded_frame(
    video: EmbeddedVideoConfig,
    timeline_frame: int,
    timeline_fps: int,
    source_fps: float,
    extractor: FrameExtractor,
    cache: FrameCache | None = None,
    preload_ahead: int = 0,
) -> ExtractedFrame | None:
    """Return the embedded clip's frame for timeline_frame, scaled to its box.

    Uses the shared cache unless one is given. With preload_ahead > 0 the
    following source frames are cached too, so the next calls hit.
    """
    source_frame = source_frame_for(video, timeline_frame, timeline_fps, source_fps)
    if source_frame is None:
        return None
    cache = cache or shared_cache()
    frame = cache.get_or_extract(
        extractor, video.video_path, source_frame, source_fps, video.width, video.height,
    )
    if preload_ahead > 0:
        last = source_frame_for(video, video.end_frame - 1, timeline_fps, source_fps)
        cache.preload_ahead(
            extractor, video.video_path, source_frame + 1, preload_ahead,
            source_fps, video.width, video.height,
            total_frames=None if last is None else last + 1,
        )
    return frame
