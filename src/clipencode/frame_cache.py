"""LRU cache for frames extracted from embedded video clips.

Keys are (video_path, frame_number). Two bounds are enforced on every
insert, evicting least-recently-used entries until both hold:
  - max_frames:       number of cached frames.
  - max_memory_bytes: total RGBA bytes held.
Both get() and put() count as a use.

Concurrent callers asking for the same missing frame share one extraction:
the first caller runs the extractor, later callers wait on its Future. The
frame is cached before any waiter sees it. A failed extraction is handed to
every waiter and then forgotten, so the next request retries.

All index and counter updates happen under one lock; extractions run
outside it.
"""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor

from .errors import ExtractionFailure
from .extraction import FrameExtractor
from .models import ExtractedFrame


logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAMES = 90                     # ~3 seconds at 30fps
DEFAULT_MAX_MEMORY_BYTES = 500 * 1024 * 1024
DEFAULT_PRELOAD_WORKERS = 4


class FrameCache:
    def __init__(
        self,
        max_frames: int = DEFAULT_MAX_FRAMES,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
        preload_workers: int = DEFAULT_PRELOAD_WORKERS,
    ):
        self.max_frames = max_frames
        self.max_memory_bytes = max_memory_bytes
        self.preload_workers = max(1, preload_workers)
        self._entries: OrderedDict[tuple[str, int], ExtractedFrame] = OrderedDict()
        self._current_bytes = 0
        self._pending: dict[tuple[str, int], Future] = {}
        self._lock = threading.Lock()

    # ── Lookup / insert ───────────────────────────────────────────

    def get(self, video_path: str, frame_number: int) -> ExtractedFrame | None:
        """Return a cached frame and mark it most recently used."""
        key = (video_path, frame_number)
        with self._lock:
            frame = self._entries.get(key)
            if frame is not None:
                self._entries.move_to_end(key)
            return frame

    def has(self, video_path: str, frame_number: int) -> bool:
        with self._lock:
            return (video_path, frame_number) in self._entries

    def put(self, video_path: str, frame_number: int, frame: ExtractedFrame) -> None:
        with self._lock:
            self._insert((video_path, frame_number), frame)

    def _insert(self, key: tuple[str, int], frame: ExtractedFrame) -> None:
        # Caller holds the lock.
        previous = self._entries.pop(key, None)
        if previous is not None:
            self._current_bytes -= previous.size_in_bytes

        size = frame.size_in_bytes
        if self.max_frames <= 0 or size > self.max_memory_bytes:
            logger.debug("Frame %s does not fit in the cache; not stored", key)
            return

        while self._entries and (
            len(self._entries) >= self.max_frames
            or self._current_bytes + size > self.max_memory_bytes
        ):
            _, evicted = self._entries.popitem(last=False)
            self._current_bytes -= evicted.size_in_bytes

        self._entries[key] = frame
        self._current_bytes += size

    # ── Extraction with coalescing ────────────────────────────────

    def get_or_extract(
        self,
        extractor: FrameExtractor,
        video_path: str,
        frame_number: int,
        source_fps: float,
        width: int,
        height: int,
    ) -> ExtractedFrame:
        """Return a cached frame, extracting it on a miss.

        Blocks until the frame is available. Concurrent calls for the same
        key invoke the extractor exactly once.

        Raises:
            ExtractionFailure: The extractor raised (every waiter gets it).
        """
        key = (video_path, frame_number)
        with self._lock:
            frame = self._entries.get(key)
            if frame is not None:
                self._entries.move_to_end(key)
                return frame
            pending = self._pending.get(key)
            leader = pending is None
            if leader:
                pending = Future()
                self._pending[key] = pending

        if not leader:
            return pending.result()

        try:
            frame = extractor.extract_frame_by_number(
                video_path=video_path,
                frame_number=frame_number,
                source_fps=source_fps,
                width=width,
                height=height,
            )
        except BaseException as exc:
            # KeyboardInterrupt and friends reach waiters unwrapped.
            if isinstance(exc, ExtractionFailure) or not isinstance(exc, Exception):
                failure = exc
            else:
                failure = ExtractionFailure(
                    f"Failed to extract frame {frame_number} from {video_path}",
                    video_path=video_path,
                    frame_number=frame_number,
                    details=str(exc),
                )
                failure.__cause__ = exc
            with self._lock:
                self._pending.pop(key, None)
            pending.set_exception(failure)
            raise failure

        with self._lock:
            self._insert(key, frame)
            self._pending.pop(key, None)
        pending.set_result(frame)
        return frame

    # ── Preloading ────────────────────────────────────────────────

    def preload_ahead(
        self,
        extractor: FrameExtractor,
        video_path: str,
        current_frame: int,
        ahead_count: int,
        source_fps: float,
        width: int,
        height: int,
        total_frames: int | None = None,
    ) -> list[int]:
        """Cache every missing frame in [current_frame, current_frame + ahead_count).

        The window is clipped to total_frames when given. Returns the frame
        numbers that were fetched.
        """
        end = current_frame + ahead_count
        if total_frames is not None:
            end = min(end, total_frames)
        return self._preload(
            extractor, video_path, range(current_frame, end),
            source_fps, width, height,
        )

    def preload_range(
        self,
        extractor: FrameExtractor,
        video_path: str,
        start_frame: int,
        end_frame: int,
        source_fps: float,
        width: int,
        height: int,
    ) -> list[int]:
        """Cache every missing frame in [start_frame, end_frame] (inclusive)."""
        return self._preload(
            extractor, video_path, range(start_frame, end_frame + 1),
            source_fps, width, height,
        )

    def _preload(self, extractor, video_path, frame_numbers, source_fps, width, height):
        with self._lock:
            missing = [n for n in frame_numbers if (video_path, n) not in self._entries]
        if not missing:
            return []

        # Extractions in one batch run side by side; per-key coalescing in
        # get_or_extract still applies against other batches and callers.
        workers = min(self.preload_workers, len(missing))
        with ThreadPoolExecutor(max_workers=workers,
                                thread_name_prefix="clipencode-preload") as pool:
            futures = [
                pool.submit(
                    self.get_or_extract, extractor, video_path, n,
                    source_fps, width, height,
                )
                for n in missing
            ]
        # Leaving the with-block waits for every extraction to settle.
        failures = [f.exception() for f in futures if f.exception() is not None]
        if failures:
            logger.warning(
                "Preload of %s: %d of %d frame(s) failed",
                video_path, len(failures), len(missing),
            )
            raise failures[0]
        return missing

    # ── Eviction ──────────────────────────────────────────────────

    def evict_outside_window(self, video_path: str, center_frame: int, window_size: int) -> int:
        """Drop this video's frames outside center_frame +/- window_size // 2.

        Frames of other videos are untouched. Returns the number removed.
        """
        low = center_frame - window_size // 2
        high = center_frame + window_size // 2
        return self._remove_where(
            lambda path, n: path == video_path and (n < low or n > high)
        )

    def clear_video(self, video_path: str) -> int:
        """Drop every cached frame of one video. Returns the number removed."""
        return self._remove_where(lambda path, n: path == video_path)

    def clear_all(self) -> None:
        """Drop every cached frame.

        In-flight extractions are not interrupted; they are cached when
        they finish.
        """
        with self._lock:
            self._entries.clear()
            self._current_bytes = 0

    def _remove_where(self, predicate) -> int:
        with self._lock:
            doomed = [key for key in self._entries if predicate(*key)]
            for key in doomed:
                self._current_bytes -= self._entries.pop(key).size_in_bytes
        return len(doomed)

    # ── Stats ─────────────────────────────────────────────────────

    @property
    def frame_count(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def memory_usage(self) -> int:
        with self._lock:
            return self._current_bytes

    @property
    def memory_usage_ratio(self) -> float:
        """Bytes held as a fraction of max_memory_bytes (0.0 when the max is 0)."""
        with self._lock:
            if self.max_memory_bytes <= 0:
                return 0.0
            return self._current_bytes / self.max_memory_bytes


# ── Shared instance ───────────────────────────────────────────────


class FrameCacheRegistry:
    """Holds one shared FrameCache, created lazily.

    configure() replaces the instance with one using the given bounds;
    dispose() empties and discards it so the next access starts fresh.
    """

    def __init__(self):
        self._instance: FrameCache | None = None
        self._lock = threading.Lock()

    def configure(
        self,
        max_frames: int = DEFAULT_MAX_FRAMES,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
    ) -> FrameCache:
        with self._lock:
            self._instance = FrameCache(
                max_frames=max_frames, max_memory_bytes=max_memory_bytes,
            )
            return self._instance

    @property
    def instance(self) -> FrameCache:
        with self._lock:
            if self._instance is None:
                self._instance = FrameCache()
            return self._instance

    def dispose(self) -> None:
        with self._lock:
            if self._instance is not None:
                self._instance.clear_all()
            self._instance = None


_registry = FrameCacheRegistry()


def configure_shared_cache(
    max_frames: int = DEFAULT_MAX_FRAMES,
    max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
) -> FrameCache:
    """Configure the process-wide cache. Call before first use."""
    return _registry.configure(max_frames=max_frames, max_memory_bytes=max_memory_bytes)


def shared_cache() -> FrameCache:
    """Return the process-wide cache, creating a default one if needed."""
    return _registry.instance


def dispose_shared_cache() -> None:
    """Discard the process-wide cache (tests call this between cases)."""
    _registry.dispose()
