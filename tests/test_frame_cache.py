"""Tests for the frame cache: LRU and memory bounds, coalescing, preloading."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from clipencode.errors import ExtractionFailure
from clipencode.models import ExtractedFrame


class FakeExtractor:
    """Returns solid frames whose bytes encode the frame number.

    gate (optional) holds every extraction until it is set.
    """

    def __init__(self, fail_frames=(), fail_once=False, gate=None):
        self.calls = []
        self.fail_frames = set(fail_frames)
        self.fail_once = fail_once
        self.gate = gate
        self.started = threading.Event()
        self._lock = threading.Lock()

    def extract_frame_by_number(self, video_path, frame_number, source_fps, width, height):
        with self._lock:
            self.calls.append((video_path, frame_number))
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if frame_number in self.fail_frames:
            if self.fail_once:
                self.fail_frames.discard(frame_number)
            raise RuntimeError(f"decode error at {frame_number}")
        return _frame(frame_number, width, height)

    def extract_frame_range(self, video_path, start_frame, end_frame, source_fps, width, height):
        return [
            self.extract_frame_by_number(video_path, n, source_fps, width, height)
            for n in range(start_frame, end_frame + 1)
        ]


def _frame(n, width=2, height=2):
    return ExtractedFrame(
        frame_number=n, rgba=bytes([n % 256]) * (width * height * 4),
        width=width, height=height,
    )


def _cache(**kwargs):
    from clipencode.frame_cache import FrameCache

    return FrameCache(**kwargs)


@pytest.fixture(autouse=True)
def _reset_shared_cache():
    from clipencode.frame_cache import dispose_shared_cache

    yield
    dispose_shared_cache()


class TestLru:
    def test_evicts_first_inserted(self):
        cache = _cache(max_frames=3)
        for n in range(4):
            cache.put("a.mp4", n, _frame(n))
        assert not cache.has("a.mp4", 0)
        assert all(cache.has("a.mp4", n) for n in (1, 2, 3))
        assert cache.frame_count == 3

    def test_get_promotes(self):
        cache = _cache(max_frames=3)
        for n in range(3):
            cache.put("a.mp4", n, _frame(n))
        assert cache.get("a.mp4", 0).frame_number == 0
        cache.put("a.mp4", 3, _frame(3))
        assert cache.has("a.mp4", 0)
        assert not cache.has("a.mp4", 1)

    def test_put_promotes_existing_key(self):
        cache = _cache(max_frames=3)
        for n in range(3):
            cache.put("a.mp4", n, _frame(n))
        cache.put("a.mp4", 0, _frame(0))
        cache.put("a.mp4", 3, _frame(3))
        assert cache.has("a.mp4", 0)
        assert not cache.has("a.mp4", 1)
        assert cache.frame_count == 3

    def test_get_miss(self):
        assert _cache().get("a.mp4", 7) is None

    def test_reinsert_does_not_double_count(self):
        cache = _cache()
        cache.put("a.mp4", 0, _frame(0))
        cache.put("a.mp4", 0, _frame(0))
        assert cache.frame_count == 1
        assert cache.memory_usage == 16

    def test_keys_include_video_path(self):
        cache = _cache()
        cache.put("a.mp4", 0, _frame(0))
        assert not cache.has("b.mp4", 0)


class TestMemoryBound:
    def test_evicts_by_bytes(self):
        cache = _cache(max_frames=100, max_memory_bytes=40)  # 2.5 frames of 16 bytes
        for n in range(3):
            cache.put("a.mp4", n, _frame(n))
        assert cache.frame_count == 2
        assert cache.memory_usage == 32
        assert not cache.has("a.mp4", 0)
        assert cache.memory_usage_ratio == pytest.approx(0.8)

    def test_ratio_stays_in_bounds(self):
        cache = _cache(max_frames=100, max_memory_bytes=64)
        for n in range(50):
            cache.put("a.mp4", n, _frame(n))
            assert 0.0 <= cache.memory_usage_ratio <= 1.0

    def test_ratio_zero_when_empty(self):
        assert _cache().memory_usage_ratio == 0.0

    def test_ratio_zero_when_max_is_zero(self):
        cache = _cache(max_memory_bytes=0)
        cache.put("a.mp4", 0, _frame(0))
        assert cache.memory_usage_ratio == 0.0
        assert cache.frame_count == 0

    def test_oversized_frame_returned_but_not_stored(self):
        cache = _cache(max_memory_bytes=8)
        extractor = FakeExtractor()
        frame = cache.get_or_extract(extractor, "a.mp4", 0, 30.0, 2, 2)
        assert frame.frame_number == 0
        assert cache.frame_count == 0


class TestGetOrExtract:
    def test_miss_then_hit(self):
        cache = _cache()
        extractor = FakeExtractor()
        first = cache.get_or_extract(extractor, "a.mp4", 5, 30.0, 2, 2)
        second = cache.get_or_extract(extractor, "a.mp4", 5, 30.0, 2, 2)
        assert first is second
        assert extractor.calls == [("a.mp4", 5)]

    def test_concurrent_requests_coalesce(self):
        cache = _cache()
        gate = threading.Event()
        extractor = FakeExtractor(gate=gate)

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [
                pool.submit(cache.get_or_extract, extractor, "a.mp4", 3, 30.0, 2, 2)
                for _ in range(8)
            ]
            extractor.started.wait(timeout=5)
            time.sleep(0.1)  # let the other callers queue up
            gate.set()
            results = [f.result(timeout=5) for f in futures]

        assert len(extractor.calls) == 1
        assert all(r is results[0] for r in results)
        assert cache.has("a.mp4", 3)

    def test_failure_reaches_every_waiter(self):
        cache = _cache()
        gate = threading.Event()
        extractor = FakeExtractor(fail_frames=[3], gate=gate)

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [
                pool.submit(cache.get_or_extract, extractor, "a.mp4", 3, 30.0, 2, 2)
                for _ in range(4)
            ]
            extractor.started.wait(timeout=5)
            time.sleep(0.1)
            gate.set()
            errors = [f.exception(timeout=5) for f in futures]

        assert len(extractor.calls) == 1
        assert all(isinstance(e, ExtractionFailure) for e in errors)
        assert not cache.has("a.mp4", 3)

    def test_interrupt_releases_waiters(self):
        gate = threading.Event()
        started = threading.Event()

        class Interrupted:
            def extract_frame_by_number(self, **kwargs):
                started.set()
                gate.wait(timeout=5)
                raise KeyboardInterrupt

        cache = _cache()
        with ThreadPoolExecutor(max_workers=2) as pool:
            leader = pool.submit(cache.get_or_extract, Interrupted(), "a.mp4", 1, 30.0, 2, 2)
            started.wait(timeout=5)
            waiter = pool.submit(cache.get_or_extract, Interrupted(), "a.mp4", 1, 30.0, 2, 2)
            time.sleep(0.1)
            gate.set()
            assert isinstance(leader.exception(timeout=5), KeyboardInterrupt)
            assert isinstance(waiter.exception(timeout=5), KeyboardInterrupt)

            retry = pool.submit(cache.get_or_extract, FakeExtractor(), "a.mp4", 1, 30.0, 2, 2)
            assert retry.result(timeout=5).frame_number == 1

    def test_failure_is_not_cached(self):
        cache = _cache()
        extractor = FakeExtractor(fail_frames=[3], fail_once=True)

        with pytest.raises(ExtractionFailure, match="decode error at 3") as exc_info:
            cache.get_or_extract(extractor, "a.mp4", 3, 30.0, 2, 2)
        assert exc_info.value.frame_number == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        frame = cache.get_or_extract(extractor, "a.mp4", 3, 30.0, 2, 2)
        assert frame.frame_number == 3
        assert len(extractor.calls) == 2

    def test_extraction_failure_passes_through(self):
        class Broken:
            def extract_frame_by_number(self, **kwargs):
                raise ExtractionFailure("Invalid frame size", frame_number=kwargs["frame_number"])

        with pytest.raises(ExtractionFailure, match="Invalid frame size"):
            _cache().get_or_extract(Broken(), "a.mp4", 1, 30.0, 2, 2)

    def test_clear_all_does_not_drop_in_flight(self):
        cache = _cache()
        gate = threading.Event()
        extractor = FakeExtractor(gate=gate)

        worker = threading.Thread(
            target=cache.get_or_extract, args=(extractor, "a.mp4", 9, 30.0, 2, 2),
        )
        worker.start()
        extractor.started.wait(timeout=5)
        cache.clear_all()
        gate.set()
        worker.join(timeout=5)

        assert cache.has("a.mp4", 9)


class TestPreload:
    def test_preload_ahead(self):
        cache = _cache()
        extractor = FakeExtractor()
        loaded = cache.preload_ahead(extractor, "a.mp4", 5, 4, 30.0, 2, 2)
        assert loaded == [5, 6, 7, 8]
        assert all(cache.has("a.mp4", n) for n in (5, 6, 7, 8))
        assert not cache.has("a.mp4", 9)

    def test_preload_ahead_clipped_to_total(self):
        cache = _cache()
        loaded = cache.preload_ahead(FakeExtractor(), "a.mp4", 5, 4, 30.0, 2, 2, total_frames=7)
        assert loaded == [5, 6]

    def test_preload_skips_cached(self):
        cache = _cache()
        cache.put("a.mp4", 6, _frame(6))
        extractor = FakeExtractor()
        loaded = cache.preload_ahead(extractor, "a.mp4", 5, 3, 30.0, 2, 2)
        assert loaded == [5, 7]
        assert ("a.mp4", 6) not in extractor.calls

    def test_preload_range_inclusive(self):
        cache = _cache()
        loaded = cache.preload_range(FakeExtractor(), "a.mp4", 2, 4, 30.0, 2, 2)
        assert loaded == [2, 3, 4]
        assert cache.frame_count == 3

    def test_preload_nothing_missing(self):
        cache = _cache()
        cache.put("a.mp4", 0, _frame(0))
        assert cache.preload_range(FakeExtractor(), "a.mp4", 0, 0, 30.0, 2, 2) == []

    def test_preload_failure_keeps_successes(self):
        cache = _cache()
        extractor = FakeExtractor(fail_frames=[3])
        with pytest.raises(ExtractionFailure):
            cache.preload_range(extractor, "a.mp4", 1, 4, 30.0, 2, 2)
        assert all(cache.has("a.mp4", n) for n in (1, 2, 4))
        assert not cache.has("a.mp4", 3)

    def test_overlapping_preloads_extract_once(self):
        cache = _cache()
        extractor = FakeExtractor()
        with ThreadPoolExecutor(max_workers=2) as pool:
            a = pool.submit(cache.preload_range, extractor, "a.mp4", 0, 9, 30.0, 2, 2)
            b = pool.submit(cache.preload_range, extractor, "a.mp4", 5, 14, 30.0, 2, 2)
            a.result(timeout=10)
            b.result(timeout=10)
        assert sorted(n for _, n in extractor.calls) == list(range(15))


class TestEviction:
    def _filled(self):
        cache = _cache(max_frames=100)
        for n in range(21):
            cache.put("a.mp4", n, _frame(n))
        for n in range(3):
            cache.put("b.mp4", n, _frame(n))
        return cache

    def test_evict_outside_window(self):
        cache = self._filled()
        removed = cache.evict_outside_window("a.mp4", center_frame=10, window_size=6)
        assert removed == 14
        assert all(cache.has("a.mp4", n) for n in range(7, 14))
        assert not cache.has("a.mp4", 6)
        assert not cache.has("a.mp4", 14)

    def test_other_videos_untouched(self):
        cache = self._filled()
        cache.evict_outside_window("a.mp4", center_frame=10, window_size=2)
        assert all(cache.has("b.mp4", n) for n in range(3))

    def test_clear_video(self):
        cache = self._filled()
        assert cache.clear_video("a.mp4") == 21
        assert cache.frame_count == 3
        assert cache.memory_usage == 3 * 16

    def test_clear_all(self):
        cache = self._filled()
        cache.clear_all()
        assert cache.frame_count == 0
        assert cache.memory_usage == 0
        assert cache.memory_usage_ratio == 0.0


class TestRegistry:
    def test_configure_sets_bounds(self):
        from clipencode.frame_cache import configure_shared_cache, shared_cache

        cache = configure_shared_cache(max_frames=5, max_memory_bytes=1024)
        assert shared_cache() is cache
        assert cache.max_frames == 5
        assert cache.max_memory_bytes == 1024

    def test_default_instance(self):
        from clipencode.frame_cache import (
            DEFAULT_MAX_FRAMES,
            DEFAULT_MAX_MEMORY_BYTES,
            shared_cache,
        )

        cache = shared_cache()
        assert cache.max_frames == DEFAULT_MAX_FRAMES == 90
        assert cache.max_memory_bytes == DEFAULT_MAX_MEMORY_BYTES == 500 * 1024 * 1024
        assert shared_cache() is cache

    def test_dispose_gives_fresh_instance(self):
        from clipencode.frame_cache import dispose_shared_cache, shared_cache

        first = shared_cache()
        first.put("a.mp4", 0, _frame(0))
        dispose_shared_cache()
        second = shared_cache()
        assert second is not first
        assert second.frame_count == 0

    def test_separate_registries_are_isolated(self):
        from clipencode.frame_cache import FrameCacheRegistry

        one, two = FrameCacheRegistry(), FrameCacheRegistry()
        assert one.instance is not two.instance
