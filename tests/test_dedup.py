"""Tests for the sliding-window frame deduplicator."""

import random

from frame_loader.dedup import deduplicate_frames
from frame_loader.hash_parser import FrameHashRecord


def frame(t, hi="h", ha="1"):
    return FrameHashRecord(time=t, structural_hash=hi, histogram_hash=ha)


class TestDeduplicateFrames:
    def test_burst_of_identical_frames_keeps_first_and_far_one(self):
        """30 frames in 0.0-1.0s sharing one hash plus one at 5.0s -> 2 frames."""
        frames = [frame(round(i / 29, 4)) for i in range(30)] + [frame(5.0)]

        out = deduplicate_frames(frames)

        assert [f.time for f in out] == [0.0, 5.0]

    def test_different_hashes_are_all_kept(self):
        frames = [frame(0.1 * i, hi=f"h{i}") for i in range(10)]
        assert deduplicate_frames(frames) == frames

    def test_gap_of_exactly_two_seconds_is_not_a_duplicate(self):
        frames = [frame(0.0), frame(2.0)]
        assert deduplicate_frames(frames) == frames

    def test_only_recent_window_is_compared(self):
        # 24 distinct frames push the first one out of the window.
        frames = [frame(0.0, hi="dup")] + [frame(0.01 * i, hi=f"x{i}") for i in range(1, 25)]
        frames.append(frame(0.5, hi="dup"))

        out = deduplicate_frames(frames, window=24)

        assert out[-1] == frame(0.5, hi="dup")
        assert len(out) == len(frames)

    def test_within_window_duplicate_is_dropped(self):
        frames = [frame(0.0, hi="dup")] + [frame(0.01 * i, hi=f"x{i}") for i in range(1, 24)]
        frames.append(frame(0.5, hi="dup"))

        out = deduplicate_frames(frames, window=24)

        assert frame(0.5, hi="dup") not in out

    def test_empty_input(self):
        assert deduplicate_frames([]) == []

    def test_output_is_ordered_subsequence_with_window_property(self):
        rng = random.Random(7)
        frames = sorted(
            (frame(round(rng.uniform(0, 60), 2), hi=rng.choice("abc")) for _ in range(400)),
            key=lambda f: f.time,
        )

        out = deduplicate_frames(frames)

        it = iter(frames)
        assert all(any(f is g for g in it) for f in out)
        for i, current in enumerate(out):
            for prev in out[max(0, i - 24):i]:
                assert current.time - prev.time >= 2.0 or prev.structural_hash != current.structural_hash
