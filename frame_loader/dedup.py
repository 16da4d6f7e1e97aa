from __future__ import annotations

from typing import Iterable, List

from .hash_parser import FrameHashRecord


def deduplicate_frames(
    records: Iterable[FrameHashRecord],
    window: int = 24,
    min_gap: float = 2.0,
) -> List[FrameHashRecord]:
    """Drop near-duplicate frames from time-sorted ``records``.

    A frame is dropped when one of the last ``window`` kept frames has the same
    structural hash and lies less than ``min_gap`` seconds away. Only the
    recent window is compared: identical frames far apart in the video are all
    kept.
    """
    kept: List[FrameHashRecord] = []
    for frame in records:
        recent = kept[-window:] if window > 0 else []
        if any(
            abs(frame.time - prev.time) < min_gap and prev.structural_hash == frame.structural_hash
            for prev in recent
        ):
            continue
        kept.append(frame)
    return kept
