from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Sequence

import numpy as np

from .hash_parser import FrameHashRecord
from .jobs import Job


@dataclass
class IndexRecord:
    id: str
    vector: np.ndarray
    primary_key: int


def _hex_tokens(histogram_hash: str, dim: int) -> np.ndarray:
    values = np.zeros(dim, dtype=np.float64)
    # Tokens beyond dim are dropped; producers emit at most dim tokens.
    for i, token in enumerate(histogram_hash.split()[:dim]):
        values[i] = int(token, 16)
    return values


def normalize_hash_vector(histogram_hash: str, dim: int = 100) -> np.ndarray:
    """Turn a ``"3ef d3c 2cc ..."`` hex histogram into a unit vector of length ``dim``.

    The norm is computed in float64, which is exact for sums of squared hash
    integers. An all-zero histogram gives the zero vector.
    """
    return normalize_hash_matrix([histogram_hash], dim)[0]


def normalize_hash_matrix(hashes: Sequence[str], dim: int = 100) -> np.ndarray:
    """Normalize many histogram hashes at once (N x dim, float32)."""
    if not hashes:
        return np.zeros((0, dim), dtype=np.float32)
    raw = np.vstack([_hex_tokens(h, dim) for h in hashes])
    norms = np.sqrt(np.einsum("ij,ij->i", raw, raw))[:, None]
    out = np.divide(raw, norms, out=np.zeros_like(raw), where=norms > 0)
    return out.astype(np.float32)


def primary_key_for(structural_hash: str) -> int:
    """Sum of character codes; stable but not collision free."""
    return sum(ord(c) for c in structural_hash)


def record_id(job: Job, time: float) -> str:
    # Exact binary value, ties away from zero: 0.125 -> "0.13", 1.005 -> "1.00".
    seconds = Decimal(time).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{job.collection_id}/{job.file_name}/{seconds}"


def _chunks(items: Sequence[FrameHashRecord], size: int) -> Iterable[Sequence[FrameHashRecord]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def build_index_records(
    job: Job,
    frames: Sequence[FrameHashRecord],
    dim: int = 100,
    workers: int = 1,
    chunk_size: int = 10_000,
) -> List[IndexRecord]:
    """Build store records for ``frames``, keeping their order.

    With ``workers > 1`` chunks are normalized on a thread pool; ``map`` keeps
    results in submission order.
    """
    chunks = list(_chunks(frames, max(1, chunk_size)))

    def encode(chunk: Sequence[FrameHashRecord]) -> np.ndarray:
        return normalize_hash_matrix([f.histogram_hash for f in chunk], dim)

    if workers > 1 and len(chunks) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            matrices = list(pool.map(encode, chunks))
    else:
        matrices = [encode(chunk) for chunk in chunks]

    records: List[IndexRecord] = []
    for chunk, matrix in zip(chunks, matrices):
        for frame, vector in zip(chunk, matrix):
            records.append(
                IndexRecord(
                    id=record_id(job, frame.time),
                    vector=vector,
                    primary_key=primary_key_for(frame.structural_hash),
                )
            )
    return records
