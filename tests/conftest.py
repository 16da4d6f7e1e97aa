import lzma
from typing import List, Optional, Sequence

import pytest

from frame_loader.config import ApiConfig, LoadConfig, StoreConfig, WorkerSettings
from frame_loader.errors import StoreError
from frame_loader.store import CollectionSchema, IndexSpec, VectorStore


class FakeStore(VectorStore):
    """Records every call; ``fail_on`` makes the first N calls of one op fail."""

    def __init__(self, fail_on: Optional[str] = None, failures: int = 0):
        self.calls: List[tuple] = []
        self.fail_on = fail_on
        self.failures = failures
        self.closed = False

    def _record(self, op: str, *args) -> None:
        self.calls.append((op,) + args)
        if op == self.fail_on and self.failures > 0:
            self.failures -= 1
            raise StoreError(f"simulated {op} failure")

    def release_collection(self, name: str) -> None:
        self._record("release_collection", name)

    def create_collection(self, schema: CollectionSchema) -> None:
        self._record("create_collection", schema)

    def insert(self, name: str, records: Sequence) -> None:
        self._record("insert", name, list(records))

    def flush(self, name: str) -> None:
        self._record("flush", name)

    def create_index(self, name: str, spec: IndexSpec) -> None:
        self._record("create_index", name, spec)

    def close(self) -> None:
        self.closed = True

    def ops(self) -> List[str]:
        return [c[0] for c in self.calls]


def make_document(frames) -> bytes:
    """Build a hash XML document from ``(time, cl_hi, cl_ha)`` tuples."""
    docs = "".join(
        "<doc>"
        f'<field name="id">{t}</field>'
        f'<field name="cl_hi">{hi}</field>'
        f'<field name="cl_ha">{ha}</field>'
        "</doc>"
        for t, hi, ha in frames
    )
    return f'<?xml version="1.0" encoding="UTF-8"?><add>{docs}</add>'.encode("utf-8")


def make_artifact(frames) -> bytes:
    return lzma.compress(make_document(frames))


@pytest.fixture
def settings(tmp_path) -> WorkerSettings:
    return WorkerSettings(
        api=ApiConfig(
            api_url="http://api.test",
            media_url="http://media.test",
            secret="s3cret",
            worker_type="load",
            request_timeout=5.0,
            reconnect_seconds=5.0,
        ),
        store=StoreConfig(
            backend="faiss",
            faiss_dir=str(tmp_path / "store"),
            collection="frames",
            dim=8,
            nlist=4,
        ),
        load=LoadConfig(
            batch_size=3,
            pace_seconds=0.5,
            retry_seconds=30.0,
            dedup_window=24,
            dedup_min_gap=2.0,
            normalize_workers=1,
            show_progress=False,
        ),
        log_level="DEBUG",
    )
