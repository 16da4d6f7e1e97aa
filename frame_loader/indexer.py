from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Sequence, TypeVar

from tqdm import tqdm

from .config import LoadConfig, StoreConfig, loader as loader_cfg, store as store_cfg
from .embedding import IndexRecord
from .store import IndexSpec, VectorStore

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LoadReport:
    records: int
    batches: int
    insert_sec: float = 0.0
    flush_sec: float = 0.0
    index_sec: float = 0.0


def iter_batches(items: Sequence[T], batch_size: int) -> Iterator[Sequence[T]]:
    """Consecutive slices of ``batch_size``; the last one may be shorter."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    for i in range(0, len(items), batch_size):
        yield items[i : i + batch_size]


def load_records(
    store: VectorStore,
    records: Sequence[IndexRecord],
    cfg: LoadConfig = loader_cfg,
    scfg: StoreConfig = store_cfg,
    sleep: Callable[[float], None] = time.sleep,
) -> LoadReport:
    """Insert ``records`` in paced batches, then flush and rebuild the index.

    The pause between batches keeps the store under its concurrent request
    limit. Store failures propagate as ``StoreError``; callers retry the whole
    job.
    """
    collection = scfg.collection
    batches: List[Sequence[IndexRecord]] = list(iter_batches(records, cfg.batch_size))
    report = LoadReport(records=len(records), batches=len(batches))
    if not batches:
        LOG.info("Nothing to load into %s", collection)
        return report

    start = time.perf_counter()
    for i, batch in enumerate(
        tqdm(batches, desc="Inserting", unit="batch", disable=not cfg.show_progress)
    ):
        store.insert(collection, batch)
        if i < len(batches) - 1:
            sleep(cfg.pace_seconds)
    report.insert_sec = time.perf_counter() - start
    LOG.info("Inserted %d records in %d batch(es) in %.2fs", len(records), len(batches), report.insert_sec)

    start = time.perf_counter()
    store.flush(collection)
    report.flush_sec = time.perf_counter() - start
    LOG.info("Flushed %s in %.2fs", collection, report.flush_sec)

    start = time.perf_counter()
    store.create_index(collection, IndexSpec.from_config(scfg))
    report.index_sec = time.perf_counter() - start
    LOG.info("Indexed %s (%s/%s) in %.2fs", collection, scfg.index_type, scfg.metric_type, report.index_sec)
    return report
