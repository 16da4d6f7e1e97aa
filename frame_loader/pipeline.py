"""One job, start to finish: fetch -> parse -> dedup -> normalize -> load.

Retryable failures (network, store) restart the job from the fetch after a
fixed backoff, as many times as it takes. Bad input ends the job at once.
Either way the caller gets exactly one ``JobOutcome`` to acknowledge.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence

from tenacity import Retrying, retry_if_exception_type, wait_fixed

from .config import WorkerSettings
from .dedup import deduplicate_frames
from .embedding import IndexRecord, build_index_records
from .errors import BadInputError, HashParseError, StoreError, TransientNetworkError
from .hash_parser import FrameHashRecord, parse_hash_document
from .indexer import LoadReport, load_records
from .jobs import Job, JobOutcome
from .media_api import MediaApiClient
from .store import StoreFactory, open_store

LOG = logging.getLogger(__name__)


def prepare_records(
    job: Job,
    frames: Sequence[FrameHashRecord],
    settings: WorkerSettings,
) -> List[IndexRecord]:
    """Dedup time-sorted frames and turn the survivors into store records."""
    deduped = deduplicate_frames(
        frames,
        window=settings.load.dedup_window,
        min_gap=settings.load.dedup_min_gap,
    )
    LOG.info("%s: %d frames, %d after dedup", job.file, len(frames), len(deduped))
    try:
        return build_index_records(
            job,
            deduped,
            dim=settings.store.dim,
            workers=settings.load.normalize_workers,
            chunk_size=settings.load.batch_size,
        )
    except ValueError as e:
        raise HashParseError(f"{job.file}: bad histogram hash: {e}") from e


def load_document(
    job: Job,
    document: bytes | str,
    settings: WorkerSettings,
    store_factory: StoreFactory = open_store,
    sleep: Callable[[float], None] = time.sleep,
) -> LoadReport:
    """Parse, dedup, normalize and load one decompressed hash document."""
    LOG.info("Parsing hash document of %s", job.file)
    frames = parse_hash_document(document)
    records = prepare_records(job, frames, settings)
    with store_factory(settings.store) as store:
        return load_records(store, records, settings.load, settings.store, sleep=sleep)


def run_job(
    job: Job,
    settings: WorkerSettings,
    client: Optional[MediaApiClient] = None,
    store_factory: StoreFactory = open_store,
    sleep: Callable[[float], None] = time.sleep,
) -> JobOutcome:
    """Run ``job`` until it is loaded or rejected."""
    own_client = client is None
    client = client or MediaApiClient(settings.api)

    def log_retry(retry_state) -> None:
        LOG.warning(
            "Attempt %d for %s failed: %s; retrying in %.0fs",
            retry_state.attempt_number,
            job.file,
            retry_state.outcome.exception(),
            settings.load.retry_seconds,
        )

    # No stop condition: retryable failures are retried until the job goes through.
    retrying = Retrying(
        retry=retry_if_exception_type((TransientNetworkError, StoreError)),
        wait=wait_fixed(settings.load.retry_seconds),
        sleep=sleep,
        before_sleep=log_retry,
    )
    attempt = 0
    try:
        for attempt_manager in retrying:
            with attempt_manager:
                attempt = attempt_manager.retry_state.attempt_number
                document = client.fetch_hash(job)
                report = load_document(job, document, settings, store_factory, sleep)

        client.notify_loaded(job)
        LOG.info("Loaded %s (%d records, attempt %d)", job.file, report.records, attempt)
        return JobOutcome(raw=job.raw, status="loaded", attempts=attempt, records=report.records)
    except BadInputError as e:
        LOG.error("Rejected %s: %s", job.file, e)
        return JobOutcome(raw=job.raw, status="rejected", attempts=attempt, detail=str(e))
    finally:
        if own_client:
            client.close()
