"""Run each job in its own process.

Parsing and normalizing a long video is CPU heavy; doing it in a child
process keeps the channel's read loop responsive and confines a job's memory
to a process that is gone once the job is done. The child reports exactly one
``JobOutcome`` through a one-way pipe; nothing else is shared.
"""

from __future__ import annotations

import logging
import multiprocessing
import time
from typing import Callable, Optional

from tenacity import Retrying, retry_if_exception_type, wait_fixed

from .config import WorkerSettings, setup_logging
from .jobs import Job, JobOutcome
from .pipeline import run_job

LOG = logging.getLogger(__name__)

JobTarget = Callable[[Job, WorkerSettings], JobOutcome]


def _unit_main(conn, raw: str, settings: WorkerSettings, target: JobTarget) -> None:
    setup_logging(settings.log_level)
    try:
        outcome = target(Job.from_message(raw), settings)
    except Exception as e:
        logging.getLogger(__name__).exception("Job unit crashed on %s", raw)
        outcome = JobOutcome(raw=raw, status="failed", detail=f"{type(e).__name__}: {e}")
    try:
        conn.send(outcome)
    finally:
        conn.close()


class UnitDied(RuntimeError):
    """The job process exited without reporting an outcome."""


class JobUnit:
    """One child process running one job."""

    JOIN_TIMEOUT = 5.0

    def __init__(
        self,
        raw: str,
        settings: WorkerSettings,
        target: JobTarget = run_job,
        mp_context: Optional[multiprocessing.context.BaseContext] = None,
    ):
        self.raw = raw
        self.settings = settings
        self.target = target
        self.ctx = mp_context or multiprocessing.get_context("spawn")
        self._process = None
        self._conn = None

    def start(self) -> "JobUnit":
        recv_conn, send_conn = self.ctx.Pipe(duplex=False)
        self._process = self.ctx.Process(
            target=_unit_main,
            args=(send_conn, self.raw, self.settings, self.target),
            name="job-unit",
            daemon=True,
        )
        self._process.start()
        # Only the child holds the sending end; EOF then means it is gone.
        send_conn.close()
        self._conn = recv_conn
        return self

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def wait(self) -> JobOutcome:
        """Block until the unit reports, then reap it."""
        try:
            return self._conn.recv()
        except EOFError as e:
            self._process.join(self.JOIN_TIMEOUT)
            raise UnitDied(f"job unit {self.pid} exited with code {self._process.exitcode}") from e
        finally:
            self._conn.close()
            self._terminate()

    def _terminate(self) -> None:
        self._process.join(self.JOIN_TIMEOUT)
        if self._process.is_alive():
            LOG.warning("Job unit %s still alive after reporting; terminating", self.pid)
            self._process.terminate()
            self._process.join()


def _run_unit(raw: str, settings: WorkerSettings, unit_factory: Callable[[str, WorkerSettings], JobUnit]) -> JobOutcome:
    unit = unit_factory(raw, settings).start()
    LOG.info("Started job unit %s for %s", unit.pid, raw)
    return unit.wait()


def run_isolated(
    raw: str,
    settings: WorkerSettings,
    unit_factory: Callable[[str, WorkerSettings], JobUnit] = JobUnit,
    sleep: Callable[[float], None] = time.sleep,
) -> JobOutcome:
    """Run ``raw`` in a unit, respawning it if the process dies unreported."""

    def log_respawn(retry_state) -> None:
        LOG.error("%s; respawning in %.0fs", retry_state.outcome.exception(), settings.load.retry_seconds)

    retrying = Retrying(
        retry=retry_if_exception_type(UnitDied),
        wait=wait_fixed(settings.load.retry_seconds),
        sleep=sleep,
        before_sleep=log_respawn,
    )
    return retrying(_run_unit, raw, settings, unit_factory)
