"""Persistent WebSocket connection to the job dispatcher.

Connection lifecycle::

    connect -> on_open (readiness signal, collection reset)
            -> on_message* (one supervisor thread + job unit per job)
            -> on_close / on_error -> wait -> connect ...

Acknowledgments are the raw job messages echoed back once a job is done; they
go out on whatever connection is current at that moment.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Set

import websocket

from .config import WorkerSettings
from .errors import ChannelError, InvalidJobMessage, StoreError
from .isolation import run_isolated
from .jobs import Job, JobOutcome
from .store import CollectionSchema, StoreFactory, open_store

LOG = logging.getLogger(__name__)


def ensure_collection(settings: WorkerSettings, store_factory: StoreFactory = open_store) -> None:
    """Release and recreate the target collection. Destroys its contents."""
    schema = CollectionSchema.from_config(settings.store)
    with store_factory(settings.store) as store:
        store.release_collection(schema.name)
        store.create_collection(schema)
    LOG.info("Collection %s ready (dim=%d)", schema.name, schema.dim)


class JobChannelClient:
    def __init__(
        self,
        settings: WorkerSettings,
        run_job: Callable[[str, WorkerSettings], JobOutcome] = run_isolated,
        store_factory: StoreFactory = open_store,
        app_factory: Callable[..., websocket.WebSocketApp] = websocket.WebSocketApp,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.run_job = run_job
        self.store_factory = store_factory
        self.app_factory = app_factory
        self.sleep = sleep
        self._app: Optional[websocket.WebSocketApp] = None
        self._send_lock = threading.Lock()
        self._stopped = threading.Event()
        self._inflight: Set[threading.Thread] = set()
        self._inflight_lock = threading.Lock()

    @property
    def headers(self) -> Dict[str, str]:
        api = self.settings.api
        return {api.secret_header: api.secret, api.worker_type_header: api.worker_type}

    def connect_once(self) -> None:
        """Serve one connection; raises ``ChannelError`` when it ends."""
        url = self.settings.api.channel_url
        LOG.info("Connecting to %s", url)
        self._app = self.app_factory(
            url,
            header=self.headers,
            on_open=self.on_open,
            on_message=self.on_message,
            on_error=self.on_error,
            on_close=self.on_close,
        )
        errored = self._app.run_forever()
        if not self._stopped.is_set():
            raise ChannelError("connection failed" if errored else "connection closed")

    def run_forever(self) -> None:
        """Connect, serve, and reconnect until ``stop()``."""
        delay = self.settings.api.reconnect_seconds
        while not self._stopped.is_set():
            try:
                self.connect_once()
            except ChannelError as e:
                LOG.warning("Channel %s; reconnecting in %.0f seconds", e, delay)
                self.sleep(delay)

    def stop(self) -> None:
        self._stopped.set()
        if self._app is not None:
            self._app.close()

    def on_open(self, ws) -> None:
        LOG.info("Connected")
        ws.send("")
        LOG.warning(
            "Recreating collection %s on connect: existing vectors are dropped "
            "(frequent reconnects will keep truncating it)",
            self.settings.store.collection,
        )
        try:
            ensure_collection(self.settings, self.store_factory)
        except StoreError as e:
            LOG.error("Collection setup failed: %s", e)

    def on_message(self, ws, message) -> None:
        self.dispatch(message)

    def on_error(self, ws, error) -> None:
        LOG.error("Channel error: %s", error)

    def on_close(self, ws, status_code=None, reason=None) -> None:
        LOG.warning("WebSocket closed (code=%s reason=%s)", status_code, reason)

    def dispatch(self, message) -> Optional[threading.Thread]:
        """Hand ``message`` to a supervisor thread; returns it (None if rejected)."""
        raw = message.decode("utf-8", errors="replace") if isinstance(message, bytes) else message
        try:
            job = Job.from_message(raw)
        except InvalidJobMessage as e:
            LOG.error("Ignoring bad job message: %s", e)
            self.acknowledge(raw)
            return None

        thread = threading.Thread(
            target=self._supervise, args=(job,), name=f"job-{job.file_name[:40]}", daemon=True
        )
        with self._inflight_lock:
            self._inflight.add(thread)
        thread.start()
        return thread

    def _supervise(self, job: Job) -> None:
        try:
            outcome = self.run_job(job.raw, self.settings)
            LOG.info("Job %s finished: %s (%d attempt(s))", job.file, outcome.status, outcome.attempts)
        except Exception:
            LOG.exception("Job %s could not be run; acknowledging it as failed", job.file)
        try:
            self.acknowledge(job.raw)
        finally:
            with self._inflight_lock:
                self._inflight.discard(threading.current_thread())

    def acknowledge(self, raw: str) -> bool:
        """Echo ``raw`` back to the dispatcher; False when the channel is down."""
        with self._send_lock:
            try:
                if self._app is None:
                    raise websocket.WebSocketConnectionClosedException("not connected")
                self._app.send(raw)
            except (websocket.WebSocketException, OSError) as e:
                LOG.error("Acknowledgment dropped for %s: %s", raw, e)
                return False
        return True

    @property
    def inflight(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)
