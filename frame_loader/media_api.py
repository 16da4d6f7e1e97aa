"""Client for the media API: hash artifact download and load notification.

The hash artifact of a video is an xz-compressed XML document; it is fetched
with the shared secret header and decompressed in memory.
"""

from __future__ import annotations

import logging
import lzma
from typing import Optional
from urllib.parse import quote

import requests

from .config import ApiConfig, api as api_cfg
from .errors import DecompressionError, FetchFailure, TransientNetworkError
from .jobs import Job

LOG = logging.getLogger(__name__)


class MediaApiClient:
    def __init__(
        self,
        cfg: ApiConfig = api_cfg,
        session: Optional[requests.Session] = None,
    ):
        self.cfg = cfg
        self.session = session or requests.Session()
        self.session.headers[cfg.secret_header] = cfg.secret

    def hash_url(self, job: Job) -> str:
        return f"{self.cfg.media_url}/hash/{job.collection_id}/{_quote_name(job.file_name)}.xml.xz"

    def loaded_url(self, job: Job) -> str:
        return f"{self.cfg.media_url}/loaded/{job.collection_id}/{_quote_name(job.file_name)}"

    def fetch_hash(self, job: Job) -> bytes:
        """Download and decompress the hash document of ``job``."""
        url = self.hash_url(job)
        LOG.info("Downloading %s.xml.xz", job.file)
        try:
            res = self.session.get(url, timeout=self.cfg.request_timeout)
        except requests.RequestException as e:
            raise TransientNetworkError(f"GET {url} failed: {e}") from e
        if res.status_code >= 400:
            raise FetchFailure(res.status_code, res.text[:500])

        LOG.info("Unzipping hash of %s (%d bytes)", job.file, len(res.content))
        return decompress_hash(res.content)

    def notify_loaded(self, job: Job) -> bool:
        """Tell the media API that ``job`` is in the index. Never raises."""
        url = self.loaded_url(job)
        try:
            res = self.session.get(url, timeout=self.cfg.request_timeout)
        except requests.RequestException as e:
            LOG.warning("Load notification for %s failed: %s", job.file, e)
            return False
        if res.status_code >= 400:
            LOG.warning("Load notification for %s returned HTTP %d", job.file, res.status_code)
            return False
        return True

    def close(self) -> None:
        self.session.close()


def _quote_name(file_name: str) -> str:
    # Same escaping as JavaScript's encodeURIComponent, which the API expects.
    return quote(file_name, safe="!~*'()")


def decompress_hash(payload: bytes) -> bytes:
    try:
        return lzma.decompress(payload)
    except lzma.LZMAError as e:
        raise DecompressionError(f"cannot decompress hash artifact: {e}") from e
