"""Exception taxonomy for the load worker.

Two families drive the job state machine:

- retryable (``TransientNetworkError``, ``StoreError``): the whole job is run
  again from the fetch step after a fixed backoff;
- terminal (``BadInputError`` and subclasses): the job is acknowledged without
  anything being written to the store.

``ChannelError`` only concerns the dispatcher connection, which reconnects.
"""


class LoaderError(Exception):
    """Base class for all load worker errors."""


class TransientNetworkError(LoaderError):
    """Media API or store unreachable mid-operation."""


class StoreError(LoaderError):
    """A vector store call (collection, insert, flush, index) failed."""


class ChannelError(LoaderError):
    """The job channel connection closed or errored."""


class BadInputError(LoaderError):
    """The job's input can never be loaded; retrying will not help."""


class InvalidJobMessage(BadInputError):
    """The channel delivered a message that does not describe a job."""


class FetchFailure(BadInputError):
    """The media API answered the hash request with status >= 400."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        message = f"hash fetch failed with HTTP {status_code}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class DecompressionError(BadInputError):
    """The hash artifact could not be decompressed."""


class HashParseError(BadInputError):
    """The hash document is malformed; the whole document is rejected."""
