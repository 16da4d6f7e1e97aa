from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from .errors import InvalidJobMessage


@dataclass(frozen=True)
class Job:
    collection_id: str
    file_name: str
    raw: str  # verbatim channel message, echoed back as the acknowledgment

    @property
    def file(self) -> str:
        return f"{self.collection_id}/{self.file_name}"

    @classmethod
    def from_message(cls, message: str | bytes) -> "Job":
        """Parse a dispatcher message ``{"file": "<collectionID>/<fileName>"}``."""
        raw = message.decode("utf-8", errors="replace") if isinstance(message, bytes) else message
        try:
            payload = json.loads(raw)
        except ValueError as e:
            raise InvalidJobMessage(f"job message is not JSON: {raw[:200]!r}") from e
        file: Optional[str] = payload.get("file") if isinstance(payload, dict) else None
        if not isinstance(file, str):
            raise InvalidJobMessage(f"job message has no 'file' string: {raw[:200]!r}")
        collection_id, _, file_name = file.partition("/")
        if not collection_id or not file_name:
            raise InvalidJobMessage(f"job file must be '<collection>/<file>': {file!r}")
        return cls(collection_id=collection_id, file_name=file_name, raw=raw)


@dataclass(frozen=True)
class JobOutcome:
    """The single completion message a job unit reports to its owner."""

    raw: str
    status: str  # loaded | rejected | failed
    attempts: int = 1
    records: int = 0
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "loaded"
