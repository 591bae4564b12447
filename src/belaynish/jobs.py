from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol

import anyio
import msgspec

from .logging import get_logger

logger = get_logger(__name__)

STATE_VERSION = 1

NO_PERCENT = -1

ChatId = int | str


class JobRecord(msgspec.Struct, forbid_unknown_fields=False):
    job_id: str
    chat_id: ChatId
    caption: str | None = None
    progress_message_id: int | None = None
    progress_is_media: bool = False
    final_media_message_id: int | None = None
    sent_outputs: int = 0
    last_percent: int = NO_PERCENT
    last_update_at_ms: int = 0
    created_at_ms: int = 0

    @property
    def delivered(self) -> bool:
        return self.final_media_message_id is not None


class JobStore(Protocol):
    async def get(self, job_id: str) -> JobRecord | None: ...

    async def put(self, job_id: str, record: JobRecord) -> None: ...

    async def delete(self, job_id: str) -> None: ...


class _JobsFile(msgspec.Struct, forbid_unknown_fields=False):
    version: int
    jobs: dict[str, JobRecord] = msgspec.field(default_factory=dict)


class JsonJobStore:
    """Job records kept in a single JSON document keyed by job id.

    Records are copied on the way in and out, so callers never share
    mutable state with the store. The document is re-read when its mtime
    moves, which lets a restarted or second process pick up new jobs.
    An unreadable or foreign-version file is treated as empty and
    replaced on the next write.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = anyio.Lock()
        self._jobs: dict[str, JobRecord] = {}
        self._seen_mtime_ns: int | None = None
        self._synced = False

    async def get(self, job_id: str) -> JobRecord | None:
        async with self._lock:
            self._sync()
            record = self._jobs.get(job_id)
        return None if record is None else msgspec.structs.replace(record)

    async def put(self, job_id: str, record: JobRecord) -> None:
        async with self._lock:
            self._sync()
            self._jobs[job_id] = msgspec.structs.replace(record)
            self._flush()

    async def delete(self, job_id: str) -> None:
        async with self._lock:
            self._sync()
            if self._jobs.pop(job_id, None) is not None:
                self._flush()

    def _mtime_ns(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _sync(self) -> None:
        mtime_ns = self._mtime_ns()
        if self._synced and mtime_ns == self._seen_mtime_ns:
            return
        self._synced = True
        self._seen_mtime_ns = mtime_ns
        self._jobs = {} if mtime_ns is None else self._read()

    def _read(self) -> dict[str, JobRecord]:
        try:
            document = msgspec.json.decode(self._path.read_bytes(), type=_JobsFile)
        except (OSError, msgspec.DecodeError) as exc:
            logger.warning(
                "jobs.store.load_failed",
                path=str(self._path),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return {}
        if document.version != STATE_VERSION:
            logger.warning(
                "jobs.store.version_mismatch",
                path=str(self._path),
                version=document.version,
                expected=STATE_VERSION,
            )
            return {}
        return document.jobs

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        document = _JobsFile(version=STATE_VERSION, jobs=self._jobs)
        encoded = msgspec.json.format(msgspec.json.encode(document), indent=2)
        tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        tmp_path.write_bytes(encoded + b"\n")
        os.replace(tmp_path, self._path)
        self._seen_mtime_ns = self._mtime_ns()
