"""
Durable journal of pending notifications.

On-disk format, one record per line:

    <crc32 of json, 8 hex chars> <json>\\n

where json is ``{"op": "put", "notification": {...}}`` or
``{"op": "del", "id": "..."}``. Replaying the journal in order yields the
pending set; a later ``put`` for a live id overwrites its metadata without
moving it. Lines without a trailing newline or with a bad checksum are torn
writes and are skipped on load.

The journal is rewritten atomically (temp file, fsync, rename) after load,
when dead records pile up, and after any failed write so a torn tail is
never followed by a good record.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import threading
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

import orjson
from pydantic import ValidationError

from noticebridge.contracts import Notification

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for persistent store failures."""


class StoreWriteError(StoreError):
    """Raised when a record could not be made durable (disk full, EACCES, ...)."""


class DuplicateRecordError(StoreError):
    """Raised when appending an id that is already pending."""


class UnknownRecordError(StoreError):
    """Raised when updating an id that is not pending."""


class StoreLockedError(StoreError):
    """Raised when another process owns the store."""


@dataclass
class StoreStats:
    """Journal bookkeeping for observability."""

    live_records: int = 0
    journal_records: int = 0
    skipped_records: int = 0
    compactions: int = 0
    write_errors: int = 0

    @property
    def dead_records(self) -> int:
        return self.journal_records - self.live_records


class StoreLock:
    """
    Exclusive advisory lock on ``<store path>.lock``.

    Only one bridge process may own a store; a second one fails fast with
    StoreLockedError instead of interleaving writes.
    """

    def __init__(self, store_path: str | Path) -> None:
        self._path = Path(f"{store_path}.lock")
        self._fd: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            raise StoreLockedError(
                f"store {self._path} is locked by another process"
            ) from e
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.debug("Store lock acquired", extra={"lock_file": str(self._path)})

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Store lock released", extra={"lock_file": str(self._path)})

    def __enter__(self) -> StoreLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def _encode_record(record: dict[str, Any]) -> bytes:
    body = orjson.dumps(record)
    return f"{zlib.crc32(body):08x} ".encode() + body + b"\n"


def _decode_record(line: bytes) -> dict[str, Any]:
    """Decode one journal line (without newline). Raises ValueError if torn."""
    if len(line) < 10 or line[8:9] != b" ":
        raise ValueError("malformed record header")
    expected = int(line[:8], 16)
    body = line[9:]
    if zlib.crc32(body) != expected:
        raise ValueError("checksum mismatch")
    record = orjson.loads(body)
    if not isinstance(record, dict):
        raise ValueError("record is not an object")
    return record


class PersistentStore:
    """
    Append/update/remove journal of pending notifications.

    All public methods are thread-safe. Each mutation is flushed (and fsynced
    unless ``fsync=False``) before it returns; on failure it raises
    StoreWriteError and leaves the in-memory index unchanged.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fsync: bool = True,
        compact_threshold: int = 1000,
    ) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._compact_threshold = compact_threshold
        self._lock = threading.Lock()
        self._live: dict[str, Notification] = {}
        self._handle: IO[bytes] | None = None
        self._loaded = False
        self._needs_rewrite = False
        self._stats = StoreStats()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def stats(self) -> StoreStats:
        return self._stats

    def __contains__(self, notification_id: object) -> bool:
        with self._lock:
            self._ensure_loaded()
            return notification_id in self._live

    def __len__(self) -> int:
        with self._lock:
            self._ensure_loaded()
            return len(self._live)

    def load_all(self) -> list[Notification]:
        """
        Replay the journal and return pending notifications in insertion order.

        Compacts the journal afterwards. Torn or corrupt lines are skipped and
        counted in ``stats.skipped_records``.
        """
        with self._lock:
            self._close_handle()
            self._live = self._replay()
            self._loaded = True
            try:
                self._rewrite()
            except OSError as e:
                # Replay already succeeded; appending to the old journal is still safe.
                self._needs_rewrite = True
                logger.warning(
                    "Journal compaction after load failed",
                    extra={"error": str(e), "store": str(self._path)},
                )
            return list(self._live.values())

    def append(self, notification: Notification) -> None:
        """Durably record a new pending notification."""
        with self._lock:
            self._ensure_loaded()
            if notification.id in self._live:
                raise DuplicateRecordError(f"notification {notification.id} already stored")
            self._write({"op": "put", "notification": notification.to_dict()})
            self._live[notification.id] = notification
            self._stats.live_records = len(self._live)
            self._maybe_compact()

    def update(self, notification: Notification) -> None:
        """Durably overwrite retry metadata for a pending notification."""
        with self._lock:
            self._ensure_loaded()
            if notification.id not in self._live:
                raise UnknownRecordError(f"notification {notification.id} not stored")
            self._write({"op": "put", "notification": notification.to_dict()})
            # Assignment keeps the original insertion position.
            self._live[notification.id] = notification
            self._maybe_compact()

    def remove(self, notification_id: str) -> bool:
        """
        Durably delete a record.

        Returns:
            True if a record was removed, False if the id was not pending.
        """
        with self._lock:
            self._ensure_loaded()
            if notification_id not in self._live:
                return False
            self._write({"op": "del", "id": notification_id})
            del self._live[notification_id]
            self._stats.live_records = len(self._live)
            self._maybe_compact()
            return True

    def compact(self) -> None:
        """Rewrite the journal with live records only."""
        with self._lock:
            self._ensure_loaded()
            try:
                self._rewrite()
            except OSError as e:
                self._needs_rewrite = True
                raise StoreWriteError(f"compaction of {self._path} failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._close_handle()

    # Internals; callers hold self._lock.

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._live = self._replay()
            self._loaded = True

    def _replay(self) -> dict[str, Notification]:
        live: dict[str, Notification] = {}
        self._stats.journal_records = 0
        if not self._path.exists():
            self._stats.live_records = 0
            return live

        data = self._path.read_bytes()
        lines = data.split(b"\n")
        # Anything after the last newline is a torn write.
        tail = lines.pop()
        if tail:
            self._stats.skipped_records += 1
            logger.warning(
                "Skipping partial trailing journal record",
                extra={"store": str(self._path), "bytes": len(tail)},
            )

        for lineno, line in enumerate(lines, start=1):
            if not line:
                continue
            try:
                record = _decode_record(line)
                op = record.get("op")
                if op == "put":
                    notification = Notification.model_validate(record["notification"])
                    live[notification.id] = notification
                elif op == "del":
                    live.pop(str(record["id"]), None)
                else:
                    raise ValueError(f"unknown op {op!r}")
            except (ValueError, KeyError, ValidationError) as e:
                self._stats.skipped_records += 1
                logger.warning(
                    "Skipping corrupt journal record",
                    extra={"store": str(self._path), "line": lineno, "error": str(e)},
                )
                continue
            self._stats.journal_records += 1

        self._stats.live_records = len(live)
        return live

    def _open_handle(self) -> IO[bytes]:
        if self._handle is None or self._handle.closed:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self._path.open("ab")
        return self._handle

    def _close_handle(self) -> None:
        if self._handle is not None and not self._handle.closed:
            self._handle.close()
        self._handle = None

    def _write(self, record: dict[str, Any]) -> None:
        try:
            if self._needs_rewrite:
                self._rewrite()
            handle = self._open_handle()
            handle.write(_encode_record(record))
            handle.flush()
            if self._fsync:
                os.fsync(handle.fileno())
        except OSError as e:
            self._stats.write_errors += 1
            # The tail may now hold a partial line; rebuild before the next write.
            self._needs_rewrite = True
            self._close_handle()
            raise StoreWriteError(f"write to {self._path} failed: {e}") from e
        self._stats.journal_records += 1

    def _maybe_compact(self) -> None:
        if self._stats.dead_records < self._compact_threshold:
            return
        try:
            self._rewrite()
        except OSError as e:
            # The mutation itself is durable; compaction is retried later.
            self._needs_rewrite = True
            logger.warning(
                "Journal compaction failed",
                extra={"error": str(e), "store": str(self._path)},
            )

    def _rewrite(self) -> None:
        self._close_handle()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            with tmp_path.open("wb") as tmp:
                for notification in self._live.values():
                    tmp.write(_encode_record({"op": "put", "notification": notification.to_dict()}))
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(tmp_path, self._path)
        except OSError:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise
        if self._fsync:
            self._fsync_dir()
        self._needs_rewrite = False
        self._stats.journal_records = len(self._live)
        self._stats.live_records = len(self._live)
        self._stats.compactions += 1

    def _fsync_dir(self) -> None:
        fd = os.open(self._path.parent, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
