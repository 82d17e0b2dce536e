"""
Resumable state of one multipart transfer.

Provides:
- compute_part_info: part size / part count for a file size
- BreakPointRecord: the persisted JSON record of a transfer in progress
- MultiTaskContent: completed-part bookkeeping with durable, periodic flushes
- TransferRegistry: process-wide set of live transfers flushed at shutdown
- Tail-sample md5 fingerprints for local files and remote objects

A record lives in ``<record_dir>/<content_id>`` where the content id is the
md5 of ``"<source>_<destination>"``. It is only reused when the source still
has the same size, mtime and tail fingerprint and the record is younger than
the configured expiration; otherwise the transfer starts over.
"""

import hashlib
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidPartError
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

MAX_PARTS = 10000
FLUSH_PERIOD_SECONDS = 20
TAIL_SAMPLE_SIZE = 64 * 1024
SECONDS_PER_DAY = 24 * 60 * 60
DEFAULT_EXPIRATION_DAYS = 7


# ============================================================================
# Helpers
# ============================================================================

def compute_part_info(file_size: int, part_size: int) -> Tuple[int, int]:
    """
    Return ``(part_size, parts_num)`` for a transfer of ``file_size`` bytes.

    The requested part size is grown in whole multiples of itself until at
    most MAX_PARTS parts are needed.
    """
    if part_size <= 0:
        raise ValueError(f"part size must be positive, got {part_size}")
    if part_size * MAX_PARTS < file_size:
        min_part_size = -(-file_size // MAX_PARTS)
        part_size = -(-min_part_size // part_size) * part_size
    parts_num = -(-file_size // part_size)
    return part_size, parts_num


def make_content_id(src_path: str, dst_path: str) -> str:
    """Stable id of a (source, destination) pair."""
    return hashlib.md5(f"{src_path}_{dst_path}".encode("utf-8")).hexdigest()


def local_tail_md5(path: str, size: Optional[int] = None) -> str:
    """md5 of the last TAIL_SAMPLE_SIZE bytes of a local file."""
    if size is None:
        size = os.path.getsize(path)
    sample = min(size, TAIL_SAMPLE_SIZE)
    with open(path, "rb") as f:
        f.seek(size - sample)
        return hashlib.md5(f.read(sample)).hexdigest()


def remote_tail_md5(storage: ObjectStorage, bucket: str, key: str, size: int) -> str:
    """md5 of the last TAIL_SAMPLE_SIZE bytes of a remote object."""
    if size <= 0:
        return hashlib.md5(b"").hexdigest()
    sample = min(size, TAIL_SAMPLE_SIZE)
    return hashlib.md5(storage.get_object_range(bucket, key, size - sample, size - 1)).hexdigest()


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# ============================================================================
# Persisted Record
# ============================================================================

@dataclass
class CompletePartInfo:
    """A completed part and the tag the service returned for it."""
    part_number: int
    etag: str

    def to_dict(self) -> Dict[str, Any]:
        return {"partNumberId": self.part_number, "eTag": self.etag}


@dataclass
class BreakPointRecord:
    """JSON projection of a MultiTaskContent."""
    md5: str
    upload_id: str
    file_size: int
    file_modify_time: int
    parts_num: int
    part_size: int
    complete_parts: List[CompletePartInfo] = field(default_factory=list)
    record_time: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "md5": self.md5,
            "uploadId": self.upload_id,
            "fileSize": self.file_size,
            "fileModifyTime": self.file_modify_time,
            "partsNum": self.parts_num,
            "partSize": self.part_size,
            "completePartList": [p.to_dict() for p in self.complete_parts],
            "recordTime": self.record_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BreakPointRecord":
        """
        Build a record from its JSON form.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        return cls(
            md5=str(data["md5"]),
            upload_id=str(data["uploadId"]),
            file_size=int(data["fileSize"]),
            file_modify_time=int(data["fileModifyTime"]),
            parts_num=int(data["partsNum"]),
            part_size=int(data["partSize"]),
            complete_parts=[
                CompletePartInfo(part_number=int(p["partNumberId"]), etag=str(p["eTag"]))
                for p in (data.get("completePartList") or [])
            ],
            record_time=int(data["recordTime"]),
        )


class TransferState(str, Enum):
    UNINITIALIZED = "uninitialized"
    FRESH = "fresh"
    RESUMED = "resumed"
    ACTIVE = "active"
    COMPLETED = "completed"


# ============================================================================
# Multi Task Content
# ============================================================================

class MultiTaskContent:
    """
    Completed-part bookkeeping of one multipart transfer.

    The parts map is guarded by a read/write lock; disk writes are
    serialized by a separate lock so that part completions never wait on
    the filesystem. Use as a context manager to run the periodic flush for
    the duration of the transfer.
    """

    def __init__(
        self,
        src_path: str,
        dst_path: str,
        file_size: int,
        file_mtime: int,
        md5_val: str,
        part_size: int,
        record_dir: Path,
        expiration_days: int = DEFAULT_EXPIRATION_DAYS,
        dst_is_local: bool = False,
        flush_period: float = FLUSH_PERIOD_SECONDS,
    ):
        """
        Args:
            src_path: Full source path (``s3://bucket/key`` or a local path)
            dst_path: Full destination path
            file_size: Source size in bytes
            file_mtime: Source modification time, epoch seconds
            md5_val: Tail-sample fingerprint of the source
            part_size: Requested part size in bytes
            record_dir: Directory holding breakpoint records
            expiration_days: Records older than this are discarded
            dst_is_local: Downloads keep a partial file that must survive for resume
            flush_period: Seconds between background flushes
        """
        self.src_path = src_path
        self.dst_path = dst_path
        self.content_id = make_content_id(src_path, dst_path)
        self.record_dir = Path(record_dir)
        self.record_path = self.record_dir / self.content_id
        self.file_size = file_size
        self.file_mtime = file_mtime
        self.md5_val = md5_val
        self.init_part_size = part_size
        self.expiration_days = expiration_days
        self.dst_is_local = dst_is_local
        self.flush_period = flush_period

        self.state = TransferState.UNINITIALIZED
        self.upload_id = ""
        self.part_size = part_size
        self.parts_num = 0
        self.completed_parts: Dict[int, CompletePartInfo] = {}

        self._parts_lock = ReadWriteLock()
        self._flush_lock = threading.Lock()
        self._dirty = False
        self._completion_seq = 0
        self._flushed_seq = 0
        self.last_finish_part_time = 0
        self.last_flush_time = 0

        self._stop_event = threading.Event()
        self._flush_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _load_record(self) -> Optional[BreakPointRecord]:
        if not self.record_path.exists():
            return None
        try:
            with open(self.record_path, "r") as f:
                return BreakPointRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable breakpoint record {self.record_path}: {e}")
            return None

    def _is_valid(self, record: BreakPointRecord) -> bool:
        if record.file_size != self.file_size:
            logger.info(f"Source size changed for {self.src_path}, starting over")
            return False
        if record.file_modify_time != self.file_mtime:
            logger.info(f"Source mtime changed for {self.src_path}, starting over")
            return False
        if record.md5 != self.md5_val:
            logger.info(f"Source content changed for {self.src_path}, starting over")
            return False
        if not record.upload_id:
            return False
        if self.dst_is_local and not os.path.exists(record.upload_id):
            logger.info(f"Partial file {record.upload_id} is gone, starting over")
            return False
        if time.time() - record.record_time > self.expiration_days * SECONDS_PER_DAY:
            logger.info(f"Breakpoint record for {self.src_path} expired, starting over")
            return False
        return True

    def _clear(self) -> None:
        with self._parts_lock.write():
            self.upload_id = ""
            self.completed_parts = {}
            self._dirty = False
            self._completion_seq = 0
            self._flushed_seq = 0

    def init(self, restart: bool = False) -> bool:
        """
        Load or reset the transfer state.

        Args:
            restart: Ignore any existing record

        Returns:
            True if a valid record was resumed
        """
        record = None if restart else self._load_record()
        if record is not None and self._is_valid(record):
            with self._parts_lock.write():
                self.upload_id = record.upload_id
                self.part_size = record.part_size
                self.parts_num = record.parts_num
                self.completed_parts = {
                    p.part_number: p for p in record.complete_parts if p.etag
                }
            self.state = TransferState.RESUMED
            logger.info(
                f"Resuming {self.src_path}: {len(self.completed_parts)}/{self.parts_num} parts done"
            )
            return True

        if record is not None:
            # stale partial file of a download is dropped with the record
            self.upload_id = record.upload_id
        self.remove()
        self._clear()
        self.part_size, self.parts_num = compute_part_info(self.file_size, self.init_part_size)
        self.state = TransferState.FRESH
        logger.debug(
            f"Fresh transfer of {self.src_path}: {self.parts_num} parts of {self.part_size} bytes"
        )
        return False

    def set_upload_id(self, upload_id: str) -> None:
        with self._parts_lock.write():
            self.upload_id = upload_id
            self._dirty = True
            self._completion_seq += 1

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------

    def finish_part(self, part_number: int, etag: str) -> bool:
        """
        Record a completed part.

        Returns:
            True if the part was not already recorded

        Raises:
            InvalidPartError: If the part number is out of range or the tag is empty
        """
        if part_number < 1 or part_number > self.parts_num:
            raise InvalidPartError(f"part number {part_number} out of range [1, {self.parts_num}]")
        if not etag:
            raise InvalidPartError(f"part {part_number} completed with an empty tag")

        with self._parts_lock.write():
            existing = self.completed_parts.get(part_number)
            if existing is not None and existing.etag:
                return False
            self.completed_parts[part_number] = CompletePartInfo(part_number, etag)
            self._dirty = True
            self._completion_seq += 1
            self.last_finish_part_time = int(time.time())
        logger.debug(f"Part {part_number}/{self.parts_num} of {self.src_path} done")
        return True

    def part_is_finished(self, part_number: int) -> Optional[CompletePartInfo]:
        """Return the completed part, dropping any entry recorded with an empty tag."""
        with self._parts_lock.write():
            part = self.completed_parts.get(part_number)
            if part is not None and not part.etag:
                del self.completed_parts[part_number]
                return None
            return part

    @property
    def finished_count(self) -> int:
        with self._parts_lock.read():
            return len(self.completed_parts)

    def sorted_parts(self) -> List[Dict[str, Any]]:
        """Completed parts in the form expected by complete_multipart_upload."""
        with self._parts_lock.read():
            return [
                {"PartNumber": n, "ETag": self.completed_parts[n].etag}
                for n in sorted(self.completed_parts)
            ]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _snapshot(self) -> Tuple[BreakPointRecord, int]:
        with self._parts_lock.read():
            record = BreakPointRecord(
                md5=self.md5_val,
                upload_id=self.upload_id,
                file_size=self.file_size,
                file_modify_time=self.file_mtime,
                parts_num=self.parts_num,
                part_size=self.part_size,
                complete_parts=[
                    CompletePartInfo(n, self.completed_parts[n].etag)
                    for n in sorted(self.completed_parts)
                ],
                record_time=int(time.time()),
            )
            return record, self._completion_seq

    def snapshot(self) -> BreakPointRecord:
        """Consistent copy of the current state."""
        return self._snapshot()[0]

    def flush(self) -> bool:
        """
        Persist the state if parts completed since the last flush.

        Returns:
            True if a record was written
        """
        with self._flush_lock:
            if self.state == TransferState.COMPLETED:
                return False
            if not self._dirty or self._flushed_seq == self._completion_seq:
                return False

            record, seq = self._snapshot()
            self.record_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self.record_path.with_name(self.record_path.name + ".tmp")
            with open(tmp_path, "w") as f:
                json.dump(record.to_dict(), f)
            os.replace(tmp_path, self.record_path)

            self._flushed_seq = seq
            self.last_flush_time = record.record_time
        logger.debug(f"Flushed breakpoint record {self.record_path} ({len(record.complete_parts)} parts)")
        return True

    def remove(self) -> None:
        """Delete the record and, for downloads, the partial file."""
        with self._flush_lock:
            if self.record_path.exists():
                self.record_path.unlink()
            if self.dst_is_local and self.upload_id and os.path.exists(self.upload_id):
                os.remove(self.upload_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _flush_loop(self) -> None:
        while not self._stop_event.wait(self.flush_period):
            try:
                self.flush()
            except OSError as e:
                logger.warning(f"Periodic flush of {self.record_path} failed: {e}")

    def start_background_flush(self) -> None:
        if self._flush_thread is not None:
            return
        self.state = TransferState.ACTIVE
        self._stop_event.clear()
        self._flush_thread = threading.Thread(
            target=self._flush_loop, name=f"bucketsync-flush-{self.content_id[:8]}", daemon=True
        )
        self._flush_thread.start()

    def _stop_background_flush(self) -> None:
        self._stop_event.set()
        if self._flush_thread is not None:
            self._flush_thread.join()
            self._flush_thread = None

    def close(self) -> None:
        """Stop the periodic flush and persist whatever completed."""
        self._stop_background_flush()
        if self.state != TransferState.COMPLETED:
            self.flush()

    def complete(self) -> None:
        """Mark the transfer done and delete its record."""
        self._stop_background_flush()
        self.state = TransferState.COMPLETED
        try:
            self.remove()
        except FileNotFoundError:
            pass
        logger.debug(f"Transfer {self.src_path} -> {self.dst_path} complete")

    def __enter__(self) -> "MultiTaskContent":
        self.start_background_flush()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class TransferRegistry:
    """Live transfers, flushed together when the process shuts down."""

    def __init__(self):
        self._lock = threading.Lock()
        self._contents: Dict[str, MultiTaskContent] = {}

    def register(self, content: MultiTaskContent) -> None:
        with self._lock:
            self._contents[content.content_id] = content

    def unregister(self, content: MultiTaskContent) -> None:
        with self._lock:
            self._contents.pop(content.content_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._contents)

    def flush_all(self) -> int:
        """Flush every live transfer. Returns the number of records written."""
        with self._lock:
            contents = list(self._contents.values())
        written = 0
        for content in contents:
            try:
                if content.flush():
                    written += 1
            except OSError as e:
                logger.error(f"Failed to flush {content.record_path} at shutdown: {e}")
        if written:
            logger.info(f"Saved {written} breakpoint record(s) for resume")
        return written
