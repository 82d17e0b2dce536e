"""
Data model shared by the listers, the comparator and the executor.

Provides:
- Entry: one file or object as seen by a lister
- ListingResult: the tagged result of advancing a lister
- SyncDecision: the action chosen for one key
- Location / SyncArgs: validated, read-only sync parameters
- SyncResult: aggregate counts of an executed sync
"""

import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

REMOTE_PATH_PREFIX = "s3://"
REMOTE_SEPARATOR = "/"
# In-progress downloads, never listed as local entries
TEMP_FILE_PREFIX = "bucketsync.temp."


# ============================================================================
# Enums
# ============================================================================

class ResultKind(str, Enum):
    """Kind of a ListingResult."""
    ENTRY = "entry"
    DIRECTORY_MARKER = "directory_marker"
    END = "end"
    ERROR = "error"


class SyncOperation(str, Enum):
    """Action to perform for one key."""
    COPY = "copy"                     # remote -> remote
    UPLOAD = "upload"                 # local -> remote
    DOWNLOAD = "download"             # remote -> local
    REMOVE_REMOTE = "remove-remote"
    REMOVE_LOCAL = "remove-local"
    NO_OP = "no-op"
    ERROR = "error"

    @property
    def is_transfer(self) -> bool:
        return self in (SyncOperation.COPY, SyncOperation.UPLOAD, SyncOperation.DOWNLOAD)

    @property
    def is_delete(self) -> bool:
        return self in (SyncOperation.REMOVE_REMOTE, SyncOperation.REMOVE_LOCAL)


class LocationKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class SyncKind(str, Enum):
    """Direction of a sync, derived from the kinds of both locations."""
    LOCAL_TO_REMOTE = "local-to-remote"
    REMOTE_TO_LOCAL = "remote-to-local"
    REMOTE_TO_REMOTE = "remote-to-remote"


class SyncType(str, Enum):
    """Content-equivalence strategy for keys present on both sides."""
    TIME_SIZE = "time-size"
    TIME_SIZE_CRC32 = "time-size-crc32"
    ONLY_CRC32 = "only-crc32"


# ============================================================================
# Listing
# ============================================================================

@dataclass(frozen=True)
class Entry:
    """One file or object produced by an entry lister."""
    key: str
    path: str
    size: int = 0
    modified_time: int = 0
    is_dir_marker: bool = False
    storage_class: Optional[str] = None
    real_path: Optional[str] = None
    listed_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "path": self.path,
            "size": self.size,
            "modified_time": self.modified_time,
            "is_dir_marker": self.is_dir_marker,
            "storage_class": self.storage_class,
            "real_path": self.real_path,
        }


@dataclass(frozen=True)
class ListingResult:
    """Result of advancing an entry lister by one step."""
    kind: ResultKind
    entry: Optional[Entry] = None
    error: Optional[BaseException] = None
    is_truncated: bool = False
    next_token: Optional[str] = None

    @classmethod
    def of_entry(cls, entry: Entry) -> "ListingResult":
        kind = ResultKind.DIRECTORY_MARKER if entry.is_dir_marker else ResultKind.ENTRY
        return cls(kind=kind, entry=entry)

    @classmethod
    def end(cls, is_truncated: bool = False, next_token: Optional[str] = None) -> "ListingResult":
        return cls(kind=ResultKind.END, is_truncated=is_truncated, next_token=next_token)

    @classmethod
    def failure(cls, error: BaseException, entry: Optional[Entry] = None) -> "ListingResult":
        return cls(kind=ResultKind.ERROR, entry=entry, error=error)


# ============================================================================
# Decisions and results
# ============================================================================

@dataclass(frozen=True)
class SyncDecision:
    """The action chosen for one key; consumed exactly once by the executor."""
    operation: SyncOperation
    src_key: Optional[str] = None
    dst_key: Optional[str] = None
    src_path: Optional[str] = None
    dst_path: Optional[str] = None
    source_entry: Optional[Entry] = None
    dest_entry: Optional[Entry] = None
    error: Optional[BaseException] = None

    @property
    def key(self) -> str:
        return self.src_key if self.src_key is not None else (self.dst_key or "")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "operation": self.operation.value,
            "src_key": self.src_key,
            "dst_key": self.dst_key,
            "src_path": self.src_path,
            "dst_path": self.dst_path,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class SyncResult:
    """Aggregate outcome of executing a decision stream."""
    succeeded: int = 0
    failed: int = 0
    error: Optional[BaseException] = None
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def elapsed_seconds(self) -> float:
        """Get elapsed time in seconds."""
        end = self.end_time or datetime.now(timezone.utc)
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "error": str(self.error) if self.error else None,
            "elapsed_seconds": self.elapsed_seconds,
        }


# ============================================================================
# Arguments
# ============================================================================

@dataclass(frozen=True)
class Location:
    """
    One side of a sync or copy.

    For remote locations ``path`` is ``s3://bucket/key``; for local
    locations it is an absolute filesystem path.
    """
    kind: LocationKind
    path: str
    bucket: str = ""
    key: str = ""

    @property
    def is_local(self) -> bool:
        return self.kind == LocationKind.LOCAL

    @property
    def is_remote(self) -> bool:
        return self.kind == LocationKind.REMOTE

    @property
    def separator(self) -> str:
        return os.sep if self.is_local else REMOTE_SEPARATOR

    def child_path(self, key: str) -> str:
        """Full path of ``key`` below this location's directory prefix."""
        if self.is_remote:
            prefix = self.key[:self.key.rfind(REMOTE_SEPARATOR) + 1]
            return prefix + key
        base = self.path
        idx = base.rfind(self.separator)
        base = base[:idx] if idx >= 0 else base
        return base + self.separator + key.replace(REMOTE_SEPARATOR, self.separator)

    def display(self, path: str) -> str:
        """Render a full path (object key or local path) for user output."""
        if self.is_remote:
            return f"{REMOTE_PATH_PREFIX}{self.bucket}/{path}"
        return path


@dataclass(frozen=True)
class SyncArgs:
    """Validated, read-only parameters of a sync; shared by all workers."""
    source: Location
    destination: Location
    sync_kind: SyncKind
    concurrency: int = 10
    multipart_threads: int = 10
    delete: bool = False
    dry_run: bool = False
    sync_type: SyncType = SyncType.TIME_SIZE
    storage_class: Optional[str] = None
    restart: bool = False
    download_tmp_dir: Optional[str] = None
    exclude: tuple = ()
    include: tuple = ()
    exclude_time: tuple = ()
    include_time: tuple = ()
    exclude_delete: tuple = ()
    follow_symlinks: bool = True

    @property
    def has_filters(self) -> bool:
        return bool(self.exclude or self.include or self.exclude_time or self.include_time)


@dataclass(frozen=True)
class OutputOptions:
    """User-facing output switches, passed explicitly instead of living in globals."""
    quiet: bool = False
    disable_bar: bool = False

    @property
    def show_progress_bar(self) -> bool:
        return not self.quiet and not self.disable_bar

    def echo(self, message: str) -> None:
        if not self.quiet:
            print(message, flush=True)
