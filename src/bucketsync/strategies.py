"""
Decision policies for the three comparator cases.

Provides:
- ContentPolicy: key on both sides, dispatched on SyncType
- always_sync: key only at the source
- DeletePolicy: key only at the destination
- CRC32 readers for local files and remote objects
"""

import base64
import logging
import zlib
from typing import Callable, Optional

from .filters import SyncFilter
from .models import Entry, Location, SyncType
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

CRC32_CHUNK_SIZE = 1024 * 1024

Crc32Reader = Callable[[Entry], Optional[str]]


# ============================================================================
# CRC32
# ============================================================================

def encode_crc32(value: int) -> str:
    """Encode a CRC32 the way S3 reports ``ChecksumCRC32``."""
    return base64.b64encode((value & 0xFFFFFFFF).to_bytes(4, "big")).decode("ascii")


def local_file_crc32(path: str) -> str:
    """IEEE CRC32 of a whole local file, S3 encoding."""
    crc = 0
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CRC32_CHUNK_SIZE), b""):
            crc = zlib.crc32(chunk, crc)
    return encode_crc32(crc)


def crc32_reader(location: Location, storage: Optional[ObjectStorage] = None) -> Crc32Reader:
    """Return a reader producing the CRC32 of entries found at ``location``."""
    if location.is_local:
        return lambda entry: local_file_crc32(entry.real_path or entry.path)

    if storage is None:
        raise ValueError("a storage backend is required to read remote checksums")

    def read_remote(entry: Entry) -> Optional[str]:
        return storage.head_object(location.bucket, entry.path).crc32

    return read_remote


# ============================================================================
# Policies
# ============================================================================

def time_size_transfer(src: Entry, dst: Entry) -> bool:
    """
    Transfer when the source is newer, or equally new with a different size.

    A destination written after the source (the usual result of a previous
    sync) is considered up to date.
    """
    if src.modified_time > dst.modified_time:
        return True
    return src.modified_time == dst.modified_time and src.size != dst.size


class ContentPolicy:
    """Equivalence test for keys present on both sides."""

    def __init__(
        self,
        sync_type: SyncType = SyncType.TIME_SIZE,
        src_crc32: Optional[Crc32Reader] = None,
        dst_crc32: Optional[Crc32Reader] = None,
    ):
        self.sync_type = SyncType(sync_type)
        if self.sync_type != SyncType.TIME_SIZE and (src_crc32 is None or dst_crc32 is None):
            raise ValueError(f"sync type {self.sync_type.value} needs CRC32 readers for both sides")
        self.src_crc32 = src_crc32
        self.dst_crc32 = dst_crc32

    def _crc32_differs(self, src: Entry, dst: Entry) -> bool:
        src_value = self.src_crc32(src)
        if not src_value:
            return True
        dst_value = self.dst_crc32(dst)
        logger.debug(f"CRC32 {src.key}: source={src_value} destination={dst_value}")
        return src_value != dst_value

    def should_transfer(self, src: Entry, dst: Entry) -> bool:
        if self.sync_type == SyncType.TIME_SIZE:
            return time_size_transfer(src, dst)
        elif self.sync_type == SyncType.TIME_SIZE_CRC32:
            # Checksums are only read when the cheap test is inconclusive
            if not time_size_transfer(src, dst):
                return False
            return self._crc32_differs(src, dst)
        elif self.sync_type == SyncType.ONLY_CRC32:
            return self._crc32_differs(src, dst)
        raise ValueError(f"Unknown sync type: {self.sync_type}")


def always_sync(src: Optional[Entry]) -> bool:
    """Source-only keys are always transferred."""
    return src is not None


class DeletePolicy:
    """
    Decide whether a destination-only key is removed.

    Disabled unless deletion was requested. The delete filter holds exclude
    patterns; matching destination paths are kept.
    """

    def __init__(
        self,
        enabled: bool = False,
        destination: Optional[Location] = None,
        delete_filter: Optional[SyncFilter] = None,
    ):
        self.enabled = enabled
        self.destination = destination
        self.delete_filter = delete_filter

    def _filter_path(self, dst: Entry) -> str:
        if self.destination is not None and self.destination.is_remote:
            return f"{self.destination.bucket}/{dst.path}"
        return dst.path

    def should_delete(self, dst: Optional[Entry]) -> bool:
        if not self.enabled or dst is None:
            return False
        if self.delete_filter is not None and self.delete_filter.pattern_filtered(self._filter_path(dst)):
            logger.debug(f"Keeping {dst.path}, matched by delete filter")
            return False
        return True
