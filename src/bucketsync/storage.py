"""
Abstract object storage interface used by listers and transfers.

Provides:
- ObjectSummary / ObjectListing / ObjectMeta / BucketSummary data classes
- ObjectStorage: the operations bucketsync needs from an S3-compatible service
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ObjectSummary:
    """One object returned by a listing page."""
    key: str
    size: int
    modified_time: int  # epoch seconds
    etag: Optional[str] = None
    storage_class: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "size": self.size,
            "modified_time": self.modified_time,
            "etag": self.etag,
            "storage_class": self.storage_class,
        }


@dataclass
class ObjectListing:
    """One page of a bucket listing."""
    contents: List[ObjectSummary] = field(default_factory=list)
    common_prefixes: List[str] = field(default_factory=list)
    is_truncated: bool = False
    next_token: Optional[str] = None


@dataclass
class ObjectMeta:
    """Metadata returned by a HEAD request."""
    key: str
    size: int
    modified_time: int
    etag: Optional[str] = None
    storage_class: Optional[str] = None
    crc32: Optional[str] = None  # base64 big-endian, as returned by S3


@dataclass
class BucketSummary:
    name: str
    created: Optional[int] = None
    region: Optional[str] = None


# ============================================================================
# Abstract Object Storage Interface
# ============================================================================

class ObjectStorage(ABC):
    """Abstract base class for object storage backends."""

    @abstractmethod
    def connect(self) -> None:
        """Establish connection to the storage service."""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close connection to the storage service."""
        pass

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    @abstractmethod
    def list_objects(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: str = "",
        continuation_token: Optional[str] = None,
        max_keys: int = 1000,
    ) -> ObjectListing:
        """
        List one page of objects.

        Args:
            bucket: Bucket name
            prefix: Only keys starting with this prefix
            delimiter: Group keys sharing a prefix up to this delimiter
            continuation_token: Token from the previous page
            max_keys: Page size

        Returns:
            ObjectListing in lexicographic key order
        """
        pass

    @abstractmethod
    def head_object(self, bucket: str, key: str) -> ObjectMeta:
        """
        Get metadata for an object.

        Raises:
            ObjectNotFoundError: If the object does not exist
        """
        pass

    @abstractmethod
    def put_object_from_file(
        self,
        bucket: str,
        key: str,
        local_path: Path,
        storage_class: Optional[str] = None,
    ) -> str:
        """Upload a whole file in one request. Returns the object etag."""
        pass

    @abstractmethod
    def get_object_to_file(self, bucket: str, key: str, local_path: Path) -> int:
        """Download a whole object in one request. Returns the byte count."""
        pass

    @abstractmethod
    def get_object_range(self, bucket: str, key: str, start: int, end: int) -> bytes:
        """Read bytes ``start..end`` (inclusive) of an object."""
        pass

    @abstractmethod
    def copy_object(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        storage_class: Optional[str] = None,
    ) -> str:
        """Server-side copy in one request. Returns the new etag."""
        pass

    @abstractmethod
    def delete_object(self, bucket: str, key: str) -> None:
        pass

    @abstractmethod
    def delete_objects(self, bucket: str, keys: List[str]) -> List[str]:
        """Delete a batch of keys. Returns the keys that failed."""
        pass

    # ------------------------------------------------------------------
    # Multipart
    # ------------------------------------------------------------------

    @abstractmethod
    def initiate_multipart_upload(
        self,
        bucket: str,
        key: str,
        storage_class: Optional[str] = None,
    ) -> str:
        """Start a multipart upload. Returns the upload id."""
        pass

    @abstractmethod
    def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        body: bytes,
    ) -> str:
        """Upload one part. Returns the part etag."""
        pass

    @abstractmethod
    def upload_part_copy(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        src_bucket: str,
        src_key: str,
        start: int,
        end: int,
    ) -> str:
        """Copy bytes ``start..end`` of another object into one part. Returns the part etag."""
        pass

    @abstractmethod
    def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: List[Dict[str, Any]],
    ) -> str:
        """
        Complete a multipart upload.

        Args:
            parts: ``[{"PartNumber": n, "ETag": tag}, ...]`` sorted by number
        """
        pass

    @abstractmethod
    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        pass

    # ------------------------------------------------------------------
    # Buckets
    # ------------------------------------------------------------------

    @abstractmethod
    def list_buckets(self) -> List[BucketSummary]:
        pass

    @abstractmethod
    def create_bucket(self, bucket: str, region: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def delete_bucket(self, bucket: str) -> None:
        pass

    @abstractmethod
    def bucket_exists(self, bucket: str) -> bool:
        pass

    @abstractmethod
    def generate_presigned_url(self, bucket: str, key: str, expires_in: int = 1800) -> str:
        pass
