"""
Shared fixtures for bucketsync tests.

Provides an in-memory ObjectStorage so listers, transfers and commands can
be exercised end to end without a storage service.
"""

import hashlib
import itertools
import os
import tempfile
import threading
import time
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from src.bucketsync.config import ServerConfig
from src.bucketsync.errors import ObjectNotFoundError, StorageServiceError
from src.bucketsync.storage import (
    BucketSummary,
    ObjectListing,
    ObjectMeta,
    ObjectStorage,
    ObjectSummary,
)
from src.bucketsync.strategies import encode_crc32


@dataclass
class StoredObject:
    data: bytes
    modified_time: int
    storage_class: str = "STANDARD"
    crc32: Optional[str] = None

    @property
    def etag(self) -> str:
        return hashlib.md5(self.data).hexdigest()


class InMemoryObjectStorage(ObjectStorage):
    """Thread-safe ObjectStorage keeping every bucket in dictionaries."""

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self.buckets: Dict[str, Dict[str, StoredObject]] = {}
        self.uploads: Dict[str, Dict] = {}
        self.clock = clock or (lambda: int(time.time()))
        self.calls: Dict[str, int] = {}
        self.part_numbers_uploaded: List[int] = []
        self.fail_upload_part: Optional[Callable[[int], Optional[Exception]]] = None
        self.fail_list: Optional[Exception] = None
        self.fail_head: Optional[Exception] = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._lock:
            self.calls[name] = self.calls.get(name, 0) + 1

    def _bucket(self, bucket: str) -> Dict[str, StoredObject]:
        if bucket not in self.buckets:
            raise StorageServiceError(f"no bucket {bucket}", code="NoSuchBucket", status_code=404)
        return self.buckets[bucket]

    def _object(self, bucket: str, key: str) -> StoredObject:
        objects = self._bucket(bucket)
        if key not in objects:
            raise ObjectNotFoundError(f"no object {bucket}/{key}", code="NoSuchKey", status_code=404)
        return objects[key]

    def put_bytes(self, bucket: str, key: str, data: bytes, modified_time: Optional[int] = None,
                  with_crc32: bool = True) -> None:
        self.buckets.setdefault(bucket, {})[key] = StoredObject(
            data=data,
            modified_time=self.clock() if modified_time is None else modified_time,
            crc32=encode_crc32(zlib.crc32(data)) if with_crc32 else None,
        )

    def data(self, bucket: str, key: str) -> bytes:
        return self._object(bucket, key).data

    def keys(self, bucket: str) -> List[str]:
        return sorted(self._bucket(bucket))

    # ObjectStorage ------------------------------------------------------

    def connect(self) -> None:
        pass

    def disconnect(self) -> None:
        pass

    def list_objects(self, bucket, prefix="", delimiter="", continuation_token=None, max_keys=1000):
        self._count("list_objects")
        if self.fail_list is not None:
            raise self.fail_list
        keys = sorted(k for k in self._bucket(bucket) if k.startswith(prefix))
        if continuation_token:
            keys = [k for k in keys if k > continuation_token]

        contents, prefixes, seen = [], [], set()
        last_key = None
        for key in keys:
            if len(contents) + len(prefixes) >= max_keys:
                break
            last_key = key
            if delimiter:
                rest = key[len(prefix):]
                if delimiter in rest:
                    common = prefix + rest.split(delimiter, 1)[0] + delimiter
                    if common not in seen:
                        seen.add(common)
                        prefixes.append(common)
                    continue
            obj = self.buckets[bucket][key]
            contents.append(ObjectSummary(key, len(obj.data), obj.modified_time, obj.etag, obj.storage_class))

        remaining = [k for k in keys if last_key is not None and k > last_key]
        truncated = bool(remaining)
        return ObjectListing(
            contents=contents,
            common_prefixes=prefixes,
            is_truncated=truncated,
            next_token=last_key if truncated else None,
        )

    def head_object(self, bucket, key):
        self._count("head_object")
        if self.fail_head is not None:
            raise self.fail_head
        obj = self._object(bucket, key)
        return ObjectMeta(key, len(obj.data), obj.modified_time, obj.etag, obj.storage_class, obj.crc32)

    def put_object_from_file(self, bucket, key, local_path, storage_class=None):
        self._count("put_object")
        data = Path(local_path).read_bytes()
        self.put_bytes(bucket, key, data)
        if storage_class:
            self.buckets[bucket][key].storage_class = storage_class
        return self.buckets[bucket][key].etag

    def get_object_to_file(self, bucket, key, local_path):
        self._count("get_object")
        data = self._object(bucket, key).data
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        Path(local_path).write_bytes(data)
        return len(data)

    def get_object_range(self, bucket, key, start, end):
        self._count("get_object_range")
        return self._object(bucket, key).data[start:end + 1]

    def copy_object(self, src_bucket, src_key, dst_bucket, dst_key, storage_class=None):
        self._count("copy_object")
        data = self._object(src_bucket, src_key).data
        self._bucket(dst_bucket)
        self.put_bytes(dst_bucket, dst_key, data)
        return self.buckets[dst_bucket][dst_key].etag

    def delete_object(self, bucket, key):
        self._count("delete_object")
        self._bucket(bucket).pop(key, None)

    def delete_objects(self, bucket, keys):
        self._count("delete_objects")
        for key in keys:
            self._bucket(bucket).pop(key, None)
        return []

    def initiate_multipart_upload(self, bucket, key, storage_class=None):
        self._count("initiate_multipart_upload")
        self._bucket(bucket)
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = {"bucket": bucket, "key": key, "parts": {}}
        return upload_id

    def _upload(self, upload_id):
        if upload_id not in self.uploads:
            raise StorageServiceError(f"no upload {upload_id}", code="NoSuchUpload", status_code=404)
        return self.uploads[upload_id]

    def upload_part(self, bucket, key, upload_id, part_number, body):
        self._count("upload_part")
        if self.fail_upload_part is not None:
            error = self.fail_upload_part(part_number)
            if error is not None:
                raise error
        upload = self._upload(upload_id)
        with self._lock:
            upload["parts"][part_number] = bytes(body)
            self.part_numbers_uploaded.append(part_number)
        return hashlib.md5(body).hexdigest()

    def upload_part_copy(self, bucket, key, upload_id, part_number, src_bucket, src_key, start, end):
        self._count("upload_part_copy")
        data = self._object(src_bucket, src_key).data[start:end + 1]
        upload = self._upload(upload_id)
        with self._lock:
            upload["parts"][part_number] = data
        return hashlib.md5(data).hexdigest()

    def complete_multipart_upload(self, bucket, key, upload_id, parts):
        self._count("complete_multipart_upload")
        upload = self._upload(upload_id)
        numbers = [p["PartNumber"] for p in parts]
        if numbers != sorted(numbers):
            raise StorageServiceError("parts out of order", code="InvalidPartOrder", status_code=400)
        for p in parts:
            stored = upload["parts"].get(p["PartNumber"])
            if stored is None or hashlib.md5(stored).hexdigest() != p["ETag"]:
                raise StorageServiceError(f"bad part {p['PartNumber']}", code="InvalidPart", status_code=400)
        data = b"".join(upload["parts"][n] for n in numbers)
        self.put_bytes(bucket, key, data, with_crc32=False)
        del self.uploads[upload_id]
        return hashlib.md5(data).hexdigest() + f"-{len(numbers)}"

    def abort_multipart_upload(self, bucket, key, upload_id):
        self.uploads.pop(upload_id, None)

    def list_buckets(self):
        return [BucketSummary(name=b) for b in sorted(self.buckets)]

    def create_bucket(self, bucket, region=None):
        self.buckets.setdefault(bucket, {})

    def delete_bucket(self, bucket):
        if self._bucket(bucket):
            raise StorageServiceError("bucket not empty", code="BucketNotEmpty", status_code=409)
        del self.buckets[bucket]

    def bucket_exists(self, bucket):
        return bucket in self.buckets

    def generate_presigned_url(self, bucket, key, expires_in=1800):
        return f"https://{bucket}.example.com/{key}?expires={expires_in}"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def storage():
    """In-memory storage with one empty bucket."""
    s = InMemoryObjectStorage()
    s.create_bucket("bucket")
    return s


@pytest.fixture
def server_config(temp_dir):
    """Server config with records kept under the temp dir."""
    return ServerConfig(
        multiupload_folder=temp_dir / "records",
        sync_processing_num=4,
        multi_upload_thread_num=2,
        retry_attempts=0,
    )


def write_file(path: Path, data: bytes, mtime: Optional[int] = None) -> Path:
    """Write ``data`` to ``path`` creating parents; optionally set its mtime."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def make_file():
    """Return the write_file helper."""
    return write_file
