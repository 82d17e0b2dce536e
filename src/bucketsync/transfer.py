"""
Upload, download, copy and delete routines behind every sync operation.

Objects above the multipart thresholds are moved part by part through a
MultiTaskContent so an interrupted transfer resumes where it stopped.
Single-shot requests go through the retry helper instead.
"""

import logging
import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from tqdm import tqdm

from .config import MB, ServerConfig
from .errors import ObjectNotFoundError, TransferError, needs_multipart_restart
from .models import (
    REMOTE_PATH_PREFIX,
    TEMP_FILE_PREFIX,
    OutputOptions,
    SyncArgs,
    SyncDecision,
    SyncOperation,
)
from .multipart import (
    DEFAULT_EXPIRATION_DAYS,
    MultiTaskContent,
    TransferRegistry,
    local_tail_md5,
    remote_tail_md5,
)
from .retry import RetryConfig, retry_call
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

MULTI_UPLOAD_THRESHOLD = 32 * MB
MULTI_DOWNLOAD_THRESHOLD = 100 * MB
MULTI_COPY_THRESHOLD = 100 * MB
MULTI_COPY_PART_SIZE = 50 * MB
DEFAULT_PART_SIZE = 10 * MB
GAP_GET_OBJECT_INFO_AGAIN = 60  # seconds

PartFunc = Callable[[int, int, int], str]


def remote_path(bucket: str, key: str) -> str:
    return f"{REMOTE_PATH_PREFIX}{bucket}/{key}"


def read_range(path: str, start: int, length: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(start)
        return f.read(length)


def write_at(path: str, offset: int, data: bytes) -> None:
    with open(path, "r+b") as f:
        f.seek(offset)
        f.write(data)


@dataclass
class TransferSettings:
    """Tunables of the transfer routines."""
    record_dir: Path
    multipart_threads: int = 10
    part_size: int = DEFAULT_PART_SIZE
    expiration_days: int = DEFAULT_EXPIRATION_DAYS
    upload_threshold: int = MULTI_UPLOAD_THRESHOLD
    download_threshold: int = MULTI_DOWNLOAD_THRESHOLD
    copy_threshold: int = MULTI_COPY_THRESHOLD
    copy_part_size: int = MULTI_COPY_PART_SIZE
    download_tmp_dir: Optional[str] = None
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_config(cls, config: ServerConfig, **overrides) -> "TransferSettings":
        settings = cls(
            record_dir=Path(config.multiupload_folder),
            multipart_threads=config.multi_upload_thread_num,
            part_size=config.multi_upload_part_size,
            expiration_days=config.breakpoint_file_expiration_days,
            retry=RetryConfig(max_retries=config.retry_attempts),
        )
        for name, value in overrides.items():
            if value is not None:
                setattr(settings, name, value)
        return settings


class TransferHandler:
    """Carries out single transfers and deletes against one storage backend."""

    def __init__(
        self,
        storage: ObjectStorage,
        settings: TransferSettings,
        registry: Optional[TransferRegistry] = None,
        output: Optional[OutputOptions] = None,
    ):
        self.storage = storage
        self.settings = settings
        self.registry = registry if registry is not None else TransferRegistry()
        self.output = output or OutputOptions()

    # ------------------------------------------------------------------
    # Sync decisions
    # ------------------------------------------------------------------

    def perform_decision(self, args: SyncArgs, decision: SyncDecision) -> None:
        """Execute one comparator decision. Raises on failure."""
        src = decision.source_entry
        size = src.size if src is not None else None
        mtime = src.modified_time if src is not None else None
        listed_at = src.listed_at if src is not None else None
        op = decision.operation

        if op == SyncOperation.UPLOAD:
            self.upload_file(
                decision.src_path, args.destination.bucket, decision.dst_path,
                size=size, mtime=mtime, listed_at=listed_at,
                restart=args.restart, storage_class=args.storage_class,
            )
        elif op == SyncOperation.DOWNLOAD:
            self.download_object(
                args.source.bucket, decision.src_path, decision.dst_path,
                size=size, mtime=mtime, listed_at=listed_at, restart=args.restart,
            )
        elif op == SyncOperation.COPY:
            self.copy_object(
                args.source.bucket, decision.src_path, args.destination.bucket, decision.dst_path,
                size=size, mtime=mtime, listed_at=listed_at,
                restart=args.restart, storage_class=args.storage_class,
            )
        elif op == SyncOperation.REMOVE_REMOTE:
            self.delete_object(args.destination.bucket, decision.dst_path)
        elif op == SyncOperation.REMOVE_LOCAL:
            self.delete_local_file(decision.dst_path)
        else:
            raise TransferError(f"cannot perform operation {op.value} for {decision.key}")

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------

    def _part_worker(self, content: MultiTaskContent, do_part: PartFunc, part_number: int) -> None:
        start = (part_number - 1) * content.part_size
        length = min(content.part_size, content.file_size - start)
        etag = do_part(part_number, start, length)
        content.finish_part(part_number, etag)

    def _run_parts(self, content: MultiTaskContent, do_part: PartFunc, label: str) -> None:
        """Run every unfinished part on the part pool; the first failure stops the rest."""
        pending = [
            n for n in range(1, content.parts_num + 1)
            if content.part_is_finished(n) is None
        ]
        logger.debug(f"{label}: {len(pending)} of {content.parts_num} parts to transfer")

        with tqdm(
            total=content.parts_num,
            initial=content.parts_num - len(pending),
            desc=label,
            unit="part",
            leave=False,
            disable=not self.output.show_progress_bar,
        ) as bar:
            with ThreadPoolExecutor(
                max_workers=self.settings.multipart_threads,
                thread_name_prefix="bucketsync-part",
            ) as pool:
                futures = {
                    pool.submit(self._part_worker, content, do_part, n): n
                    for n in pending
                }
                try:
                    for future in as_completed(futures):
                        future.result()
                        bar.update(1)
                except Exception as e:
                    logger.error(f"{label}: part {futures[future]} failed: {e}")
                    for f in futures:
                        f.cancel()
                    raise

    def _with_restart(self, transfer: Callable[[bool], str], restart: bool, label: str) -> str:
        try:
            return transfer(restart)
        except Exception as e:
            if restart or not needs_multipart_restart(e):
                raise
            logger.warning(f"{label}: multipart upload is no longer valid ({e}), starting over")
            return transfer(True)

    def _refresh_needed(self, size: Optional[int], listed_at: Optional[float]) -> bool:
        if size is None:
            return True
        return listed_at is not None and time.time() - listed_at > GAP_GET_OBJECT_INFO_AGAIN

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload_file(
        self,
        local_path: str,
        bucket: str,
        key: str,
        size: Optional[int] = None,
        mtime: Optional[int] = None,
        listed_at: Optional[float] = None,
        restart: bool = False,
        storage_class: Optional[str] = None,
    ) -> str:
        """Upload a local file. Returns the object etag."""
        if self._refresh_needed(size, listed_at):
            stat = os.stat(local_path)
            size, mtime = stat.st_size, int(stat.st_mtime)

        if size > self.settings.upload_threshold:
            return self._with_restart(
                lambda r: self.upload_super_file(local_path, bucket, key, size, mtime, r, storage_class),
                restart,
                f"upload {local_path}",
            )
        return retry_call(
            self.settings.retry, self.storage.put_object_from_file,
            bucket, key, Path(local_path), storage_class,
        )

    def upload_super_file(
        self,
        local_path: str,
        bucket: str,
        key: str,
        size: int,
        mtime: int,
        restart: bool = False,
        storage_class: Optional[str] = None,
    ) -> str:
        """Multipart upload that resumes from a breakpoint record."""
        content = MultiTaskContent(
            src_path=os.path.abspath(local_path),
            dst_path=remote_path(bucket, key),
            file_size=size,
            file_mtime=mtime,
            md5_val=local_tail_md5(local_path, size),
            part_size=self.settings.part_size,
            record_dir=self.settings.record_dir,
            expiration_days=self.settings.expiration_days,
        )
        if not content.init(restart):
            content.set_upload_id(self.storage.initiate_multipart_upload(bucket, key, storage_class))

        def do_part(part_number: int, start: int, length: int) -> str:
            body = read_range(local_path, start, length)
            return self.storage.upload_part(bucket, key, content.upload_id, part_number, body)

        self.registry.register(content)
        try:
            with content:
                self._run_parts(content, do_part, f"upload {os.path.basename(local_path)}")
                etag = self.storage.complete_multipart_upload(
                    bucket, key, content.upload_id, content.sorted_parts()
                )
                content.complete()
        finally:
            self.registry.unregister(content)
        return etag

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def download_object(
        self,
        bucket: str,
        key: str,
        local_path: str,
        size: Optional[int] = None,
        mtime: Optional[int] = None,
        listed_at: Optional[float] = None,
        restart: bool = False,
    ) -> int:
        """Download an object to ``local_path``. Returns the byte count."""
        if self._refresh_needed(size, listed_at):
            meta = self.storage.head_object(bucket, key)
            size, mtime = meta.size, meta.modified_time

        parent = os.path.dirname(local_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        if size > self.settings.download_threshold:
            self.download_super_file(bucket, key, local_path, size, mtime, restart)
            return size

        # The destination is only replaced once the whole body has arrived
        tmp_dir = self.settings.download_tmp_dir or os.path.dirname(os.path.abspath(local_path))
        os.makedirs(tmp_dir, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=TEMP_FILE_PREFIX, dir=tmp_dir)
        os.close(fd)
        try:
            downloaded = retry_call(
                self.settings.retry, self.storage.get_object_to_file, bucket, key, Path(temp_path),
            )
            os.replace(temp_path, local_path)
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
        return downloaded

    def download_super_file(
        self,
        bucket: str,
        key: str,
        local_path: str,
        size: int,
        mtime: int,
        restart: bool = False,
    ) -> None:
        """Ranged, resumable download through a temporary file renamed into place."""
        content = MultiTaskContent(
            src_path=remote_path(bucket, key),
            dst_path=os.path.abspath(local_path),
            file_size=size,
            file_mtime=mtime,
            md5_val=remote_tail_md5(self.storage, bucket, key, size),
            part_size=self.settings.part_size,
            record_dir=self.settings.record_dir,
            expiration_days=self.settings.expiration_days,
            dst_is_local=True,
        )
        if not content.init(restart):
            tmp_dir = self.settings.download_tmp_dir or os.path.dirname(os.path.abspath(local_path))
            os.makedirs(tmp_dir, exist_ok=True)
            temp_path = os.path.join(tmp_dir, TEMP_FILE_PREFIX + content.content_id)
            open(temp_path, "wb").close()
            content.set_upload_id(temp_path)
        temp_path = content.upload_id

        def do_part(part_number: int, start: int, length: int) -> str:
            data = self.storage.get_object_range(bucket, key, start, start + length - 1)
            write_at(temp_path, start, data)
            return str(part_number)

        self.registry.register(content)
        try:
            with content:
                try:
                    self._run_parts(content, do_part, f"download {os.path.basename(local_path)}")
                except ObjectNotFoundError:
                    content.complete()
                    raise
                os.replace(temp_path, local_path)
                content.complete()
        finally:
            self.registry.unregister(content)

    # ------------------------------------------------------------------
    # Copy
    # ------------------------------------------------------------------

    def copy_object(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        size: Optional[int] = None,
        mtime: Optional[int] = None,
        listed_at: Optional[float] = None,
        restart: bool = False,
        storage_class: Optional[str] = None,
    ) -> str:
        """Server-side copy. Returns the new etag."""
        if self._refresh_needed(size, listed_at):
            meta = self.storage.head_object(src_bucket, src_key)
            size, mtime = meta.size, meta.modified_time

        if size > self.settings.copy_threshold:
            return self._with_restart(
                lambda r: self.copy_super_file(
                    src_bucket, src_key, dst_bucket, dst_key, size, mtime, r, storage_class
                ),
                restart,
                f"copy {remote_path(src_bucket, src_key)}",
            )
        return retry_call(
            self.settings.retry, self.storage.copy_object,
            src_bucket, src_key, dst_bucket, dst_key, storage_class,
        )

    def copy_super_file(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        size: int,
        mtime: int,
        restart: bool = False,
        storage_class: Optional[str] = None,
    ) -> str:
        """Multipart server-side copy that resumes from a breakpoint record."""
        content = MultiTaskContent(
            src_path=remote_path(src_bucket, src_key),
            dst_path=remote_path(dst_bucket, dst_key),
            file_size=size,
            file_mtime=mtime,
            md5_val=remote_tail_md5(self.storage, src_bucket, src_key, size),
            part_size=self.settings.copy_part_size,
            record_dir=self.settings.record_dir,
            expiration_days=self.settings.expiration_days,
        )
        if not content.init(restart):
            content.set_upload_id(
                self.storage.initiate_multipart_upload(dst_bucket, dst_key, storage_class)
            )

        def do_part(part_number: int, start: int, length: int) -> str:
            return self.storage.upload_part_copy(
                dst_bucket, dst_key, content.upload_id, part_number,
                src_bucket, src_key, start, start + length - 1,
            )

        self.registry.register(content)
        try:
            with content:
                self._run_parts(content, do_part, f"copy {os.path.basename(src_key)}")
                etag = self.storage.complete_multipart_upload(
                    dst_bucket, dst_key, content.upload_id, content.sorted_parts()
                )
                content.complete()
        finally:
            self.registry.unregister(content)
        return etag

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_object(self, bucket: str, key: str) -> None:
        retry_call(self.settings.retry, self.storage.delete_object, bucket, key)

    def delete_local_file(self, path: str) -> None:
        if os.path.isdir(path):
            raise TransferError(f"refusing to delete directory {path}")
        os.remove(path)
        logger.debug(f"Deleted local file {path}")
